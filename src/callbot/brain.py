"""
Client for the remote reasoning service ("brain").

Provides:
- Request building (call identity, speaker, utterance, history, constraints)
- Tolerant response parsing through an ordered list of extraction strategies
- A fixed spoken fallback whenever the brain is unreachable or unintelligible

A single attempt is made per utterance; failures never propagate to the caller.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple, Union

import httpx
import structlog

from src.callbot.models import BrainRequest, BrainResponse

logger = structlog.get_logger(__name__)

FALLBACK_SPEECH = (
    "I'm having trouble connecting to my compliance knowledge right now. "
    "Could you repeat that in a moment?"
)


def fallback_response() -> BrainResponse:
    return BrainResponse(speech=FALLBACK_SPEECH, chat=None, actions=[], is_fallback=True)


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _walk(payload: Any, path: Tuple[Union[str, int], ...]) -> Any:
    node = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, list) or len(node) <= key:
                return None
            node = node[key]
        else:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
    return node


@dataclass(frozen=True)
class RawString:
    """The whole body is a JSON string."""

    def extract(self, payload: Any) -> Optional[str]:
        return _non_empty_str(payload)


@dataclass(frozen=True)
class FlatField:
    """A top-level string field, e.g. `{"speech": "..."}`."""
    name: str

    def extract(self, payload: Any) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        return _non_empty_str(payload.get(self.name))


@dataclass(frozen=True)
class NestedField:
    """A string inside nested objects, e.g. `data.speech`."""
    path: Tuple[str, ...]

    def extract(self, payload: Any) -> Optional[str]:
        return _non_empty_str(_walk(payload, self.path))


@dataclass(frozen=True)
class ChoiceArray:
    """Chat-completion style `choices[0].message.content`."""
    array: str = "choices"
    path: Tuple[str, ...] = ("message", "content")

    def extract(self, payload: Any) -> Optional[str]:
        return _non_empty_str(_walk(payload, (self.array, 0) + self.path))


ExtractionStrategy = Union[RawString, FlatField, NestedField, ChoiceArray]

# Tried in order; first non-empty string wins.
DEFAULT_STRATEGIES: Tuple[ExtractionStrategy, ...] = (
    FlatField("speech"),
    FlatField("response"),
    FlatField("text"),
    FlatField("answer"),
    FlatField("reply"),
    FlatField("message"),
    FlatField("content"),
    NestedField(("data", "speech")),
    NestedField(("message", "content")),
    ChoiceArray(),
    ChoiceArray(path=("text",)),
    RawString(),
)


def extract_speech(
    payload: Any,
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
) -> Optional[str]:
    """Return the first speech string any strategy finds, or None."""
    for strategy in strategies:
        speech = strategy.extract(payload)
        if speech:
            return speech
    return None


def parse_brain_response(
    payload: Any,
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
) -> Optional[BrainResponse]:
    speech = extract_speech(payload, strategies)
    if speech is None:
        return None

    chat = None
    actions: list[str] = []
    if isinstance(payload, dict):
        chat = _non_empty_str(payload.get("chat"))
        raw_actions = payload.get("actions")
        if isinstance(raw_actions, list):
            actions = [str(a) for a in raw_actions if a is not None]

    return BrainResponse(speech=speech, chat=chat, actions=actions)


class BrainClient:
    """
    Sends utterances to the brain endpoint.

    Holds no per-call state; one instance is shared by every session.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 15.0,
        max_voice_seconds: int = 20,
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.max_voice_seconds = max_voice_seconds
        self.strategies = tuple(strategies)
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def respond(
        self,
        call_id: str,
        speaker: str,
        utterance: str,
        history: str,
    ) -> BrainResponse:
        """Ask the brain what to say. Always returns speech (real or fallback)."""
        if not self.url:
            logger.warning("Brain URL not configured, using fallback", call_id=call_id)
            return fallback_response()

        request = BrainRequest(
            meeting_id=call_id,
            speaker=speaker,
            utterance=utterance,
            history=history,
            max_voice_seconds=self.max_voice_seconds,
        )

        logger.info("Sending request to brain", call_id=call_id, utterance=utterance[:50])
        started = time.time()

        try:
            resp = await self._get_client().post(
                self.url,
                json=request.to_payload(),
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.error(
                "Error communicating with brain service",
                call_id=call_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return fallback_response()
        except Exception as e:
            logger.error("Unexpected brain client error", call_id=call_id, error=str(e))
            return fallback_response()

        elapsed_ms = round((time.time() - started) * 1000, 2)

        if not resp.is_success:
            logger.error(
                "Brain returned error status",
                call_id=call_id,
                status_code=resp.status_code,
                response=resp.text[:200],
                elapsed_ms=elapsed_ms,
            )
            return fallback_response()

        try:
            payload = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            logger.error("Brain response is not JSON", call_id=call_id, error=str(e))
            return fallback_response()

        response = parse_brain_response(payload, self.strategies)
        if response is None:
            logger.error(
                "Brain response has no speech",
                call_id=call_id,
                response=resp.text[:200],
            )
            return fallback_response()

        logger.info(
            "Brain response received",
            call_id=call_id,
            speech=response.speech[:50],
            elapsed_ms=elapsed_ms,
        )
        return response
