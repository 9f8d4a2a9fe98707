from __future__ import annotations

import asyncio
from typing import Any, Optional
from xml.sax.saxutils import escape

import httpx
import structlog

from src.callbot.config import get_config
from src.callbot.tts_providers.base import TTSProvider
from src.callbot.tts_types import SynthesisError

logger = structlog.get_logger(__name__)

AZURE_TTS_URL = "https://{region}.tts.speech.microsoft.com/cognitiveservices/v1"
USER_AGENT = "callbot"


def build_ssml(text: str, voice_name: str) -> str:
    # Voice names look like "en-GB-LibbyNeural"; the locale is the first two parts.
    lang = "-".join(voice_name.split("-")[:2]) or "en-US"
    return (
        f"<speak version='1.0' xml:lang='{lang}'>"
        f"<voice name='{escape(voice_name)}'>{escape(text)}</voice>"
        "</speak>"
    )


class AzureSpeechTTS(TTSProvider):
    """
    Azure Speech text-to-speech over the REST API.

    Returns the encoded audio in the configured output format (mp3 by default).
    """

    def __init__(self, config: Optional[Any] = None, *, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None
        self._cancelled = False
        self._inflight: Optional[asyncio.Task] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(15.0))
        return self._client

    def cancel(self) -> None:
        self._cancelled = True
        if self._inflight and not self._inflight.done():
            self._inflight.cancel()

    async def close(self) -> None:
        self.cancel()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _request_tts(self, text: str, voice_name: str) -> bytes:
        url = AZURE_TTS_URL.format(region=self.config.speech_region)
        headers = {
            "Ocp-Apim-Subscription-Key": self.config.speech_key,
            "Content-Type": "application/ssml+xml",
            "X-Microsoft-OutputFormat": self.config.tts_output_format,
            "User-Agent": USER_AGENT,
        }
        resp = await self._get_client().post(
            url,
            content=build_ssml(text, voice_name).encode("utf-8"),
            headers=headers,
        )
        if resp.status_code != 200:
            raise SynthesisError(
                "engine_error",
                details=f"status={resp.status_code} body={resp.text[:200]}",
            )
        return resp.content

    async def synthesize(self, text: str, *, voice_name: Optional[str] = None) -> bytes:
        if not text or not text.strip():
            return b""

        voice = voice_name or self.config.tts_voice
        self._cancelled = False
        task = asyncio.create_task(self._request_tts(text, voice))
        self._inflight = task

        try:
            audio = await task
        except asyncio.CancelledError:
            raise
        except SynthesisError:
            raise
        except httpx.HTTPError as e:
            raise SynthesisError("transport_error", details=str(e)) from e
        finally:
            if self._inflight is task:
                self._inflight = None

        if self._cancelled:
            raise SynthesisError("cancelled")
        if not audio:
            raise SynthesisError("empty_audio")
        return audio
