"""
Pytest configuration and fixtures.
"""

import asyncio
import os
from typing import Any, List, Optional, Sequence, Tuple
from unittest.mock import patch

import pytest

from src.callbot.config import Config
from src.callbot.media import AudioSink
from src.callbot.models import BrainResponse
from src.callbot.signaling import SignalingClient
from src.callbot.tts_providers.base import TTSProvider
from src.callbot.tts_types import SynthesisError


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.example.com",
        "PORT": "8000",
        "LOG_LEVEL": "DEBUG",
        "BRAIN_URL": "http://brain.test/llm/respond",
        "WAKE_PHRASE": "cuboid",
        "SIGNALING_MODE": "log",
        "TTS_PROVIDER": "azure",
        "SPEECH_KEY": "test_speech_key",
        "SPEECH_REGION": "uksouth",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.callbot.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeTTSProvider(TTSProvider):
    """Returns the text as audio bytes after an optional delay."""

    def __init__(self, delay: float = 0.0, fail_on: Sequence[str] = ()):
        self.delay = delay
        self.fail_on = set(fail_on)
        self.requests: List[Tuple[str, Optional[str]]] = []
        self.cancel_calls = 0
        self.closed = False

    async def synthesize(self, text: str, *, voice_name: Optional[str] = None) -> bytes:
        self.requests.append((text, voice_name))
        if self.delay:
            await asyncio.sleep(self.delay)
        if text in self.fail_on:
            raise SynthesisError("engine_error", details="simulated")
        return text.encode("utf-8")

    def cancel(self) -> None:
        self.cancel_calls += 1

    async def close(self) -> None:
        self.closed = True


class RecordingSink(AudioSink):
    """Records audio that reaches a call; `delay` simulates playback time."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.played: List[Tuple[str, bytes]] = []
        self.closed = False

    async def play(self, call_id: str, audio: bytes) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.played.append((call_id, audio))

    async def close(self) -> None:
        self.closed = True

    def texts(self, call_id: Optional[str] = None) -> List[str]:
        return [a.decode("utf-8") for c, a in self.played if call_id is None or c == call_id]


class FakeSignaling(SignalingClient):
    def __init__(self, *, answer_ok: bool = True, reject_ok: bool = True, hangup_ok: bool = True):
        self.answer_ok = answer_ok
        self.reject_ok = reject_ok
        self.hangup_ok = hangup_ok
        self.answer_error: Optional[Exception] = None
        self.answer_delay = 0.0
        self.actions: List[Tuple[str, str, Any]] = []
        self.closed = False

    async def answer(self, call_id: str, callback_uri: str, modalities: Sequence[str]) -> bool:
        self.actions.append(("answer", call_id, (callback_uri, list(modalities))))
        if self.answer_delay:
            await asyncio.sleep(self.answer_delay)
        if self.answer_error is not None:
            raise self.answer_error
        return self.answer_ok

    async def reject(self, call_id: str, reason: str) -> bool:
        self.actions.append(("reject", call_id, reason))
        return self.reject_ok

    async def hangup(self, call_id: str) -> bool:
        self.actions.append(("hangup", call_id, None))
        return self.hangup_ok

    async def close(self) -> None:
        self.closed = True

    def names(self) -> List[str]:
        return [a[0] for a in self.actions]


class StubBrain:
    """Stands in for BrainClient; echoes the utterance."""

    def __init__(self, speech: str = "", *, fallback: bool = False):
        self.speech = speech
        self.fallback = fallback
        self.requests: List[Tuple[str, str, str, str]] = []
        self.closed = False

    async def respond(self, call_id: str, speaker: str, utterance: str, history: str) -> BrainResponse:
        self.requests.append((call_id, speaker, utterance, history))
        if self.fallback:
            from src.callbot.brain import fallback_response
            return fallback_response()
        return BrainResponse(speech=self.speech or f"answer to {utterance}")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def test_config() -> Config:
    return Config(
        public_host="test.example.com",
        brain_url="http://brain.test/llm/respond",
        greeting_delay_seconds=0.0,
        max_playback_seconds=1.0,
    )


@pytest.fixture
def fake_tts() -> FakeTTSProvider:
    return FakeTTSProvider()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def signaling() -> FakeSignaling:
    return FakeSignaling()


@pytest.fixture
def brain() -> StubBrain:
    return StubBrain()


@pytest.fixture
def make_orchestrator(test_config, signaling, sink, brain):
    """Build an orchestrator wired to fakes; each call gets its own fake TTS."""
    from src.callbot.audio_processing import AudioProcessor
    from src.callbot.commands import VoiceCommandInterpreter
    from src.callbot.orchestrator import CallOrchestrator
    from src.callbot.wake_phrase import WakePhraseDetector

    def _make(config: Optional[Config] = None, **kwargs: Any) -> CallOrchestrator:
        config = config or test_config
        providers: List[FakeTTSProvider] = []

        def tts_factory() -> FakeTTSProvider:
            provider = FakeTTSProvider(delay=kwargs.get("tts_delay", 0.0))
            providers.append(provider)
            return provider

        audio = AudioProcessor(
            brain,
            WakePhraseDetector(config.wake_phrase),
            VoiceCommandInterpreter(
                wake_phrase=config.wake_phrase,
                farewell_wait_seconds=config.max_playback_seconds,
            ),
            recognizer_factory=kwargs.get("recognizer_factory"),
        )
        orchestrator = CallOrchestrator(
            signaling,
            audio,
            sink,
            config=config,
            tts_factory=tts_factory,
            greeting=kwargs.get("greeting"),
        )
        orchestrator.tts_providers = providers
        return orchestrator

    return _make
