from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.callbot.config import get_config
from src.callbot.tts_providers.base import TTSProvider
from src.callbot.tts_types import SynthesisError

logger = structlog.get_logger(__name__)


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider.

    The SDK call is blocking, so it runs in a worker thread; `cancel()` stops
    waiting for it (the thread itself finishes in the background).
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._cancelled = False
        self._inflight: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._inflight and not self._inflight.done():
            self._inflight.cancel()

    async def _generate_mp3(self, text: str, voice: str) -> bytes:
        from openai import OpenAI  # Local import to keep module import light

        client = OpenAI(api_key=self.config.openai_api_key)

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=voice,
                input=text,
                response_format="mp3",
            )
            # SDKs have varied over time; handle several shapes.
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            read = getattr(resp, "read", None)
            if callable(read):
                return read()
            return bytes(resp)

        return await asyncio.to_thread(_call)

    async def synthesize(self, text: str, *, voice_name: Optional[str] = None) -> bytes:
        # Azure voice names mean nothing to OpenAI; only the configured voice is used.
        if not text or not text.strip():
            return b""

        self._cancelled = False
        task = asyncio.create_task(self._generate_mp3(text, self.config.openai_tts_voice))
        self._inflight = task

        try:
            audio = await task
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            raise SynthesisError("engine_error", details=str(e)) from e
        finally:
            if self._inflight is task:
                self._inflight = None

        if self._cancelled:
            raise SynthesisError("cancelled")
        if not audio:
            raise SynthesisError("empty_audio")
        return audio
