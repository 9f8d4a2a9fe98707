from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.callbot.config import get_config
from src.callbot.media import AudioSink
from src.callbot.tts_providers.azure import AzureSpeechTTS
from src.callbot.tts_providers.base import TTSProvider
from src.callbot.tts_providers.openai_tts import OpenAITTS
from src.callbot.tts_types import SynthesisError, SynthesisMetrics

logger = structlog.get_logger(__name__)


def create_tts_provider(config: Optional[Any] = None) -> TTSProvider:
    """Build the configured TTS provider. Callers create one per call."""
    config = config or get_config()
    tts = (config.tts_provider or "azure").strip().lower()

    if tts == "azure":
        return AzureSpeechTTS(config)
    if tts == "openai":
        return OpenAITTS(config)

    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")


class SpeechSynthesisQueue:
    """
    Per-call synthesis and playback with barge-in.

    - At most one synthesis/playback task is active at a time.
    - `speak()` cancels whatever is playing before starting the new text
      (latest wins; older audio is never interleaved with newer audio).
    - Failures are logged and reported as a `False` result, never raised.
    """

    def __init__(
        self,
        call_id: str,
        provider: TTSProvider,
        sink: AudioSink,
        *,
        voice_name: Optional[str] = None,
    ):
        self.call_id = call_id
        self.voice_name = voice_name
        self._provider = provider
        self._sink = sink
        self._current: Optional[asyncio.Task] = None
        self._generation = 0
        self._closed = False
        self.metrics = SynthesisMetrics()

    @property
    def current(self) -> Optional[asyncio.Task]:
        return self._current

    @property
    def is_speaking(self) -> bool:
        return self._current is not None and not self._current.done()

    def speak(self, text: str, *, voice_name: Optional[str] = None) -> Optional[asyncio.Task]:
        """
        Start speaking `text`, preempting any in-flight speech.

        Returns the playback task, or None when there is nothing to say.
        """
        if self._closed:
            logger.debug("Speak ignored, queue closed", call_id=self.call_id)
            return None
        if not text or not text.strip():
            return None

        self.stop_current(reason="barge_in")

        self._generation += 1
        self.metrics.requests += 1
        task = asyncio.create_task(
            self._synthesize_and_play(text, voice_name or self.voice_name, self._generation)
        )
        self._current = task
        task.add_done_callback(self._on_task_done)
        return task

    async def speak_and_wait(self, text: str, *, voice_name: Optional[str] = None) -> bool:
        """Speak and wait until playback ends; True if the audio played to completion."""
        task = self.speak(text, voice_name=voice_name)
        if task is None:
            return False

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task.cancelled():
            return False
        return bool(task.result())

    def stop_current(self, *, reason: str = "stop") -> bool:
        """Cancel in-flight synthesis/playback. Returns True if something was stopped."""
        task = self._current
        self._current = None
        if task is None or task.done():
            return False

        self._provider.cancel()
        task.cancel()
        logger.info("Speech stopped", call_id=self.call_id, reason=reason)
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        task = self._current
        self.stop_current(reason="close")
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

        try:
            await self._provider.close()
        except Exception as e:
            logger.warning("Error closing TTS provider", call_id=self.call_id, error=str(e))

    def _on_task_done(self, task: asyncio.Task) -> None:
        if self._current is task:
            self._current = None
        if task.cancelled():
            self.metrics.cancelled += 1

    async def _synthesize_and_play(self, text: str, voice_name: Optional[str], generation: int) -> bool:
        logger.info("Synthesizing speech", call_id=self.call_id, text=text[:50])

        try:
            audio = await self._provider.synthesize(text, voice_name=voice_name)
        except asyncio.CancelledError:
            logger.debug("Speech synthesis cancelled", call_id=self.call_id)
            raise
        except SynthesisError as e:
            self.metrics.failed += 1
            logger.warning(
                "Speech synthesis failed",
                call_id=self.call_id,
                reason=e.reason,
                details=e.details,
            )
            return False
        except Exception as e:
            self.metrics.failed += 1
            logger.error("Error synthesizing speech", call_id=self.call_id, error=str(e))
            return False

        if not audio:
            self.metrics.failed += 1
            logger.warning("Speech synthesis returned no audio", call_id=self.call_id)
            return False

        # Superseded while the engine was finishing.
        if generation != self._generation or self._closed:
            return False

        try:
            await self._sink.play(self.call_id, audio)
        except asyncio.CancelledError:
            logger.debug("Playback cancelled", call_id=self.call_id)
            raise
        except Exception as e:
            self.metrics.failed += 1
            logger.error("Error streaming audio to call", call_id=self.call_id, error=str(e))
            return False

        self.metrics.completed += 1
        self.metrics.audio_bytes += len(audio)
        logger.info(
            "Speech synthesis completed",
            call_id=self.call_id,
            audio_bytes=len(audio),
        )
        return True
