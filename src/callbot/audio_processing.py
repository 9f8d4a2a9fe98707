"""
Recognized-speech pipeline for a call.

recognized text -> wake phrase -> voice command (local) | mute check -> brain -> speech

Each session gets one worker task that drains its inbox, so a call's utterances
are handled strictly in arrival order while other calls proceed independently.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import structlog

from src.callbot.brain import BrainClient
from src.callbot.commands import LeaveCallback, VoiceCommandInterpreter
from src.callbot.models import DEFAULT_SPEAKER
from src.callbot.session import CallSession, QueuedSpeech
from src.callbot.wake_phrase import WakePhraseDetector

logger = structlog.get_logger(__name__)

OPERATOR_SPEAKER = "operator"

RecognizerFactory = Callable[[str], Any]


class AudioProcessor:
    """Routes recognized speech for every active session."""

    def __init__(
        self,
        brain: BrainClient,
        detector: WakePhraseDetector,
        commands: VoiceCommandInterpreter,
        *,
        recognizer_factory: Optional[RecognizerFactory] = None,
    ):
        self.brain = brain
        self.detector = detector
        self.commands = commands
        self._recognizer_factory = recognizer_factory

    def set_leave_callback(self, callback: LeaveCallback) -> None:
        self.commands.set_leave_callback(callback)

    async def start(self, session: CallSession) -> None:
        """Initialize audio for a freshly answered call."""
        logger.info("Starting audio processing", call_id=session.call_id)
        try:
            if self._recognizer_factory is not None and session.recognizer is None:
                session.recognizer = self._recognizer_factory(session.call_id)
            session.audio_active = True
            session.track_task(asyncio.create_task(self._speech_worker(session)))
            logger.info("Audio processing started", call_id=session.call_id)
        except Exception as e:
            logger.error("Error starting audio processing", call_id=session.call_id, error=str(e))

    def submit(self, session: CallSession, text: str, *, speaker: Optional[str] = None) -> bool:
        """Queue recognized text for the session's worker. Never blocks."""
        if session.disposed or not session.audio_active:
            logger.debug("Speech dropped, audio inactive", call_id=session.call_id)
            return False
        session.inbox.put_nowait(QueuedSpeech(text=text, speaker=speaker))
        return True

    async def _speech_worker(self, session: CallSession) -> None:
        """Background worker that processes a call's recognized speech sequentially."""
        try:
            while not session.disposed:
                queued = await session.inbox.get()
                try:
                    await self.process_recognized_speech(
                        session, queued.text, speaker=queued.speaker
                    )
                finally:
                    session.inbox.task_done()
        except asyncio.CancelledError:
            pass

    async def process_recognized_speech(
        self,
        session: CallSession,
        recognized_text: str,
        *,
        speaker: Optional[str] = None,
    ) -> None:
        """
        Handle one recognized utterance.

        Commands are always honoured so a muted bot can still hear "unmute";
        mute only suppresses content that would go to the brain.
        """
        async with session.lock:
            try:
                await self._process(session, recognized_text, speaker or DEFAULT_SPEAKER)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error processing speech", call_id=session.call_id, error=str(e))

    async def _process(self, session: CallSession, recognized_text: str, speaker: str) -> None:
        if session.disposed or session.leaving:
            return

        result = self.detector.detect(recognized_text)
        if not result.detected:
            return

        utterance = result.utterance
        logger.info("Wake phrase utterance", call_id=session.call_id, utterance=utterance[:50])

        if await self.commands.handle(session, utterance):
            return

        if session.muted:
            logger.debug("Call is muted, ignoring speech", call_id=session.call_id)
            return

        if not utterance:
            logger.debug("Wake phrase without utterance", call_id=session.call_id)
            return

        # Barge-in: the caller is talking to us, stop the previous answer.
        session.stop_current_playback()

        response = await self.brain.respond(
            session.call_id,
            speaker,
            utterance,
            session.conversation_context(),
        )
        if session.disposed:
            return

        if session.synthesis is not None:
            session.synthesis.speak(response.speech)

        session.append_exchange(utterance, response.speech)

    async def say(
        self,
        session: CallSession,
        prompt: str,
        *,
        use_brain: bool = True,
        voice_name: Optional[str] = None,
    ) -> Optional[str]:
        """Operator-triggered speech; returns the text that was spoken."""
        if not prompt or not prompt.strip():
            return None

        async with session.lock:
            if session.disposed or session.leaving:
                return None

            text = prompt.strip()
            if use_brain:
                response = await self.brain.respond(
                    session.call_id,
                    OPERATOR_SPEAKER,
                    text,
                    session.conversation_context(),
                )
                session.append_exchange(text, response.speech)
                text = response.speech

            if session.synthesis is not None:
                session.synthesis.speak(text, voice_name=voice_name)

            logger.info("Operator speech queued", call_id=session.call_id, text=text[:50])
            return text
