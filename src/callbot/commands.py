"""
Voice commands spoken after the wake phrase.

"mute", "unmute" and "leave" are handled locally; anything else goes to the brain.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from src.callbot.session import CallSession

logger = structlog.get_logger(__name__)


class VoiceCommand(str, Enum):
    MUTE = "mute"
    UNMUTE = "unmute"
    LEAVE = "leave"


def parse_command(utterance: str) -> Optional[VoiceCommand]:
    """Exact match after lowercasing and trimming; None for anything else."""
    command = (utterance or "").strip().lower()
    try:
        return VoiceCommand(command)
    except ValueError:
        return None


LeaveCallback = Callable[[str], Awaitable[None]]


class VoiceCommandInterpreter:
    """Executes control commands against a session."""

    def __init__(
        self,
        *,
        wake_phrase: str = "cuboid",
        farewell_wait_seconds: float = 20.0,
        on_leave: Optional[LeaveCallback] = None,
    ):
        self.wake_phrase = wake_phrase
        self.farewell_wait_seconds = farewell_wait_seconds
        self._on_leave = on_leave

        name = wake_phrase.strip().title()
        self.mute_confirmation = f"I'm now muted. Say '{name}, unmute' to reactivate me."
        self.unmute_confirmation = "I'm back and listening for your questions."
        self.farewell = "Thanks everyone, I'll leave you to it. Have a productive meeting!"

    def set_leave_callback(self, callback: LeaveCallback) -> None:
        self._on_leave = callback

    async def handle(self, session: CallSession, utterance: str) -> bool:
        """Run `utterance` as a command. Returns True when it was one."""
        command = parse_command(utterance)
        if command is None:
            return False

        try:
            if command is VoiceCommand.MUTE:
                session.muted = True
                self._speak(session, self.mute_confirmation)
                logger.info("Call muted via voice command", call_id=session.call_id)

            elif command is VoiceCommand.UNMUTE:
                session.muted = False
                self._speak(session, self.unmute_confirmation)
                logger.info("Call unmuted via voice command", call_id=session.call_id)

            elif command is VoiceCommand.LEAVE:
                session.leaving = True
                logger.info("Call leaving via voice command", call_id=session.call_id)
                await self._say_farewell(session)
                if self._on_leave is not None:
                    await self._on_leave(session.call_id)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Error handling voice command",
                call_id=session.call_id,
                command=command.value,
                error=str(e),
            )

        return True

    def _speak(self, session: CallSession, text: str) -> None:
        if session.synthesis is not None:
            session.synthesis.speak(text)

    async def _say_farewell(self, session: CallSession) -> None:
        # Playback length is an estimate; never hold the call open past the cap.
        if session.synthesis is None:
            return
        try:
            await asyncio.wait_for(
                session.synthesis.speak_and_wait(self.farewell),
                timeout=self.farewell_wait_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Farewell playback exceeded wait cap",
                call_id=session.call_id,
                cap_seconds=self.farewell_wait_seconds,
            )
