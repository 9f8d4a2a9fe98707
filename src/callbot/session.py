"""
Per-call session state.

A `CallSession` lives from the moment a call is answered until it ends. It owns
the call's synthesis queue, its speech-recognition resource (when the audio
collaborator allocates one) and any background tasks started for the call;
`dispose()` releases all of them exactly once.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Set, Tuple

import structlog

from src.callbot.tts import SpeechSynthesisQueue

logger = structlog.get_logger(__name__)

USER_TAG = "user"
ASSISTANT_TAG = "assistant"

DEFAULT_CONTEXT_ENTRIES = 5
DEFAULT_MAX_ENTRIES = 20
DEFAULT_TRIM_COUNT = 10


@dataclass(frozen=True)
class UtteranceRecord:
    """One line of conversation history."""
    speaker_tag: str
    text: str

    def render(self) -> str:
        return f"{self.speaker_tag}: {self.text}"


@dataclass
class QueuedSpeech:
    """Recognized text waiting for the call's speech worker."""
    text: str
    speaker: Optional[str] = None


class CallSession:
    """Mutable state for one answered call."""

    def __init__(
        self,
        call_id: str,
        *,
        synthesis: Optional[SpeechSynthesisQueue] = None,
        context_entries: int = DEFAULT_CONTEXT_ENTRIES,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        trim_count: int = DEFAULT_TRIM_COUNT,
    ):
        self.call_id = call_id
        self.started_at = datetime.now(timezone.utc)
        self.muted = False
        self.leaving = False
        self.audio_active = False
        self.signaling_state: Optional[str] = None

        self.synthesis = synthesis
        self.recognizer: Optional[Any] = None

        self._history: List[UtteranceRecord] = []
        self._context_entries = context_entries
        self._max_entries = max_entries
        self._trim_count = max(1, trim_count)

        # Speech worker input (arrival order) and per-session mutual exclusion.
        self.inbox: asyncio.Queue[QueuedSpeech] = asyncio.Queue()
        self.lock = asyncio.Lock()

        self._tasks: Set[asyncio.Task] = set()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def history(self) -> Tuple[UtteranceRecord, ...]:
        return tuple(self._history)

    def append_exchange(self, utterance: str, response: str) -> None:
        """Record one brain round-trip (user line then assistant line)."""
        self._history.append(UtteranceRecord(USER_TAG, utterance))
        self._history.append(UtteranceRecord(ASSISTANT_TAG, response))
        self._trim_history()

    def _trim_history(self) -> None:
        # Batch trim: drop the oldest block instead of evicting one entry per turn.
        if len(self._history) > self._max_entries:
            del self._history[:self._trim_count]

    def conversation_context(self) -> str:
        """The most recent history lines, oldest first, newline-joined."""
        if self._context_entries <= 0:
            return ""
        recent = self._history[-self._context_entries:]
        return "\n".join(record.render() for record in recent)

    def stop_current_playback(self) -> bool:
        if self.synthesis is None:
            return False
        return self.synthesis.stop_current(reason="barge_in")

    def track_task(self, task: asyncio.Task) -> asyncio.Task:
        """Tie a background task to this session's lifetime."""
        if self._disposed:
            task.cancel()
            return task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def dispose(self) -> None:
        """Release every per-call resource. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        self.audio_active = False

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()

        if self.synthesis is not None:
            await self.synthesis.close()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        recognizer, self.recognizer = self.recognizer, None
        if recognizer is not None:
            try:
                recognizer.close()
            except Exception as e:
                logger.warning("Error closing recognizer", call_id=self.call_id, error=str(e))

        logger.info("Session disposed", call_id=self.call_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "startedAt": self.started_at.isoformat(),
            "muted": self.muted,
            "leaving": self.leaving,
            "audioActive": self.audio_active,
            "historyLength": len(self._history),
            "speaking": self.synthesis.is_speaking if self.synthesis else False,
        }
