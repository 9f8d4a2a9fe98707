"""
Call orchestration.

Turns signaling notifications into session lifecycle transitions:

    created  -> answer -> (ok) register session, start audio, greet
                       -> (fail) reject as busy (once; a second failure is dropped)
    updated  -> refresh hook for tracked calls
    deleted  -> cancel speech, dispose session, unregister (idempotent)

The orchestrator is the only owner of the active-session registry. Every
notification is handled inside its own recovery boundary so one bad event
cannot affect the notification stream or other calls.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import structlog

from src.callbot.audio_processing import AudioProcessor
from src.callbot.brain import BrainClient
from src.callbot.commands import VoiceCommandInterpreter
from src.callbot.config import Config, get_config
from src.callbot.media import AudioSink, PacedAudioSink
from src.callbot.models import CallbackNotification
from src.callbot.session import CallSession
from src.callbot.signaling import SignalingClient, create_signaling_client
from src.callbot.tts import SpeechSynthesisQueue, create_tts_provider
from src.callbot.tts_providers.base import TTSProvider
from src.callbot.wake_phrase import WakePhraseDetector

logger = structlog.get_logger(__name__)

AUDIO_MODALITIES = ("audio",)
REJECT_REASON_BUSY = "busy"


class ChangeType(str, Enum):
    """Signaling notification kinds."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ChangeType":
        value = (raw or "").strip().lower()
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


def extract_call_id(resource_url: str) -> str:
    """
    Derive the call id from a notification resource path.

    Uses the segment after "calls" (case-insensitive), else the last segment.
    Never raises; on any failure the input is returned unchanged.
    """
    try:
        segments = [s for s in resource_url.split("/") if s]
        for i in range(len(segments) - 1):
            if segments[i].lower() == "calls":
                return segments[i + 1]
        return segments[-1] if segments else resource_url
    except Exception:
        return resource_url


def greeting_for(wake_phrase: str) -> str:
    name = wake_phrase.strip().title()
    return (
        f"Hi all, {name} here. I'll stay on mute unless you say '{name}'. "
        f"If you'd like me to go quiet, say '{name}, mute'."
    )


@dataclass
class OrchestratorMetrics:
    """Call lifecycle counters."""
    notifications: int = 0
    unhandled_notifications: int = 0
    calls_answered: int = 0
    calls_rejected: int = 0
    reject_failures: int = 0
    calls_ended: int = 0
    hangups: int = 0
    errors: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.started_at, 2),
            "notifications": self.notifications,
            "unhandled_notifications": self.unhandled_notifications,
            "calls_answered": self.calls_answered,
            "calls_rejected": self.calls_rejected,
            "reject_failures": self.reject_failures,
            "calls_ended": self.calls_ended,
            "hangups": self.hangups,
            "errors": self.errors,
        }


NotificationHandler = Callable[[str, CallbackNotification], Awaitable[None]]


class CallOrchestrator:
    """
    Top-level coordinator for calls.

    Collaborators are injected; nothing here reads the environment at call time.
    """

    def __init__(
        self,
        signaling: SignalingClient,
        audio: AudioProcessor,
        sink: AudioSink,
        *,
        config: Optional[Config] = None,
        tts_factory: Optional[Callable[[], TTSProvider]] = None,
        greeting: Optional[str] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._signaling = signaling
        self._audio = audio
        self._sink = sink
        self._tts_factory = tts_factory or (lambda: create_tts_provider(config))
        self.greeting = greeting if greeting is not None else greeting_for(config.wake_phrase)

        # Registry (single owner, writes under one lock)
        self._sessions: Dict[str, CallSession] = {}
        self._lock = asyncio.Lock()

        # Calls whose answer is in flight, and those that ended meanwhile.
        self._answering: Set[str] = set()
        self._ended_while_answering: Set[str] = set()

        self._background: Set[asyncio.Task] = set()
        self.metrics = OrchestratorMetrics()

        self._handlers: Dict[ChangeType, NotificationHandler] = {
            ChangeType.CREATED: self._handle_call_created,
            ChangeType.UPDATED: self._handle_call_updated,
            ChangeType.DELETED: self._handle_call_ended,
        }

        self._audio.set_leave_callback(self.request_hangup)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_call_count(self) -> int:
        return len(self._sessions)

    def get_session(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def list_sessions(self) -> List[CallSession]:
        return list(self._sessions.values())

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def process_notifications(
        self, notifications: Iterable[Optional[CallbackNotification]]
    ) -> int:
        """Process a webhook batch in order. Returns how many were processed."""
        processed = 0
        for notification in notifications:
            if notification is None:
                continue
            await self.process_notification(notification)
            processed += 1
        return processed

    async def process_notification(self, notification: CallbackNotification) -> None:
        self.metrics.notifications += 1
        logger.info(
            "Processing notification",
            change_type=notification.change_type,
            resource_url=notification.resource_url,
        )

        try:
            change_type = ChangeType.parse(notification.change_type)
            handler = self._handlers.get(change_type)
            if handler is None:
                self.metrics.unhandled_notifications += 1
                logger.info("Unhandled notification type", change_type=notification.change_type)
                return

            call_id = extract_call_id(notification.resource_url)
            if not call_id:
                logger.warning(
                    "Notification without call id",
                    change_type=change_type.value,
                    resource_url=notification.resource_url,
                )
                return

            await handler(call_id, notification)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.metrics.errors += 1
            logger.error(
                "Error processing notification",
                resource_url=notification.resource_url,
                error=str(e),
            )

    async def _handle_call_created(self, call_id: str, notification: CallbackNotification) -> None:
        if call_id in self._sessions or call_id in self._answering:
            logger.warning("Duplicate incoming call notification", call_id=call_id)
            return

        logger.info("Handling incoming call", call_id=call_id)

        self._answering.add(call_id)
        try:
            answered = await self._signal(
                "answer",
                call_id,
                self._signaling.answer(call_id, self.config.callback_url, list(AUDIO_MODALITIES)),
            )
        finally:
            self._answering.discard(call_id)

        if not answered:
            self._ended_while_answering.discard(call_id)
            await self._reject(call_id)
            return

        if call_id in self._ended_while_answering:
            self._ended_while_answering.discard(call_id)
            logger.info("Call ended while answering", call_id=call_id)
            return

        session = self._create_session(call_id)
        async with self._lock:
            self._sessions[call_id] = session
        self.metrics.calls_answered += 1
        logger.info(
            "Call answered",
            call_id=call_id,
            active_calls=self.get_active_call_count(),
        )

        await self._audio.start(session)
        session.track_task(asyncio.create_task(self._send_greeting(session)))

    async def _reject(self, call_id: str) -> None:
        rejected = await self._signal(
            "reject",
            call_id,
            self._signaling.reject(call_id, REJECT_REASON_BUSY),
        )
        if rejected:
            self.metrics.calls_rejected += 1
            logger.info("Call rejected", call_id=call_id, reason=REJECT_REASON_BUSY)
        else:
            # Not retried.
            self.metrics.reject_failures += 1
            logger.error("Reject failed, dropping call", call_id=call_id)

    async def _handle_call_updated(self, call_id: str, notification: CallbackNotification) -> None:
        session = self._sessions.get(call_id)
        if session is None:
            logger.warning("Received update for unknown call", call_id=call_id)
            return

        data = notification.resource_data
        if isinstance(data, dict) and isinstance(data.get("state"), str):
            session.signaling_state = data["state"]

        logger.debug(
            "Call updated",
            call_id=call_id,
            signaling_state=session.signaling_state,
        )

    async def _handle_call_ended(self, call_id: str, notification: CallbackNotification) -> None:
        logger.info("Call ended", call_id=call_id)
        if call_id in self._answering:
            self._ended_while_answering.add(call_id)
            return
        await self._end_session(call_id, reason="deleted")

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def _create_session(self, call_id: str) -> CallSession:
        synthesis = SpeechSynthesisQueue(
            call_id,
            self._tts_factory(),
            self._sink,
            voice_name=self.config.tts_voice,
        )
        return CallSession(
            call_id,
            synthesis=synthesis,
            context_entries=self.config.history_context_entries,
            max_entries=self.config.history_max_entries,
            trim_count=self.config.history_trim_count,
        )

    async def _end_session(self, call_id: str, *, reason: str) -> Optional[CallSession]:
        async with self._lock:
            session = self._sessions.pop(call_id, None)

        if session is None:
            logger.info("No session to clean up", call_id=call_id, reason=reason)
            return None

        try:
            await session.dispose()
        except Exception as e:
            logger.error("Error disposing session", call_id=call_id, error=str(e))

        self.metrics.calls_ended += 1
        logger.info(
            "Cleaned up session for call",
            call_id=call_id,
            reason=reason,
            active_calls=self.get_active_call_count(),
        )
        return session

    async def _send_greeting(self, session: CallSession) -> None:
        """Give the call time to settle, then introduce the bot."""
        try:
            await asyncio.sleep(self.config.greeting_delay_seconds)
            if session.disposed or session.synthesis is None:
                return
            # The call already moved on (speech started or leaving).
            if session.leaving or session.synthesis.metrics.requests:
                logger.info("Join announcement skipped", call_id=session.call_id)
                return
            session.synthesis.speak(self.greeting)
            logger.info("Join announcement sent", call_id=session.call_id)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Error sending join announcement", call_id=session.call_id, error=str(e))

    async def _signal(self, action: str, call_id: str, call: Awaitable[bool]) -> bool:
        try:
            return bool(await call)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Signaling action failed", action=action, call_id=call_id, error=str(e))
            return False

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Speech entry points
    # ------------------------------------------------------------------

    def on_recognized_speech(self, call_id: str, text: str, *, speaker: Optional[str] = None) -> bool:
        """Speech-to-text delivery for a call. False when the call is not tracked."""
        session = self._sessions.get(call_id)
        if session is None:
            logger.warning("Recognized speech for unknown call", call_id=call_id)
            return False
        return self._audio.submit(session, text, speaker=speaker)

    async def say(
        self,
        call_id: str,
        prompt: str,
        *,
        use_brain: bool = True,
        voice_name: Optional[str] = None,
    ) -> Optional[str]:
        session = self._sessions.get(call_id)
        if session is None:
            logger.warning("Say requested for unknown call", call_id=call_id)
            return None
        return await self._audio.say(session, prompt, use_brain=use_brain, voice_name=voice_name)

    # ------------------------------------------------------------------
    # Hangup / shutdown
    # ------------------------------------------------------------------

    async def request_hangup(self, call_id: str) -> None:
        """Schedule a hangup without blocking the caller (used by the "leave" command)."""
        self._spawn(self.hangup_call(call_id))

    async def hangup_call(self, call_id: str) -> bool:
        """
        Administrative hangup: tear down the session and tell the signaling
        service to drop the call. Returns True if the call was tracked.
        """
        if call_id in self._answering:
            self._ended_while_answering.add(call_id)

        session = await self._end_session(call_id, reason="hangup")

        hung_up = await self._signal("hangup", call_id, self._signaling.hangup(call_id))
        if hung_up:
            self.metrics.hangups += 1
            logger.info("Hangup sent", call_id=call_id)
        else:
            logger.error("Hangup failed", call_id=call_id)

        return session is not None

    async def shutdown(self) -> None:
        """Hang up every tracked call, stop background work, close collaborators."""
        for call_id in list(self._sessions):
            await self.hangup_call(call_id)

        pending = [t for t in self._background if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for closer in (self._signaling.close, self._sink.close, self._audio.brain.close):
            try:
                await closer()
            except Exception as e:
                logger.warning("Error closing collaborator", error=str(e))

        logger.info("Orchestrator stopped")


def create_orchestrator(
    config: Optional[Config] = None,
    *,
    signaling: Optional[SignalingClient] = None,
    sink: Optional[AudioSink] = None,
    tts_factory: Optional[Callable[[], TTSProvider]] = None,
) -> CallOrchestrator:
    """
    Wire the production collaborators from configuration.

    Any collaborator can be overridden (tests, alternative transports).
    """
    if config is None:
        config = get_config()

    brain = BrainClient(
        config.brain_url,
        timeout_seconds=config.brain_timeout_seconds,
        max_voice_seconds=config.brain_max_voice_seconds,
    )
    audio = AudioProcessor(
        brain,
        WakePhraseDetector(config.wake_phrase),
        VoiceCommandInterpreter(
            wake_phrase=config.wake_phrase,
            farewell_wait_seconds=config.max_playback_seconds,
        ),
    )
    return CallOrchestrator(
        signaling or create_signaling_client(config),
        audio,
        sink or PacedAudioSink(
            bytes_per_second=config.playback_bytes_per_second,
            max_playback_seconds=config.max_playback_seconds,
        ),
        config=config,
        tts_factory=tts_factory,
    )
