"""
Outbound media for a call.

Media transport is owned by the calling platform; the bot only hands it
synthesized audio. `PacedAudioSink` releases audio frame by frame in real time
so a cancelled playback stops before its next frame.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import structlog

from src.callbot.audio import (
    DEFAULT_BYTES_PER_SECOND,
    DEFAULT_MAX_PLAYBACK_SECONDS,
    FRAME_DURATION_MS,
    chunk_audio_list,
    estimate_playback_seconds,
    frame_size_for,
)

logger = structlog.get_logger(__name__)


class AudioSink(ABC):
    @abstractmethod
    async def play(self, call_id: str, audio: bytes) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class PacedAudioSink(AudioSink):
    """
    Streams audio to a call at its nominal byte rate.

    Total playback never exceeds `max_playback_seconds`; frames past the cap
    are still delivered, just without further pacing.
    """

    def __init__(
        self,
        *,
        bytes_per_second: int = DEFAULT_BYTES_PER_SECOND,
        max_playback_seconds: float = DEFAULT_MAX_PLAYBACK_SECONDS,
        frame_ms: int = FRAME_DURATION_MS,
    ):
        self.bytes_per_second = bytes_per_second
        self.max_playback_seconds = max_playback_seconds
        self.frame_size = frame_size_for(bytes_per_second, frame_ms)

    async def deliver_frame(self, call_id: str, frame: bytes) -> None:
        """Hand one frame to the media transport."""
        return None

    async def play(self, call_id: str, audio: bytes) -> None:
        if not audio:
            logger.warning("No audio data to stream", call_id=call_id)
            return

        frames = chunk_audio_list(audio, self.frame_size)
        estimated_s = estimate_playback_seconds(
            audio, self.bytes_per_second, self.max_playback_seconds
        )
        per_frame_s = estimated_s / len(frames)

        logger.info(
            "Streaming audio to call",
            call_id=call_id,
            audio_bytes=len(audio),
            frames=len(frames),
            estimated_seconds=round(estimated_s, 2),
        )

        for frame in frames:
            await self.deliver_frame(call_id, frame)
            if per_frame_s > 0:
                await asyncio.sleep(per_frame_s)

        logger.debug("Playback finished", call_id=call_id, audio_bytes=len(audio))
