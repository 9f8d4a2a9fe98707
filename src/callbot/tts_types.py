from __future__ import annotations

from dataclasses import dataclass


class SynthesisError(Exception):
    """Raised by a TTS provider when the engine cannot produce audio."""

    def __init__(self, reason: str, *, details: str = ""):
        super().__init__(f"{reason}: {details}" if details else reason)
        self.reason = reason
        self.details = details


@dataclass
class SynthesisMetrics:
    """Per-call synthesis counters."""

    requests: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    audio_bytes: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "requests": self.requests,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "audio_bytes": self.audio_bytes,
        }
