"""
Wire models for the calling bot.

- Inbound HTTP bodies (signaling notifications, speech events, operator "say")
  are pydantic models so FastAPI validates them.
- Brain request/response are plain dataclasses; the brain client owns their
  JSON shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_SPEAKER = "unknown"
DEFAULT_VOICE = "en-GB-LibbyNeural"


class CallbackNotification(BaseModel):
    """One signaling event pushed by the calling platform."""

    model_config = ConfigDict(populate_by_name=True)

    change_type: Optional[str] = Field(None, alias="changeType")
    resource_url: str = Field("", alias="resourceUrl")
    resource_data: Optional[Any] = Field(None, alias="resourceData")

    @field_validator("change_type", mode="before")
    @classmethod
    def _coerce_change_type(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("resource_url", mode="before")
    @classmethod
    def _coerce_resource_url(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)


class CallbackNotificationCollection(BaseModel):
    """Batch envelope used by the calling platform's webhook."""

    value: Optional[list[Optional[CallbackNotification]]] = None

    @field_validator("value", mode="before")
    @classmethod
    def _drop_non_objects(cls, value: Any) -> Any:
        # Entries that are not JSON objects are skipped, not fatal for the batch.
        if isinstance(value, list):
            return [item if isinstance(item, (dict, CallbackNotification)) else None for item in value]
        return value


class SpeechEvent(BaseModel):
    """Recognized speech delivered by the speech-to-text collaborator."""

    text: str = Field("", description="Recognized text for one utterance.")
    speaker: Optional[str] = Field(None, description="Speaker tag, if diarization is available.")


class SayRequest(BaseModel):
    """Operator request to make the bot speak on a call."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: Optional[str] = None
    voice: Optional[str] = DEFAULT_VOICE
    use_brain: bool = Field(True, alias="useBrain")


@dataclass
class BrainRequest:
    """Request sent to the brain service."""
    meeting_id: str
    speaker: str
    utterance: str
    history: str
    max_voice_seconds: int = 20

    def to_payload(self) -> dict[str, Any]:
        return {
            "meetingId": self.meeting_id,
            "speaker": self.speaker,
            "utterance": self.utterance,
            "history": self.history,
            "constraints": {"maxVoiceSecs": self.max_voice_seconds},
        }


@dataclass
class BrainResponse:
    """Speech returned by the brain (or the fixed fallback)."""
    speech: str
    chat: Optional[str] = None
    actions: list[str] = field(default_factory=list)
    is_fallback: bool = False
