"""
Wake phrase detection.

Scans recognized text for the activation phrase and extracts whatever was
said after it. Stateless; one detector is shared by every call.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_WAKE_PHRASE = "cuboid"

_LEADING_FILLER = ",. "


@dataclass(frozen=True)
class WakeResult:
    """Outcome of scanning one recognized utterance."""
    detected: bool
    utterance: str = ""


NOT_DETECTED = WakeResult(detected=False, utterance="")


class WakePhraseDetector:
    """Case-insensitive substring match on a configured wake phrase."""

    def __init__(self, wake_phrase: str = DEFAULT_WAKE_PHRASE):
        phrase = (wake_phrase or "").strip()
        if not phrase:
            raise ValueError("wake_phrase must not be empty")
        self.wake_phrase = phrase
        self._pattern = re.compile(re.escape(phrase), re.IGNORECASE)

    def detect(self, recognized_text: str) -> WakeResult:
        """
        Look for the wake phrase anywhere in `recognized_text`.

        Returns the text after the first occurrence with leading commas,
        periods and whitespace removed.
        """
        if not recognized_text or not recognized_text.strip():
            return NOT_DETECTED

        text = recognized_text.strip()
        match = self._pattern.search(text)
        if match is None:
            return NOT_DETECTED

        utterance = text[match.end():].strip().lstrip(_LEADING_FILLER).strip()

        logger.info(
            "Wake phrase detected",
            wake_phrase=self.wake_phrase,
            recognized=text[:50],
        )
        return WakeResult(detected=True, utterance=utterance)
