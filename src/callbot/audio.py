"""
Audio helpers for outbound playback.

The bot never decodes synthesized audio; it treats it as an opaque buffer and
only needs to split it into frames and guess how long it takes to play.
Duration estimates are byte-rate heuristics, not measured durations.
"""

from typing import Generator, List

FRAME_DURATION_MS = 20
DEFAULT_BYTES_PER_SECOND = 4000  # 32 kbit/s mp3 (Azure default output format)
DEFAULT_MAX_PLAYBACK_SECONDS = 20.0


def frame_size_for(bytes_per_second: int, frame_ms: int = FRAME_DURATION_MS) -> int:
    """Bytes per frame for a given byte rate (at least one byte)."""
    return max(1, int(bytes_per_second * frame_ms / 1000))


def chunk_audio(audio_bytes: bytes, chunk_size: int) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    The last frame is not padded; compressed formats cannot be padded safely.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes

    Yields:
        Audio chunks of at most `chunk_size` bytes
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for i in range(0, len(audio_bytes), chunk_size):
        yield audio_bytes[i:i + chunk_size]


def chunk_audio_list(audio_bytes: bytes, chunk_size: int) -> List[bytes]:
    """Chunk audio into fixed-size frames and return as a list."""
    return list(chunk_audio(audio_bytes, chunk_size))


def get_audio_duration_seconds(audio_bytes: bytes, bytes_per_second: int = DEFAULT_BYTES_PER_SECOND) -> float:
    """
    Calculate the nominal duration of audio in seconds from its byte rate.

    Args:
        audio_bytes: Audio bytes
        bytes_per_second: Byte rate of the encoded stream

    Returns:
        Duration in seconds
    """
    if not audio_bytes or bytes_per_second <= 0:
        return 0.0
    return len(audio_bytes) / bytes_per_second


def estimate_playback_seconds(
    audio_bytes: bytes,
    bytes_per_second: int = DEFAULT_BYTES_PER_SECOND,
    max_seconds: float = DEFAULT_MAX_PLAYBACK_SECONDS,
) -> float:
    """Estimated playback time, capped at `max_seconds`."""
    return min(get_audio_duration_seconds(audio_bytes, bytes_per_second), max(0.0, max_seconds))
