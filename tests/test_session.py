"""
Tests for per-call session state.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from src.callbot.session import ASSISTANT_TAG, USER_TAG, CallSession, UtteranceRecord
from src.callbot.tts import SpeechSynthesisQueue

from conftest import FakeTTSProvider, RecordingSink


class TestHistory:
    def test_trim_drops_oldest_block(self):
        session = CallSession("call-1")
        for i in range(11):
            session.append_exchange(f"q{i}", f"a{i}")

        # 22 lines exceed the limit of 20, so the oldest 10 are dropped.
        history = session.history
        assert len(history) == 12
        assert history[0] == UtteranceRecord(USER_TAG, "q5")
        assert history[-1] == UtteranceRecord(ASSISTANT_TAG, "a10")

    def test_history_never_exceeds_max(self):
        session = CallSession("call-1")
        for i in range(50):
            session.append_exchange(f"q{i}", f"a{i}")
            assert len(session.history) <= 20

        # Order is preserved (FIFO) and the newest exchange is last.
        assert session.history[-2] == UtteranceRecord(USER_TAG, "q49")
        assert session.history[-1] == UtteranceRecord(ASSISTANT_TAG, "a49")

    def test_context_is_last_five_oldest_first(self):
        session = CallSession("call-1")
        for i in range(4):
            session.append_exchange(f"q{i}", f"a{i}")

        assert session.conversation_context() == "\n".join([
            "assistant: a1",
            "user: q2",
            "assistant: a2",
            "user: q3",
            "assistant: a3",
        ])

    def test_context_empty_history(self):
        assert CallSession("call-1").conversation_context() == ""

    def test_custom_limits(self):
        session = CallSession("call-1", context_entries=1, max_entries=4, trim_count=2)
        for i in range(3):
            session.append_exchange(f"q{i}", f"a{i}")
        assert [r.text for r in session.history] == ["q1", "a1", "q2", "a2"]
        assert session.conversation_context() == "assistant: a2"

    def test_history_is_read_only_view(self):
        session = CallSession("call-1")
        session.append_exchange("q", "a")
        assert isinstance(session.history, tuple)


def _session_with_synthesis():
    provider = FakeTTSProvider(delay=10.0)
    synthesis = SpeechSynthesisQueue("call-1", provider, RecordingSink())
    return CallSession("call-1", synthesis=synthesis), provider


@pytest.mark.asyncio
async def test_dispose_releases_everything_once():
    session, provider = _session_with_synthesis()
    recognizer = MagicMock()
    session.recognizer = recognizer
    session.audio_active = True

    background = session.track_task(asyncio.create_task(asyncio.sleep(10)))
    playback = session.synthesis.speak("a long answer")
    await asyncio.sleep(0)

    await session.dispose()
    await session.dispose()

    assert session.disposed
    assert not session.audio_active
    assert background.cancelled()
    assert playback.cancelled()
    assert provider.closed
    recognizer.close.assert_called_once()
    assert session.recognizer is None


@pytest.mark.asyncio
async def test_dispose_from_tracked_task_does_not_cancel_itself():
    session = CallSession("call-1")

    async def leave():
        await session.dispose()
        return "done"

    task = session.track_task(asyncio.create_task(leave()))
    assert await asyncio.wait_for(task, timeout=1.0) == "done"


@pytest.mark.asyncio
async def test_track_task_after_dispose_cancels():
    session = CallSession("call-1")
    await session.dispose()

    task = session.track_task(asyncio.create_task(asyncio.sleep(10)))
    await asyncio.sleep(0)
    assert task.cancelled()


@pytest.mark.asyncio
async def test_recognizer_close_error_is_contained():
    session = CallSession("call-1")
    session.recognizer = MagicMock()
    session.recognizer.close.side_effect = RuntimeError("boom")

    await session.dispose()
    assert session.disposed


def test_stop_current_playback_without_synthesis():
    assert CallSession("call-1").stop_current_playback() is False


def test_to_dict():
    session = CallSession("call-1")
    session.append_exchange("q", "a")
    data = session.to_dict()
    assert data["callId"] == "call-1"
    assert data["historyLength"] == 2
    assert data["muted"] is False
