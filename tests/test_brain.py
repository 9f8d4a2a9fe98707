"""
Tests for the brain client and response extraction.
"""

import json

import httpx
import pytest

from src.callbot.brain import (
    FALLBACK_SPEECH,
    BrainClient,
    ChoiceArray,
    FlatField,
    NestedField,
    RawString,
    extract_speech,
    parse_brain_response,
)

BRAIN_URL = "http://brain.test/llm/respond"


def _client(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BrainClient(BRAIN_URL, client=http, **kwargs)


class TestExtraction:
    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({"speech": "flat"}, "flat"),
            ({"response": "resp"}, "resp"),
            ({"text": "txt"}, "txt"),
            ({"data": {"speech": "nested"}}, "nested"),
            ({"message": {"content": "msg"}}, "msg"),
            ({"choices": [{"message": {"content": "choice"}}]}, "choice"),
            ({"choices": [{"text": "completion"}]}, "completion"),
            ("just a string", "just a string"),
        ],
    )
    def test_supported_shapes(self, payload, expected):
        assert extract_speech(payload) == expected

    @pytest.mark.parametrize(
        "payload",
        [{}, {"speech": ""}, {"speech": 42}, {"choices": []}, [], None, "   ", {"data": "x"}],
    )
    def test_no_speech(self, payload):
        assert extract_speech(payload) is None

    def test_first_strategy_wins(self):
        assert extract_speech({"text": "second", "speech": "first"}) == "first"

    def test_blank_field_falls_through(self):
        assert extract_speech({"speech": "  ", "answer": "fallthrough"}) == "fallthrough"

    def test_strategies_in_isolation(self):
        assert FlatField("reply").extract({"reply": " hi "}) == "hi"
        assert FlatField("reply").extract("reply") is None
        assert NestedField(("a", "b")).extract({"a": {"b": "deep"}}) == "deep"
        assert NestedField(("a", "b")).extract({"a": ["b"]}) is None
        assert ChoiceArray().extract({"choices": "nope"}) is None
        assert RawString().extract({"speech": "x"}) is None

    def test_custom_strategy_order(self):
        payload = {"speech": "a", "data": {"speech": "b"}}
        assert extract_speech(payload, [NestedField(("data", "speech"))]) == "b"

    def test_parse_includes_chat_and_actions(self):
        response = parse_brain_response(
            {"speech": "hi", "chat": "see link", "actions": ["open_ticket", None]}
        )
        assert response.speech == "hi"
        assert response.chat == "see link"
        assert response.actions == ["open_ticket"]
        assert response.is_fallback is False


@pytest.mark.asyncio
async def test_request_payload_and_success():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"speech": "Retention is seven years."})

    brain = _client(handler, max_voice_seconds=15)
    response = await brain.respond("call-1", "alice", "how long do we keep records", "user: hi")

    assert response.speech == "Retention is seven years."
    assert not response.is_fallback
    assert captured["url"] == BRAIN_URL
    assert captured["body"] == {
        "meetingId": "call-1",
        "speaker": "alice",
        "utterance": "how long do we keep records",
        "history": "user: hi",
        "constraints": {"maxVoiceSecs": 15},
    }
    await brain.close()


@pytest.mark.asyncio
async def test_error_status_returns_fallback():
    brain = _client(lambda request: httpx.Response(500, text="boom"))
    response = await brain.respond("call-1", "alice", "hello", "")
    assert response.speech == FALLBACK_SPEECH
    assert response.is_fallback


@pytest.mark.asyncio
async def test_timeout_returns_fallback():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    response = await _client(handler).respond("call-1", "alice", "hello", "")
    assert response.is_fallback


@pytest.mark.asyncio
async def test_connection_error_returns_fallback():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    response = await _client(handler).respond("call-1", "alice", "hello", "")
    assert response.speech == FALLBACK_SPEECH


@pytest.mark.asyncio
async def test_malformed_json_returns_fallback():
    brain = _client(lambda request: httpx.Response(200, content=b"{not json"))
    response = await brain.respond("call-1", "alice", "hello", "")
    assert response.is_fallback


@pytest.mark.asyncio
async def test_json_without_speech_returns_fallback():
    brain = _client(lambda request: httpx.Response(200, json={"status": "ok"}))
    response = await brain.respond("call-1", "alice", "hello", "")
    assert response.is_fallback


@pytest.mark.asyncio
async def test_raw_string_body():
    brain = _client(lambda request: httpx.Response(200, json="plain answer"))
    response = await brain.respond("call-1", "alice", "hello", "")
    assert response.speech == "plain answer"


@pytest.mark.asyncio
async def test_single_attempt():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    await _client(handler).respond("call-1", "alice", "hello", "")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_missing_url_returns_fallback_without_request():
    brain = BrainClient("")
    response = await brain.respond("call-1", "alice", "hello", "")
    assert response.is_fallback
