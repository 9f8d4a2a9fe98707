"""
Tests for the HTTP surface.
"""

import pytest
from fastapi.testclient import TestClient

from server.app import create_app

CREATED = {
    "value": [
        {"changeType": "created", "resourceUrl": "/communications/calls/call-1"},
    ]
}


@pytest.fixture
def client(test_config, make_orchestrator):
    app = create_app(test_config, orchestrator=make_orchestrator())
    with TestClient(app) as client:
        yield client


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.text == "ok"


def test_status_idle(client):
    response = client.get("/api/calling/status")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "operational"
    assert body["activeCalls"] == 0
    assert "timestamp" in body


def test_webhook_answers_call(client, signaling):
    response = client.post("/api/calling", json=CREATED)

    assert response.status_code == 202
    assert response.json() == {"accepted": 1}
    assert client.get("/api/calling/status").json()["activeCalls"] == 1
    assert signaling.names()[0] == "answer"


def test_webhook_empty_batches(client):
    assert client.post("/api/calling", json={"value": None}).json() == {"accepted": 0}
    assert client.post("/api/calling", json={}).json() == {"accepted": 0}
    assert client.post("/api/calling", json={"value": [None]}).json() == {"accepted": 0}


def test_webhook_tolerates_malformed_entries(client, signaling):
    batch = {
        "value": [
            {"changeType": "created", "resourceUrl": None},
            {"changeType": 7, "resourceUrl": "/communications/calls/odd-call"},
            "not an object",
            {"changeType": "created", "resourceUrl": "/communications/calls/good-call"},
        ]
    }

    response = client.post("/api/calling", json=batch)

    assert response.status_code == 202
    assert response.json() == {"accepted": 3}
    assert client.get("/api/calling/status").json()["activeCalls"] == 1
    assert signaling.actions[0][:2] == ("answer", "good-call")


def test_webhook_rejects_invalid_body(client):
    response = client.post("/api/calling", json={"value": "nope"})
    assert response.status_code == 422


def test_webhook_ended_call(client):
    client.post("/api/calling", json=CREATED)
    client.post(
        "/api/calling",
        json={"value": [{"changeType": "deleted", "resourceUrl": "/communications/calls/call-1"}]},
    )
    assert client.get("/api/calling/status").json()["activeCalls"] == 0


def test_speech_for_unknown_call(client):
    response = client.post("/api/calling/calls/nope/speech", json={"text": "cuboid hello"})
    assert response.status_code == 404


def test_speech_for_active_call(client):
    client.post("/api/calling", json=CREATED)
    response = client.post(
        "/api/calling/calls/call-1/speech",
        json={"text": "cuboid hello", "speaker": "alice"},
    )
    assert response.status_code == 202
    assert response.json() == {"callId": "call-1", "queued": True}


def test_say(client, brain):
    client.post("/api/calling", json=CREATED)

    response = client.post(
        "/api/calling/calls/call-1/say",
        json={"prompt": "Ten minutes left", "useBrain": False},
    )

    assert response.status_code == 200
    assert response.json() == {"callId": "call-1", "spoken": "Ten minutes left"}
    assert brain.requests == []


def test_say_validation(client):
    assert client.post("/api/calling/calls/call-1/say", json={"prompt": "hi"}).status_code == 404

    client.post("/api/calling", json=CREATED)
    assert client.post("/api/calling/calls/call-1/say", json={"prompt": "  "}).status_code == 400


def test_hangup(client, signaling):
    client.post("/api/calling", json=CREATED)

    response = client.post("/api/calling/calls/call-1/hangup")

    assert response.json() == {"callId": "call-1", "tracked": True}
    assert client.get("/api/calling/status").json()["activeCalls"] == 0
    assert "hangup" in signaling.names()

    again = client.post("/api/calling/calls/call-1/hangup")
    assert again.json()["tracked"] is False


def test_metrics(client):
    client.post("/api/calling", json=CREATED)
    body = client.get("/metrics").json()
    assert body["server"]["notification_batches"] == 1
    assert body["calls"]["calls_answered"] == 1
    assert body["active_calls"] == 1
    assert body["sessions"][0]["callId"] == "call-1"
    assert "synthesis" in body["sessions"][0]


def test_shutdown_hangs_up_active_calls(test_config, make_orchestrator, signaling):
    app = create_app(test_config, orchestrator=make_orchestrator())
    with TestClient(app) as client:
        client.post("/api/calling", json=CREATED)

    assert signaling.names()[-1] == "hangup"
    assert signaling.closed


def test_not_ready_without_orchestrator(test_config):
    app = create_app(test_config)
    # No lifespan: the orchestrator is never built.
    client = TestClient(app)
    assert client.get("/api/calling/status").status_code == 503
