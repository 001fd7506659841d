import base64
import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeGeminiClient, api_error, make_chunk, make_settings
from gemini_chat.app import create_app
from gemini_chat.session_store import SessionStore
from gemini_chat.storage import JsonFileSlot, MemorySlot
from gemini_chat.stream_ingestor import StreamIngestor


@pytest.fixture
def gemini():
    return FakeGeminiClient(chunks=[make_chunk("Hi"), make_chunk(" there")])


@pytest.fixture
def client(tmp_path, gemini):
    app = create_app(settings=make_settings(tmp_path), ingestor=StreamIngestor(gemini), slot=MemorySlot())
    with TestClient(app) as test_client:
        yield test_client


def _current_id(client: TestClient) -> str:
    return client.get("/api/sessions").json()["current_session_id"]


def _snapshots(response) -> list:
    return [json.loads(line) for line in response.text.splitlines() if line]


def test_startup_bootstraps_one_session(client):
    body = client.get("/api/sessions").json()

    assert len(body["sessions"]) == 1
    assert body["sessions"][0]["title"] == "New Chat"
    assert body["current_session_id"] == body["sessions"][0]["id"]


def test_submit_streams_snapshots_and_persists(client):
    session_id = _current_id(client)

    response = client.post(f"/api/sessions/{session_id}/messages", json={"text": "Hello"})

    assert response.status_code == 200
    snapshots = _snapshots(response)
    assert len(snapshots) == 4
    assert [m["text"] for m in snapshots[-1]["messages"]] == ["Hello", "Hi there"]
    session = client.get(f"/api/sessions/{session_id}").json()
    assert session["title"] == "Hello"
    assert [m["role"] for m in session["messages"]] == ["user", "model"]


def test_failed_stream_reports_error_message(client, gemini):
    gemini.chunks = [make_chunk("Partial")]
    gemini.error = api_error(429, "quota")
    session_id = _current_id(client)

    response = client.post(f"/api/sessions/{session_id}/messages", json={"text": "Hello"})

    final = _snapshots(response)[-1]["messages"]
    assert [m["text"] for m in final[:2]] == ["Hello", "Partial"]
    assert final[2]["is_error"] is True
    assert "429" in final[2]["text"]


def test_oversized_attachment_rejected_without_touching_session(client, gemini):
    session_id = _current_id(client)
    huge = base64.b64encode(b"\0" * (15 * 1024 * 1024)).decode("ascii")

    response = client.post(
        f"/api/sessions/{session_id}/messages",
        json={"text": "look", "attachments": [{"name": "huge.png", "mime_type": "image/png", "data": huge}]},
    )

    assert response.status_code == 413
    assert response.json()["detail"]["kind"] == "too_large"
    assert client.get(f"/api/sessions/{session_id}").json()["messages"] == []
    assert gemini.calls == []


def test_attachment_endpoint_validates_type(client):
    payload = base64.b64encode(b"%PDF").decode("ascii")

    rejected = client.post("/api/attachments", json={"name": "a.pdf", "mime_type": "application/pdf", "data": payload})
    accepted = client.post("/api/attachments", json={"name": "a.png", "mime_type": "image/png", "data": payload})
    malformed = client.post("/api/attachments", json={"mime_type": "image/png", "data": "***"})

    assert rejected.status_code == 400
    assert rejected.json()["detail"]["kind"] == "unsupported_type"
    assert accepted.status_code == 200
    assert accepted.json() == {"mime_type": "image/png", "data": payload, "name": "a.png"}
    assert malformed.status_code == 400


def test_unknown_session_returns_404(client):
    assert client.get("/api/sessions/nope").status_code == 404
    assert client.post("/api/sessions/nope/select").status_code == 404
    assert client.delete("/api/sessions/nope").status_code == 404
    assert client.post("/api/sessions/nope/messages", json={"text": "hi"}).status_code == 404


def test_submit_while_turn_reserved_returns_409(client):
    session_id = _current_id(client)
    controller = client.app.state.controller
    pending = controller.begin_turn(session_id, "first")

    response = client.post(f"/api/sessions/{session_id}/messages", json={"text": "second"})

    assert response.status_code == 409
    assert client.get(f"/api/sessions/{session_id}").json()["messages"] == []
    pending.close()


def test_create_select_and_delete_sessions(client):
    first = _current_id(client)
    second = client.post("/api/sessions").json()["id"]
    assert _current_id(client) == second

    client.post(f"/api/sessions/{first}/select")
    assert _current_id(client) == first

    body = client.delete(f"/api/sessions/{first}").json()
    assert body["current_session_id"] == second
    assert [s["id"] for s in body["sessions"]] == [second]

    body = client.delete(f"/api/sessions/{second}").json()
    assert len(body["sessions"]) == 1
    assert body["sessions"][0]["id"] != second
    assert body["current_session_id"] == body["sessions"][0]["id"]


def test_clear_history(client):
    client.post("/api/sessions")
    client.post("/api/sessions")

    fresh = client.delete("/api/sessions").json()

    body = client.get("/api/sessions").json()
    assert [s["id"] for s in body["sessions"]] == [fresh["id"]]


def test_settings_round_trip_and_feed_requests(client, gemini):
    updated = {"model": "gemini-3-pro-preview", "enable_search": True, "enable_thinking": True, "thinking_budget": 2048}

    assert client.put("/api/settings", json=updated).json() == updated
    assert client.get("/api/settings").json() == updated

    client.post(f"/api/sessions/{_current_id(client)}/messages", json={"text": "think"})
    call = gemini.calls[-1]
    assert call["model"] == "gemini-3-pro-preview"
    assert call["config"].tools[0].google_search is not None
    assert call["config"].thinking_config.thinking_budget == 2048


def test_models_and_status(client, gemini):
    models = client.get("/api/models").json()
    assert [m["id"] for m in models] == ["gemini-3-flash-preview", "gemini-3-pro-preview"]

    assert client.get("/api/status").json() == {"configured": True}
    gemini.configured = False
    assert client.get("/api/status").json() == {"configured": False}


def test_sessions_survive_restart(tmp_path):
    settings = make_settings(tmp_path)
    gemini = FakeGeminiClient(chunks=[make_chunk("stored")])
    app = create_app(settings=settings, ingestor=StreamIngestor(gemini))
    with TestClient(app) as first_run:
        session_id = _current_id(first_run)
        first_run.post(f"/api/sessions/{session_id}/messages", json={"text": "remember me"})

    restored = SessionStore(JsonFileSlot(settings.data_dir)).load_all()
    assert [m.text for m in restored[0].messages] == ["remember me", "stored"]

    with TestClient(create_app(settings=settings, ingestor=StreamIngestor(gemini))) as second_run:
        assert _current_id(second_run) == session_id
