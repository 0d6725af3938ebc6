import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

import routers.chat.stream as chat_stream


class FakeFeed:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.closed = 0
        self.heartbeats = 0
        self.mode = "full"
        self._queue = [[("message", {"id": 1, "content": "hello"})]]
        FakeFeed.instances.append(self)

    async def open(self):
        return [("presence", {"user_id": "bob", "online": True})]

    async def next_events(self, timeout):
        return self._queue.pop(0) if self._queue else []

    async def heartbeat(self):
        self.heartbeats += 1

    async def close(self):
        self.closed += 1


def _make_client():
    app = FastAPI()
    app.include_router(chat_stream.router)
    return TestClient(app)


@pytest.fixture(autouse=True)
def reset_feeds():
    FakeFeed.instances = []
    yield


def test_sse_format():
    frame = chat_stream.sse_format({"a": 1}, event="message", id_="7").decode()
    assert frame == 'event: message\nid: 7\ndata: {"a":1}\n\n'
    assert chat_stream.sse_retry(3000) == b"retry: 3000\n\n"


def test_stream_rejects_query_token_when_disabled(monkeypatch):
    monkeypatch.setattr(chat_stream, "SSE_ALLOW_QUERY_TOKEN", False)
    with _make_client() as client:
        response = client.get("/chat/conversations/c1/stream?token=abc")
    assert response.status_code == 401
    assert response.json()["detail"] == "Use Authorization header for SSE"


def test_stream_requires_token(test_db):
    with _make_client() as client:
        response = client.get("/chat/conversations/stream")
    assert response.status_code == 401


def test_stream_rejects_non_participant(test_db, alice, bob, carol, make_conversation, monkeypatch):
    conv = make_conversation(bob.id, carol.id)
    monkeypatch.setattr(chat_stream, "get_user_from_token", lambda _token, _db: alice)
    with _make_client() as client:
        response = client.get(
            f"/chat/conversations/{conv.id}/stream", headers={"Authorization": "Bearer t"}
        )
    assert response.status_code == 403


def _stream_chunks(monkeypatch, url, limit):
    calls = {"count": 0}

    async def fake_is_disconnected(self):
        calls["count"] += 1
        return calls["count"] > 3

    monkeypatch.setattr(Request, "is_disconnected", fake_is_disconnected, raising=False)
    with _make_client() as client:
        with client.stream("GET", url) as response:
            chunks = []
            for chunk in response.iter_text():
                chunks.append(chunk)
                if len(chunks) >= limit:
                    break
    return response, "".join(chunks)


def test_conversation_stream_emits_events(monkeypatch):
    monkeypatch.setattr(chat_stream, "_load_conversation_context", lambda _t, _c: ("alice", "bob"))
    monkeypatch.setattr(chat_stream, "ConversationFeed", FakeFeed)
    monkeypatch.setattr(chat_stream, "SSE_HEARTBEAT_SECONDS", 0)

    response, body = _stream_chunks(monkeypatch, "/chat/conversations/c1/stream?token=abc", 10)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert "retry: 5000" in body
    assert "event: presence" in body
    assert "event: message" in body
    data_lines = [line for line in body.splitlines() if line.startswith("data: ")]
    assert {"id": 1, "content": "hello"} in [json.loads(line[6:]) for line in data_lines]

    feed = FakeFeed.instances[0]
    assert feed.kwargs == {"conversation_id": "c1", "viewer_id": "alice", "peer_id": "bob"}
    assert feed.closed == 1


def test_list_stream_emits_heartbeat(monkeypatch):
    monkeypatch.setattr(chat_stream, "_load_viewer_id", lambda _t: "alice")
    monkeypatch.setattr(chat_stream, "ConversationListFeed", FakeFeed)
    monkeypatch.setattr(chat_stream, "SSE_HEARTBEAT_SECONDS", 0)

    response, body = _stream_chunks(monkeypatch, "/chat/conversations/stream?token=abc", 10)

    assert response.status_code == 200
    assert "event: heartbeat" in body
    feed = FakeFeed.instances[0]
    assert feed.kwargs == {"viewer_id": "alice", "search": None}
    assert feed.heartbeats >= 1
    assert feed.closed == 1
