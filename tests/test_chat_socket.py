"""End-to-end tests for the realtime chat channel."""
from __future__ import annotations

import os
import time
from typing import Iterator
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete
from sqlalchemy.exc import OperationalError
from starlette.websockets import WebSocketDisconnect

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./test_chatline.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from chatline.database import Base, SessionLocal, engine  # noqa: E402
from chatline.main import app  # noqa: E402
from chatline.models import (  # noqa: E402
    Conversation,
    Message,
    User,
    conversation_admins,
    conversation_members,
    message_seen_by,
)
from chatline.services import auth_service, create_access_token  # noqa: E402


@pytest.fixture(scope="module", autouse=True)
def _create_schema() -> Iterator[None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_database() -> Iterator[None]:
    with SessionLocal() as session:
        session.execute(delete(message_seen_by))
        session.execute(delete(Message))
        session.execute(delete(conversation_admins))
        session.execute(delete(conversation_members))
        session.execute(delete(Conversation))
        session.execute(delete(User))
        session.commit()
    yield


@pytest.fixture
def client() -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


def _create_user(username: str) -> UUID:
    with SessionLocal() as session:
        user = User(username=username, hashed_password="test-hash")
        session.add(user)
        session.commit()
        session.refresh(user)
        return user.id


def _auth(user_id: UUID) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def _connect(client: TestClient, user_id: UUID):
    return client.websocket_connect(f"/ws/chat?token={create_access_token(user_id)}")


def _single(client: TestClient, user_id: UUID, other_id: UUID) -> str:
    return client.post("/conversations/single", json={"otherUserId": str(other_id)}, headers=_auth(user_id)).json()["id"]


def _group(client: TestClient, owner_id: UUID, member_ids: list[UUID], name: str = "Trip") -> str:
    response = client.post(
        "/conversations/group",
        json={"name": name, "memberIds": [str(member_id) for member_id in member_ids]},
        headers=_auth(owner_id),
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_single_chat_message_and_seen_fanout(client: TestClient):
    alice = _create_user("alice")
    bob = _create_user("bob")
    conversation_id = _single(client, alice, bob)

    with _connect(client, alice) as ws_alice, _connect(client, bob) as ws_bob:
        ready = ws_alice.receive_json()
        assert ready == {"type": "ready", "userId": str(alice), "conversationIds": [conversation_id]}
        assert ws_bob.receive_json()["type"] == "ready"

        ws_alice.send_json({"type": "chat:send", "conversationId": conversation_id, "content": "hi"})

        delivered = ws_bob.receive_json()
        assert delivered["type"] == "chat:new"
        assert delivered["conversationId"] == conversation_id
        assert delivered["senderId"] == str(alice)
        assert delivered["content"] == "hi"

        echoed = ws_alice.receive_json()
        assert echoed["type"] == "chat:new"
        assert echoed["id"] == delivered["id"]

        ws_bob.send_json({"type": "chat:seen", "conversationId": conversation_id})
        assert ws_alice.receive_json() == {"type": "chat:seen", "userId": str(bob), "conversationId": conversation_id}
        assert ws_bob.receive_json()["type"] == "chat:seen"

    history = client.get(f"/messages/{conversation_id}", headers=_auth(alice)).json()
    assert [item["seenBy"] for item in history] == [[str(bob)]]


def test_typing_pulse_reaches_everyone_but_the_sender(client: TestClient):
    alice = _create_user("alice")
    bob = _create_user("bob")
    conversation_id = _single(client, alice, bob)

    with _connect(client, alice) as ws_alice, _connect(client, bob) as ws_bob:
        ws_alice.receive_json()
        ws_bob.receive_json()

        ws_alice.send_json({"type": "chat:typing", "conversationId": conversation_id, "isTyping": True})
        assert ws_bob.receive_json() == {
            "type": "chat:typing",
            "userId": str(alice),
            "conversationId": conversation_id,
            "isTyping": True,
        }

        ws_alice.send_json({"type": "ping"})
        assert ws_alice.receive_json() == {"type": "pong"}


def test_non_member_send_is_rejected_on_the_channel(client: TestClient):
    alice = _create_user("alice")
    bob = _create_user("bob")
    carol = _create_user("carol")
    dave = _create_user("dave")
    trip = _group(client, alice, [bob, carol])

    with _connect(client, dave) as ws_dave:
        assert ws_dave.receive_json()["conversationIds"] == []

        ws_dave.send_json({"type": "chat:send", "conversationId": trip, "content": "let me in"})
        error = ws_dave.receive_json()
        assert error["type"] == "chat:error"
        assert error["status"] == 403
        assert error["code"] == "forbidden"
        assert error["requestType"] == "chat:send"

        ws_dave.send_json({"type": "chat:typing", "conversationId": trip, "isTyping": True})
        assert ws_dave.receive_json()["status"] == 403

        ws_dave.send_json({"type": "ping"})
        assert ws_dave.receive_json() == {"type": "pong"}

    assert client.get(f"/messages/{trip}", headers=_auth(alice)).json() == []


def test_malformed_frames_get_an_error_reply(client: TestClient):
    alice = _create_user("alice")

    with _connect(client, alice) as ws:
        ws.receive_json()

        ws.send_text("not json")
        assert ws.receive_json()["status"] == 400

        ws.send_json({"type": "chat:unknown"})
        error = ws.receive_json()
        assert error["status"] == 400
        assert error["requestType"] == "chat:unknown"

        ws.send_json({"type": "chat:send", "conversationId": "not-a-uuid"})
        assert ws.receive_json()["code"] == "invalid_argument"


def test_invalid_token_closes_the_channel(client: TestClient):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws/chat?token=not-a-token") as ws:
            ws.receive_json()
    assert excinfo.value.code == 1008


def test_token_can_be_sent_as_first_frame(client: TestClient):
    alice = _create_user("alice")

    with client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"type": "auth", "token": create_access_token(alice)})
        ready = ws.receive_json()
        assert ready["type"] == "ready"
        assert ready["userId"] == str(alice)


def test_unauthenticated_channel_times_out(client: TestClient):
    client.app.state.chat_hub.auth_timeout = 0.2

    with client.websocket_connect("/ws/chat") as ws:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            ws.receive_json()
    assert excinfo.value.code == 1008


def test_membership_changes_reach_connected_sessions(client: TestClient):
    alice = _create_user("alice")
    bob = _create_user("bob")
    carol = _create_user("carol")

    with _connect(client, alice) as ws_alice, _connect(client, bob) as ws_bob:
        ws_alice.receive_json()
        ws_bob.receive_json()

        trip = _group(client, alice, [bob, carol])
        for ws in (ws_alice, ws_bob):
            created = ws.receive_json()
            assert created["type"] == "chat:membership"
            assert created["action"] == "created"
            assert created["conversationId"] == trip

        ws_bob.send_json({"type": "chat:send", "conversationId": trip, "content": "packing list?"})
        assert ws_alice.receive_json()["content"] == "packing list?"
        ws_bob.receive_json()

        assert client.delete(f"/conversations/{trip}", headers=_auth(carol)).json()["deleted"] is False
        for ws in (ws_alice, ws_bob):
            left = ws.receive_json()
            assert left["action"] == "left"
            assert left["userId"] == str(carol)
            assert set(left["members"]) == {str(alice), str(bob)}

        ws_bob.send_json({"type": "chat:leave", "conversationId": trip})
        for ws in (ws_alice, ws_bob):
            deleted = ws.receive_json()
            assert deleted["action"] == "deleted"
            assert deleted["conversationId"] == trip

        ws_alice.send_json({"type": "chat:send", "conversationId": trip, "content": "anyone?"})
        error = ws_alice.receive_json()
        assert error["type"] == "chat:error"
        assert error["status"] == 404


def test_health_reports_live_sessions(client: TestClient):
    alice = _create_user("alice")

    assert client.get("/health").json() == {"ok": True, "sessions": 0}
    with _connect(client, alice) as ws:
        ws.receive_json()
        assert client.get("/health").json()["sessions"] == 1


def test_first_frame_auth_and_user_lookup_share_one_deadline(client: TestClient, monkeypatch):
    alice = _create_user("alice")
    client.app.state.chat_hub.auth_timeout = 1.0
    real_verify = auth_service.verify_user

    def _slow_verify(db, token):
        time.sleep(0.6)
        return real_verify(db, token)

    monkeypatch.setattr(auth_service, "verify_user", _slow_verify)

    with client.websocket_connect("/ws/chat") as ws:
        time.sleep(0.6)
        ws.send_json({"type": "auth", "token": create_access_token(alice)})
        with pytest.raises(WebSocketDisconnect) as excinfo:
            ws.receive_json()
    assert excinfo.value.code == 1008


def _unavailable_store():
    raise OperationalError("SELECT 1", {}, Exception("database is unavailable"))


def test_store_failure_is_reported_and_channel_stays_open(client: TestClient):
    alice = _create_user("alice")
    bob = _create_user("bob")
    conversation_id = _single(client, alice, bob)
    hub = client.app.state.chat_hub

    with _connect(client, alice) as ws:
        ws.receive_json()

        working_factory = hub.session_factory
        hub.session_factory = _unavailable_store
        try:
            ws.send_json({"type": "chat:send", "conversationId": conversation_id, "content": "hello?"})
            error = ws.receive_json()
        finally:
            hub.session_factory = working_factory

        assert error["type"] == "chat:error"
        assert error["status"] == 500
        assert error["code"] == "store_error"
        assert error["requestType"] == "chat:send"

        ws.send_json({"type": "chat:send", "conversationId": conversation_id, "content": "hello again"})
        delivered = ws.receive_json()
        assert delivered["type"] == "chat:new"
        assert delivered["content"] == "hello again"
