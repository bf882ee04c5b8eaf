"""Integration tests for the conversation lifecycle endpoints."""
from __future__ import annotations

import os
from typing import Callable, Iterator
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete, func, select

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
from chatline.services import get_current_user  # noqa: E402


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
def user_factory() -> Callable[[str], User]:
    def _factory(username: str) -> User:
        with SessionLocal() as session:
            user = User(username=username, hashed_password="test-hash")
            session.add(user)
            session.commit()
            session.refresh(user)
            return user
    return _factory


@pytest.fixture
def authed_client() -> Iterator[Callable[[User], TestClient]]:
    with TestClient(app) as client:
        def _with_user(user: User) -> TestClient:
            def _override() -> User:
                return user
            app.dependency_overrides[get_current_user] = _override
            return client
        yield _with_user
    app.dependency_overrides.clear()


def _member_ids(payload: dict) -> set[str]:
    return {member["id"] for member in payload["members"]}


def test_ensure_single_returns_same_conversation_for_either_participant(authed_client, user_factory):
    alice = user_factory("alice")
    bob = user_factory("bob")

    first = authed_client(alice).post("/conversations/single", json={"otherUserId": str(bob.id)})
    assert first.status_code == 200, first.text
    body = first.json()
    assert body["type"] == "single"
    assert _member_ids(body) == {str(alice.id), str(bob.id)}

    second = authed_client(bob).post("/conversations/single", json={"otherUserId": str(alice.id)})
    assert second.status_code == 200
    assert second.json()["id"] == body["id"]

    with SessionLocal() as session:
        assert session.scalar(select(func.count()).select_from(Conversation)) == 1


def test_ensure_single_rejects_self_and_unknown_users(authed_client, user_factory):
    alice = user_factory("alice")
    client = authed_client(alice)

    own = client.post("/conversations/single", json={"otherUserId": str(alice.id)})
    assert own.status_code == 400
    assert own.json()["code"] == "invalid_argument"

    missing = client.post("/conversations/single", json={"otherUserId": "00000000-0000-0000-0000-000000000001"})
    assert missing.status_code == 404


def test_group_requires_three_distinct_members(authed_client, user_factory):
    alice = user_factory("alice")
    bob = user_factory("bob")
    carol = user_factory("carol")
    client = authed_client(alice)

    too_small = client.post("/conversations/group", json={"name": "Trip", "memberIds": [str(bob.id)]})
    assert too_small.status_code == 400

    duplicated = client.post(
        "/conversations/group",
        json={"name": "Trip", "memberIds": [str(bob.id), str(bob.id), str(alice.id)]},
    )
    assert duplicated.status_code == 400

    created = client.post("/conversations/group", json={"name": "Trip", "memberIds": [str(bob.id), str(carol.id)]})
    assert created.status_code == 201, created.text
    body = created.json()
    assert body["type"] == "group"
    assert body["name"] == "Trip"
    assert _member_ids(body) == {str(alice.id), str(bob.id), str(carol.id)}
    assert [admin["id"] for admin in body["admins"]] == [str(alice.id)]


def test_requests_without_credentials_are_rejected():
    with TestClient(app) as client:
        response = client.get("/conversations/my")
    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"
    assert response.headers.get("WWW-Authenticate") == "Bearer"


def test_my_conversations_sorted_by_latest_activity(authed_client, user_factory):
    alice = user_factory("alice")
    bob = user_factory("bob")
    carol = user_factory("carol")
    client = authed_client(alice)

    single = client.post("/conversations/single", json={"otherUserId": str(bob.id)}).json()
    group = client.post("/conversations/group", json={"memberIds": [str(bob.id), str(carol.id)]}).json()

    listed = client.get("/conversations/my").json()
    assert [item["id"] for item in listed] == [group["id"], single["id"]]

    sent = client.post("/messages/send", json={"conversationId": single["id"], "content": "ping"})
    assert sent.status_code == 201

    listed = client.get("/conversations/my").json()
    assert [item["id"] for item in listed] == [single["id"], group["id"]]

    carol_view = authed_client(carol).get("/conversations/my").json()
    assert [item["id"] for item in carol_view] == [group["id"]]


def test_leaving_single_conversation_deletes_it_with_messages(authed_client, user_factory):
    alice = user_factory("alice")
    bob = user_factory("bob")

    conversation_id = authed_client(alice).post(
        "/conversations/single", json={"otherUserId": str(bob.id)}
    ).json()["id"]
    authed_client(alice).post("/messages/send", json={"conversationId": conversation_id, "content": "hello"})
    authed_client(bob).post(f"/messages/{conversation_id}/seen")

    left = authed_client(alice).delete(f"/conversations/{conversation_id}")
    assert left.status_code == 200
    assert left.json() == {"conversationId": conversation_id, "deleted": True, "remainingMemberIds": []}

    history = authed_client(bob).get(f"/messages/{conversation_id}")
    assert history.status_code == 404

    again = authed_client(alice).delete(f"/conversations/{conversation_id}")
    assert again.status_code == 404

    with SessionLocal() as session:
        assert session.scalar(select(func.count()).select_from(Message)) == 0
        assert session.scalar(select(func.count()).select_from(message_seen_by)) == 0
        assert session.scalar(select(func.count()).select_from(conversation_members)) == 0


def test_two_member_group_is_dissolved_when_one_more_leaves(authed_client, user_factory):
    alice = user_factory("alice")
    bob = user_factory("bob")
    carol = user_factory("carol")

    group = authed_client(alice).post(
        "/conversations/group",
        json={"name": "Trip", "memberIds": [str(bob.id), str(carol.id)]},
    ).json()
    conversation_id = group["id"]
    authed_client(bob).post("/messages/send", json={"conversationId": conversation_id, "content": "see you there"})

    carol_left = authed_client(carol).delete(f"/conversations/{conversation_id}")
    assert carol_left.status_code == 200
    assert carol_left.json()["deleted"] is False
    assert set(carol_left.json()["remainingMemberIds"]) == {str(alice.id), str(bob.id)}

    assert authed_client(carol).get(f"/messages/{conversation_id}").status_code == 403
    assert len(authed_client(alice).get(f"/messages/{conversation_id}").json()) == 1

    bob_left = authed_client(bob).delete(f"/conversations/{conversation_id}")
    assert bob_left.status_code == 200
    assert bob_left.json()["deleted"] is True

    assert authed_client(alice).get(f"/messages/{conversation_id}").status_code == 404
    with SessionLocal() as session:
        assert session.get(Conversation, UUID(conversation_id)) is None
        assert session.scalar(select(func.count()).select_from(Message)) == 0


def test_last_admin_leaving_promotes_a_remaining_member(authed_client, user_factory):
    alice = user_factory("alice")
    others = [user_factory(name) for name in ("bob", "carol", "dave")]

    group = authed_client(alice).post(
        "/conversations/group",
        json={"name": "Crew", "memberIds": [str(user.id) for user in others]},
    ).json()

    left = authed_client(alice).delete(f"/conversations/{group['id']}")
    assert left.status_code == 200
    assert left.json()["deleted"] is False

    listed = authed_client(others[0]).get("/conversations/my").json()
    assert len(listed) == 1
    admins = [admin["id"] for admin in listed[0]["admins"]]
    assert len(admins) == 1
    assert admins[0] in {str(user.id) for user in others}
    assert str(alice.id) not in _member_ids(listed[0])


def test_only_group_admins_can_add_members(authed_client, user_factory):
    alice = user_factory("alice")
    bob = user_factory("bob")
    carol = user_factory("carol")
    dave = user_factory("dave")

    group = authed_client(alice).post(
        "/conversations/group",
        json={"memberIds": [str(bob.id), str(carol.id)]},
    ).json()

    denied = authed_client(bob).post(f"/conversations/{group['id']}/members", json={"memberIds": [str(dave.id)]})
    assert denied.status_code == 403

    added = authed_client(alice).post(f"/conversations/{group['id']}/members", json={"memberIds": [str(dave.id)]})
    assert added.status_code == 200
    assert str(dave.id) in _member_ids(added.json())

    repeat = authed_client(alice).post(f"/conversations/{group['id']}/members", json={"memberIds": [str(dave.id)]})
    assert repeat.status_code == 200
    assert len(repeat.json()["members"]) == 4

    single = authed_client(alice).post("/conversations/single", json={"otherUserId": str(bob.id)}).json()
    not_group = authed_client(alice).post(f"/conversations/{single['id']}/members", json={"memberIds": [str(dave.id)]})
    assert not_group.status_code == 400
