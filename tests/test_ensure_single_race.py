"""Concurrency tests for single-conversation creation."""
from __future__ import annotations

import os
import threading
from typing import Iterator

import pytest
from sqlalchemy import delete, func, select

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./test_chatline.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from chatline.database import Base, SessionLocal, engine  # noqa: E402
from chatline.models import Conversation, User, conversation_admins, conversation_members, pair_key_for  # noqa: E402
from chatline.services import InvalidArgument, ensure_single_conversation  # noqa: E402


@pytest.fixture(scope="module", autouse=True)
def _create_schema() -> Iterator[None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_database() -> Iterator[None]:
    with SessionLocal() as session:
        session.execute(delete(conversation_admins))
        session.execute(delete(conversation_members))
        session.execute(delete(Conversation))
        session.execute(delete(User))
        session.commit()
    yield


def _users(*names: str) -> list[User]:
    with SessionLocal() as session:
        users = [User(username=name, hashed_password="test-hash") for name in names]
        session.add_all(users)
        session.commit()
        for user in users:
            session.refresh(user)
        return users


def test_pair_key_is_order_independent():
    alice, bob = _users("alice", "bob")
    assert pair_key_for(alice.id, bob.id) == pair_key_for(bob.id, alice.id)


def test_concurrent_ensure_single_creates_one_conversation():
    alice, bob = _users("alice", "bob")
    attempts = 6
    barrier = threading.Barrier(attempts)
    results: list[str] = []
    errors: list[BaseException] = []

    def _worker(index: int) -> None:
        first, second = (alice.id, bob.id) if index % 2 == 0 else (bob.id, alice.id)
        barrier.wait()
        try:
            with SessionLocal() as session:
                conversation, _ = ensure_single_conversation(session, user_id=first, other_user_id=second)
                results.append(str(conversation.id))
        except BaseException as exc:  # noqa: BLE001 - surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(index,)) for index in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(set(results)) == 1
    with SessionLocal() as session:
        assert session.scalar(select(func.count()).select_from(Conversation)) == 1
        conversation = session.scalar(select(Conversation))
        assert conversation.member_ids == {alice.id, bob.id}


def test_ensure_single_with_self_is_invalid():
    [alice] = _users("alice")
    with SessionLocal() as session:
        with pytest.raises(InvalidArgument):
            ensure_single_conversation(session, user_id=alice.id, other_user_id=alice.id)
