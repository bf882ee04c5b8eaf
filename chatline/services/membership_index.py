"""In-memory map of live chat sessions and the conversations they receive."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Protocol
from uuid import UUID, uuid4


class TextSocket(Protocol):
    async def send_text(self, data: str) -> None: ...


@dataclass(eq=False)
class ChannelSession:
    """One authenticated connection."""

    user_id: UUID
    websocket: TextSocket
    session_id: str = field(default_factory=lambda: uuid4().hex)
    subscriptions: set[UUID] = field(default_factory=set)

    async def send(self, payload: str) -> None:
        await self.websocket.send_text(payload)


class MembershipIndex:
    """Tracks connected sessions per user and per conversation.

    Every mutation happens under one lock so that a subscription change is
    visible to any ``subscribers_of`` call issued after it returns.

    A session passed to :meth:`register` is *loading* until :meth:`on_connect`
    runs. Membership transitions that reach a loading session are recorded, and
    :meth:`on_connect` never subscribes it to a conversation it was removed
    from while its conversation list was being read.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ChannelSession] = {}
        self._by_user: dict[UUID, set[str]] = {}
        self._by_conversation: dict[UUID, set[str]] = {}
        # session id -> {conversation id: joined} for sessions still loading
        self._pending: dict[str, dict[UUID, bool]] = {}
        self._lock = asyncio.Lock()

    async def register(self, session: ChannelSession) -> None:
        async with self._lock:
            self._add_session(session)
            self._pending[session.session_id] = {}

    async def on_connect(self, session: ChannelSession, conversation_ids: Iterable[UUID]) -> None:
        """Subscribe ``session`` to ``conversation_ids`` and end its loading phase.

        Conversations the session left while loading are skipped; ones it
        joined while loading are already subscribed.
        """

        async with self._lock:
            self._add_session(session)
            transitions = self._pending.pop(session.session_id, {})
            for conversation_id in conversation_ids:
                if transitions.get(conversation_id) is False:
                    continue
                self._subscribe(session, conversation_id)

    async def on_disconnect(self, session: ChannelSession) -> None:
        async with self._lock:
            self._pending.pop(session.session_id, None)
            if self._sessions.pop(session.session_id, None) is None:
                return
            user_sessions = self._by_user.get(session.user_id)
            if user_sessions is not None:
                user_sessions.discard(session.session_id)
                if not user_sessions:
                    self._by_user.pop(session.user_id, None)
            for conversation_id in list(session.subscriptions):
                self._unsubscribe(session, conversation_id)

    async def on_membership_changed(self, conversation_id: UUID, user_id: UUID, joined: bool) -> int:
        """Apply a join or leave to every live session of ``user_id``.

        Idempotent. Returns the number of sessions touched.
        """

        async with self._lock:
            sessions = [self._sessions[sid] for sid in self._by_user.get(user_id, ())]
            for session in sessions:
                pending = self._pending.get(session.session_id)
                if pending is not None:
                    pending[conversation_id] = joined
                if joined:
                    self._subscribe(session, conversation_id)
                else:
                    self._unsubscribe(session, conversation_id)
            return len(sessions)

    async def subscribers_of(self, conversation_id: UUID) -> list[ChannelSession]:
        async with self._lock:
            return [self._sessions[sid] for sid in self._by_conversation.get(conversation_id, ())]

    async def sessions_for_user(self, user_id: UUID) -> list[ChannelSession]:
        async with self._lock:
            return [self._sessions[sid] for sid in self._by_user.get(user_id, ())]

    async def user_subscribed(self, user_id: UUID, conversation_id: UUID) -> bool:
        async with self._lock:
            subscribed = self._by_conversation.get(conversation_id, set())
            return any(sid in subscribed for sid in self._by_user.get(user_id, ()))

    def session_count(self) -> int:
        return len(self._sessions)

    def _add_session(self, session: ChannelSession) -> None:
        self._sessions[session.session_id] = session
        self._by_user.setdefault(session.user_id, set()).add(session.session_id)

    def _subscribe(self, session: ChannelSession, conversation_id: UUID) -> None:
        session.subscriptions.add(conversation_id)
        self._by_conversation.setdefault(conversation_id, set()).add(session.session_id)

    def _unsubscribe(self, session: ChannelSession, conversation_id: UUID) -> None:
        session.subscriptions.discard(conversation_id)
        group = self._by_conversation.get(conversation_id)
        if group is None:
            return
        group.discard(session.session_id)
        if not group:
            self._by_conversation.pop(conversation_id, None)


__all__ = ["ChannelSession", "MembershipIndex", "TextSocket"]
