"""Per-process coordinator for conversations, messages and realtime fanout."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable, Sequence, TypeVar
from uuid import UUID

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..schemas import Attachment, ConversationResponse, MessageResponse
from ..schemas.events import membership_event, message_created_event, seen_event, typing_event
from . import conversation_service, message_service
from .backplane import RedisBackplane
from .conversation_service import LeaveOutcome
from .errors import Forbidden, StoreError
from .fanout import FanoutRouter
from .membership_index import ChannelSession, MembershipIndex, TextSocket

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _ConversationLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class ChatHub:
    """Owns the membership index and fanout router of one process.

    Store work runs in worker threads with a short-lived session per call.
    Mutations of one conversation (send, seen, membership changes) are
    serialized by a per-conversation lock held from the store write until the
    resulting event has been published.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        backplane: RedisBackplane | None = None,
        auth_timeout: float = 10.0,
        message_max_length: int = 4000,
        history_page_size: int = 30,
        history_max_page_size: int = 100,
    ) -> None:
        self.session_factory = session_factory
        self.index = MembershipIndex()
        self.router = FanoutRouter(self.index, backplane)
        self.backplane = backplane
        if backplane is not None:
            backplane.attach(self.index, self.router)
        self.auth_timeout = auth_timeout
        self.message_max_length = message_max_length
        self.history_page_size = history_page_size
        self.history_max_page_size = history_max_page_size
        self._locks: dict[UUID, _ConversationLock] = {}

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: Callable[[], Session]) -> "ChatHub":
        backplane = None
        if settings.redis_url:
            backplane = RedisBackplane.from_url(settings.redis_url, settings.redis_channel)
        return cls(
            session_factory,
            backplane=backplane,
            auth_timeout=settings.channel_auth_timeout_seconds,
            message_max_length=settings.message_max_length,
            history_page_size=settings.history_page_size,
            history_max_page_size=settings.history_max_page_size,
        )

    async def start(self) -> None:
        if self.backplane is not None:
            await self.backplane.start()

    async def stop(self) -> None:
        if self.backplane is not None:
            await self.backplane.stop()

    async def _run(self, fn: Callable[..., T], /, **kwargs: Any) -> T:
        def _call() -> T:
            with self.session_factory() as db:
                return fn(db, **kwargs)

        try:
            return await asyncio.to_thread(_call)
        except SQLAlchemyError as exc:
            logger.exception("Store call %s failed", getattr(fn, "__name__", fn))
            raise StoreError() from exc

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: UUID) -> AsyncIterator[None]:
        """Hold the conversation's lock; the entry is dropped once nobody holds or awaits it."""

        entry = self._locks.get(conversation_id)
        if entry is None:
            entry = self._locks[conversation_id] = _ConversationLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(conversation_id) is entry:
                del self._locks[conversation_id]

    async def _apply_membership(self, conversation_id: UUID, user_id: UUID, joined: bool) -> None:
        await self.index.on_membership_changed(conversation_id, user_id, joined)
        if self.backplane is not None:
            await self.backplane.forward_membership(conversation_id, user_id, joined)

    # Channel lifecycle

    async def connect(self, websocket: TextSocket, user_id: UUID) -> ChannelSession:
        """Register a live session and subscribe it to the user's conversations.

        The session is registered before the store lookup so that membership
        changes committed while the lookup runs still reach it.
        """

        session = ChannelSession(user_id=user_id, websocket=websocket)
        await self.index.register(session)
        try:
            conversation_ids = await self._run(conversation_service.list_conversation_ids, user_id=user_id)
        except Exception:
            await self.index.on_disconnect(session)
            raise
        await self.index.on_connect(session, conversation_ids)
        return session

    async def disconnect(self, session: ChannelSession) -> None:
        await self.index.on_disconnect(session)

    # Message pipeline

    async def send(
        self,
        user_id: UUID,
        conversation_id: UUID,
        content: str | None,
        attachments: Sequence[Attachment] | None = None,
    ) -> MessageResponse:
        def _send(db: Session) -> MessageResponse:
            message = message_service.send_message(
                db,
                sender_id=user_id,
                conversation_id=conversation_id,
                content=content,
                attachments=attachments,
                max_length=self.message_max_length,
            )
            return message_service.message_to_response(message)

        async with self._conversation_lock(conversation_id):
            response = await self._run(_send)
            await self.router.publish(conversation_id, message_created_event(response))
        return response

    async def mark_seen(self, user_id: UUID, conversation_id: UUID) -> int:
        async with self._conversation_lock(conversation_id):
            marked = await self._run(message_service.mark_seen, user_id=user_id, conversation_id=conversation_id)
            await self.router.publish(conversation_id, seen_event(user_id, conversation_id))
        return marked

    async def typing_pulse(self, user_id: UUID, conversation_id: UUID, is_typing: bool) -> int:
        """Relay a typing indicator to the other members' sessions; nothing is stored."""

        if not await self.index.user_subscribed(user_id, conversation_id):
            raise Forbidden()
        return await self.router.publish(
            conversation_id,
            typing_event(user_id, conversation_id, is_typing),
            exclude_user=user_id,
        )

    async def history(
        self,
        user_id: UUID,
        conversation_id: UUID,
        *,
        page: int = 1,
        limit: int | None = None,
    ) -> list[MessageResponse]:
        page_size = min(limit or self.history_page_size, self.history_max_page_size)

        def _history(db: Session) -> list[MessageResponse]:
            messages = message_service.list_messages(
                db,
                user_id=user_id,
                conversation_id=conversation_id,
                page=page,
                limit=page_size,
            )
            return [message_service.message_to_response(message) for message in messages]

        return await self._run(_history)

    # Conversation lifecycle

    async def ensure_single(self, user_id: UUID, other_user_id: UUID) -> ConversationResponse:
        def _ensure(db: Session) -> tuple[ConversationResponse, bool]:
            conversation, created = conversation_service.ensure_single_conversation(
                db,
                user_id=user_id,
                other_user_id=other_user_id,
            )
            return conversation_service.conversation_to_response(conversation), created

        response, created = await self._run(_ensure)
        if created:
            await self._announce_created(response, user_id)
        return response

    async def create_group(self, user_id: UUID, name: str | None, member_ids: Iterable[UUID]) -> ConversationResponse:
        def _create(db: Session) -> ConversationResponse:
            conversation = conversation_service.create_group_conversation(
                db,
                owner_id=user_id,
                name=name,
                member_ids=list(member_ids),
            )
            return conversation_service.conversation_to_response(conversation)

        response = await self._run(_create)
        await self._announce_created(response, user_id)
        return response

    async def _announce_created(self, conversation: ConversationResponse, creator_id: UUID) -> None:
        member_ids = [member.id for member in conversation.members]
        async with self._conversation_lock(conversation.id):
            for member_id in member_ids:
                await self._apply_membership(conversation.id, member_id, joined=True)
            await self.router.publish(conversation.id, membership_event(conversation.id, creator_id, "created", member_ids))

    async def add_members(self, user_id: UUID, conversation_id: UUID, member_ids: Iterable[UUID]) -> ConversationResponse:
        def _add(db: Session) -> tuple[ConversationResponse, set[UUID]]:
            conversation, added = conversation_service.add_group_members(
                db,
                conversation_id=conversation_id,
                requester_id=user_id,
                member_ids=list(member_ids),
            )
            return conversation_service.conversation_to_response(conversation), added

        async with self._conversation_lock(conversation_id):
            response, added = await self._run(_add)
            current = [member.id for member in response.members]
            for member_id in sorted(added, key=str):
                await self._apply_membership(conversation_id, member_id, joined=True)
                await self.router.publish(conversation_id, membership_event(conversation_id, member_id, "joined", current))
        return response

    async def leave_or_delete(self, user_id: UUID, conversation_id: UUID) -> LeaveOutcome:
        """Leave a conversation, deleting it when it drops below its member floor.

        On deletion every former member's sessions get one final
        ``chat:membership`` event and are then unsubscribed. On a plain group
        leave the leaver is unsubscribed first, the remaining subscribers are
        told, and the leaver's own sessions get the same event directly.
        """

        async with self._conversation_lock(conversation_id):
            outcome = await self._run(
                conversation_service.leave_or_delete_conversation,
                user_id=user_id,
                conversation_id=conversation_id,
            )
            if outcome.deleted:
                event = membership_event(conversation_id, user_id, "deleted", outcome.former_member_ids)
                await self.router.publish(conversation_id, event)
                for member_id in outcome.former_member_ids:
                    await self._apply_membership(conversation_id, member_id, joined=False)
            else:
                event = membership_event(conversation_id, user_id, "left", outcome.remaining_member_ids)
                await self._apply_membership(conversation_id, user_id, joined=False)
                await self.router.publish(conversation_id, event)
                await self.router.publish_to_user(user_id, event)

        if outcome.deleted:
            logger.info("Conversation %s deleted after user %s left", conversation_id, user_id)
        return outcome

    async def list_conversations(self, user_id: UUID) -> list[ConversationResponse]:
        def _list(db: Session) -> list[ConversationResponse]:
            return [
                conversation_service.conversation_to_response(conversation)
                for conversation in conversation_service.list_conversations(db, user_id=user_id)
            ]

        return await self._run(_list)


def get_chat_hub(request: Request) -> ChatHub:
    """FastAPI dependency returning the hub built at startup."""

    return request.app.state.chat_hub


__all__ = ["ChatHub", "get_chat_hub"]
