"""Deliver chat events to the sessions subscribed to a conversation."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Iterable
from uuid import UUID

from .membership_index import ChannelSession, MembershipIndex

if TYPE_CHECKING:
    from .backplane import RedisBackplane

logger = logging.getLogger(__name__)


class FanoutRouter:
    """Best-effort, in-order delivery of events to subscribed sessions.

    Local subscribers are served directly from the :class:`MembershipIndex`;
    when a backplane is attached the event is also relayed to the other
    instances, which deliver it to their own subscribers.
    """

    def __init__(self, index: MembershipIndex, backplane: RedisBackplane | None = None) -> None:
        self._index = index
        self._backplane = backplane

    async def publish(
        self,
        conversation_id: UUID,
        event: dict[str, Any],
        *,
        exclude_user: UUID | None = None,
    ) -> int:
        delivered = await self.deliver_local(conversation_id, event, exclude_user=exclude_user)
        if self._backplane is not None:
            await self._backplane.forward_event(conversation_id, event, exclude_user=exclude_user)
        return delivered

    async def publish_to_user(self, user_id: UUID, event: dict[str, Any]) -> int:
        delivered = await self.deliver_to_user_local(user_id, event)
        if self._backplane is not None:
            await self._backplane.forward_user_event(user_id, event)
        return delivered

    async def deliver_local(
        self,
        conversation_id: UUID,
        event: dict[str, Any],
        *,
        exclude_user: UUID | None = None,
    ) -> int:
        targets = await self._index.subscribers_of(conversation_id)
        if exclude_user is not None:
            targets = [session for session in targets if session.user_id != exclude_user]
        return await self._send_all(targets, event)

    async def deliver_to_user_local(self, user_id: UUID, event: dict[str, Any]) -> int:
        return await self._send_all(await self._index.sessions_for_user(user_id), event)

    async def _send_all(self, targets: Iterable[ChannelSession], event: dict[str, Any]) -> int:
        serialized = json.dumps(event, default=str)
        delivered = 0
        for session in targets:
            try:
                await session.send(serialized)
            except Exception:
                logger.debug("Dropping unreachable session %s of user %s", session.session_id, session.user_id)
                await self._index.on_disconnect(session)
                continue
            delivered += 1
        return delivered


__all__ = ["FanoutRouter"]
