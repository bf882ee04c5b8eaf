"""Redis pub/sub relay that keeps several chat instances in sync.

Every instance publishes its fanout events and membership changes on one
channel, tagged with its instance id. Each instance listens on the same
channel, ignores its own envelopes and replays the others locally: events go
to local subscribers, membership changes go to the local index. A single
channel keeps the publish order of each instance.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from redis.asyncio import Redis as AsyncRedis
from redis.asyncio import from_url

if TYPE_CHECKING:
    from .fanout import FanoutRouter
    from .membership_index import MembershipIndex

logger = logging.getLogger(__name__)

KIND_EVENT = "event"
KIND_USER_EVENT = "user_event"
KIND_MEMBERSHIP = "membership"

_RECONNECT_DELAY_SECONDS = 1.0
_SUBSCRIBE_TIMEOUT_SECONDS = 5.0


class RedisBackplane:
    def __init__(self, redis: AsyncRedis, channel: str, *, instance_id: str | None = None) -> None:
        self._redis = redis
        self._channel = channel
        self.instance_id = instance_id or uuid4().hex
        self._index: MembershipIndex | None = None
        self._router: FanoutRouter | None = None
        self._listener: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()

    @classmethod
    def from_url(cls, url: str, channel: str) -> "RedisBackplane":
        return cls(from_url(url, decode_responses=True), channel)

    def attach(self, index: MembershipIndex, router: FanoutRouter) -> None:
        self._index = index
        self._router = router

    async def start(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen())
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=_SUBSCRIBE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Chat backplane %s not subscribed yet; continuing startup", self.instance_id)
            return
        logger.info("Chat backplane %s listening on %s", self.instance_id, self._channel)

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self._redis.aclose()

    async def forward_event(self, conversation_id: UUID, event: dict[str, Any], *, exclude_user: UUID | None = None) -> None:
        await self._publish(
            KIND_EVENT,
            {
                "conversation_id": str(conversation_id),
                "exclude_user": str(exclude_user) if exclude_user else None,
                "event": event,
            },
        )

    async def forward_user_event(self, user_id: UUID, event: dict[str, Any]) -> None:
        await self._publish(KIND_USER_EVENT, {"user_id": str(user_id), "event": event})

    async def forward_membership(self, conversation_id: UUID, user_id: UUID, joined: bool) -> None:
        await self._publish(
            KIND_MEMBERSHIP,
            {"conversation_id": str(conversation_id), "user_id": str(user_id), "joined": joined},
        )

    async def _publish(self, kind: str, body: dict[str, Any]) -> None:
        envelope = json.dumps({"origin": self.instance_id, "kind": kind, **body}, default=str)
        try:
            await self._redis.publish(self._channel, envelope)
        except Exception:
            # Fanout is best-effort; remote clients recover through history reads.
            logger.exception("Failed to relay %s envelope to %s", kind, self._channel)

    async def handle_raw(self, raw: str) -> None:
        """Apply one envelope received from another instance."""

        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed backplane envelope")
            return
        if not isinstance(envelope, dict) or envelope.get("origin") == self.instance_id:
            return
        if self._index is None or self._router is None:
            logger.warning("Backplane envelope received before attach(); dropping")
            return

        kind = envelope.get("kind")
        try:
            if kind == KIND_EVENT:
                exclude = envelope.get("exclude_user")
                await self._router.deliver_local(
                    UUID(envelope["conversation_id"]),
                    envelope["event"],
                    exclude_user=UUID(exclude) if exclude else None,
                )
            elif kind == KIND_USER_EVENT:
                await self._router.deliver_to_user_local(UUID(envelope["user_id"]), envelope["event"])
            elif kind == KIND_MEMBERSHIP:
                await self._index.on_membership_changed(
                    UUID(envelope["conversation_id"]),
                    UUID(envelope["user_id"]),
                    bool(envelope["joined"]),
                )
            else:
                logger.warning("Ignoring backplane envelope of unknown kind %r", kind)
        except (KeyError, ValueError):
            logger.warning("Ignoring incomplete %s backplane envelope", kind)

    async def _listen(self) -> None:
        while True:
            pubsub = self._redis.pubsub()
            try:
                await pubsub.subscribe(self._channel)
                self._ready.set()
                async for message in pubsub.listen():
                    if message is None or message.get("type") != "message":
                        continue
                    await self.handle_raw(message["data"])
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Backplane subscription on %s failed; reconnecting", self._channel)
                await asyncio.sleep(_RECONNECT_DELAY_SECONDS)
            finally:
                try:
                    await pubsub.unsubscribe(self._channel)
                    await pubsub.aclose()
                except Exception:
                    logger.debug("Backplane pubsub cleanup failed", exc_info=True)


__all__ = ["RedisBackplane", "KIND_EVENT", "KIND_USER_EVENT", "KIND_MEMBERSHIP"]
