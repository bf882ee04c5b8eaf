"""Messaging persistence: message creation, read receipts and history."""
from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ..models import Message, message_seen_by
from ..models.base import utcnow
from ..schemas import Attachment, MessageResponse
from .conversation_service import commit_or_raise, require_member
from .errors import InvalidArgument, StoreError

logger = logging.getLogger(__name__)

_MARK_SEEN_ATTEMPTS = 2


def _attachments_payload(values: Iterable[Attachment | dict[str, Any]] | None) -> list[dict[str, str]]:
    cleaned: list[dict[str, str]] = []
    for value in values or ():
        item = value if isinstance(value, Attachment) else Attachment.model_validate(value)
        cleaned.append({"url": item.url, "type": item.type})
    return cleaned


def send_message(
    db: Session,
    *,
    sender_id: UUID,
    conversation_id: UUID,
    content: str | None,
    attachments: Sequence[Attachment | dict[str, Any]] | None = None,
    max_length: int | None = None,
) -> Message:
    """Persist a message and advance the conversation's activity marker."""

    conversation = require_member(db, conversation_id, sender_id)

    body = content or ""
    if max_length is not None and len(body) > max_length:
        raise InvalidArgument(f"Message exceeds {max_length} characters")

    now = utcnow()
    message = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        content=body,
        attachments=_attachments_payload(attachments),
        created_at=now,
    )
    conversation.last_message_at = now

    db.add(message)
    commit_or_raise(db, "Failed to persist message")
    db.refresh(message)
    return message


def mark_seen(db: Session, *, user_id: UUID, conversation_id: UUID) -> int:
    """Add ``user_id`` to the seen-set of every message authored by someone else.

    Messages already seen by the user are skipped, so repeating the call is a
    no-op. Returns how many messages were newly marked.
    """

    require_member(db, conversation_id, user_id)

    already_seen = select(message_seen_by.c.message_id).where(message_seen_by.c.user_id == user_id)
    pending_stmt = select(Message.id).where(
        Message.conversation_id == conversation_id,
        Message.sender_id != user_id,
        Message.id.not_in(already_seen),
    )

    for _ in range(_MARK_SEEN_ATTEMPTS):
        pending = list(db.scalars(pending_stmt))
        if not pending:
            return 0
        seen_at = utcnow()
        db.execute(
            insert(message_seen_by),
            [{"message_id": message_id, "user_id": user_id, "seen_at": seen_at} for message_id in pending],
        )
        try:
            db.commit()
        except IntegrityError:
            # Another session recorded some of these receipts first.
            db.rollback()
            continue
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to mark conversation %s seen", conversation_id)
            raise StoreError("Failed to update read receipts") from exc
        return len(pending)

    return 0


def list_messages(
    db: Session,
    *,
    user_id: UUID,
    conversation_id: UUID,
    page: int = 1,
    limit: int = 30,
) -> list[Message]:
    """Return one history page in chronological order.

    Pages are cut newest-first (page 1 holds the latest ``limit`` messages) and
    each page is reversed before it is returned.
    """

    require_member(db, conversation_id, user_id)
    if page < 1 or limit < 1:
        raise InvalidArgument("page and limit must be positive")

    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .options(selectinload(Message.seen_by))
        .order_by(Message.created_at.desc(), Message.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    messages = list(db.scalars(stmt))
    messages.reverse()
    return messages


def message_to_response(message: Message) -> MessageResponse:
    """Serialize while the owning session is still open."""

    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content=message.content or "",
        attachments=[Attachment.model_validate(item) for item in (message.attachments or [])],
        seen_by=sorted(message.seen_by_ids, key=str),
        created_at=message.created_at,
    )


__all__ = [
    "send_message",
    "mark_seen",
    "list_messages",
    "message_to_response",
]
