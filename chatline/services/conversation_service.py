"""Conversation lifecycle persistence backed by SQLAlchemy."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import Conversation, Message, User, conversation_members, message_seen_by, pair_key_for
from ..models.base import utcnow
from ..schemas import ConversationMember, ConversationResponse
from .errors import Forbidden, InvalidArgument, NotFound, StoreError

logger = logging.getLogger(__name__)

MIN_GROUP_MEMBERS = 3
# A group is dissolved once fewer than this many members remain.
GROUP_MEMBER_FLOOR = 2
_ENSURE_SINGLE_ATTEMPTS = 3


@dataclass(frozen=True)
class LeaveOutcome:
    """Result of a committed leave-or-delete."""

    conversation_id: UUID
    user_id: UUID
    kind: str
    deleted: bool
    former_member_ids: frozenset[UUID]
    remaining_member_ids: frozenset[UUID] = field(default_factory=frozenset)
    promoted_admin_id: UUID | None = None


def commit_or_raise(db: Session, failure_detail: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Commit failed: %s", failure_detail)
        raise StoreError(failure_detail) from exc


def get_conversation(db: Session, conversation_id: UUID) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFound()
    return conversation


def require_member(db: Session, conversation_id: UUID, user_id: UUID) -> Conversation:
    """Load ``conversation_id`` and ensure ``user_id`` currently belongs to it."""

    conversation = get_conversation(db, conversation_id)
    if not conversation.has_member(user_id):
        raise Forbidden()
    return conversation


def _load_users(db: Session, user_ids: Iterable[UUID]) -> list[User]:
    wanted = set(user_ids)
    users = list(db.scalars(select(User).where(User.id.in_(wanted))))
    if len(users) != len(wanted):
        missing = wanted - {user.id for user in users}
        raise NotFound(f"User not found: {', '.join(sorted(str(user_id) for user_id in missing))}")
    return users


def list_conversation_ids(db: Session, *, user_id: UUID) -> list[UUID]:
    stmt = select(conversation_members.c.conversation_id).where(conversation_members.c.user_id == user_id)
    return list(db.scalars(stmt))


def list_conversations(db: Session, *, user_id: UUID) -> list[Conversation]:
    stmt = (
        select(Conversation)
        .where(Conversation.members.any(User.id == user_id))
        .order_by(Conversation.last_message_at.desc(), Conversation.updated_at.desc())
    )
    return list(db.scalars(stmt))


def ensure_single_conversation(db: Session, *, user_id: UUID, other_user_id: UUID) -> tuple[Conversation, bool]:
    """Return the single conversation for the pair, creating it when absent.

    The unique ``pair_key`` turns the find-or-create into an insert-if-absent:
    when two callers race, the loser's commit fails with an integrity error and
    its retry finds the winner's row. Returns ``(conversation, created)``.
    """

    if user_id == other_user_id:
        raise InvalidArgument("Cannot start a conversation with yourself")

    key = pair_key_for(user_id, other_user_id)
    for _ in range(_ENSURE_SINGLE_ATTEMPTS):
        existing = db.scalar(select(Conversation).where(Conversation.pair_key == key))
        if existing is not None:
            return existing, False

        conversation = Conversation(kind=Conversation.SINGLE, pair_key=key, last_message_at=utcnow())
        conversation.members = set(_load_users(db, (user_id, other_user_id)))
        db.add(conversation)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Single conversation %s created concurrently; re-reading", key)
            continue
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to create single conversation %s", key)
            raise StoreError("Failed to create conversation") from exc

        db.refresh(conversation)
        return conversation, True

    raise StoreError("Failed to create conversation")


def create_group_conversation(
    db: Session,
    *,
    owner_id: UUID,
    name: str | None,
    member_ids: Iterable[UUID],
) -> Conversation:
    """Create a group from the owner plus ``member_ids``; the owner becomes admin."""

    members = {owner_id, *member_ids}
    if len(members) < MIN_GROUP_MEMBERS:
        raise InvalidArgument(f"Group needs >= {MIN_GROUP_MEMBERS} members")

    users = _load_users(db, members)
    owner = next(user for user in users if user.id == owner_id)

    conversation = Conversation(
        kind=Conversation.GROUP,
        name=(name or "").strip() or None,
        last_message_at=utcnow(),
    )
    conversation.members = set(users)
    conversation.admins = {owner}

    db.add(conversation)
    commit_or_raise(db, "Failed to create group conversation")
    db.refresh(conversation)
    return conversation


def add_group_members(
    db: Session,
    *,
    conversation_id: UUID,
    requester_id: UUID,
    member_ids: Iterable[UUID],
) -> tuple[Conversation, set[UUID]]:
    """Add users to a group; only admins may invite. Returns the ids actually added."""

    conversation = require_member(db, conversation_id, requester_id)
    if not conversation.is_group:
        raise InvalidArgument("Members can only be added to group conversations")
    if requester_id not in conversation.admin_ids:
        raise Forbidden("Group admin permissions required")

    existing = conversation.member_ids
    candidates = set(member_ids) - existing
    if not candidates:
        return conversation, set()

    for user in _load_users(db, candidates):
        conversation.members.add(user)

    commit_or_raise(db, "Failed to update group members")
    db.refresh(conversation)
    return conversation, candidates


def _delete_conversation(db: Session, conversation: Conversation) -> None:
    message_ids = select(Message.id).where(Message.conversation_id == conversation.id)
    db.execute(delete(message_seen_by).where(message_seen_by.c.message_id.in_(message_ids)))
    db.execute(delete(Message).where(Message.conversation_id == conversation.id))
    db.delete(conversation)


def _longest_standing_member(db: Session, conversation_id: UUID, candidates: set[UUID]) -> UUID | None:
    stmt = (
        select(conversation_members.c.user_id)
        .where(
            conversation_members.c.conversation_id == conversation_id,
            conversation_members.c.user_id.in_(candidates),
        )
        .order_by(conversation_members.c.joined_at.asc(), conversation_members.c.user_id.asc())
        .limit(1)
    )
    return db.scalar(stmt)


def leave_or_delete_conversation(db: Session, *, user_id: UUID, conversation_id: UUID) -> LeaveOutcome:
    """Remove ``user_id`` from the conversation, deleting it when it falls below its floor.

    A single conversation is always deleted. A group loses the user from its
    members and admins and is deleted with all of its messages once fewer than
    two members remain. Deletion happens in the same transaction as the
    membership change.
    """

    conversation = require_member(db, conversation_id, user_id)
    former = frozenset(conversation.member_ids)

    if not conversation.is_group:
        _delete_conversation(db, conversation)
        commit_or_raise(db, "Failed to delete conversation")
        return LeaveOutcome(conversation_id, user_id, Conversation.SINGLE, True, former)

    remaining = former - {user_id}
    if len(remaining) < GROUP_MEMBER_FLOOR:
        _delete_conversation(db, conversation)
        commit_or_raise(db, "Failed to delete conversation")
        return LeaveOutcome(conversation_id, user_id, Conversation.GROUP, True, former)

    leaver = next(member for member in conversation.members if member.id == user_id)
    conversation.members.discard(leaver)
    conversation.admins.discard(leaver)

    promoted: UUID | None = None
    if not conversation.admins:
        promoted = _longest_standing_member(db, conversation_id, set(remaining))
        if promoted is not None:
            conversation.admins.add(next(member for member in conversation.members if member.id == promoted))

    commit_or_raise(db, "Failed to leave conversation")
    return LeaveOutcome(
        conversation_id,
        user_id,
        Conversation.GROUP,
        False,
        former,
        remaining_member_ids=remaining,
        promoted_admin_id=promoted,
    )


def _member_payload(user: User) -> ConversationMember:
    return ConversationMember(id=user.id, username=user.username, email=user.email, avatar_url=user.avatar_url)


def conversation_to_response(conversation: Conversation) -> ConversationResponse:
    """Serialize while the owning session is still open."""

    members = sorted(conversation.members, key=lambda user: user.username)
    admins = sorted(conversation.admins, key=lambda user: user.username)
    return ConversationResponse(
        id=conversation.id,
        kind=conversation.kind,
        name=conversation.name,
        members=[_member_payload(user) for user in members],
        admins=[_member_payload(user) for user in admins],
        last_message_at=conversation.last_message_at,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


__all__ = [
    "LeaveOutcome",
    "MIN_GROUP_MEMBERS",
    "GROUP_MEMBER_FLOOR",
    "commit_or_raise",
    "get_conversation",
    "require_member",
    "list_conversation_ids",
    "list_conversations",
    "ensure_single_conversation",
    "create_group_conversation",
    "add_group_members",
    "leave_or_delete_conversation",
    "conversation_to_response",
]
