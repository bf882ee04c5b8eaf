"""ORM model for single and group conversations."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, Enum, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from chatline.database import Base
from .associations import conversation_admins, conversation_members
from .base import TimestampMixin


def pair_key_for(a: uuid.UUID, b: uuid.UUID) -> str:
    """Canonical key for the unordered pair ``{a, b}``."""

    first, second = (a, b) if str(a) < str(b) else (b, a)
    return f"{first}:{second}"


class Conversation(TimestampMixin, Base):
    __tablename__ = "conversations"

    SINGLE = "single"
    GROUP = "group"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    kind = Column(Enum(SINGLE, GROUP, name="conversation_kind"), nullable=False)
    name = Column(String(120), nullable=True)
    # NULL for groups; unique so each user pair owns at most one single conversation.
    pair_key = Column(String(80), nullable=True, unique=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True, index=True)

    members = relationship(
        "User",
        secondary=conversation_members,
        back_populates="conversations",
        collection_class=set,
        lazy="selectin",
    )
    admins = relationship("User", secondary=conversation_admins, collection_class=set, lazy="selectin")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def member_ids(self) -> set[uuid.UUID]:
        return {member.id for member in self.members}

    @property
    def admin_ids(self) -> set[uuid.UUID]:
        return {admin.id for admin in self.admins}

    @property
    def is_group(self) -> bool:
        return self.kind == self.GROUP

    def has_member(self, user_id: uuid.UUID) -> bool:
        return user_id in self.member_ids


__all__ = ["Conversation", "pair_key_for"]
