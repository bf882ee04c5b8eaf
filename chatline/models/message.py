"""SQLAlchemy ORM model for chat messages."""
from __future__ import annotations

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chatline.database import Base
from .associations import message_seen_by
from .base import utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sender_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    # [{"url": ..., "type": ...}, ...]
    attachments = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", back_populates="sent_messages")
    seen_by = relationship("User", secondary=message_seen_by, collection_class=set)

    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)

    @property
    def seen_by_ids(self) -> set[uuid.UUID]:
        return {user.id for user in self.seen_by}


__all__ = ["Message"]
