"""SQLAlchemy ORM model for application users."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from chatline.database import Base
from .associations import conversation_members
from .base import TimestampMixin


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String(150), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=True)
    hashed_password = Column(String(255), nullable=False)
    avatar_url = Column(String(1024), nullable=True)

    conversations = relationship(
        "Conversation",
        secondary=conversation_members,
        back_populates="members",
        collection_class=set,
    )
    sent_messages = relationship("Message", back_populates="sender", passive_deletes=True)


__all__ = ["User"]
