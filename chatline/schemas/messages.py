"""Schemas used by messaging endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List
from uuid import UUID

from pydantic import Field

from .base import WireModel


class Attachment(WireModel):
    url: str = Field(..., min_length=1, max_length=2048)
    type: str = Field(default="file", max_length=64)


class MessageSendRequest(WireModel):
    conversation_id: UUID
    content: str = Field(default="", max_length=4000)
    attachments: List[Attachment] = Field(default_factory=list)


class MessageResponse(WireModel):
    id: UUID
    conversation_id: UUID
    sender_id: UUID
    content: str
    attachments: List[Attachment] = Field(default_factory=list)
    seen_by: List[UUID] = Field(default_factory=list)
    created_at: datetime


class SeenResponse(WireModel):
    conversation_id: UUID
    user_id: UUID
    marked: int


__all__ = [
    "Attachment",
    "MessageSendRequest",
    "MessageResponse",
    "SeenResponse",
]
