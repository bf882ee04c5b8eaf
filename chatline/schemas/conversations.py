"""Schemas used by conversation lifecycle endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Literal
from uuid import UUID

from pydantic import Field

from .base import WireModel


class SingleConversationCreate(WireModel):
    other_user_id: UUID


class GroupConversationCreate(WireModel):
    name: str | None = Field(None, max_length=120)
    member_ids: List[UUID] = Field(default_factory=list)


class ConversationMember(WireModel):
    id: UUID
    username: str
    email: str | None = None
    avatar_url: str | None = None


class ConversationResponse(WireModel):
    id: UUID
    kind: Literal["single", "group"] = Field(..., alias="type")
    name: str | None = None
    members: List[ConversationMember]
    admins: List[ConversationMember] = Field(default_factory=list)
    last_message_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class MembersAddRequest(WireModel):
    member_ids: List[UUID] = Field(..., min_length=1)


class LeaveConversationResponse(WireModel):
    conversation_id: UUID
    deleted: bool
    remaining_member_ids: List[UUID] = Field(default_factory=list)


__all__ = [
    "SingleConversationCreate",
    "GroupConversationCreate",
    "ConversationMember",
    "ConversationResponse",
    "LeaveConversationResponse",
    "MembersAddRequest",
]
