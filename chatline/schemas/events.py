"""Frames exchanged over the realtime chat channel."""
from __future__ import annotations

from typing import Annotated, Any, List, Literal, Union
from uuid import UUID

from pydantic import Field, TypeAdapter

from .base import WireModel
from .messages import Attachment, MessageResponse

CHAT_SEND = "chat:send"
CHAT_NEW = "chat:new"
CHAT_TYPING = "chat:typing"
CHAT_SEEN = "chat:seen"
CHAT_LEAVE = "chat:leave"
CHAT_MEMBERSHIP = "chat:membership"
CHAT_ERROR = "chat:error"


class SendFrame(WireModel):
    type: Literal["chat:send"]
    conversation_id: UUID
    content: str = ""
    attachments: List[Attachment] = Field(default_factory=list)


class TypingFrame(WireModel):
    type: Literal["chat:typing"]
    conversation_id: UUID
    is_typing: bool = True


class SeenFrame(WireModel):
    type: Literal["chat:seen"]
    conversation_id: UUID


class LeaveFrame(WireModel):
    type: Literal["chat:leave"]
    conversation_id: UUID


class PingFrame(WireModel):
    type: Literal["ping"]


ClientFrame = Annotated[
    Union[SendFrame, TypingFrame, SeenFrame, LeaveFrame, PingFrame],
    Field(discriminator="type"),
]

client_frame_adapter: TypeAdapter[ClientFrame] = TypeAdapter(ClientFrame)


def message_created_event(message: MessageResponse) -> dict[str, Any]:
    return {"type": CHAT_NEW, **message.to_wire()}


def typing_event(user_id: UUID, conversation_id: UUID, is_typing: bool) -> dict[str, Any]:
    return {
        "type": CHAT_TYPING,
        "userId": str(user_id),
        "conversationId": str(conversation_id),
        "isTyping": is_typing,
    }


def seen_event(user_id: UUID, conversation_id: UUID) -> dict[str, Any]:
    return {"type": CHAT_SEEN, "userId": str(user_id), "conversationId": str(conversation_id)}


def membership_event(
    conversation_id: UUID,
    user_id: UUID,
    action: Literal["created", "joined", "left", "deleted"],
    member_ids: list[UUID] | set[UUID],
) -> dict[str, Any]:
    return {
        "type": CHAT_MEMBERSHIP,
        "conversationId": str(conversation_id),
        "userId": str(user_id),
        "action": action,
        "members": sorted(str(member_id) for member_id in member_ids),
    }


def error_event(status: int, code: str, detail: str, request_type: str | None = None) -> dict[str, Any]:
    return {
        "type": CHAT_ERROR,
        "status": status,
        "code": code,
        "detail": detail,
        "requestType": request_type,
    }


__all__ = [
    "CHAT_SEND",
    "CHAT_NEW",
    "CHAT_TYPING",
    "CHAT_SEEN",
    "CHAT_LEAVE",
    "CHAT_MEMBERSHIP",
    "CHAT_ERROR",
    "SendFrame",
    "TypingFrame",
    "SeenFrame",
    "LeaveFrame",
    "PingFrame",
    "ClientFrame",
    "client_frame_adapter",
    "message_created_event",
    "typing_event",
    "seen_event",
    "membership_event",
    "error_event",
]
