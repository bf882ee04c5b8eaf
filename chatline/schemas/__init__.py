"""Convenience exports for schema layer."""
from .conversations import (
    ConversationMember,
    ConversationResponse,
    GroupConversationCreate,
    LeaveConversationResponse,
    MembersAddRequest,
    SingleConversationCreate,
)
from .messages import Attachment, MessageResponse, MessageSendRequest, SeenResponse

__all__ = [
    "ConversationMember",
    "ConversationResponse",
    "GroupConversationCreate",
    "LeaveConversationResponse",
    "MembersAddRequest",
    "SingleConversationCreate",
    "Attachment",
    "MessageResponse",
    "MessageSendRequest",
    "SeenResponse",
]
