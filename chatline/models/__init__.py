"""Convenience exports for ORM models."""
from .associations import conversation_admins, conversation_members, message_seen_by
from .conversation import Conversation, pair_key_for
from .message import Message
from .user import User

__all__ = [
    "conversation_admins",
    "conversation_members",
    "message_seen_by",
    "Conversation",
    "pair_key_for",
    "Message",
    "User",
]
