"""Convenience exports for service layer."""
from .auth_service import (
    authenticate_channel,
    create_access_token,
    decode_access_token,
    get_current_user,
    verify_user,
)
from .chat_hub import ChatHub, get_chat_hub
from .conversation_service import (
    LeaveOutcome,
    add_group_members,
    create_group_conversation,
    ensure_single_conversation,
    leave_or_delete_conversation,
    list_conversation_ids,
    list_conversations,
)
from .errors import ChatError, Forbidden, InvalidArgument, NotFound, StoreError, Unauthenticated
from .fanout import FanoutRouter
from .membership_index import ChannelSession, MembershipIndex
from .message_service import list_messages, mark_seen, send_message

__all__ = [
    "authenticate_channel",
    "create_access_token",
    "decode_access_token",
    "get_current_user",
    "verify_user",
    "ChatHub",
    "get_chat_hub",
    "LeaveOutcome",
    "add_group_members",
    "create_group_conversation",
    "ensure_single_conversation",
    "leave_or_delete_conversation",
    "list_conversation_ids",
    "list_conversations",
    "ChatError",
    "Forbidden",
    "InvalidArgument",
    "NotFound",
    "StoreError",
    "Unauthenticated",
    "FanoutRouter",
    "ChannelSession",
    "MembershipIndex",
    "list_messages",
    "mark_seen",
    "send_message",
]
