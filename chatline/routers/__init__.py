"""Aggregate router exports."""
from .chat_socket import router as chat_socket_router
from .conversations import router as conversations_router
from .messages import router as messages_router

__all__ = [
    "chat_socket_router",
    "conversations_router",
    "messages_router",
]
