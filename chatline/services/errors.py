"""Domain errors raised by the conversation and messaging services."""
from __future__ import annotations

from typing import Any

from fastapi import status


class ChatError(Exception):
    """Base class for failures surfaced to the initiating client."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "chat_error"
    default_detail: str = "Request failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_payload(self) -> dict[str, Any]:
        return {"status": self.status_code, "code": self.code, "detail": self.detail}


class Unauthenticated(ChatError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"
    default_detail = "Invalid or missing credentials"


class Forbidden(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    default_detail = "You are not a member of this conversation"


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_detail = "Conversation not found"


class InvalidArgument(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_argument"
    default_detail = "Invalid request"


class StoreError(ChatError):
    """Persistence failed and the transaction was rolled back."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "store_error"
    default_detail = "Failed to persist changes"


__all__ = [
    "ChatError",
    "Unauthenticated",
    "Forbidden",
    "NotFound",
    "InvalidArgument",
    "StoreError",
]
