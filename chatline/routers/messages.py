"""Messaging API routes."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from ..models import User
from ..schemas import MessageResponse, MessageSendRequest, SeenResponse
from ..services import ChatHub, get_chat_hub, get_current_user

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/send", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message_endpoint(
    payload: MessageSendRequest,
    current_user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_chat_hub),
) -> MessageResponse:
    return await hub.send(current_user.id, payload.conversation_id, payload.content, payload.attachments)


@router.get("/{conversation_id}", response_model=list[MessageResponse])
async def history_endpoint(
    conversation_id: UUID,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    current_user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_chat_hub),
) -> list[MessageResponse]:
    return await hub.history(current_user.id, conversation_id, page=page, limit=limit)


@router.post("/{conversation_id}/seen", response_model=SeenResponse)
async def mark_seen_endpoint(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_chat_hub),
) -> SeenResponse:
    marked = await hub.mark_seen(current_user.id, conversation_id)
    return SeenResponse(conversation_id=conversation_id, user_id=current_user.id, marked=marked)


__all__ = ["router"]
