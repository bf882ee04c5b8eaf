"""Conversation lifecycle API routes."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, status

from ..models import User
from ..schemas import (
    ConversationResponse,
    GroupConversationCreate,
    LeaveConversationResponse,
    MembersAddRequest,
    SingleConversationCreate,
)
from ..services import ChatHub, get_chat_hub, get_current_user

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.post("/single", response_model=ConversationResponse)
async def ensure_single_endpoint(
    payload: SingleConversationCreate,
    current_user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_chat_hub),
) -> ConversationResponse:
    return await hub.ensure_single(current_user.id, payload.other_user_id)


@router.post("/group", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_group_endpoint(
    payload: GroupConversationCreate,
    current_user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_chat_hub),
) -> ConversationResponse:
    return await hub.create_group(current_user.id, payload.name, payload.member_ids)


@router.get("/my", response_model=list[ConversationResponse])
async def my_conversations_endpoint(
    current_user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_chat_hub),
) -> list[ConversationResponse]:
    return await hub.list_conversations(current_user.id)


@router.post("/{conversation_id}/members", response_model=ConversationResponse)
async def add_members_endpoint(
    conversation_id: UUID,
    payload: MembersAddRequest,
    current_user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_chat_hub),
) -> ConversationResponse:
    return await hub.add_members(current_user.id, conversation_id, payload.member_ids)


@router.delete("/{conversation_id}", response_model=LeaveConversationResponse)
async def leave_conversation_endpoint(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    hub: ChatHub = Depends(get_chat_hub),
) -> LeaveConversationResponse:
    outcome = await hub.leave_or_delete(current_user.id, conversation_id)
    return LeaveConversationResponse(
        conversation_id=outcome.conversation_id,
        deleted=outcome.deleted,
        remaining_member_ids=sorted(outcome.remaining_member_ids, key=str),
    )


__all__ = ["router"]
