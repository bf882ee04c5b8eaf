"""WebSocket channel carrying chat messages, typing and read receipts."""
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from ..schemas.events import (
    LeaveFrame,
    PingFrame,
    SeenFrame,
    SendFrame,
    TypingFrame,
    client_frame_adapter,
    error_event,
)
from ..services import ChatError, ChatHub, ChannelSession, StoreError, Unauthenticated, authenticate_channel

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket) -> None:
    """Authenticate, subscribe to the user's conversations and serve client frames."""

    hub: ChatHub = websocket.app.state.chat_hub
    try:
        user_id = await authenticate_channel(websocket, hub.session_factory, timeout=hub.auth_timeout)
    except Unauthenticated as exc:
        logger.info("Rejected chat socket from %s: %s", websocket.client, exc.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.detail)
        return
    except StoreError:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return
    except WebSocketDisconnect:
        return

    if websocket.client_state == WebSocketState.CONNECTING:
        await websocket.accept()

    try:
        session = await hub.connect(websocket, user_id)
    except Exception:
        logger.exception("Failed to load conversations for user %s", user_id)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    logger.info("Chat socket %s connected for user %s", session.session_id, user_id)
    try:
        await websocket.send_text(
            json.dumps(
                {
                    "type": "ready",
                    "userId": str(user_id),
                    "conversationIds": sorted(str(conversation_id) for conversation_id in session.subscriptions),
                }
            )
        )
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            reply = await _handle_frame(hub, session, raw)
            if reply is not None:
                await websocket.send_text(json.dumps(reply, default=str))
    finally:
        await hub.disconnect(session)
        logger.info("Chat socket %s disconnected for user %s", session.session_id, user_id)


async def _handle_frame(hub: ChatHub, session: ChannelSession, raw: str) -> dict[str, Any] | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        if raw.strip().lower() == "ping":
            return {"type": "pong"}
        return error_event(status.HTTP_400_BAD_REQUEST, "invalid_argument", "Frames must be JSON objects")

    request_type = data.get("type") if isinstance(data, dict) else None
    try:
        frame = client_frame_adapter.validate_python(data)
    except ValidationError:
        return error_event(status.HTTP_400_BAD_REQUEST, "invalid_argument", "Malformed frame", request_type)

    try:
        if isinstance(frame, PingFrame):
            return {"type": "pong"}
        if isinstance(frame, SendFrame):
            await hub.send(session.user_id, frame.conversation_id, frame.content, frame.attachments)
        elif isinstance(frame, TypingFrame):
            await hub.typing_pulse(session.user_id, frame.conversation_id, frame.is_typing)
        elif isinstance(frame, SeenFrame):
            await hub.mark_seen(session.user_id, frame.conversation_id)
        elif isinstance(frame, LeaveFrame):
            await hub.leave_or_delete(session.user_id, frame.conversation_id)
    except ChatError as exc:
        logger.debug("Chat frame %s from user %s failed: %s", request_type, session.user_id, exc.detail)
        return error_event(exc.status_code, exc.code, exc.detail, request_type)
    return None


__all__ = ["router"]
