"""Bearer token verification for HTTP requests and realtime channels."""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

from fastapi import Depends, WebSocket
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import get_session
from ..models import User
from .errors import StoreError, Unauthenticated

logger = logging.getLogger(__name__)

_security = HTTPBearer(auto_error=False)


def create_access_token(subject: UUID, *, expires_minutes: Optional[int] = None) -> str:
    """Create a signed JWT holding the provided ``subject``."""

    settings = get_settings()
    expire_delta = timedelta(minutes=expires_minutes or settings.jwt_expires_minutes)
    now = datetime.now(timezone.utc)
    payload = {"sub": str(subject), "exp": now + expire_delta, "iat": now}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> UUID:
    """Decode and validate a JWT, returning the embedded subject UUID."""

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise Unauthenticated("Invalid token") from exc

    subject = payload.get("sub")
    if not subject:
        raise Unauthenticated("Invalid token payload")
    try:
        return UUID(str(subject))
    except ValueError as exc:
        raise Unauthenticated("Invalid token payload") from exc


def verify_user(db: Session, token: str) -> UUID:
    """Resolve ``token`` to the id of an existing user."""

    user_id = decode_access_token(token)
    if db.get(User, user_id) is None:
        logger.info("Rejected token for unknown user %s", user_id)
        raise Unauthenticated("Unknown user")
    return user_id


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(_security),
    db: Session = Depends(get_session),
) -> User:
    """Resolve the authenticated user from the provided bearer token."""

    if not credentials or credentials.scheme.lower() != "bearer":
        raise Unauthenticated("Missing bearer token")

    user = db.get(User, decode_access_token(credentials.credentials))
    if not user:
        raise Unauthenticated("Invalid token")
    return user


def _token_from_handshake(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization") or ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


async def _token_from_first_frame(websocket: WebSocket, timeout: float) -> str:
    try:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise Unauthenticated("Authentication timed out") from exc
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise Unauthenticated("Expected an auth frame") from exc
    if not isinstance(frame, dict) or frame.get("type") != "auth" or not frame.get("token"):
        raise Unauthenticated("Expected an auth frame")
    return str(frame["token"])


async def authenticate_channel(
    websocket: WebSocket,
    db_factory: Callable[[], Session],
    *,
    timeout: float,
) -> UUID:
    """Authenticate a WebSocket before any other interaction is accepted.

    The token is taken from the ``token`` query parameter or an
    ``Authorization: Bearer`` header. When neither is present the socket is
    accepted and the first frame must be ``{"type": "auth", "token": ...}``,
    received within ``timeout`` seconds. The whole exchange, including the
    user lookup, shares that one deadline. Raises :class:`Unauthenticated`.
    """

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    token = _token_from_handshake(websocket)
    if token is None:
        await websocket.accept()
        token = await _token_from_first_frame(websocket, deadline - loop.time())

    def _verify() -> UUID:
        with db_factory() as db:
            return verify_user(db, token)

    try:
        return await asyncio.wait_for(asyncio.to_thread(_verify), timeout=max(deadline - loop.time(), 0.0))
    except asyncio.TimeoutError as exc:
        raise Unauthenticated("Authentication timed out") from exc
    except SQLAlchemyError as exc:
        logger.exception("User lookup failed during channel authentication")
        raise StoreError() from exc


__all__ = [
    "create_access_token",
    "decode_access_token",
    "verify_user",
    "get_current_user",
    "authenticate_channel",
]
