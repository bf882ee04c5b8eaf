"""Application entry point for the chat backend."""
from __future__ import annotations

import logging
import os
from typing import Iterable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .database import SessionLocal, init_db
from .routers import chat_socket_router, conversations_router, messages_router
from .services import ChatError, ChatHub, Unauthenticated

settings = get_settings()
APP_NAME = settings.app_name
API_VERSION = settings.api_version

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=APP_NAME, version=API_VERSION)

cors_origins = os.getenv("CORS_ORIGINS")
if cors_origins:
    origins: Iterable[str] = [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(conversations_router)
app.include_router(messages_router)
app.include_router(chat_socket_router)


@app.exception_handler(ChatError)
async def _chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthenticated) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers,
    )


@app.on_event("startup")
async def _startup() -> None:
    """Ensure the schema exists and build the realtime hub before serving."""

    try:
        init_db()
    except Exception:  # pragma: no cover
        logger.exception("Database initialisation failed")
        raise

    hub = ChatHub.from_settings(settings, SessionLocal)
    await hub.start()
    app.state.chat_hub = hub
    logger.info("Chat hub ready (backplane=%s)", "redis" if hub.backplane else "disabled")


@app.on_event("shutdown")
async def _shutdown() -> None:
    hub: ChatHub | None = getattr(app.state, "chat_hub", None)
    if hub is not None:
        await hub.stop()


@app.get("/api", tags=["system"])
def api_info() -> dict[str, str]:
    return {"service": APP_NAME, "version": API_VERSION}


@app.get("/health", tags=["system"])
async def healthcheck() -> dict[str, object]:
    hub: ChatHub | None = getattr(app.state, "chat_hub", None)
    return {"ok": True, "sessions": hub.index.session_count() if hub else 0}
