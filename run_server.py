"""Serve the chat backend, taking bind address and reload mode from the environment."""
from __future__ import annotations

import os

import uvicorn

from chatline.config import get_settings


def _flag(name: str) -> bool:
  return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def main() -> None:
  settings = get_settings()
  uvicorn.run(
    "chatline.main:app",
    host=os.getenv("CHATLINE_HOST", "0.0.0.0"),
    port=int(os.getenv("CHATLINE_PORT", "8000")),
    reload=_flag("UVICORN_RELOAD"),
    log_level=settings.log_level.lower(),
    # one event loop per process; realtime state lives in that process
    workers=1,
  )


if __name__ == "__main__":
  main()
