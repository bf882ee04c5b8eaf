"""
Runtime configuration helpers for the chat service.

Loads DATABASE_URL, JWT and realtime settings from the environment, falling
back to the .env file located in the project root.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root
BASE_DIR = Path(__file__).resolve().parents[1]

# Absolute path to .env
ENV_PATH = BASE_DIR / ".env"

# Load .env defaults without overriding environment variables provided by the platform
load_dotenv(dotenv_path=ENV_PATH, override=False)

_PLACEHOLDER_SECRETS = {
    "changeme",
    "change-me",
    "placeholder",
    "example",
    "sample",
    "your-key-here",
}


class Settings(BaseSettings):
    # Required: must come from the environment or .env
    database_url: str = Field(..., alias="DATABASE_URL")
    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")

    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_expires_minutes: int = Field(default=60 * 24 * 7, alias="JWT_EXPIRES_MINUTES")

    app_name: str = Field(default="Chatline", alias="APP_NAME")
    api_version: str = Field(default="0.1.0", alias="API_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Cross-instance fanout; the backplane stays off when no URL is configured
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    redis_channel: str = Field(default="chatline:events", alias="REDIS_CHANNEL")

    channel_auth_timeout_seconds: float = Field(default=10.0, gt=0, alias="CHANNEL_AUTH_TIMEOUT_SECONDS")
    history_page_size: int = Field(default=30, ge=1, alias="HISTORY_PAGE_SIZE")
    history_max_page_size: int = Field(default=100, ge=1, alias="HISTORY_MAX_PAGE_SIZE")
    message_max_length: int = Field(default=4000, ge=1, alias="MESSAGE_MAX_LENGTH")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @field_validator("jwt_secret_key")
    @classmethod
    def _reject_placeholder_secret(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized or normalized.lower() in _PLACEHOLDER_SECRETS:
            raise ValueError("JWT_SECRET_KEY is required and must not use placeholder defaults")
        return normalized


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
