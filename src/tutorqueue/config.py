"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

import secrets
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

# Default cron expression for the schedule tick: every minute.
DEFAULT_SCHEDULE_CRON = "* * * * *"


class Settings(BaseSettings):
    """TutorQueue configuration.

    All values can be overridden via environment variables or .env file.
    """

    # Discord
    discord_bot_token: str = ""
    discord_guild_id: str = ""  # sync commands to one guild instead of globally
    discord_enabled: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///tutorqueue.db"

    # Environment
    tutorqueue_env: str = "development"

    # Scheduling
    tutorqueue_timezone: str = "UTC"
    tutorqueue_schedule_cron: str = DEFAULT_SCHEDULE_CRON
    tutorqueue_auto_schedule: bool = True

    # Queues
    tutorqueue_rejoin_grace_seconds: int = 60

    # Verification tokens
    token_secret: str = ""

    # Logging
    tutorqueue_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @field_validator("tutorqueue_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            msg = f"Unknown timezone: {value!r}"
            raise ValueError(msg) from exc
        return value

    @model_validator(mode="after")
    def _ensure_token_secret(self) -> Settings:
        """Auto-generate the token secret in dev; reject a missing secret in production."""
        if not self.token_secret:
            if self.tutorqueue_env == "production":
                msg = (
                    "TOKEN_SECRET must be set in production. "
                    "Tokens signed with a random secret stop verifying after a restart."
                )
                raise ValueError(msg)
            self.token_secret = secrets.token_urlsafe(32)
        return self

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.tutorqueue_timezone)
