"""
Application settings.

Read from the environment (and `.env`). Telephony settings live separately
in `callscheduler.telephony.config` under the TELEPHONY_ prefix.
"""

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings for the API, database and scheduler."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "callscheduler"
    app_env: Literal["dev", "qa", "uat", "prod"] = "dev"
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="json for shipping to a log pipeline, text for a terminal.",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/callscheduler.db",
        description="SQLAlchemy async URL (postgresql+asyncpg://... in production).",
    )
    database_auto_create: bool = Field(
        default=True,
        description="Create missing tables at startup.",
    )
    database_pool_size: int = Field(default=5, ge=1, le=100)
    database_max_overflow: int = Field(default=10, ge=0, le=100)

    # HTTP
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    # Scheduler
    scheduler_enabled: bool = Field(
        default=True,
        description="Restore pending scheduled calls and arm timers at app startup.",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings() -> Settings:
    """Cached settings; rebuilt on every call under pytest so monkeypatched env applies."""
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return Settings()
    return _cached_settings()
