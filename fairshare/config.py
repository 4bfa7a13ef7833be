"""
Configuration and settings for the FairShare API service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    version: str = Field(default="1.0.0")

    # Database (Postgres expected, any SQLAlchemy URL accepted)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "FAIRSHARE_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("FAIRSHARE_LOG_LEVEL", "log_level"),
    )

    # Queue (Redis) for background balance recalculation
    redis_url: Optional[str] = Field(default=None)
    redis_queue_key: str = Field(default="fairshare:balance-jobs")

    # Firebase Authentication
    firebase_project_id: Optional[str] = Field(default=None)
    firebase_credentials_file: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "GOOGLE_APPLICATION_CREDENTIALS", "firebase_credentials_file"
        ),
    )

    # Comma-separated list, e.g. "a@example.com,b@example.com"
    admin_emails_raw: str = Field(
        default="",
        validation_alias=AliasChoices("FAIRSHARE_ADMIN_EMAILS", "admin_emails_raw"),
    )

    invite_code_length: int = Field(default=8, ge=6, le=32)
    default_activity_limit: int = Field(default=20, ge=1, le=200)

    @property
    def admin_emails(self) -> set[str]:
        return {
            item.strip().lower()
            for item in self.admin_emails_raw.split(",")
            if item.strip()
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
