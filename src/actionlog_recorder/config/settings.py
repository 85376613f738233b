"""Application settings."""

import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "actionlog-recorder"
    log_level: str = "INFO"
    mongodb_uri: str = ""
    database_name: str = "actionlogs"
    logging_auth_key: str = ""
    ignore_invalid_tasks: bool | None = None
    retry_delay_s: float = Field(default=5.0, gt=0.0)
    # None disables the per-operation timeout on store calls.
    store_timeout_s: float | None = Field(default=None, gt=0.0)
    server_selection_timeout_ms: int = Field(default=5000, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="ACTIONLOG_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_mongodb_uri(self) -> str:
        return self.mongodb_uri or os.getenv("MONGODB", "")

    def resolved_logging_auth_key(self) -> str:
        return self.logging_auth_key or os.getenv("LOGGING_AUTH_KEY", "")

    def resolved_ignore_invalid_tasks(self) -> bool:
        if self.ignore_invalid_tasks is not None:
            return self.ignore_invalid_tasks
        return os.getenv("IGNORE_INVALID_TASKS", "").strip().lower() in {"1", "true", "yes", "on"}


def verify_environment(settings: Settings) -> None:
    """Fail startup when a required key is missing.

    Every missing key is logged before raising so one restart fixes them all.
    """
    missing: list[str] = []
    if not settings.resolved_mongodb_uri():
        logger.error("config event=missing key=ACTIONLOG_MONGODB_URI fallback=MONGODB")
        missing.append("ACTIONLOG_MONGODB_URI")
    if not settings.resolved_logging_auth_key():
        logger.error(
            "config event=missing key=ACTIONLOG_LOGGING_AUTH_KEY fallback=LOGGING_AUTH_KEY"
        )
        missing.append("ACTIONLOG_LOGGING_AUTH_KEY")
    if missing:
        raise RuntimeError(
            "Missing required configuration: "
            + ", ".join(missing)
            + ". Set them in the environment or in .env before starting the app."
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
