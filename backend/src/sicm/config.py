"""Settings for SICM.

Values come from environment variables, matched case-insensitively, and
from the nearest ``.env`` file above the working directory or in the
project root.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

# backend/src/sicm/config.py -> repository root
PROJECT_ROOT = Path(__file__).resolve().parents[3]


def locate_env_file(start: Path | None = None, max_depth: int = 5) -> Path | None:
    """Return the first ``.env`` found walking up from ``start``, then the project root."""
    directory = (start or Path.cwd()).resolve()
    for candidate in [directory, *directory.parents][: max_depth + 1]:
        env_file = candidate / ".env"
        if env_file.is_file():
            return env_file

    env_file = PROJECT_ROOT / ".env"
    return env_file if env_file.is_file() else None


class Settings(BaseSettings):
    """Process-wide configuration for the case services, worker and CLI."""

    model_config = SettingsConfigDict(
        env_file=locate_env_file() or ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["development", "staging", "production"] = "development"

    # =========================
    # Case store
    # =========================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "sicm"
    postgres_user: str = "sicm"
    postgres_password: str = Field(default="", repr=False)
    database_url_override: str | None = Field(
        default=None,
        repr=False,
        description="Full SQLAlchemy URL used verbatim instead of the PostgreSQL settings",
    )
    db_echo: bool = False

    @computed_field
    @property
    def database_url(self) -> str:
        """SQLAlchemy async URL of the case store."""
        if self.database_url_override:
            return self.database_url_override
        credentials = f"{self.postgres_user}:{self.postgres_password}"
        location = f"{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        return f"postgresql+asyncpg://{credentials}@{location}"

    # =========================
    # Jobs
    # =========================
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    job_queue_prefix: str = Field(
        default="sicm", description="Each wiki consumes the queue <prefix>.<wiki_id>"
    )
    wiki_id: str = Field(default="enwiki", description="ID of the wiki this process serves")
    host_module: str | None = Field(
        default=None,
        description="Module (or module:function) that calls configure_services() for the CLI and worker",
    )

    # =========================
    # Logging
    # =========================
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    # =========================
    # Feature flags
    # =========================
    suggested_investigations_enabled: bool = False
    central_auth_enabled: bool = False
    apply_global_blocks_enabled: bool = True
    delayed_jobs_enabled: bool = True

    # =========================
    # Case handling
    # =========================
    merge_retry_attempts: int = Field(default=3, ge=1)
    autoclose_delay_seconds: int = Field(default=3600, ge=0)
    invalid_status_default_reason: str = "No reason was provided."
    autoclose_reason: str = (
        "Automatically resolved because every user in this case is indefinitely blocked."
    )


@lru_cache
def get_settings() -> Settings:
    """Settings for this process, read once."""
    return Settings()
