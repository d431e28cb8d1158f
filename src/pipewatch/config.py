"""
config.py — pydantic-settings Settings class.

All environment variables for pipewatch are declared here. The ingestion
engine, the CLI and the logging setup read `settings` from this module.

Usage:
    from pipewatch.config import settings
    print(settings.gitlab_api_url)
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_dotenv() -> Path | None:
    """Walk up from CWD to find the nearest .env file."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        candidate = parent / ".env"
        if candidate.is_file():
            return candidate
    return None


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=_find_dotenv() or ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # GitLab
    # -------------------------------------------------------------------------
    gitlab_url: str = Field(default="https://gitlab.com")
    gitlab_token: str = Field(default="")
    monitored_projects: str = Field(default="")
    monitored_groups: str = Field(default="")
    branch_filter_regex: str | None = Field(default=None)

    # HTTP behaviour
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_retry_attempts: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=60.0, ge=0)
    page_size: int = Field(default=100, ge=1, le=100)

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------
    poll_interval_seconds: float = Field(default=60.0, gt=0)
    poll_overlap_seconds: float = Field(default=300.0, ge=0)
    backfill_days: int | None = Field(default=None, ge=0)
    project_concurrency: int = Field(default=4, ge=1)

    enrichment_interval_seconds: float = Field(default=30.0, gt=0)
    enrichment_batch_size: int = Field(default=100, ge=1)
    enrichment_concurrency: int = Field(default=5, ge=1)
    enrichment_not_found_policy: Literal["mark", "retry"] = Field(default="mark")
    enrichment_retry_after_seconds: float = Field(default=86400.0, ge=0)

    # -------------------------------------------------------------------------
    # DuckDB
    # -------------------------------------------------------------------------
    duckdb_path: str = Field(default="./data/pipelines.duckdb")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_format: Literal["json", "console"] = Field(default="console")

    # -------------------------------------------------------------------------
    # Derived / computed
    # -------------------------------------------------------------------------
    @property
    def gitlab_api_url(self) -> str:
        return f"{self.gitlab_url}/api/v4"

    @property
    def monitored_projects_list(self) -> list[str]:
        return _split_csv(self.monitored_projects)

    @property
    def monitored_groups_list(self) -> list[str]:
        return _split_csv(self.monitored_groups)

    @field_validator("gitlab_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") if isinstance(v, str) else v

    @field_validator("branch_filter_regex", mode="before")
    @classmethod
    def blank_as_none(cls, v: str | None) -> str | None:
        if isinstance(v, str) and not v.strip():
            return None
        return v


# ---------------------------------------------------------------------------
# Module-level singleton: import this everywhere
# ---------------------------------------------------------------------------
settings = Settings()
