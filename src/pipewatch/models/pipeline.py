"""
models/pipeline.py — Pydantic models for the pipelines table.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from pipewatch.time_utils import ensure_utc, to_naive_utc

# Upstream statuses that have not started executing yet
_PENDING_ALIASES = frozenset({"created", "waiting_for_resource", "preparing", "scheduled"})


class PipelineStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    SKIPPED = "skipped"
    OTHER = "other"

    @classmethod
    def normalize(cls, raw: str | None) -> "PipelineStatus":
        """Map a GitLab status string onto the fixed status set."""
        value = (raw or "").strip().lower()
        if value in _PENDING_ALIASES:
            return cls.PENDING
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


# Statuses counted as "finished" by the success rate
FINISHED_STATUSES: tuple[PipelineStatus, ...] = (
    PipelineStatus.SUCCESS,
    PipelineStatus.FAILED,
    PipelineStatus.CANCELED,
)


class Pipeline(BaseModel):
    """
    Matches the pipelines table row.

    Primary key is the GitLab pipeline id.
    """

    id: int
    project_id: int
    project_name: str
    project_path: str | None = None
    ref: str
    sha: str | None = None
    status: PipelineStatus
    created_at: datetime
    updated_at: datetime | None = None
    finished_at: datetime | None = None
    duration: int | None = Field(default=None, ge=0)
    author_id: int | None = None
    author_name: str | None = None
    web_url: str | None = None

    @field_validator("created_at", "updated_at", "finished_at")
    @classmethod
    def as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def finished_not_before_created(self) -> "Pipeline":
        if self.finished_at is not None and self.finished_at < self.created_at:
            raise ValueError(
                f"pipeline {self.id}: finished_at {self.finished_at.isoformat()} "
                f"is before created_at {self.created_at.isoformat()}"
            )
        return self

    @property
    def last_seen_at(self) -> datetime:
        """Timestamp used to advance a project's sync watermark."""
        return self.updated_at or self.created_at

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> "Pipeline":
        return cls(**{k: v for k, v in row.items() if k in cls.model_fields})

    def to_insert_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "project_path": self.project_path,
            "ref_name": self.ref,
            "sha": self.sha,
            "status": self.status.value,
            "created_at": to_naive_utc(self.created_at),
            "updated_at": to_naive_utc(self.updated_at),
            "finished_at": to_naive_utc(self.finished_at),
            "duration": self.duration,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "web_url": self.web_url,
        }


class PipelinePage(BaseModel):
    """One page of GitLab's pipeline listing."""

    pipelines: list[Pipeline] = Field(default_factory=list)
    next_cursor: str | None = None

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


class PipelineFilter(BaseModel):
    """Read-side filter shared by listing and aggregate queries."""

    project_paths: list[str] | None = None
    exclude_project_paths: list[str] | None = None
    refs: list[str] | None = None
    status: PipelineStatus | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
