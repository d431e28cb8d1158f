"""
sources/base.py — Abstract base class for remote pipeline sources.

Each concrete source must implement:
  list_pipelines()         — one page of pipelines for a project
  fetch_author()           — user id → display name
  fetch_pipeline_author()  — pipeline detail → (author id, display name)
  get_project()            — project id/path → Project
  list_group_projects()    — every active project below a group

The ingestion components depend only on this interface, so tests can swap
in an in-memory source without touching HTTP.

Error contract (see pipewatch.errors):
  AuthError         — credentials rejected; never retried
  RateLimitedError  — raised only after retries are exhausted
  TransientError    — raised only after retries are exhausted
  NotFoundError     — the user / pipeline / project does not exist
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

import structlog

from pipewatch.models import PipelinePage, Project

log = structlog.get_logger(__name__)


class BaseSource(ABC):
    """Abstract base for remote CI pipeline sources."""

    # Override in subclass; used for logging
    name: str = "unknown"

    def __init__(self) -> None:
        self._log = log.bind(source_name=self.name)

    @abstractmethod
    async def list_pipelines(
        self,
        project: Project,
        since: datetime | None = None,
        cursor: str | None = None,
    ) -> PipelinePage:
        """
        Fetch one page of pipelines for a project, newest first.

        Args:
            project: Project whose pipelines are listed.
            since:   Only pipelines created/updated after this instant.
            cursor:  Continuation token from the previous page's next_cursor.

        Returns:
            PipelinePage; next_cursor is None on the last page.
        """
        ...

    @abstractmethod
    async def fetch_author(self, user_id: int) -> str:
        """Return the display name of a user. Raises NotFoundError."""
        ...

    @abstractmethod
    async def fetch_pipeline_author(self, project_id: int, pipeline_id: int) -> tuple[int, str]:
        """Return (author_id, display name) from the pipeline detail."""
        ...

    @abstractmethod
    async def get_project(self, ref: str) -> Project:
        """Resolve a numeric id or "group/project" path."""
        ...

    @abstractmethod
    async def list_group_projects(self, group: str) -> list[Project]:
        """Every non-archived project in a group, subgroups included."""
        ...

    async def aclose(self) -> None:
        """Release network resources. No-op by default."""
