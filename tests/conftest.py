"""
tests/conftest.py — Shared pytest fixtures for the pipewatch test suite.

Provides:
  fixture_path()    — resolves paths to tests/fixtures/
  store()           — in-memory PipelineStore
  make_pipeline()   — factory for Pipeline records with sensible defaults
  FakeSource        — in-memory BaseSource with scriptable failures
  mock_http         — configured respx router for faking HTTP responses
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import respx

from pipewatch.errors import NotFoundError
from pipewatch.models import Pipeline, PipelinePage, PipelineStatus, Project
from pipewatch.sources.base import BaseSource
from pipewatch.store import PipelineStore
from pipewatch.utils.retry import RetryPolicy

FIXTURES_DIR = Path(__file__).parent / "fixtures"

API_URL = "https://gitlab.test/api/v4"
NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def fixture_path() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def pipelines_payload() -> list[dict[str, Any]]:
    """GitLab pipeline listing page for project 7 (platform/api)."""
    return json.loads((FIXTURES_DIR / "gitlab_pipelines_page.json").read_text())


@pytest.fixture
def group_projects_payload() -> list[dict[str, Any]]:
    return json.loads((FIXTURES_DIR / "gitlab_group_projects.json").read_text())


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

API_PROJECT = Project(id=7, name="api", path="platform/api", group="platform")
WEB_PROJECT = Project(id=9, name="web", path="platform/frontend/web", group="platform")


def make_pipeline(
    pipeline_id: int,
    *,
    project: Project = API_PROJECT,
    created_at: datetime = T0,
    updated_at: datetime | None = None,
    status: PipelineStatus = PipelineStatus.SUCCESS,
    ref: str = "main",
    **overrides: Any,
) -> Pipeline:
    fields: dict[str, Any] = {
        "id": pipeline_id,
        "project_id": project.id,
        "project_name": project.name,
        "project_path": project.path,
        "ref": ref,
        "sha": f"{pipeline_id:040x}",
        "status": status,
        "created_at": created_at,
        "updated_at": updated_at or created_at + timedelta(minutes=5),
        "web_url": f"https://gitlab.test/{project.path}/-/pipelines/{pipeline_id}",
    }
    fields.update(overrides)
    return Pipeline(**fields)


@pytest.fixture
def store() -> Iterator[PipelineStore]:
    db = PipelineStore(":memory:")
    yield db
    db.close()


# ---------------------------------------------------------------------------
# In-memory source
# ---------------------------------------------------------------------------

class FakeSource(BaseSource):
    """
    Serves pipelines from memory, newest id first, page_size per page.

    failures[project_id] is a queue of exceptions raised by the next
    list_pipelines calls for that project, one per call.
    """

    name = "fake"

    def __init__(self, page_size: int = 2) -> None:
        super().__init__()
        self.page_size = page_size
        self.pipelines: dict[int, list[Pipeline]] = {}
        self.failures: dict[int, list[Exception]] = {}
        self.users: dict[int, str] = {}
        self.pipeline_authors: dict[int, tuple[int, str]] = {}
        self.user_errors: dict[int, Exception] = {}
        self.projects: dict[str, Project] = {}
        self.groups: dict[str, list[Project]] = {}
        self.list_calls: list[tuple[int, datetime | None, str | None]] = []
        self.author_calls: list[int] = []
        self.pipeline_author_calls: list[int] = []

    def add(self, *pipelines: Pipeline) -> None:
        for pipeline in pipelines:
            rows = [p for p in self.pipelines.get(pipeline.project_id, []) if p.id != pipeline.id]
            rows.append(pipeline)
            self.pipelines[pipeline.project_id] = rows

    async def list_pipelines(
        self,
        project: Project,
        since: datetime | None = None,
        cursor: str | None = None,
    ) -> PipelinePage:
        self.list_calls.append((project.id, since, cursor))
        queued = self.failures.get(project.id)
        if queued:
            raise queued.pop(0)

        rows = sorted(self.pipelines.get(project.id, []), key=lambda p: p.id, reverse=True)
        if since is not None:
            rows = [p for p in rows if p.last_seen_at >= since]
        page = int(cursor or "1")
        start = (page - 1) * self.page_size
        chunk = rows[start:start + self.page_size]
        has_more = start + self.page_size < len(rows)
        return PipelinePage(pipelines=chunk, next_cursor=str(page + 1) if has_more else None)

    async def fetch_author(self, user_id: int) -> str:
        self.author_calls.append(user_id)
        if user_id in self.user_errors:
            raise self.user_errors[user_id]
        if user_id not in self.users:
            raise NotFoundError(f"user {user_id}")
        return self.users[user_id]

    async def fetch_pipeline_author(self, project_id: int, pipeline_id: int) -> tuple[int, str]:
        self.pipeline_author_calls.append(pipeline_id)
        if pipeline_id not in self.pipeline_authors:
            raise NotFoundError(f"pipeline {pipeline_id}")
        return self.pipeline_authors[pipeline_id]

    async def get_project(self, ref: str) -> Project:
        if ref not in self.projects:
            raise NotFoundError(f"project {ref}")
        return self.projects[ref]

    async def list_group_projects(self, group: str) -> list[Project]:
        return list(self.groups.get(group, []))


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


# ---------------------------------------------------------------------------
# respx HTTP mock router
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_http():
    """
    Activate the respx mock router for all httpx requests.

    Usage in tests:
        def test_something(mock_http):
            mock_http.get(f"{API_URL}/users/1").mock(return_value=httpx.Response(200, json={...}))
    """
    with respx.mock(assert_all_called=False) as router:
        yield router
