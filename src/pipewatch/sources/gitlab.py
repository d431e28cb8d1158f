"""
sources/gitlab.py — GitLab REST v4 source adapter.

Endpoints:
  GET /projects/{id}/pipelines?order_by=id&sort=desc&per_page=N&page=P[&updated_after=ISO]
  GET /projects/{id}/pipelines/{pipeline_id}
  GET /users/{id}
  GET /projects/{id-or-url-encoded-path}
  GET /groups/{id-or-url-encoded-path}/projects?include_subgroups=true&archived=false

Pagination uses GitLab's offset headers: X-Next-Page holds the next page
number and is empty on the last page. The page number is the cursor handed
back to callers.

Status code mapping (the only place HTTP codes are interpreted):
  401/403 → AuthError         (never retried)
  404     → NotFoundError
  429     → RateLimitedError  (Retry-After honoured)
  5xx     → TransientError
  timeout / connection error → TransientError

Usage:
    async with GitLabSource() as source:
        page = await source.list_pipelines(project, since=cutoff)
        while not page.is_last:
            page = await source.list_pipelines(project, since=cutoff, cursor=page.next_cursor)
"""

from __future__ import annotations

from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from pipewatch.config import settings
from pipewatch.errors import AuthError, NotFoundError, RateLimitedError, TransientError
from pipewatch.models import PipelinePage, Project
from pipewatch.sources.base import BaseSource
from pipewatch.time_utils import utc_now
from pipewatch.transforms.normalize import to_pipelines
from pipewatch.utils.retry import RetryPolicy, call_with_retry

log = structlog.get_logger(__name__)


def _parse_retry_after(value: str | None) -> float | None:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max((when - utc_now()).total_seconds(), 0.0)


def _next_cursor(response: httpx.Response) -> str | None:
    value = response.headers.get("x-next-page", "").strip()
    return value or None


def _path_segment(ref: str) -> str:
    """Numeric ids pass through; namespace paths are URL-encoded."""
    return ref if ref.isdigit() else quote(ref, safe="")


class GitLabSource(BaseSource):
    """Pulls pipelines, users and projects from the GitLab REST API."""

    name = "GitLab"

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout: float | None = None,
        page_size: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__()
        self._base_url = (base_url or settings.gitlab_api_url).rstrip("/")
        self._token = token if token is not None else settings.gitlab_token
        self._timeout = timeout or settings.request_timeout_seconds
        self._page_size = page_size or settings.page_size
        self._retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.max_retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "GitLabSource":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=self._timeout,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send(self, path: str, params: dict[str, Any] | None) -> httpx.Response:
        """One HTTP attempt, with the response mapped onto pipewatch errors."""
        try:
            response = await self._http().get(path, params=params)
        except httpx.TimeoutException as exc:
            raise TransientError(f"GET {path} timed out after {self._timeout}s") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"GET {path} failed: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise AuthError(f"GET {path} rejected with HTTP {status}")
        if status == 404:
            raise NotFoundError(f"GET {path} returned 404")
        if status == 429:
            raise RateLimitedError(
                f"GET {path} rate limited",
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )
        if status >= 500:
            raise TransientError(f"GET {path} returned HTTP {status}")
        response.raise_for_status()
        return response

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        self._log.debug("gitlab_request", path=path, params=params)
        return await call_with_retry(self._send, path, params, policy=self._retry_policy)

    # ------------------------------------------------------------------
    # BaseSource interface
    # ------------------------------------------------------------------

    async def list_pipelines(
        self,
        project: Project,
        since: datetime | None = None,
        cursor: str | None = None,
    ) -> PipelinePage:
        params: dict[str, Any] = {
            "order_by": "id",
            "sort": "desc",
            "per_page": self._page_size,
            "page": cursor or "1",
        }
        if since is not None:
            params["updated_after"] = since.isoformat()

        response = await self._get(f"/projects/{project.id}/pipelines", params)
        items = response.json()
        if not isinstance(items, list):
            raise TransientError(f"Unexpected pipeline listing payload for project {project.id}")

        page = PipelinePage(pipelines=to_pipelines(items, project), next_cursor=_next_cursor(response))
        self._log.debug(
            "gitlab_pipeline_page",
            project_id=project.id,
            page=params["page"],
            items=len(items),
            next_page=page.next_cursor,
        )
        return page

    async def fetch_author(self, user_id: int) -> str:
        response = await self._get(f"/users/{user_id}")
        payload = response.json()
        name = payload.get("name") or payload.get("username")
        if not name:
            raise NotFoundError(f"User {user_id} has no display name")
        return name

    async def fetch_pipeline_author(self, project_id: int, pipeline_id: int) -> tuple[int, str]:
        response = await self._get(f"/projects/{project_id}/pipelines/{pipeline_id}")
        user = response.json().get("user") or {}
        if user.get("id") is None or not (user.get("name") or user.get("username")):
            raise NotFoundError(f"Pipeline {pipeline_id} has no author")
        return int(user["id"]), user.get("name") or user["username"]

    async def get_project(self, ref: str) -> Project:
        response = await self._get(f"/projects/{_path_segment(ref)}")
        return Project.from_api(response.json())

    async def list_group_projects(self, group: str) -> list[Project]:
        projects: list[Project] = []
        cursor: str | None = "1"
        while cursor is not None:
            response = await self._get(
                f"/groups/{_path_segment(group)}/projects",
                {
                    "include_subgroups": "true",
                    "archived": "false",
                    "per_page": self._page_size,
                    "page": cursor,
                },
            )
            projects.extend(Project.from_api(item, group=group) for item in response.json())
            cursor = _next_cursor(response)
        self._log.info("gitlab_group_projects", group=group, count=len(projects))
        return projects
