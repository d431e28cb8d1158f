"""
transforms/normalize.py — GitLab pipeline JSON → Pipeline records.

The REST listing endpoint returns one object per pipeline:

    {
      "id": 1024, "project_id": 7, "sha": "a91…", "ref": "main",
      "status": "success", "created_at": "2024-05-01T12:00:00.000Z",
      "updated_at": "2024-05-01T12:07:10.000Z",
      "finished_at": "2024-05-01T12:07:09.000Z", "duration": 429,
      "user": {"id": 12, "name": "Ada Lovelace"},
      "web_url": "https://gitlab.example.com/group/api/-/pipelines/1024"
    }

Only id/ref/status/created_at are guaranteed; the remaining fields vary
across GitLab versions and endpoints, so every optional field degrades to
None. When duration is missing but both timestamps exist, it is derived
from finished_at - created_at.

Usage:
    from pipewatch.transforms.normalize import BranchFilter, to_pipeline

    pipeline = to_pipeline(item, project)
    kept = BranchFilter(r"^(main|release/.*)$").apply(pipelines)
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from pipewatch.models import Pipeline, PipelineStatus, Project
from pipewatch.time_utils import parse_timestamp

log = structlog.get_logger(__name__)


def derive_duration(
    duration: Any,
    created_at: datetime | None,
    finished_at: datetime | None,
) -> int | None:
    """Return GitLab's duration, or finished - created when it is positive."""
    if duration is not None:
        return max(int(duration), 0)
    if created_at is not None and finished_at is not None:
        seconds = int((finished_at - created_at).total_seconds())
        return seconds if seconds > 0 else None
    return None


def to_pipeline(payload: dict[str, Any], project: Project) -> Pipeline:
    """
    Build a Pipeline from one GitLab API object.

    Raises:
        ValueError / ValidationError when required fields are missing or
        the timestamps are inconsistent.
    """
    created_at = parse_timestamp(payload.get("created_at"))
    finished_at = parse_timestamp(payload.get("finished_at"))
    user = payload.get("user") or {}

    return Pipeline(
        id=payload["id"],
        project_id=payload.get("project_id") or project.id,
        project_name=project.name,
        project_path=project.path,
        ref=payload.get("ref") or "",
        sha=payload.get("sha"),
        status=PipelineStatus.normalize(payload.get("status")),
        created_at=created_at,
        updated_at=parse_timestamp(payload.get("updated_at")),
        finished_at=finished_at,
        duration=derive_duration(payload.get("duration"), created_at, finished_at),
        author_id=user.get("id"),
        author_name=user.get("name") or None,
        web_url=payload.get("web_url"),
    )


def to_pipelines(items: Iterable[dict[str, Any]], project: Project) -> list[Pipeline]:
    """Convert a page of API objects, skipping (and logging) malformed ones."""
    pipelines: list[Pipeline] = []
    for item in items:
        try:
            pipelines.append(to_pipeline(item, project))
        except (KeyError, ValueError, ValidationError) as exc:
            log.warning(
                "pipeline_payload_skipped",
                project_id=project.id,
                pipeline_id=item.get("id"),
                error=str(exc),
            )
    return pipelines


def batch_watermark(pipelines: Iterable[Pipeline]) -> datetime | None:
    """Greatest last-seen timestamp in a batch, or None for an empty batch."""
    return max((p.last_seen_at for p in pipelines), default=None)


class BranchFilter:
    """Keeps only pipelines whose ref matches a regex. No pattern keeps all."""

    def __init__(self, pattern: str | None = None) -> None:
        self.pattern = pattern
        self._regex = re.compile(pattern) if pattern else None

    def matches(self, ref: str) -> bool:
        return self._regex is None or self._regex.search(ref) is not None

    def apply(self, pipelines: Iterable[Pipeline]) -> list[Pipeline]:
        return [p for p in pipelines if self.matches(p.ref)]
