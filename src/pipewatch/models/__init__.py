"""
pipewatch.models — Pydantic models matching each DuckDB table and read view.

These models are used by:
- sources: parse GitLab responses into validated records
- store:   rows in and out of DuckDB
- ingest:  pages and batches passed between components

Table models provide:
  .from_db_row(row: dict) -> Model
  .to_insert_dict() -> dict
"""

from pipewatch.models.pipeline import (
    FINISHED_STATUSES,
    Pipeline,
    PipelineFilter,
    PipelinePage,
    PipelineStatus,
)
from pipewatch.models.project import Project
from pipewatch.models.stats import AggregateStats, ProjectStats

__all__ = [
    "FINISHED_STATUSES",
    "Pipeline",
    "PipelineFilter",
    "PipelinePage",
    "PipelineStatus",
    "Project",
    "AggregateStats",
    "ProjectStats",
]
