"""
models/stats.py — Read models for the aggregate views.
"""

from __future__ import annotations

from pydantic import BaseModel


class AggregateStats(BaseModel):
    total_count: int = 0
    avg_duration: float = 0.0  # seconds, over pipelines with a duration
    success_rate: float = 0.0  # percent of finished pipelines that succeeded


class ProjectStats(BaseModel):
    project_name: str
    project_path: str | None = None
    count: int
    avg_duration: float
    last_status: str
