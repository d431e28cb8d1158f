"""
tests/test_transforms/test_normalize.py — Tests for GitLab payload normalization.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from conftest import API_PROJECT, T0, make_pipeline
from pipewatch.models import PipelineStatus
from pipewatch.time_utils import parse_timestamp
from pipewatch.transforms.normalize import (
    BranchFilter,
    batch_watermark,
    derive_duration,
    to_pipeline,
    to_pipelines,
)


class TestToPipeline:
    def test_full_payload(self, pipelines_payload):
        pipeline = to_pipeline(pipelines_payload[0], API_PROJECT)

        assert pipeline.id == 1024
        assert pipeline.project_id == 7
        assert pipeline.project_name == "api"
        assert pipeline.ref == "main"
        assert pipeline.status is PipelineStatus.SUCCESS
        assert pipeline.created_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert pipeline.duration == 429
        assert pipeline.author_id == 12
        assert pipeline.author_name == "Ada Lovelace"

    def test_project_id_falls_back_to_project(self):
        payload = {"id": 1, "ref": "main", "status": "running", "created_at": "2024-05-01T12:00:00Z"}
        pipeline = to_pipeline(payload, API_PROJECT)
        assert pipeline.project_id == API_PROJECT.id
        assert pipeline.author_id is None
        assert pipeline.duration is None

    def test_finished_before_created_is_rejected(self):
        payload = {
            "id": 1,
            "ref": "main",
            "status": "success",
            "created_at": "2024-05-01T12:00:00Z",
            "finished_at": "2024-05-01T11:00:00Z",
        }
        with pytest.raises(ValidationError):
            to_pipeline(payload, API_PROJECT)

    def test_to_pipelines_skips_bad_items(self, pipelines_payload):
        items = [{"ref": "main"}, *pipelines_payload, {"id": 5, "created_at": "not a date"}]
        assert [p.id for p in to_pipelines(items, API_PROJECT)] == [1024, 1023, 1022]


class TestStatusNormalization:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("success", PipelineStatus.SUCCESS),
            ("FAILED", PipelineStatus.FAILED),
            ("canceled", PipelineStatus.CANCELED),
            ("created", PipelineStatus.PENDING),
            ("waiting_for_resource", PipelineStatus.PENDING),
            ("preparing", PipelineStatus.PENDING),
            ("scheduled", PipelineStatus.PENDING),
            ("manual", PipelineStatus.OTHER),
            (None, PipelineStatus.OTHER),
        ],
    )
    def test_normalize(self, raw, expected):
        assert PipelineStatus.normalize(raw) is expected


class TestDerivedFields:
    def test_duration_prefers_api_value(self):
        assert derive_duration(30, T0, T0 + timedelta(minutes=5)) == 30

    def test_duration_from_timestamps(self):
        assert derive_duration(None, T0, T0 + timedelta(minutes=5)) == 300

    def test_duration_unknown_without_finish(self):
        assert derive_duration(None, T0, None) is None

    def test_parse_timestamp_offsets(self):
        assert parse_timestamp("2024-05-01T14:00:00+02:00") == T0
        assert parse_timestamp("") is None
        with pytest.raises(ValueError):
            parse_timestamp("yesterday-ish")

    def test_batch_watermark(self):
        batch = [
            make_pipeline(1, updated_at=T0 + timedelta(minutes=30)),
            make_pipeline(2, created_at=T0 + timedelta(minutes=10)),
        ]
        assert batch_watermark(batch) == T0 + timedelta(minutes=30)
        assert batch_watermark([]) is None


class TestBranchFilter:
    def test_no_pattern_keeps_everything(self):
        pipelines = [make_pipeline(1, ref="main"), make_pipeline(2, ref="feature/x")]
        assert BranchFilter().apply(pipelines) == pipelines

    def test_pattern_is_searched(self):
        branch_filter = BranchFilter(r"^(main|release/.*)$")
        assert branch_filter.matches("main")
        assert branch_filter.matches("release/2.1")
        assert not branch_filter.matches("feature/main-menu")
