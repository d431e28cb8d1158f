"""
tests/test_pipelines/test_engine.py — IngestionEngine wiring: discovery,
startup gating and shutdown.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import API_PROJECT, WEB_PROJECT, FakeSource, make_pipeline
from pipewatch.config import Settings
from pipewatch.errors import AuthError, BackfillError, TransientError
from pipewatch.ingest.backfill import BackfillState
from pipewatch.ingest.engine import IngestionEngine
from pipewatch.models import PipelinePage, Project
from pipewatch.store import PipelineStore
from pipewatch.time_utils import utc_now


def _settings(**overrides) -> Settings:
    values = {
        "gitlab_url": "https://gitlab.test",
        "gitlab_token": "t",
        "monitored_projects": "platform/api",
        "monitored_groups": "",
        "backfill_days": 30,
        "poll_interval_seconds": 3600,
        "enrichment_interval_seconds": 3600,
    }
    values.update(overrides)
    return Settings(**values)


def _source() -> FakeSource:
    source = FakeSource()
    source.projects = {"platform/api": API_PROJECT}
    source.groups = {"platform": [API_PROJECT, WEB_PROJECT]}
    return source


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_projects_and_groups_are_deduplicated(self, store: PipelineStore):
        engine = IngestionEngine(
            _settings(monitored_groups="platform"), source=_source(), store=store
        )

        projects = await engine.discover_projects()

        assert [p.id for p in projects] == [API_PROJECT.id, WEB_PROJECT.id]
        assert [p.path for p in store.list_projects()] == ["platform/api", "platform/frontend/web"]

    @pytest.mark.asyncio
    async def test_auth_error_is_fatal(self, store: PipelineStore):
        class Rejecting(FakeSource):
            async def get_project(self, ref: str) -> Project:
                raise AuthError("403")

        engine = IngestionEngine(_settings(), source=Rejecting(), store=store)
        with pytest.raises(AuthError):
            await engine.start()
        assert not engine.readiness.is_ready


class TestStartup:
    @pytest.mark.asyncio
    async def test_start_backfills_and_fires_readiness(self, store: PipelineStore):
        source = _source()
        source.add(make_pipeline(1, created_at=utc_now() - timedelta(days=1)))
        engine = IngestionEngine(_settings(), source=source, store=store)

        report = await engine.start()

        assert not report.skipped
        assert engine.readiness.is_ready
        assert store.count_pipelines() == 1

    @pytest.mark.asyncio
    async def test_backfill_failure_propagates(self, store: PipelineStore):
        source = _source()
        source.failures[API_PROJECT.id] = [TransientError("down")]
        engine = IngestionEngine(_settings(), source=source, store=store)

        with pytest.raises(BackfillError):
            await engine.run()
        assert not engine.readiness.is_ready
        assert engine.poller is None

    @pytest.mark.asyncio
    async def test_zero_backfill_days_skips(self, store: PipelineStore):
        source = _source()
        source.add(make_pipeline(1, created_at=utc_now() - timedelta(days=1)))
        engine = IngestionEngine(_settings(backfill_days=0), source=source, store=store)

        report = await engine.start()

        assert report.skipped
        assert engine.readiness.is_ready
        assert store.is_empty()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_during_backfill_is_deferred(self, store: PipelineStore):
        entered = asyncio.Event()
        release = asyncio.Event()

        class Blocking(FakeSource):
            async def list_pipelines(self, project, since=None, cursor=None) -> PipelinePage:
                entered.set()
                await release.wait()
                return await super().list_pipelines(project, since, cursor)

        source = Blocking()
        source.projects = {"platform/api": API_PROJECT}
        source.add(make_pipeline(1, created_at=utc_now() - timedelta(hours=1)))
        engine = IngestionEngine(_settings(), source=source, store=store)

        task = asyncio.create_task(engine.run())
        await asyncio.wait_for(entered.wait(), timeout=1)
        assert engine.coordinator.state is BackfillState.RUNNING

        engine.request_shutdown()
        assert engine.shutdown_requested
        await asyncio.sleep(0.01)
        assert not task.done()

        release.set()
        await asyncio.wait_for(task, timeout=2)

        # The backfill finished and the loops never started
        assert engine.readiness.is_ready
        assert store.count_pipelines() == 1
        assert engine.poller is None

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_loops(self, store: PipelineStore):
        source = _source()
        engine = IngestionEngine(_settings(backfill_days=None), source=source, store=store)

        task = asyncio.create_task(engine.run())
        await asyncio.wait_for(engine.readiness.wait(), timeout=1)
        await asyncio.sleep(0.01)
        assert engine.poller is not None

        engine.request_shutdown()
        await asyncio.wait_for(task, timeout=1)
        assert task.done()
