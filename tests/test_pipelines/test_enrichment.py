"""
tests/test_pipelines/test_enrichment.py — EnrichmentWorker lookups and policies.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import FakeSource, make_pipeline
from pipewatch.errors import AuthError, TransientError
from pipewatch.ingest.enrichment import EnrichmentWorker
from pipewatch.store import PipelineStore
from pipewatch.time_utils import utc_now


def _author_names(store: PipelineStore) -> dict[int, str | None]:
    return {p.id: p.author_name for p in store.list_pipelines(limit=1000)}


class TestEnrichmentTick:
    @pytest.mark.asyncio
    async def test_resolves_by_user_id_once_per_user(self, store: PipelineStore):
        store.upsert_pipelines([
            make_pipeline(1, author_id=12),
            make_pipeline(2, author_id=12),
            make_pipeline(3, author_id=33),
        ])
        source = FakeSource()
        source.users = {12: "Ada Lovelace", 33: "Grace Hopper"}

        report = await EnrichmentWorker(source, store).tick()

        assert report.resolved == 3
        assert sorted(source.author_calls) == [12, 33]
        assert _author_names(store) == {1: "Ada Lovelace", 2: "Ada Lovelace", 3: "Grace Hopper"}
        assert store.find_pipelines_missing_enrichment(10) == []

    @pytest.mark.asyncio
    async def test_falls_back_to_pipeline_detail(self, store: PipelineStore):
        store.upsert_pipelines([make_pipeline(1)])
        source = FakeSource()
        source.pipeline_authors = {1: (44, "Linus")}

        report = await EnrichmentWorker(source, store).tick()

        assert report.resolved == 1
        assert source.pipeline_author_calls == [1]
        (stored,) = store.list_pipelines()
        assert stored.author_name == "Linus"
        assert stored.author_id == 44

    @pytest.mark.asyncio
    async def test_respects_batch_size(self, store: PipelineStore):
        store.upsert_pipelines([make_pipeline(i, author_id=i) for i in range(1, 6)])
        source = FakeSource()
        source.users = {i: f"user {i}" for i in range(1, 6)}

        report = await EnrichmentWorker(source, store, batch_size=2).tick()

        assert report.candidates == 2
        assert len(store.find_pipelines_missing_enrichment(10)) == 3

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successes(self, store: PipelineStore):
        store.upsert_pipelines([make_pipeline(1, author_id=12), make_pipeline(2, author_id=99)])
        source = FakeSource()
        source.users = {12: "Ada Lovelace"}
        source.user_errors = {99: TransientError("retries exhausted")}

        report = await EnrichmentWorker(source, store).tick()

        assert report.resolved == 1
        assert report.failed == 1
        assert _author_names(store) == {1: "Ada Lovelace", 2: None}
        # Transient failures stay in the queue for the next tick
        assert [p.id for p in store.find_pipelines_missing_enrichment(10)] == [2]

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self, store: PipelineStore):
        store.upsert_pipelines([make_pipeline(1, author_id=12), make_pipeline(2, author_id=33)])
        source = FakeSource()
        source.users = {33: "Grace Hopper"}
        source.user_errors = {12: AuthError("401")}

        with pytest.raises(AuthError):
            await EnrichmentWorker(source, store, concurrency=1).tick()
        # Lookups queued behind the rejected one are never sent
        assert source.author_calls == [12]
        assert [p.id for p in store.find_pipelines_missing_enrichment(10)] == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_queue(self, store: PipelineStore):
        source = FakeSource()
        report = await EnrichmentWorker(source, store).tick()
        assert report.candidates == 0
        assert source.author_calls == []


class TestNotFoundPolicy:
    @pytest.mark.asyncio
    async def test_mark_policy_never_retries(self, store: PipelineStore):
        store.upsert_pipelines([make_pipeline(1, author_id=404)])
        source = FakeSource()
        worker = EnrichmentWorker(source, store, not_found_policy="mark", retry_after=0)

        first = await worker.tick()
        second = await worker.tick()

        assert first.unresolved == 1
        assert second.candidates == 0
        assert source.author_calls == [404]
        assert store.find_pipelines_missing_enrichment(10, retry_before=utc_now()) == []

    @pytest.mark.asyncio
    async def test_retry_policy_waits_then_retries(self, store: PipelineStore):
        store.upsert_pipelines([make_pipeline(1, author_id=404)])
        source = FakeSource()
        worker = EnrichmentWorker(source, store, not_found_policy="retry", retry_after=3600)

        first = await worker.tick()
        second = await worker.tick()

        assert first.unresolved == 1
        assert second.candidates == 0

        # Once the retry window has passed the row is eligible again
        store.mark_author_unresolved(1, permanent=False, at=utc_now() - timedelta(hours=2))
        source.users = {404: "Back Again"}
        third = await worker.tick()

        assert third.resolved == 1
        assert _author_names(store) == {1: "Back Again"}

    def test_unknown_policy_rejected(self, store: PipelineStore):
        with pytest.raises(ValueError):
            EnrichmentWorker(FakeSource(), store, not_found_policy="ignore")  # type: ignore[arg-type]


class TestEnrichmentLoop:
    @pytest.mark.asyncio
    async def test_stats_stay_readable_during_enrichment(self, store: PipelineStore):
        store.upsert_pipelines([make_pipeline(i, author_id=i) for i in range(1, 21)])
        lookup_started = asyncio.Event()
        release = asyncio.Event()

        class SlowSource(FakeSource):
            async def fetch_author(self, user_id: int) -> str:
                lookup_started.set()
                await release.wait()
                return f"user {user_id}"

        worker = EnrichmentWorker(SlowSource(), store, concurrency=2)
        task = asyncio.create_task(worker.tick())
        await asyncio.wait_for(lookup_started.wait(), timeout=1)

        stats = store.query_aggregate_stats()
        assert stats.total_count == 20

        release.set()
        report = await asyncio.wait_for(task, timeout=5)
        assert report.resolved == 20

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, store: PipelineStore):
        source = FakeSource()
        stop = asyncio.Event()
        worker = EnrichmentWorker(source, store, interval=3600)

        task = asyncio.create_task(worker.run(stop))
        await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert task.done()
