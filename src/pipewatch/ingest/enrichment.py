"""
ingest/enrichment.py — Author-name backfill for stored pipelines.

GitLab's pipeline listing carries the triggering user only sometimes, so
rows can land in the store with no author name. The worker periodically
drains that queue:

  - rows with an author_id resolve through GET /users/{id}
    (one request per distinct user per tick)
  - rows without one resolve through GET /projects/{p}/pipelines/{id}

A lookup that 404s is handled per the configured policy:

  mark   the row is flagged unresolved and never retried
  retry  the failure time is recorded and the row comes back into the
         queue once enrichment_retry_after_seconds have passed

Transient failures leave the row untouched for the next tick. Each name is
written with its own small UPDATE, so stats queries never wait on a batch.

Usage:
    worker = EnrichmentWorker(source, store, interval=30, batch_size=100)
    await worker.run(stop_event)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

from pipewatch.errors import AuthError, NotFoundError, RetryableError, StorageError
from pipewatch.models import Pipeline
from pipewatch.sources.base import BaseSource
from pipewatch.store import PipelineStore
from pipewatch.time_utils import utc_now
from pipewatch.utils.logging import get_logger
from pipewatch.utils.scheduling import wait_for_next_tick

log = get_logger(__name__, component="enrichment")

NotFoundPolicy = Literal["mark", "retry"]


@dataclass
class EnrichmentReport:
    candidates: int = 0
    resolved: int = 0
    unresolved: int = 0
    failed: int = 0


class EnrichmentWorker:
    def __init__(
        self,
        source: BaseSource,
        store: PipelineStore,
        *,
        interval: float = 30,
        batch_size: int = 100,
        concurrency: int = 5,
        not_found_policy: NotFoundPolicy = "mark",
        retry_after: float = 86400,
    ) -> None:
        if not_found_policy not in ("mark", "retry"):
            raise ValueError(f"Unknown not-found policy: {not_found_policy!r}")
        self._source = source
        self._store = store
        self._interval = interval
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._policy = not_found_policy
        self._retry_after = timedelta(seconds=retry_after)

    async def run(self, stop: asyncio.Event) -> None:
        log.info("enrichment_start", interval_s=self._interval, policy=self._policy)
        while not stop.is_set():
            try:
                report = await self.tick()
            except AuthError as exc:
                log.error("enrichment_auth_failed", error=str(exc))
            except Exception as exc:
                log.error("enrichment_tick_failed", error=str(exc), exc_info=True)
            else:
                # A full batch means more work is queued; go again immediately
                if report.candidates >= self._batch_size and report.resolved:
                    continue
            await wait_for_next_tick(self._interval, stop)
        log.info("enrichment_stopped")

    async def tick(self) -> EnrichmentReport:
        """
        Resolve up to batch_size pipelines missing an author name.

        Raises:
            AuthError: the token was rejected; the remaining rows are left
                for a later tick.
        """
        retry_before = utc_now() - self._retry_after if self._policy == "retry" else None
        candidates = await asyncio.to_thread(
            self._store.find_pipelines_missing_enrichment,
            self._batch_size,
            retry_before=retry_before,
        )
        report = EnrichmentReport(candidates=len(candidates))
        if not candidates:
            return report

        semaphore = asyncio.Semaphore(self._concurrency)
        user_names: dict[int, asyncio.Task[str]] = {}
        rejected: list[AuthError] = []

        async def remote(call, *args):
            async with semaphore:
                # Once the token is rejected, queued lookups are not sent
                if rejected:
                    raise rejected[0]
                try:
                    return await call(*args)
                except AuthError as exc:
                    rejected.append(exc)
                    raise

        def lookup_user(author_id: int) -> asyncio.Task[str]:
            if author_id not in user_names:
                user_names[author_id] = asyncio.ensure_future(
                    remote(self._source.fetch_author, author_id)
                )
            return user_names[author_id]

        async def enrich(pipeline: Pipeline) -> None:
            try:
                if pipeline.author_id is not None:
                    author_id = pipeline.author_id
                    name = await lookup_user(author_id)
                else:
                    author_id, name = await remote(
                        self._source.fetch_pipeline_author, pipeline.project_id, pipeline.id
                    )
                await asyncio.to_thread(self._store.set_author_name, pipeline.id, author_id, name)
                report.resolved += 1
            except NotFoundError as exc:
                await asyncio.to_thread(
                    self._store.mark_author_unresolved,
                    pipeline.id,
                    permanent=self._policy == "mark",
                )
                report.unresolved += 1
                log.info(
                    "enrichment_author_not_found",
                    pipeline_id=pipeline.id,
                    policy=self._policy,
                    error=str(exc),
                )
            except (RetryableError, StorageError) as exc:
                report.failed += 1
                log.warning("enrichment_lookup_failed", pipeline_id=pipeline.id, error=str(exc))

        tasks = [asyncio.ensure_future(enrich(p)) for p in candidates]
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            for task in list(user_names.values()):
                if not task.done():
                    task.cancel()

        errors = [r for r in results if isinstance(r, BaseException)]
        auth_errors = [e for e in errors if isinstance(e, AuthError)]
        log.info(
            "enrichment_tick_complete",
            candidates=report.candidates,
            resolved=report.resolved,
            unresolved=report.unresolved,
            failed=report.failed + len(errors),
        )
        if auth_errors:
            raise auth_errors[0]
        if errors:
            raise errors[0]
        return report
