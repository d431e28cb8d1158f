"""
ingest/poller.py — Steady-state incremental sync.

Every poll_interval seconds, for every project (concurrently, one lane per
project):

  1. since = stored watermark - overlap, or now - overlap when the project
     has no watermark yet
  2. page through GET /projects/{id}/pipelines?updated_after=since
  3. upsert each page as it arrives, then advance the watermark once to
     the newest updated_at seen, after the last page has committed

The overlap re-fetches a trailing window of pipelines that are already
stored; upsert idempotence absorbs them. A failing project is logged and
picked up again next tick. It never stops the other projects or the loop.

Usage:
    poller = Poller(source, store, projects, interval=60, overlap=300)
    await poller.run(stop_event)
    poller.request_refresh()   # wake the loop before the interval elapses
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pipewatch.ingest.lanes import ProjectLanes
from pipewatch.models import Project
from pipewatch.sources.base import BaseSource
from pipewatch.store import PipelineStore
from pipewatch.time_utils import utc_now
from pipewatch.transforms.normalize import BranchFilter, batch_watermark
from pipewatch.utils.logging import get_logger
from pipewatch.utils.scheduling import wait_for_next_tick

log = get_logger(__name__, component="poller")


@dataclass
class TickReport:
    tick: int
    upserted: dict[int, int] = field(default_factory=dict)
    failed: dict[int, str] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.failed


class Poller:
    def __init__(
        self,
        source: BaseSource,
        store: PipelineStore,
        projects: list[Project],
        *,
        interval: float,
        overlap: float,
        lanes: ProjectLanes | None = None,
        branch_filter: BranchFilter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._store = store
        self._projects = projects
        self._interval = interval
        self._overlap = timedelta(seconds=overlap)
        self._lanes = lanes or ProjectLanes()
        self._branch_filter = branch_filter or BranchFilter()
        self._clock = clock
        self._refresh = asyncio.Event()
        self._ticks = 0

    @property
    def lanes(self) -> ProjectLanes:
        return self._lanes

    def request_refresh(self) -> None:
        """Start the next tick now instead of after the interval."""
        self._refresh.set()

    async def run(self, stop: asyncio.Event) -> None:
        log.info("poller_start", projects=len(self._projects), interval_s=self._interval)
        while not stop.is_set():
            try:
                await self.tick()
            except Exception as exc:
                log.error("poll_tick_failed", error=str(exc), exc_info=True)
            if stop.is_set():
                break
            if await wait_for_next_tick(self._interval, stop, self._refresh):
                if self._refresh.is_set() and not stop.is_set():
                    log.info("poll_refresh_requested")
            self._refresh.clear()
        log.info("poller_stopped", ticks=self._ticks)

    async def tick(self) -> TickReport:
        """Poll every project once."""
        self._ticks += 1
        report = TickReport(tick=self._ticks)
        t0 = time.monotonic()
        await asyncio.gather(*(self._poll_guarded(project, report) for project in self._projects))
        report.duration_ms = int((time.monotonic() - t0) * 1000)
        log.info(
            "poll_tick_complete",
            tick=report.tick,
            upserted=sum(report.upserted.values()),
            failed_projects=len(report.failed),
            duration_ms=report.duration_ms,
        )
        return report

    async def _poll_guarded(self, project: Project, report: TickReport) -> None:
        try:
            report.upserted[project.id] = await self.poll_project(project)
        except Exception as exc:
            report.failed[project.id] = str(exc)
            log.error(
                "poll_project_failed",
                project_id=project.id,
                project=project.path,
                error=str(exc),
                exc_info=True,
            )

    async def poll_project(self, project: Project) -> int:
        """Fetch everything updated since the project's watermark. Returns rows upserted."""
        async with self._lanes.hold(project.id):
            watermark = await asyncio.to_thread(self._store.get_watermark, project.id)
            since = (watermark or self._clock()) - self._overlap
            project_log = log.bind(project_id=project.id, project=project.path)
            project_log.debug("poll_project_start", since=since.isoformat())

            upserted = 0
            newest: datetime | None = None
            cursor: str | None = None
            while True:
                page = await self._source.list_pipelines(project, since=since, cursor=cursor)
                batch = self._branch_filter.apply(page.pipelines)
                if batch:
                    upserted += await asyncio.to_thread(self._store.upsert_pipelines, batch)
                    seen = batch_watermark(batch)
                    newest = seen if newest is None else max(newest, seen)
                if page.is_last:
                    break
                cursor = page.next_cursor

            # Pages arrive newest first, so the watermark waits for the last one
            if newest is not None:
                await asyncio.to_thread(self._store.advance_watermark, project.id, newest)

            if upserted:
                project_log.info("poll_project_synced", upserted=upserted)
            return upserted
