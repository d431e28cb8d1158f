"""
ingest/backfill.py — Historical import that gates readiness.

State machine:

    IDLE → CHECKING → SKIPPED → READY
                    ↘ RUNNING → READY

The "is this the first run" question is answered exactly once, before the
coordinator exists, by BackfillDecision.evaluate() and handed in as an
immutable value. If the store already held pipelines, or no window is
configured, the coordinator skips straight to READY.

While RUNNING, every project is paged newest-first from now back to
now - backfill_days. Each page is upserted in one transaction and only then
is the project's watermark advanced. Pagination for a project stops at the
last page or at the first page that reaches past the cutoff.

Any project failing (auth, exhausted retries, storage) raises BackfillError
and the readiness signal is never fired: a partially backfilled system must
not go live.

Usage:
    decision = BackfillDecision.evaluate(store, settings.backfill_days)
    coordinator = BackfillCoordinator(source, store, projects, decision, readiness)
    report = await coordinator.run()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from pipewatch.errors import BackfillError
from pipewatch.ingest.readiness import ReadinessSignal
from pipewatch.models import Project
from pipewatch.sources.base import BaseSource
from pipewatch.store import PipelineStore
from pipewatch.time_utils import utc_now
from pipewatch.transforms.normalize import BranchFilter, batch_watermark
from pipewatch.utils.logging import get_logger

log = get_logger(__name__, component="backfill")


class BackfillState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    SKIPPED = "skipped"
    RUNNING = "running"
    READY = "ready"


@dataclass(frozen=True)
class BackfillDecision:
    """Startup facts the coordinator acts on. Computed once per process."""

    store_was_empty: bool
    backfill_days: int | None

    @property
    def required(self) -> bool:
        return self.store_was_empty and bool(self.backfill_days)

    @classmethod
    def evaluate(cls, store: PipelineStore, backfill_days: int | None) -> "BackfillDecision":
        decision = cls(store_was_empty=store.is_empty(), backfill_days=backfill_days)
        log.info(
            "backfill_decision",
            store_was_empty=decision.store_was_empty,
            backfill_days=backfill_days,
            required=decision.required,
        )
        return decision


@dataclass
class BackfillReport:
    skipped: bool = False
    cutoff: datetime | None = None
    records_loaded: dict[int, int] = field(default_factory=dict)
    pages_committed: int = 0
    duration_ms: int = 0

    @property
    def total_loaded(self) -> int:
        return sum(self.records_loaded.values())


class BackfillCoordinator:
    """Drives the mandatory historical import and fires readiness when done."""

    def __init__(
        self,
        source: BaseSource,
        store: PipelineStore,
        projects: list[Project],
        decision: BackfillDecision,
        readiness: ReadinessSignal,
        *,
        concurrency: int = 4,
        branch_filter: BranchFilter | None = None,
    ) -> None:
        self._source = source
        self._store = store
        self._projects = projects
        self._decision = decision
        self._readiness = readiness
        self._semaphore = asyncio.Semaphore(concurrency)
        self._branch_filter = branch_filter or BranchFilter()
        self.state = BackfillState.IDLE
        self.history: list[BackfillState] = [BackfillState.IDLE]

    def _transition(self, state: BackfillState) -> None:
        log.info("backfill_state", previous=self.state.value, state=state.value)
        self.state = state
        self.history.append(state)

    async def run(self) -> BackfillReport:
        """
        Run the state machine to READY.

        Raises:
            BackfillError: a project could not be backfilled. The state stays
                RUNNING and readiness is not fired.
        """
        report = BackfillReport()
        t0 = time.monotonic()
        self._transition(BackfillState.CHECKING)

        if not self._decision.required:
            self._transition(BackfillState.SKIPPED)
            report.skipped = True
            self._finish(report, t0)
            return report

        self._transition(BackfillState.RUNNING)
        cutoff = utc_now() - timedelta(days=self._decision.backfill_days or 0)
        report.cutoff = cutoff
        log.info(
            "backfill_start",
            projects=len(self._projects),
            cutoff=cutoff.isoformat(),
        )

        results = await asyncio.gather(
            *(self._backfill_project(project, cutoff, report) for project in self._projects),
            return_exceptions=True,
        )
        failures = [
            (project, result)
            for project, result in zip(self._projects, results)
            if isinstance(result, BaseException)
        ]
        for project, exc in failures:
            log.error("backfill_project_failed", project=project.path, error=str(exc))
        if failures:
            project, exc = failures[0]
            raise BackfillError(project.path, exc) from exc

        self._finish(report, t0)
        return report

    def _finish(self, report: BackfillReport, t0: float) -> None:
        report.duration_ms = int((time.monotonic() - t0) * 1000)
        self._transition(BackfillState.READY)
        log.info(
            "backfill_complete",
            skipped=report.skipped,
            records_loaded=report.total_loaded,
            pages=report.pages_committed,
            duration_ms=report.duration_ms,
        )
        self._readiness.fire()

    async def _backfill_project(
        self, project: Project, cutoff: datetime, report: BackfillReport
    ) -> int:
        project_log = log.bind(project_id=project.id, project=project.path)
        loaded = 0
        cursor: str | None = None

        async with self._semaphore:
            project_log.info("backfill_project_start")
            while True:
                page = await self._source.list_pipelines(project, since=cutoff, cursor=cursor)
                in_window = [p for p in page.pipelines if p.created_at >= cutoff]
                reached_cutoff = len(in_window) < len(page.pipelines)
                batch = self._branch_filter.apply(in_window)

                if batch:
                    loaded += await asyncio.to_thread(self._store.upsert_pipelines, batch)
                    await asyncio.to_thread(
                        self._store.advance_watermark, project.id, batch_watermark(batch)
                    )
                    report.pages_committed += 1
                    project_log.debug("backfill_page_committed", upserted=len(batch), cursor=cursor)

                if reached_cutoff or page.is_last:
                    break
                cursor = page.next_cursor

        report.records_loaded[project.id] = loaded
        project_log.info("backfill_project_complete", records_loaded=loaded)
        return loaded
