"""
ingest/engine.py — Wires the ingestion components into one process.

Startup is strictly sequential:

  1. BackfillDecision.evaluate()  — is the store empty? (asked once)
  2. discover_projects()           — configured projects + group members
  3. BackfillCoordinator.run()     — mandatory import, fires readiness
  4. Poller + EnrichmentWorker     — run side by side until shutdown

A failure in steps 1-3 is fatal and propagates to the caller (the CLI exits
non-zero). Failures inside the loops in step 4 are logged per tick and never
stop the process.

Usage:
    engine = IngestionEngine(settings)
    try:
        await engine.run()
    finally:
        await engine.aclose()
"""

from __future__ import annotations

import asyncio

from pipewatch.config import Settings
from pipewatch.ingest.backfill import (
    BackfillCoordinator,
    BackfillDecision,
    BackfillReport,
    BackfillState,
)
from pipewatch.ingest.enrichment import EnrichmentWorker
from pipewatch.ingest.lanes import ProjectLanes
from pipewatch.ingest.poller import Poller
from pipewatch.ingest.readiness import ReadinessSignal
from pipewatch.models import Project
from pipewatch.sources.base import BaseSource
from pipewatch.sources.gitlab import GitLabSource
from pipewatch.store import PipelineStore
from pipewatch.transforms.normalize import BranchFilter
from pipewatch.utils.logging import get_logger
from pipewatch.utils.retry import RetryPolicy

log = get_logger(__name__, component="engine")


class IngestionEngine:
    def __init__(
        self,
        settings: Settings,
        source: BaseSource | None = None,
        store: PipelineStore | None = None,
    ) -> None:
        self.settings = settings
        self.source = source or GitLabSource(
            settings.gitlab_api_url,
            settings.gitlab_token,
            timeout=settings.request_timeout_seconds,
            page_size=settings.page_size,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_retry_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
        )
        self.store = store or PipelineStore(settings.duckdb_path)
        self.readiness = ReadinessSignal()
        self.lanes = ProjectLanes()
        self.branch_filter = BranchFilter(settings.branch_filter_regex)
        self.projects: list[Project] = []
        self.coordinator: BackfillCoordinator | None = None
        self.poller: Poller | None = None
        self.enrichment: EnrichmentWorker | None = None
        self._stop = asyncio.Event()
        self._shutdown_deferred = False

    @property
    def shutdown_requested(self) -> bool:
        return self._stop.is_set() or self._shutdown_deferred

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def discover_projects(self) -> list[Project]:
        """
        Resolve every configured project and group into a de-duplicated list.

        Raises:
            AuthError: the token cannot read a configured project or group.
        """
        found: dict[int, Project] = {}
        for ref in self.settings.monitored_projects_list:
            project = await self.source.get_project(ref)
            found.setdefault(project.id, project)
        for group in self.settings.monitored_groups_list:
            for project in await self.source.list_group_projects(group):
                found.setdefault(project.id, project)

        projects = sorted(found.values(), key=lambda p: p.path)
        if projects:
            await asyncio.to_thread(self.store.upsert_projects, projects)
        else:
            log.warning("no_projects_configured")
        log.info("projects_discovered", count=len(projects))
        self.projects = projects
        return projects

    async def start(self) -> BackfillReport:
        """
        Decide, discover and backfill. Returns once readiness has fired.

        Raises:
            BackfillError: a project failed its mandatory backfill.
            AuthError: project discovery was rejected.
        """
        decision = await asyncio.to_thread(
            BackfillDecision.evaluate, self.store, self.settings.backfill_days or None
        )
        projects = await self.discover_projects()
        self.coordinator = BackfillCoordinator(
            self.source,
            self.store,
            projects,
            decision,
            self.readiness,
            concurrency=self.settings.project_concurrency,
            branch_filter=self.branch_filter,
        )
        return await self.coordinator.run()

    # ------------------------------------------------------------------
    # Steady state
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start up, then poll and enrich until request_shutdown()."""
        await self.start()
        if self.shutdown_requested:
            log.info("engine_shutdown_after_backfill")
            return

        self.poller = Poller(
            self.source,
            self.store,
            self.projects,
            interval=self.settings.poll_interval_seconds,
            overlap=self.settings.poll_overlap_seconds,
            lanes=self.lanes,
            branch_filter=self.branch_filter,
        )
        self.enrichment = EnrichmentWorker(
            self.source,
            self.store,
            interval=self.settings.enrichment_interval_seconds,
            batch_size=self.settings.enrichment_batch_size,
            concurrency=self.settings.enrichment_concurrency,
            not_found_policy=self.settings.enrichment_not_found_policy,
            retry_after=self.settings.enrichment_retry_after_seconds,
        )
        log.info("engine_running", projects=len(self.projects))
        await asyncio.gather(self.poller.run(self._stop), self.enrichment.run(self._stop))
        log.info("engine_stopped")

    def request_shutdown(self) -> None:
        """
        Stop the poller and enrichment loops before their next tick.

        During a running backfill the request is remembered but not acted on:
        the backfill finishes and the loops are then never started.
        """
        if self.coordinator is not None and self.coordinator.state is BackfillState.RUNNING:
            if not self._shutdown_deferred:
                log.warning("shutdown_deferred_until_backfill_completes")
            self._shutdown_deferred = True
            return
        log.info("shutdown_requested")
        self._stop.set()

    def request_refresh(self) -> None:
        if self.poller is not None:
            self.poller.request_refresh()

    async def aclose(self) -> None:
        await self.source.aclose()
        self.store.close()
