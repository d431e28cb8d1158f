"""
cli.py — Click CLI entrypoint for the ingestion process.

Usage:
    pipewatch run
    pipewatch --log-format json run
    pipewatch status
    pipewatch status --project group/api
"""

from __future__ import annotations

import asyncio
import signal
import sys

import click
import structlog

from pipewatch.config import settings
from pipewatch.errors import AuthError, BackfillError
from pipewatch.utils.logging import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option(
    "--log-level",
    default=settings.log_level,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level",
)
@click.option(
    "--log-format",
    default=settings.log_format,
    type=click.Choice(["json", "console"]),
    help="Log renderer",
)
def main(log_level: str, log_format: str) -> None:
    """pipewatch: GitLab CI pipeline ingestion."""
    configure_logging(log_level=log_level.upper(), log_format=log_format)


async def _run_engine() -> None:
    from pipewatch.ingest.engine import IngestionEngine

    engine = IngestionEngine(settings)
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    signals_seen = 0

    def on_signal() -> None:
        nonlocal signals_seen
        signals_seen += 1
        if signals_seen == 1:
            engine.request_shutdown()
        elif main_task is not None:
            log.warning("shutdown_forced")
            main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    try:
        await engine.run()
    finally:
        await engine.aclose()


@main.command()
def run() -> None:
    """Backfill if needed, then poll and enrich until interrupted."""
    log.info("pipewatch_start", gitlab_url=settings.gitlab_url, duckdb_path=settings.duckdb_path)
    try:
        asyncio.run(_run_engine())
    except BackfillError as exc:
        log.error("backfill_failed", project=exc.project, error=str(exc.cause))
        sys.exit(1)
    except AuthError as exc:
        log.error("gitlab_auth_failed", error=str(exc))
        sys.exit(1)
    except asyncio.CancelledError:
        log.warning("pipewatch_cancelled")
        sys.exit(130)
    log.info("pipewatch_stopped")


@main.command()
@click.option("--project", "project_path", default=None, help="Limit to one project path")
@click.option("--db", "db_path", default=settings.duckdb_path, show_default=True)
def status(project_path: str | None, db_path: str) -> None:
    """Show summary and per-project stats from the local store."""
    from pipewatch.models import PipelineFilter
    from pipewatch.store import PipelineStore

    flt = PipelineFilter(project_paths=[project_path]) if project_path else None
    store = PipelineStore(db_path)
    try:
        summary = store.query_aggregate_stats(flt)
        click.echo(
            f"Pipelines: {summary.total_count}  "
            f"avg duration: {summary.avg_duration:.1f}s  "
            f"success rate: {summary.success_rate:.1f}%"
        )
        rows = store.query_project_stats(flt)
        if not rows:
            click.echo("  No pipelines stored.")
            return
        watermarks = {p.path: store.get_watermark(p.id) for p in store.list_projects()}
        for row in rows:
            watermark = watermarks.get(row.project_path or "")
            click.echo(
                f"  {row.project_name:30s} "
                f"{row.count:7d} runs  "
                f"{row.avg_duration:8.1f}s  "
                f"{row.last_status or '?':10s} "
                f"synced to {watermark.isoformat() if watermark else 'never'}"
            )
    finally:
        store.close()


if __name__ == "__main__":
    main()
