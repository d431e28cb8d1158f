"""
pipewatch — GitLab CI pipeline ingestion engine.

Architecture:
  sources/     — remote API adapters (GitLab REST v4)
  transforms/  — GitLab JSON -> domain models, status normalization, branch filter
  store/       — DuckDB persistence: idempotent upserts, watermarks, aggregate views
  ingest/      — backfill gate, steady-state poller, enrichment worker, readiness
  utils/       — structlog configuration, tenacity retry helpers, tick scheduling

Quick start:
    import asyncio
    from pipewatch.config import settings
    from pipewatch.ingest.engine import IngestionEngine

    engine = IngestionEngine(settings)
    asyncio.run(engine.run())

CLI:
    pipewatch run
    pipewatch status
"""

__version__ = "0.1.0"
