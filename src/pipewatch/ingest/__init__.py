"""
pipewatch.ingest — the ingestion engine.

  backfill    — one-time historical import that gates readiness
  poller      — steady-state incremental sync per project
  enrichment  — background author-name resolution
  readiness   — one-shot gate awaited by the HTTP layer
  lanes       — per-project execution tokens for the poller
  engine      — wires discovery → backfill → readiness → {poller, enrichment}

    from pipewatch.ingest.engine import IngestionEngine
"""
