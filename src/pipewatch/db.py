"""
db.py — DuckDB connection and schema.

Usage:
    from pipewatch.db import connect

    conn = connect("./data/pipelines.duckdb")   # creates file + schema
    conn = connect(":memory:")                  # tests
"""

from __future__ import annotations

from pathlib import Path

import duckdb
import structlog

logger = structlog.get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id          BIGINT PRIMARY KEY,
    name        VARCHAR NOT NULL,
    path        VARCHAR NOT NULL,
    group_path  VARCHAR,
    synced_at   TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS pipelines (
    id                       BIGINT PRIMARY KEY,
    project_id               BIGINT NOT NULL,
    project_name             VARCHAR NOT NULL,
    project_path             VARCHAR,
    ref_name                 VARCHAR NOT NULL,
    sha                      VARCHAR,
    status                   VARCHAR NOT NULL,
    created_at               TIMESTAMP NOT NULL,
    updated_at               TIMESTAMP,
    finished_at              TIMESTAMP,
    duration                 BIGINT CHECK (duration IS NULL OR duration >= 0),
    author_id                BIGINT,
    author_name              VARCHAR,
    author_unresolved        BOOLEAN NOT NULL DEFAULT FALSE,
    author_lookup_failed_at  TIMESTAMP,
    web_url                  VARCHAR,
    ingested_at              TIMESTAMP NOT NULL,
    CHECK (finished_at IS NULL OR finished_at >= created_at)
);

CREATE TABLE IF NOT EXISTS sync_watermarks (
    project_id  BIGINT PRIMARY KEY,
    watermark   TIMESTAMP NOT NULL,
    advanced_at TIMESTAMP NOT NULL
);
"""


def connect(path: str | Path = ":memory:", *, threads: int = 4) -> duckdb.DuckDBPyConnection:
    """
    Open (or create) the pipewatch database and ensure the schema exists.

    Creates parent directories for file-backed databases.

    Returns:
        duckdb.DuckDBPyConnection
    """
    target = str(path)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    conn = duckdb.connect(target)
    conn.execute(f"SET threads TO {int(threads)};")
    conn.execute(SCHEMA_SQL)
    logger.info("duckdb_connected", path=target)
    return conn
