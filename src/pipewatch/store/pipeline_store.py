"""
store/pipeline_store.py — DuckDB persistence for pipelines, projects and watermarks.

Every component funnels durable state through this class:
  - idempotent pipeline upserts keyed by GitLab pipeline id
  - per-project sync watermarks that only ever move forward
  - the fixed read views the dashboard layer calls (stats, listings)
  - the enrichment work queue (rows still missing an author name)

Concurrency:
  Reads open a fresh DuckDB cursor per call and never wait for writers.
  Writes are serialized by one lock and each runs in its own transaction;
  any DuckDB error rolls the transaction back and surfaces as StorageError.
  Methods are synchronous — async callers wrap them in asyncio.to_thread().

Usage:
    from pipewatch.store import PipelineStore

    store = PipelineStore("./data/pipelines.duckdb")
    if store.is_empty():
        ...
    store.upsert_pipelines(page.pipelines)
    store.advance_watermark(project.id, batch_watermark(page.pipelines))
    stats = store.query_aggregate_stats()
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import duckdb
import polars as pl
import structlog

from pipewatch.db import connect
from pipewatch.errors import StorageError
from pipewatch.models import (
    FINISHED_STATUSES,
    AggregateStats,
    Pipeline,
    PipelineFilter,
    PipelineStatus,
    Project,
    ProjectStats,
)
from pipewatch.time_utils import ensure_utc, to_naive_utc, utc_now

log = structlog.get_logger(__name__)

T = TypeVar("T")

_PIPELINE_COLUMNS = (
    "id, project_id, project_name, project_path, ref_name AS ref, sha, status, "
    "created_at, updated_at, finished_at, duration, author_id, author_name, web_url"
)

# The incoming row is older than what is stored; keep the stored values
_STALE = (
    "(EXCLUDED.updated_at IS NOT NULL AND updated_at IS NOT NULL "
    "AND EXCLUDED.updated_at < updated_at)"
)


def _keep_unless_stale(column: str) -> str:
    return f"{column} = CASE WHEN {_STALE} THEN {column} ELSE EXCLUDED.{column} END"


def _fill_unless_stale(column: str) -> str:
    return (
        f"{column} = CASE WHEN {_STALE} THEN {column} "
        f"ELSE COALESCE(EXCLUDED.{column}, {column}) END"
    )


_UPSERT_PIPELINE_SQL = f"""
INSERT INTO pipelines (
    id, project_id, project_name, project_path, ref_name, sha, status,
    created_at, updated_at, finished_at, duration, author_id, author_name,
    web_url, ingested_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    {_keep_unless_stale("project_name")},
    {_fill_unless_stale("project_path")},
    {_keep_unless_stale("ref_name")},
    {_fill_unless_stale("sha")},
    {_keep_unless_stale("status")},
    {_fill_unless_stale("finished_at")},
    {_fill_unless_stale("duration")},
    {_fill_unless_stale("web_url")},
    {_fill_unless_stale("updated_at")},
    author_id = COALESCE(EXCLUDED.author_id, author_id),
    author_name = COALESCE(EXCLUDED.author_name, author_name),
    ingested_at = EXCLUDED.ingested_at
"""

_UPSERT_PROJECT_SQL = """
INSERT INTO projects (id, name, path, group_path, synced_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    name = EXCLUDED.name,
    path = EXCLUDED.path,
    group_path = COALESCE(EXCLUDED.group_path, group_path),
    synced_at = EXCLUDED.synced_at
"""

_ADVANCE_WATERMARK_SQL = """
INSERT INTO sync_watermarks (project_id, watermark, advanced_at)
VALUES (?, ?, ?)
ON CONFLICT (project_id) DO UPDATE SET
    watermark = GREATEST(watermark, EXCLUDED.watermark),
    advanced_at = EXCLUDED.advanced_at
"""


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _where(flt: PipelineFilter | None) -> tuple[str, list[Any]]:
    """Translate a PipelineFilter into a WHERE clause and its parameters."""
    if flt is None:
        return "", []

    clauses: list[str] = []
    params: list[Any] = []
    if flt.project_paths:
        clauses.append(f"project_path IN ({_placeholders(flt.project_paths)})")
        params.extend(flt.project_paths)
    if flt.exclude_project_paths:
        clauses.append(
            f"(project_path IS NULL OR project_path NOT IN "
            f"({_placeholders(flt.exclude_project_paths)}))"
        )
        params.extend(flt.exclude_project_paths)
    if flt.refs:
        clauses.append(f"ref_name IN ({_placeholders(flt.refs)})")
        params.extend(flt.refs)
    if flt.status is not None:
        clauses.append("status = ?")
        params.append(flt.status.value)
    if flt.created_from is not None:
        clauses.append("created_at >= ?")
        params.append(to_naive_utc(flt.created_from))
    if flt.created_to is not None:
        clauses.append("created_at <= ?")
        params.append(to_naive_utc(flt.created_to))

    if not clauses:
        return "", []
    return " WHERE " + " AND ".join(clauses), params


def _dedupe_by_id(batch: Iterable[Pipeline]) -> list[Pipeline]:
    """Last occurrence wins; DuckDB cannot upsert one key twice per transaction."""
    latest: dict[int, Pipeline] = {}
    for pipeline in batch:
        latest[pipeline.id] = pipeline
    return list(latest.values())


class PipelineStore:
    """DuckDB-backed store. One instance per process."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self._conn = connect(self.path)
        self._write_lock = threading.Lock()
        self._cursor_lock = threading.Lock()

    def close(self) -> None:
        with self._write_lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        with self._cursor_lock:
            return self._conn.cursor()

    def _fetch(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        cur = self._cursor()
        try:
            cur.execute(sql, list(params))
            columns = [d[0] for d in cur.description]
            return [dict(zip(columns, row)) for row in cur.fetchall()]
        finally:
            cur.close()

    def _transaction(self, operation: str, work: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Run `work` in one write transaction; roll back and wrap on failure."""
        with self._write_lock:
            cur = self._cursor()
            try:
                cur.execute("BEGIN TRANSACTION")
                result = work(cur)
                cur.execute("COMMIT")
                return result
            except Exception as exc:
                self._rollback(cur, operation)
                if isinstance(exc, duckdb.Error):
                    log.error("store_write_failed", operation=operation, error=str(exc))
                    raise StorageError(f"{operation} failed: {exc}") from exc
                raise
            finally:
                cur.close()

    @staticmethod
    def _rollback(cur: duckdb.DuckDBPyConnection, operation: str) -> None:
        try:
            cur.execute("ROLLBACK")
        except duckdb.Error as exc:
            # No open transaction (BEGIN itself failed or COMMIT already aborted it)
            log.debug("store_rollback_skipped", operation=operation, error=str(exc))

    # ------------------------------------------------------------------
    # Backfill decision
    # ------------------------------------------------------------------

    def is_empty(self) -> bool:
        """True iff the pipelines table has zero rows."""
        rows = self._fetch("SELECT NOT EXISTS (SELECT 1 FROM pipelines) AS empty")
        return bool(rows[0]["empty"])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_pipelines(self, batch: Iterable[Pipeline]) -> int:
        """
        Insert-or-update a batch atomically, matching on pipeline id.

        Mutable fields take the incoming values unless the incoming record
        is older (by updated_at) than the stored one. Null finished_at,
        duration and author fields never erase stored values.

        Returns:
            Number of distinct pipelines written.

        Raises:
            StorageError if the transaction failed; nothing was written.
        """
        pipelines = _dedupe_by_id(batch)
        if not pipelines:
            return 0

        ingested_at = to_naive_utc(utc_now())
        rows = []
        for p in pipelines:
            d = p.to_insert_dict()
            rows.append([
                d["id"], d["project_id"], d["project_name"], d["project_path"],
                d["ref_name"], d["sha"], d["status"], d["created_at"],
                d["updated_at"], d["finished_at"], d["duration"],
                d["author_id"], d["author_name"], d["web_url"], ingested_at,
            ])

        self._transaction(
            "upsert_pipelines",
            lambda cur: cur.executemany(_UPSERT_PIPELINE_SQL, rows),
        )
        log.debug("pipelines_upserted", count=len(rows))
        return len(rows)

    def upsert_projects(self, projects: Iterable[Project]) -> int:
        synced_at = to_naive_utc(utc_now())
        rows = []
        for project in {p.id: p for p in projects}.values():
            d = project.to_insert_dict()
            rows.append([d["id"], d["name"], d["path"], d["group_path"], synced_at])
        if not rows:
            return 0
        self._transaction(
            "upsert_projects",
            lambda cur: cur.executemany(_UPSERT_PROJECT_SQL, rows),
        )
        return len(rows)

    def advance_watermark(self, project_id: int, cursor: datetime) -> datetime:
        """
        Move a project's watermark forward to `cursor`.

        Call only after the batch that produced `cursor` has been upserted.
        A cursor older than the stored watermark leaves it unchanged.

        Returns:
            The stored watermark after the call.
        """

        def work(cur: duckdb.DuckDBPyConnection) -> datetime:
            cur.execute(
                _ADVANCE_WATERMARK_SQL,
                [project_id, to_naive_utc(cursor), to_naive_utc(utc_now())],
            )
            cur.execute("SELECT watermark FROM sync_watermarks WHERE project_id = ?", [project_id])
            return cur.fetchone()[0]

        stored = ensure_utc(self._transaction("advance_watermark", work))
        log.debug("watermark_advanced", project_id=project_id, watermark=stored.isoformat())
        return stored

    def set_author_name(self, pipeline_id: int, author_id: int | None, name: str) -> bool:
        """Fill the author name of one pipeline. Returns False if already set."""

        def work(cur: duckdb.DuckDBPyConnection) -> bool:
            cur.execute(
                """
                UPDATE pipelines
                SET author_name = ?,
                    author_id = COALESCE(author_id, ?),
                    author_lookup_failed_at = NULL
                WHERE id = ? AND (author_name IS NULL OR author_name = '')
                RETURNING id
                """,
                [name, author_id, pipeline_id],
            )
            return cur.fetchone() is not None

        return self._transaction("set_author_name", work)

    def mark_author_unresolved(
        self,
        pipeline_id: int,
        *,
        permanent: bool,
        at: datetime | None = None,
    ) -> None:
        """Record a failed author lookup; permanent rows leave the work queue."""
        failed_at = to_naive_utc(at or utc_now())
        self._transaction(
            "mark_author_unresolved",
            lambda cur: cur.execute(
                """
                UPDATE pipelines
                SET author_unresolved = author_unresolved OR ?,
                    author_lookup_failed_at = ?
                WHERE id = ?
                """,
                [permanent, failed_at, pipeline_id],
            ),
        )

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    def get_watermark(self, project_id: int) -> datetime | None:
        rows = self._fetch(
            "SELECT watermark FROM sync_watermarks WHERE project_id = ?", [project_id]
        )
        return ensure_utc(rows[0]["watermark"]) if rows else None

    def list_watermarks(self) -> dict[int, datetime]:
        rows = self._fetch("SELECT project_id, watermark FROM sync_watermarks")
        return {row["project_id"]: ensure_utc(row["watermark"]) for row in rows}

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    def query_aggregate_stats(self, flt: PipelineFilter | None = None) -> AggregateStats:
        """
        total_count over all matching rows, avg_duration over rows with a
        duration, success_rate = success / finished * 100.
        """
        where, params = _where(flt)
        finished = [s.value for s in FINISHED_STATUSES]
        rows = self._fetch(
            f"""
            SELECT
                COUNT(*) AS total_count,
                COALESCE(AVG(duration), 0) AS avg_duration,
                COALESCE(
                    100.0 * COUNT(*) FILTER (WHERE status = ?)
                    / NULLIF(COUNT(*) FILTER (WHERE status IN ({_placeholders(finished)})), 0),
                    0
                ) AS success_rate
            FROM pipelines{where}
            """,
            [PipelineStatus.SUCCESS.value, *finished, *params],
        )
        return AggregateStats(**rows[0])

    def count_pipelines(self, flt: PipelineFilter | None = None) -> int:
        where, params = _where(flt)
        rows = self._fetch(f"SELECT COUNT(*) AS n FROM pipelines{where}", params)
        return int(rows[0]["n"])

    def list_pipelines(
        self,
        flt: PipelineFilter | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Pipeline]:
        """Newest-created first."""
        where, params = _where(flt)
        rows = self._fetch(
            f"""
            SELECT {_PIPELINE_COLUMNS} FROM pipelines{where}
            ORDER BY created_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            [*params, limit, offset],
        )
        return [Pipeline.from_db_row(row) for row in rows]

    def list_projects(self) -> list[Project]:
        rows = self._fetch("SELECT id, name, path, group_path FROM projects ORDER BY path")
        return [Project.from_db_row(row) for row in rows]

    def list_refs(self, project_path: str | None = None) -> list[str]:
        if project_path:
            rows = self._fetch(
                "SELECT DISTINCT ref_name FROM pipelines WHERE project_path = ? ORDER BY ref_name",
                [project_path],
            )
        else:
            rows = self._fetch("SELECT DISTINCT ref_name FROM pipelines ORDER BY ref_name")
        return [row["ref_name"] for row in rows]

    def query_project_stats(self, flt: PipelineFilter | None = None) -> list[ProjectStats]:
        where, params = _where(flt)
        rows = self._fetch(
            f"""
            SELECT
                project_name,
                project_path,
                COUNT(*) AS count,
                COALESCE(AVG(duration), 0) AS avg_duration,
                arg_max(status, created_at) AS last_status
            FROM pipelines{where}
            GROUP BY project_name, project_path
            ORDER BY project_name
            """,
            params,
        )
        return [ProjectStats(**row) for row in rows]

    def status_trend(self, flt: PipelineFilter | None = None) -> pl.DataFrame:
        """
        Daily pipeline counts per status.

        Columns: day (Date), status (String), count (Int64), avg_duration (Float64)
        """
        where, params = _where(flt)
        rows = self._fetch(
            f"""
            SELECT
                CAST(created_at AS DATE) AS "day",
                status,
                COUNT(*) AS count,
                COALESCE(AVG(duration), 0) AS avg_duration
            FROM pipelines{where}
            GROUP BY 1, 2
            ORDER BY 1, 2
            """,
            params,
        )
        return pl.DataFrame(
            [[r["day"], r["status"], r["count"], float(r["avg_duration"])] for r in rows],
            schema={
                "day": pl.Date,
                "status": pl.String,
                "count": pl.Int64,
                "avg_duration": pl.Float64,
            },
            orient="row",
        )

    # ------------------------------------------------------------------
    # Enrichment queue
    # ------------------------------------------------------------------

    def find_pipelines_missing_enrichment(
        self,
        limit: int,
        *,
        retry_before: datetime | None = None,
    ) -> list[Pipeline]:
        """
        Up to `limit` rows without an author name, oldest-created first.

        Rows marked permanently unresolved are skipped. Rows with a failed
        lookup are only returned once that failure is at or before
        `retry_before`; with no `retry_before` they are skipped.
        """
        params: list[Any] = []
        if retry_before is None:
            retry_clause = "author_lookup_failed_at IS NULL"
        else:
            retry_clause = "(author_lookup_failed_at IS NULL OR author_lookup_failed_at <= ?)"
            params.append(to_naive_utc(retry_before))
        rows = self._fetch(
            f"""
            SELECT {_PIPELINE_COLUMNS} FROM pipelines
            WHERE (author_name IS NULL OR author_name = '')
              AND NOT author_unresolved
              AND {retry_clause}
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            [*params, limit],
        )
        return [Pipeline.from_db_row(row) for row in rows]
