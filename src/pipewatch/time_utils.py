"""
time_utils.py — UTC timestamp helpers.

GitLab returns ISO-8601 timestamps with either a "Z" suffix or an explicit
offset ("2024-05-01T12:00:00.123+02:00"). DuckDB stores naive TIMESTAMP
values, so everything is normalized to UTC and the tzinfo is stripped at
the storage boundary and re-attached on the way out.

Usage:
    from pipewatch.time_utils import parse_timestamp, to_naive_utc, utc_now

    ts = parse_timestamp("2024-05-01T12:00:00.000Z")
    row_value = to_naive_utc(ts)
"""

from __future__ import annotations

from datetime import datetime, timezone

from dateutil import parser as date_parser


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def parse_timestamp(raw: str | datetime | None) -> datetime | None:
    """
    Parse a GitLab timestamp into an aware UTC datetime.

    Returns None for empty input. Raises ValueError for malformed strings.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    return ensure_utc(date_parser.isoparse(raw))
