"""
errors.py — Exception taxonomy for the ingestion engine.

  AuthError         401/403 from GitLab. Fatal, never retried.
  RateLimitedError  429. Retried, honouring Retry-After.
  TransientError    network failure, timeout or 5xx. Retried with backoff.
  NotFoundError     404. Only meaningful for author lookups.
  StorageError      DuckDB write/transaction failure.
  BackfillError     a project could not complete its mandatory backfill.
"""

from __future__ import annotations


class PipewatchError(Exception):
    """Base class for every error raised by pipewatch."""


class AuthError(PipewatchError):
    """The GitLab token was rejected."""


class RetryableError(PipewatchError):
    """A remote failure that may succeed when retried."""


class RateLimitedError(RetryableError):
    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientError(RetryableError):
    """Network error, timeout or 5xx response."""


class NotFoundError(PipewatchError):
    """The requested user or pipeline does not exist upstream."""


class StorageError(PipewatchError):
    """A DuckDB write failed; the transaction was rolled back."""


class BackfillError(PipewatchError):
    def __init__(self, project: str, cause: BaseException) -> None:
        super().__init__(f"Backfill failed for project {project}: {cause}")
        self.project = project
        self.cause = cause
