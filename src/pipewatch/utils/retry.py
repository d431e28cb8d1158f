"""
utils/retry.py — Exponential-backoff retry for async GitLab calls.

Uses tenacity under the hood. Logs each attempt with structlog so failures
are observable without crashing the ingestion loops.

Only RetryableError (RateLimitedError, TransientError) is retried. A
RateLimitedError carrying a Retry-After value waits exactly that long,
however large; everything else backs off base_delay * 2^(n-1), capped at
max_delay.
When attempts are exhausted the last error is re-raised unchanged.

Usage:
    from pipewatch.utils.retry import RetryPolicy, call_with_retry

    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=60.0)
    response = await call_with_retry(client.get, "/projects/1", policy=policy)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from pipewatch.errors import RetryableError

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff bounds for one class of remote calls."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0


class wait_retry_after(wait_base):
    """Wait as long as the server's Retry-After asks, else use the fallback."""

    def __init__(self, fallback: wait_base) -> None:
        self.fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            return max(0.0, float(retry_after))
        return self.fallback(retry_state)


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy,
    retry_on: type[Exception] | tuple[type[Exception], ...] = RetryableError,
    **kwargs: Any,
) -> T:
    """
    Await fn(*args, **kwargs), retrying retryable failures per policy.

    Args:
        fn:       Async callable to invoke.
        policy:   Attempt budget and delay bounds.
        retry_on: Exception type(s) that trigger a retry.

    Returns:
        Whatever fn returns.

    Raises:
        The last exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    attempt_log = log.bind(function=getattr(fn, "__qualname__", repr(fn)))

    def log_attempt(retry_state: RetryCallState) -> None:
        if retry_state.attempt_number > 1:
            attempt_log.warning(
                "retry_attempt",
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
            )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_retry_after(wait_exponential(multiplier=policy.base_delay, max=policy.max_delay)),
        retry=retry_if_exception_type(retry_on),
        before=log_attempt,
        reraise=True,
    )
    try:
        return await retrying(fn, *args, **kwargs)
    except retry_on as exc:
        attempt_log.error(
            "retry_exhausted",
            max_attempts=policy.max_attempts,
            error=str(exc),
        )
        raise
