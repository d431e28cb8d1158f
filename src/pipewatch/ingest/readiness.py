"""
ingest/readiness.py — One-shot gate between backfill and everything else.

The HTTP layer (outside this package) awaits `wait()` before accepting
traffic; the engine awaits it before starting the poller and enrichment
worker. Once fired the signal never reverts.
"""

from __future__ import annotations

import asyncio

from pipewatch.utils.logging import get_logger

log = get_logger(__name__, component="readiness")


class ReadinessSignal:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_ready(self) -> bool:
        return self._event.is_set()

    def fire(self) -> None:
        if not self._event.is_set():
            self._event.set()
            log.info("readiness_signal_fired")

    async def wait(self) -> None:
        await self._event.wait()
