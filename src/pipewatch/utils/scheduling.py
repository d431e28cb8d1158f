"""Sleep helper shared by the poller and enrichment loops."""

from __future__ import annotations

import asyncio


async def wait_for_next_tick(interval: float, *events: asyncio.Event) -> bool:
    """
    Sleep up to `interval` seconds, returning early when any event is set.

    Returns True if an event woke the sleeper, False on timeout.
    """
    if any(event.is_set() for event in events):
        return True
    if not events:
        await asyncio.sleep(interval)
        return False
    waiters = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=interval, return_when=asyncio.FIRST_COMPLETED
        )
        return bool(done)
    finally:
        for waiter in waiters:
            waiter.cancel()
