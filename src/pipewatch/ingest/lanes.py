"""
ingest/lanes.py — Per-project execution tokens.

Each project owns exactly one token, kept in a queue of size one. Work for
a project takes the token, runs, and puts it back, so two poller ticks for
the same project can never overlap while different projects proceed in
parallel.

Usage:
    lanes = ProjectLanes()
    async with lanes.hold(project.id):
        ...  # fetch, upsert, advance watermark
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class ProjectLanes:
    def __init__(self) -> None:
        self._lanes: dict[int, asyncio.Queue[int]] = {}

    def _lane(self, project_id: int) -> asyncio.Queue[int]:
        lane = self._lanes.get(project_id)
        if lane is None:
            lane = asyncio.Queue(maxsize=1)
            lane.put_nowait(project_id)
            self._lanes[project_id] = lane
        return lane

    def is_busy(self, project_id: int) -> bool:
        """True while some task holds the project's token."""
        return self._lane(project_id).empty()

    @asynccontextmanager
    async def hold(self, project_id: int) -> AsyncIterator[None]:
        lane = self._lane(project_id)
        token = await lane.get()
        try:
            yield
        finally:
            lane.put_nowait(token)
