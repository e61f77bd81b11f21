"""In-process UpdateQueue used by create_engine() and lifespan()."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wavesafe.core.models import MonitorUpdate


class AsyncioUpdateQueue:
    """Bounded by monitoring.queue_max_size.

    A full queue makes submit_location()/submit_readings() wait for the
    consumer instead of dropping fixes. get_nowait() lets a caller without a
    running consumer (the simulator's step loop, tests) apply updates
    synchronously.
    """

    def __init__(self, max_size: int = 10_000) -> None:
        self._queue: asyncio.Queue[MonitorUpdate] = asyncio.Queue(maxsize=max_size)

    async def put(self, update: MonitorUpdate) -> None:
        await self._queue.put(update)

    async def get(self) -> MonitorUpdate:
        return await self._queue.get()

    def get_nowait(self) -> MonitorUpdate | None:
        """Next pending update, or None when the queue is empty."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()
