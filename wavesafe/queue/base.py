"""Ingestion queue port between VesselMonitor.submit_* and its consumer task.

Producers put validated MonitorUpdate items (one position fix, or one batch
of depth readings). A single consumer applies them in arrival order, so a
fix submitted before a batch is always applied before that batch.
"""

from __future__ import annotations

from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from wavesafe.core.models import MonitorUpdate


class UpdateQueue(Protocol):
    """Port: FIFO of monitor updates. put() may wait when the queue is full."""

    async def put(self, update: MonitorUpdate) -> None: ...

    async def get(self) -> MonitorUpdate: ...

    def qsize(self) -> int:
        """Pending updates, reported as the queue_depth gauge in EngineStats."""
        ...
