"""Virtual-clock implementation of Scheduler.

Time only moves when advance() is called, so escalation timers, retries and
expiries can be driven deterministically by tests and by the simulator.
"""

from __future__ import annotations

import heapq
import itertools
from typing import Any, Callable, Coroutine

import structlog

from wavesafe.scheduling.base import TimerHandle

log = structlog.get_logger()


class ManualScheduler:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self._seq = itertools.count()
        self._heap: list[tuple[float, int, TimerHandle, Callable[..., Any], tuple]] = []
        self._coros: list[Coroutine[Any, Any, Any]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        when = self._now + max(0.0, delay)
        handle = TimerHandle(when)
        heapq.heappush(self._heap, (when, next(self._seq), handle, callback, args))
        return handle

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        self._coros.append(coro)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing due callbacks in time order. Returns fire count."""
        target = self._now + seconds
        fired = 0
        while self._heap and self._heap[0][0] <= target:
            when, _, handle, callback, args = heapq.heappop(self._heap)
            self._now = max(self._now, when)
            if handle.cancelled:
                continue
            handle.fired = True
            fired += 1
            try:
                callback(*args)
            except Exception:
                log.error("timer_callback_failed", exc_info=True)
        self._now = target
        return fired

    @property
    def pending_timers(self) -> int:
        return sum(1 for entry in self._heap if not entry[2].cancelled)

    @property
    def pending_tasks(self) -> int:
        return len(self._coros)

    async def drain(self) -> None:
        """Run spawned coroutines to completion, including ones spawned meanwhile."""
        while self._coros:
            coro = self._coros.pop(0)
            try:
                await coro
            except Exception:
                log.error("background_task_failed", exc_info=True)
