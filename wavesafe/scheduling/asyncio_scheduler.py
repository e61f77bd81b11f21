"""Event-loop implementation of Scheduler."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Coroutine

import structlog

from wavesafe.scheduling.base import TimerHandle

log = structlog.get_logger()


class AsyncioScheduler:
    """Scheduler backed by the running asyncio loop. Must be used from inside it."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._tasks: set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        loop = self._get_loop()
        handle: TimerHandle

        def _fire() -> None:
            if handle.cancelled:
                return
            handle.fired = True
            try:
                callback(*args)
            except Exception:
                log.error("timer_callback_failed", exc_info=True)

        inner = loop.call_later(max(0.0, delay), _fire)
        handle = TimerHandle(self.now() + delay, cancel_fn=inner.cancel)
        return handle

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = self._get_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("background_task_failed", error=repr(exc))

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every spawned task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
