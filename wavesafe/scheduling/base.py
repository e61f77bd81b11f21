"""Scheduler interface (port) for timers and background work."""

from __future__ import annotations

from typing import Any, Callable, Coroutine, Protocol


class TimerHandle:
    """Cancellable handle for a scheduled callback."""

    def __init__(self, when: float, cancel_fn: Callable[[], None] | None = None) -> None:
        self.when = when
        self._cancel_fn = cancel_fn
        self._cancelled = False
        self.fired = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._cancel_fn is not None:
            self._cancel_fn()


class Scheduler(Protocol):
    """Port: wall clock, delayed callbacks and fire-and-forget coroutines."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> None: ...
