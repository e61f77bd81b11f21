"""Bounded key/value stores with explicit eviction.

Eviction policy: when a write pushes the store past ``max_entries``, the
oldest half of the entries (by insertion time) is dropped. An optional TTL
makes expired entries read as missing; they are removed lazily on access.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Iterator, TypeVar

import structlog

log = structlog.get_logger()

K = TypeVar("K")
V = TypeVar("V")


class BoundedStore(Generic[K, V]):
    """Thread-safe insertion-ordered store with oldest-half eviction."""

    def __init__(
        self,
        max_entries: int,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "store",
    ) -> None:
        self._lock = threading.Lock()
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._name = name
        self.evictions = 0

    def _expired(self, stored_at: float, now: float) -> bool:
        return self._ttl is not None and now - stored_at > self._ttl

    def get(self, key: K) -> V | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._expired(stored_at, now):
                del self._entries[key]
                return None
            return value

    def put(self, key: K, value: V) -> None:
        now = self._clock()
        with self._lock:
            # Re-inserting moves the key to the young end.
            self._entries.pop(key, None)
            self._entries[key] = (now, value)
            if len(self._entries) > self._max_entries:
                self._evict_oldest_half()

    def _evict_oldest_half(self) -> None:
        """Caller holds lock."""
        drop = len(self._entries) // 2
        for _ in range(drop):
            self._entries.popitem(last=False)
        self.evictions += drop
        log.debug("store_evicted", store=self._name, dropped=drop,
                  remaining=len(self._entries))

    def pop(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.pop(key, None)
        return entry[1] if entry is not None else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def values(self) -> list[V]:
        now = self._clock()
        with self._lock:
            return [v for stored_at, v in self._entries.values() if not self._expired(stored_at, now)]

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[K]:
        with self._lock:
            return iter(list(self._entries.keys()))
