"""Tests for BoundedStore eviction and TTL."""

from __future__ import annotations

from wavesafe.core.cache import BoundedStore


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_put_and_get():
    store = BoundedStore(max_entries=10)
    store.put("a", 1)
    assert store.get("a") == 1
    assert store.get("missing") is None
    assert "a" in store
    assert len(store) == 1


def test_oldest_half_evicted_when_over_capacity():
    store = BoundedStore(max_entries=4)
    for i in range(5):
        store.put(i, i)
    # 5 entries > 4: the oldest 2 go
    assert list(store) == [2, 3, 4]
    assert store.evictions == 2


def test_reinsert_moves_key_to_young_end():
    store = BoundedStore(max_entries=4)
    for i in range(4):
        store.put(i, i)
    store.put(0, "again")
    store.put(4, 4)
    assert 0 in store
    assert 1 not in store
    assert 2 not in store


def test_ttl_expiry_reads_as_missing():
    clock = Clock()
    store = BoundedStore(max_entries=10, ttl_seconds=300, clock=clock)
    store.put("k", "v")
    clock.now = 299
    assert store.get("k") == "v"
    clock.now = 301
    assert store.get("k") is None
    assert len(store) == 0


def test_values_skip_expired_entries():
    clock = Clock()
    store = BoundedStore(max_entries=10, ttl_seconds=10, clock=clock)
    store.put("old", 1)
    clock.now = 20
    store.put("new", 2)
    assert store.values() == [2]


def test_pop_and_clear():
    store = BoundedStore(max_entries=10)
    store.put("a", 1)
    store.put("b", 2)
    assert store.pop("a") == 1
    assert store.pop("a") is None
    store.clear()
    assert len(store) == 0
