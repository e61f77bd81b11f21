"""Tests for the in-process event bus."""

from __future__ import annotations

from wavesafe.core.events import EventBus


def test_publish_reaches_subscribers():
    bus = EventBus()
    got_a, got_b = [], []
    bus.subscribe("alerts", got_a.append)
    bus.subscribe("alerts", got_b.append)

    assert bus.publish("alerts", 1) == 2
    assert got_a == [1]
    assert got_b == [1]


def test_topics_are_isolated():
    bus = EventBus()
    got = []
    bus.subscribe("alerts", got.append)
    assert bus.publish("incidents", "x") == 0
    assert got == []


def test_unsubscribe_is_idempotent():
    bus = EventBus()
    got = []
    sub = bus.subscribe("alerts", got.append)
    sub.unsubscribe()
    sub.unsubscribe()
    bus.publish("alerts", 1)
    assert got == []
    assert bus.subscriber_count("alerts") == 0
    assert not sub.active


def test_raising_subscriber_does_not_block_others():
    bus = EventBus()
    got = []

    def broken(_payload):
        raise RuntimeError("boom")

    bus.subscribe("alerts", broken)
    bus.subscribe("alerts", got.append)
    assert bus.publish("alerts", "payload") == 1
    assert got == ["payload"]


def test_subscriber_may_unsubscribe_during_delivery():
    bus = EventBus()
    got = []
    holder = {}

    def once(payload):
        got.append(payload)
        holder["sub"].unsubscribe()

    holder["sub"] = bus.subscribe("alerts", once)
    bus.publish("alerts", 1)
    bus.publish("alerts", 2)
    assert got == [1]
