"""Shared test fixtures."""

from __future__ import annotations

import asyncio

import pytest

from tests.fakes import FakeChannel
from wavesafe.config import AppConfig
from wavesafe.core.alerts import AlertHierarchy
from wavesafe.core.emergency import EmergencyCoordinator
from wavesafe.core.events import EventBus
from wavesafe.core.stats import EngineStats
from wavesafe.scheduling.manual import ManualScheduler


@pytest.fixture
def config(tmp_path):
    config = AppConfig()
    config.outbox.base_dir = str(tmp_path / "outbox")
    config.logging.level = "warning"
    return config


@pytest.fixture
def scheduler():
    s = ManualScheduler()
    yield s
    # Run whatever the test spawned but never awaited, on a private loop.
    if s.pending_tasks:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(s.drain())
        finally:
            loop.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def stats():
    return EngineStats()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def coordinator(channel, scheduler, bus, stats, config):
    return EmergencyCoordinator(
        channel=channel, scheduler=scheduler, config=config.emergency, bus=bus, stats=stats,
    )


@pytest.fixture
def hierarchy(scheduler, bus, stats, config, coordinator):
    h = AlertHierarchy(
        scheduler=scheduler, config=config.alerts, bus=bus, emergency=coordinator, stats=stats,
    )
    yield h
    h.close()


@pytest.fixture
def recorder(bus):
    """Collects every payload published on the bus, keyed by topic."""
    from wavesafe.core.events import (
        TOPIC_ALERTS,
        TOPIC_GROUNDING,
        TOPIC_INCIDENTS,
        TOPIC_NAVIGATION,
        TOPIC_POSITION_REPORTS,
        TOPIC_PROTOCOL_STEPS,
        TOPIC_PROTOCOLS,
    )

    seen: dict[str, list] = {}
    for topic in (TOPIC_ALERTS, TOPIC_GROUNDING, TOPIC_INCIDENTS, TOPIC_NAVIGATION,
                  TOPIC_POSITION_REPORTS, TOPIC_PROTOCOL_STEPS, TOPIC_PROTOCOLS):
        bus.subscribe(topic, lambda payload, t=topic: seen.setdefault(t, []).append(payload))
    return seen
