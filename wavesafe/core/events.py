"""In-process event bus.

Publishers hand over snapshots; subscribers never receive engine-owned
mutable objects. Delivery order across subscribers is not guaranteed.
"""

from __future__ import annotations

import threading
from typing import Any, Callable

import structlog

log = structlog.get_logger()

TOPIC_ALERTS = "alerts"
TOPIC_PROTOCOLS = "protocols"
TOPIC_PROTOCOL_STEPS = "protocol_steps"
TOPIC_NAVIGATION = "navigation"
TOPIC_GROUNDING = "grounding"
TOPIC_INCIDENTS = "incidents"
TOPIC_POSITION_REPORTS = "position_reports"

Callback = Callable[[Any], None]


class Subscription:
    """Handle returned by EventBus.subscribe. unsubscribe() is idempotent."""

    def __init__(self, bus: EventBus, topic: str, token: int) -> None:
        self._bus = bus
        self.topic = topic
        self._token = token
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self.topic, self._token)
            self.active = False


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, dict[int, Callback]] = {}
        self._next_token = 1

    def subscribe(self, topic: str, callback: Callback) -> Subscription:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers.setdefault(topic, {})[token] = callback
        return Subscription(self, topic, token)

    def _remove(self, topic: str, token: int) -> None:
        with self._lock:
            self._subscribers.get(topic, {}).pop(token, None)

    def publish(self, topic: str, payload: Any) -> int:
        """Deliver payload to every current subscriber. Returns the delivery count."""
        with self._lock:
            callbacks = list(self._subscribers.get(topic, {}).values())
        delivered = 0
        for callback in callbacks:
            try:
                callback(payload)
                delivered += 1
            except Exception:
                log.error("subscriber_failed", topic=topic, exc_info=True)
        return delivered

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, {}))
