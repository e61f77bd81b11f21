"""Engine statistics.

Tracks in-memory counters for validation, ingestion, alerting and emergency
dispatch. No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from collections import Counter


class EngineStats:
    """Thread-safe engine counters with a JSON-serializable snapshot."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()

        # Counters
        self.validations: Counter[str] = Counter()
        self.cache_hits: int = 0
        self.cache_misses: int = 0
        self.readings_accepted: int = 0
        self.readings_rejected: int = 0
        self.location_updates: int = 0
        self.locations_rejected: int = 0
        self.ticks: int = 0
        self.alerts_by_severity: Counter[str] = Counter()
        self.alerts_by_category: Counter[str] = Counter()
        self.escalations: int = 0
        self.acknowledgements: int = 0
        self._ack_response_total_s: float = 0.0
        self.notifications_sent: int = 0
        self.notifications_failed: int = 0
        self.incidents_reported: int = 0
        self.queue_depth: int = 0
        self.queue_max_depth: int = 0

    def record_validation(self, method: str, *, cache_hit: bool = False) -> None:
        with self._lock:
            if cache_hit:
                self.cache_hits += 1
                return
            self.cache_misses += 1
            self.validations[method] += 1

    def record_readings(self, accepted: int, rejected: int = 0) -> None:
        with self._lock:
            self.readings_accepted += accepted
            self.readings_rejected += rejected

    def record_location(self, *, accepted: bool = True) -> None:
        with self._lock:
            if accepted:
                self.location_updates += 1
            else:
                self.locations_rejected += 1

    def record_tick(self) -> None:
        with self._lock:
            self.ticks += 1

    def record_alert(self, severity: str, category: str) -> None:
        with self._lock:
            self.alerts_by_severity[severity] += 1
            self.alerts_by_category[category] += 1

    def record_escalation(self) -> None:
        with self._lock:
            self.escalations += 1

    def record_acknowledgement(self, response_seconds: float) -> None:
        with self._lock:
            self.acknowledgements += 1
            self._ack_response_total_s += max(0.0, response_seconds)

    def record_notification(self, success: bool) -> None:
        with self._lock:
            if success:
                self.notifications_sent += 1
            else:
                self.notifications_failed += 1

    def record_incident(self) -> None:
        with self._lock:
            self.incidents_reported += 1

    def update_queue_depth(self, depth: int) -> None:
        with self._lock:
            self.queue_depth = depth
            if depth > self.queue_max_depth:
                self.queue_max_depth = depth

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        with self._lock:
            total_alerts = sum(self.alerts_by_severity.values())
            mean_ack = (
                self._ack_response_total_s / self.acknowledgements
                if self.acknowledgements else 0.0
            )
            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "validations": dict(self.validations),
                "cache": {"hits": self.cache_hits, "misses": self.cache_misses},
                "readings_accepted": self.readings_accepted,
                "readings_rejected": self.readings_rejected,
                "location_updates": self.location_updates,
                "locations_rejected": self.locations_rejected,
                "ticks": self.ticks,
                "alerts": {
                    "total": total_alerts,
                    "by_severity": dict(self.alerts_by_severity),
                    "by_category": dict(self.alerts_by_category),
                    "escalations": self.escalations,
                    "escalation_rate": round(self.escalations / total_alerts, 3) if total_alerts else 0.0,
                    "acknowledgements": self.acknowledgements,
                    "mean_ack_seconds": round(mean_ack, 1),
                },
                "notifications_sent": self.notifications_sent,
                "notifications_failed": self.notifications_failed,
                "incidents_reported": self.incidents_reported,
                "queue_depth": self.queue_depth,
                "queue_max_depth_ever": self.queue_max_depth,
            }
