"""Vessel monitor — the ingestion/evaluation boundary.

Location fixes and reading batches are validated at submit time and handed
over through an UpdateQueue. The consumer applies them to the monitor's own
state; the ticker re-runs route monitoring and grounding projection against
the latest fix and publishes an immutable MonitoringSnapshot.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

import structlog

from wavesafe.config import MonitoringConfig
from wavesafe.core import geodesy
from wavesafe.core.cache import BoundedStore
from wavesafe.core.errors import InvalidInputError, check_location, check_reading, check_vessel
from wavesafe.core.emergency import PositionReport
from wavesafe.core.events import TOPIC_GROUNDING, EventBus
from wavesafe.core.models import (
    DepthReading,
    Location,
    MonitorUpdate,
    NavigationStatus,
    Severity,
    VesselProfile,
)

if TYPE_CHECKING:
    from wavesafe.core.alerts import AlertHierarchy
    from wavesafe.core.emergency import EmergencyCoordinator
    from wavesafe.core.grounding import GroundingAlert, GroundingRiskProjector
    from wavesafe.core.route_planner import RoutePlanner
    from wavesafe.core.depth_validation import DepthValidationEngine
    from wavesafe.core.stats import EngineStats
    from wavesafe.queue.base import UpdateQueue
    from wavesafe.scheduling.base import Scheduler

log = structlog.get_logger()

# Grounding findings below this severity stay in the snapshot only.
MIN_ALERT_SEVERITY = Severity.CAUTION


@dataclass(frozen=True)
class MonitoringSnapshot:
    timestamp_ms: int
    location: Location
    grounding_alerts: tuple[GroundingAlert, ...]
    navigation: NavigationStatus | None
    active_alert_ids: tuple[str, ...]
    reading_count: int


class VesselMonitor:
    def __init__(
        self,
        vessel: VesselProfile,
        queue: UpdateQueue,
        scheduler: Scheduler,
        validator: DepthValidationEngine,
        projector: GroundingRiskProjector,
        planner: RoutePlanner,
        alerts: AlertHierarchy,
        stats: EngineStats,
        config: MonitoringConfig | None = None,
        bus: EventBus | None = None,
        emergency: EmergencyCoordinator | None = None,
    ) -> None:
        check_vessel(vessel)
        self.vessel = vessel
        self._queue = queue
        self._scheduler = scheduler
        self._validator = validator
        self._projector = projector
        self._planner = planner
        self._alerts = alerts
        self._stats = stats
        self._config = config or MonitoringConfig()
        self._bus = bus
        self._emergency = emergency

        self._location: Location | None = None
        self._readings: BoundedStore[str, DepthReading] = BoundedStore(
            max_entries=self._config.max_readings, name="readings",
        )
        self._grounding_alert_id: str | None = None
        self._last_snapshot: MonitoringSnapshot | None = None

    def _now_ms(self) -> int:
        return int(self._scheduler.now() * 1000)

    @property
    def location(self) -> Location | None:
        return self._location

    @property
    def last_snapshot(self) -> MonitoringSnapshot | None:
        return self._last_snapshot

    def readings(self) -> list[DepthReading]:
        return self._readings.values()

    # --- Ingestion ---

    async def submit_location(self, location: Location) -> tuple[bool, str, int]:
        """Validate and enqueue a position fix. Returns (accepted, error_message, count)."""
        try:
            check_location(location)
        except InvalidInputError as e:
            self._stats.record_location(accepted=False)
            log.warning("location_rejected", reason=str(e))
            return False, str(e), 0

        await self._queue.put(MonitorUpdate(kind="location", received_ms=self._now_ms(), location=location))
        self._stats.update_queue_depth(self._queue.qsize())
        return True, "", 1

    async def submit_readings(self, readings: Iterable[DepthReading]) -> tuple[bool, str, int]:
        """Validate and enqueue a batch of readings. Invalid readings are dropped and counted."""
        accepted: list[DepthReading] = []
        errors: list[str] = []
        for reading in readings:
            try:
                check_reading(reading)
                accepted.append(reading)
            except InvalidInputError as e:
                errors.append(f"{reading.id or '?'}: {e}")

        if errors:
            self._stats.record_readings(0, len(errors))
            log.warning("readings_rejected", count=len(errors), first=errors[0])
        if not accepted:
            return (False, errors[0], 0) if errors else (True, "", 0)

        await self._queue.put(MonitorUpdate(
            kind="readings", received_ms=self._now_ms(), readings=tuple(accepted),
        ))
        self._stats.update_queue_depth(self._queue.qsize())
        log.info("readings_enqueued", count=len(accepted), rejected=len(errors))
        return True, "; ".join(errors), len(accepted)

    def apply(self, update: MonitorUpdate) -> None:
        if update.kind == "location" and update.location is not None:
            self._location = update.location
            self._stats.record_location()
        elif update.kind == "readings":
            for reading in update.readings:
                self._readings.put(reading.id, reading)
            # Cached results were computed without these readings.
            self._validator.invalidate_cache()
            self._stats.record_readings(len(update.readings))
            log.debug("readings_applied", count=len(update.readings), total=len(self._readings))
        else:
            log.warning("unknown_update", kind=update.kind)

    async def run_consumer(self) -> None:
        """Apply queued updates. Runs as a background task."""
        log.info("monitor_consumer_started")
        while True:
            update = await self._queue.get()
            try:
                self.apply(update)
            except Exception:
                log.error("update_apply_failed", kind=update.kind, exc_info=True)
            self._stats.update_queue_depth(self._queue.qsize())

    async def run_ticker(self) -> None:
        """Call tick() every tick_interval_seconds. Runs as a background task."""
        log.info("monitor_ticker_started", interval=self._config.tick_interval_seconds)
        while True:
            await asyncio.sleep(self._config.tick_interval_seconds)
            try:
                self.tick()
            except Exception:
                log.error("monitor_tick_failed", exc_info=True)

    # --- Evaluation ---

    def tick(self) -> MonitoringSnapshot | None:
        location = self._location
        if location is None:
            return None
        self._stats.record_tick()
        readings = self._readings.values()

        navigation = None
        if self._planner.is_monitoring:
            navigation = self._planner.update_location(location, readings)

        findings = self._projector.project(
            location,
            location.heading_deg or 0.0,
            location.speed_knots or 0.0,
            self.vessel,
            readings,
        )
        if findings:
            self._raise_grounding(location, findings[0])

        self._share_position(location)

        snapshot = MonitoringSnapshot(
            timestamp_ms=self._now_ms(),
            location=location,
            grounding_alerts=tuple(findings),
            navigation=navigation,
            active_alert_ids=tuple(a.id for a in self._alerts.active_alerts()),
            reading_count=len(readings),
        )
        self._last_snapshot = snapshot
        if self._bus is not None:
            self._bus.publish(TOPIC_GROUNDING, snapshot)
        return snapshot

    def _raise_grounding(self, location: Location, finding: GroundingAlert) -> None:
        if finding.severity < MIN_ALERT_SEVERITY:
            return
        distance = geodesy.distance(location, finding.location)
        live = self._grounding_alert_id
        if live is not None and self._alerts.is_active(live):
            self._alerts.report_alert_context(live, distance_m=distance,
                                              speed_knots=location.speed_knots or 0.0)
            current = self._alerts.get_alert(live)
            if current is not None and finding.severity > current.severity:
                self._alerts.escalate_alert(live, finding.severity, finding.description)
            return

        alert = self._alerts.create_alert(
            finding.severity,
            "grounding",
            "Grounding Risk",
            finding.description,
            finding.location,
            time_to_impact_s=finding.time_to_impact_s,
            metadata={
                "estimated_depth_m": round(finding.estimated_depth_m, 2),
                "clearance_m": round(finding.clearance_m, 2),
                "recommended_action": finding.avoidance_action.description,
                "confidence": round(finding.confidence, 3),
            },
        )
        self._alerts.report_alert_context(alert.id, distance_m=distance,
                                          speed_knots=location.speed_knots or 0.0)
        self._grounding_alert_id = alert.id

    def _share_position(self, location: Location) -> None:
        if self._emergency is None:
            return
        vessel_id = self.vessel.id or self.vessel.name
        if not vessel_id:
            return
        in_distress = any(
            i.vessel is not None and (i.vessel.id or i.vessel.name) == vessel_id
            for i in self._emergency.active_incidents()
        )
        self._emergency.send_position_report(PositionReport(
            vessel_id=vessel_id,
            timestamp_ms=self._now_ms(),
            location=location,
            course_deg=location.heading_deg or 0.0,
            speed_knots=location.speed_knots or 0.0,
            status="emergency" if in_distress else "underway",
            vessel_data={
                "name": self.vessel.name,
                "draft_m": self.vessel.draft_m,
                "length_m": self.vessel.length_m,
                "type": self.vessel.vessel_type,
            },
        ))
