"""Grounding risk projection.

Projects the vessel's track forward on its current heading and speed,
estimates depth at each sample point, and classifies how soon and how badly
the hull would meet the bottom. Every finding carries ranked avoidance
actions (course change, speed reduction, emergency stop).
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from typing import Sequence

import structlog

from wavesafe.config import GroundingConfig
from wavesafe.core import geodesy
from wavesafe.core.depth_validation import interpolate_depth
from wavesafe.core.errors import check_vessel
from wavesafe.core.models import DepthReading, Location, Severity, VesselProfile, now_ms

log = structlog.get_logger()

# Checked in this order; the first row whose depth ratio and time both
# qualify wins.
SEVERITY_THRESHOLDS: tuple[tuple[Severity, float, float], ...] = (
    (Severity.EMERGENCY, 0.8, 15.0),
    (Severity.CRITICAL, 0.9, 30.0),
    (Severity.CAUTION, 1.2, 120.0),
    (Severity.WARNING, 1.5, 300.0),
    (Severity.INFO, 2.0, 600.0),
)

TURN_ANGLES = (30, 45, 60, 90)
SPEED_FACTORS = (0.5, 0.3, 0.1)
CONFIDENCE_RADIUS_M = 500.0


@dataclass(frozen=True)
class AvoidanceAction:
    type: str  # course_change, speed_reduction or emergency_stop
    priority: int  # 1-10, 10 highest
    success_probability: float
    time_required_s: float
    description: str
    recommended_heading_deg: float | None = None
    recommended_speed_knots: float | None = None


@dataclass(frozen=True)
class GroundingAlert:
    id: str
    severity: Severity
    time_to_impact_s: float
    location: Location
    estimated_depth_m: float
    clearance_m: float
    avoidance_action: AvoidanceAction
    avoidance_actions: tuple[AvoidanceAction, ...]
    confidence: float
    description: str
    timestamp_ms: int
    type: str = "grounding"


@dataclass(frozen=True)
class _PathPoint:
    location: Location
    time_s: float
    speed_knots: float


def deceleration(vessel: VesselProfile) -> float:
    """Crash-stop deceleration in m/s^2; heavier hulls stop more slowly."""
    displacement = vessel.displacement_t or 10.0
    return max(0.5, 5.0 / math.sqrt(displacement))


def stopping_distance_m(speed_knots: float, vessel: VesselProfile) -> float:
    v = geodesy.knots_to_mps(speed_knots)
    return v * v / (2 * deceleration(vessel))


def stopping_time_s(speed_knots: float, vessel: VesselProfile) -> float:
    return geodesy.knots_to_mps(speed_knots) / deceleration(vessel)


def turn_time_s(vessel: VesselProfile, angle_deg: float) -> float:
    rate = 2.0 if vessel.vessel_type == "sailboat" else 5.0
    return abs(angle_deg) / rate


def _format_time(seconds: float) -> str:
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    return f"{minutes}m {secs}s" if minutes > 0 else f"{secs}s"


def describe(severity: Severity, depth_m: float, clearance_m: float, time_s: float) -> str:
    when = _format_time(time_s)
    if severity == Severity.EMERGENCY:
        return f"EMERGENCY: Grounding imminent in {when}! Depth {depth_m:.1f}m, clearance {clearance_m:.1f}m"
    if severity == Severity.CRITICAL:
        return f"CRITICAL: Shallow water in {when}. Depth {depth_m:.1f}m, clearance {clearance_m:.1f}m"
    if severity == Severity.CAUTION:
        return f"CAUTION: Shallow water ahead in {when}. Depth {depth_m:.1f}m, clearance {clearance_m:.1f}m"
    if severity == Severity.WARNING:
        return f"WARNING: Shallow water in path. {when} to hazard. Depth {depth_m:.1f}m"
    return f"INFO: Shallow water noted ahead. Depth {depth_m:.1f}m in {when}"


def classify(depth_ratio: float, time_s: float) -> Severity:
    for severity, max_ratio, max_time in SEVERITY_THRESHOLDS:
        if depth_ratio <= max_ratio and time_s <= max_time:
            return severity
    return Severity.INFO


class GroundingRiskProjector:
    def __init__(self, config: GroundingConfig | None = None) -> None:
        self._config = config or GroundingConfig()

    def project(
        self,
        position: Location,
        heading_deg: float,
        speed_knots: float,
        vessel: VesselProfile,
        readings: Sequence[DepthReading],
    ) -> list[GroundingAlert]:
        """Return grounding findings sorted by severity (worst first), then time to impact."""
        check_vessel(vessel)
        cfg = self._config
        reach = (
            geodesy.knots_to_mps(speed_knots) * (cfg.projection_seconds + cfg.course_check_seconds)
            + cfg.interpolation_radius_m
        )
        usable = [
            r for r in readings
            if r.confidence_score > cfg.min_reading_confidence
            and geodesy.distance(position, r.location) <= reach
        ]

        alerts: list[GroundingAlert] = []
        if not usable:
            return alerts

        for point in self._path(position, heading_deg, speed_knots, cfg.projection_seconds):
            depth = self.depth_at(point.location, usable)
            if depth is None:
                continue
            alert = self._evaluate(point, heading_deg, depth, vessel, usable)
            if alert is not None:
                alerts.append(alert)

        alerts.sort(key=lambda a: (-a.severity.level, a.time_to_impact_s))
        if alerts:
            log.debug("grounding_projected",
                      findings=len(alerts),
                      worst=alerts[0].severity.value,
                      time_to_impact=alerts[0].time_to_impact_s)
        return alerts

    def depth_at(self, location: Location, readings: Sequence[DepthReading]) -> float | None:
        cfg = self._config
        nearby = [
            r for r in readings
            if r.confidence_score > cfg.min_reading_confidence
            and geodesy.distance(location, r.location) <= cfg.interpolation_radius_m
        ]
        return interpolate_depth(location, nearby)

    def _path(
        self, start: Location, heading_deg: float, speed_knots: float, horizon_s: float,
    ) -> list[_PathPoint]:
        step = self._config.time_step_seconds
        speed_mps = geodesy.knots_to_mps(speed_knots)
        points: list[_PathPoint] = []
        steps = int(horizon_s // step)
        for i in range(steps + 1):
            t = i * step
            location = geodesy.destination(start, heading_deg, speed_mps * t)
            points.append(_PathPoint(location, t, speed_knots))
        return points

    def _evaluate(
        self,
        point: _PathPoint,
        heading_deg: float,
        depth_m: float,
        vessel: VesselProfile,
        readings: Sequence[DepthReading],
    ) -> GroundingAlert | None:
        clearance = depth_m - vessel.draft_m
        severity = classify(depth_m / vessel.draft_m, point.time_s)
        if severity == Severity.INFO and clearance > vessel.draft_m * 0.5:
            return None

        actions = self._avoidance_actions(point, heading_deg, vessel, readings)
        return GroundingAlert(
            id=f"grounding_{uuid.uuid4().hex[:12]}",
            severity=severity,
            time_to_impact_s=point.time_s,
            location=point.location,
            estimated_depth_m=depth_m,
            clearance_m=clearance,
            avoidance_action=actions[0],
            avoidance_actions=tuple(actions),
            confidence=self._confidence(point.location, readings),
            description=describe(severity, depth_m, clearance, point.time_s),
            timestamp_ms=now_ms(),
        )

    def _avoidance_actions(
        self,
        point: _PathPoint,
        heading_deg: float,
        vessel: VesselProfile,
        readings: Sequence[DepthReading],
    ) -> list[AvoidanceAction]:
        options: list[AvoidanceAction] = []

        for angle in TURN_ANGLES:
            for side, sign in (("port", -1), ("starboard", 1)):
                new_heading = (heading_deg + sign * angle) % 360
                action = self._course_change(point, new_heading, angle, side, vessel, readings)
                if action.success_probability > 0.5:
                    options.append(action)

        for factor in SPEED_FACTORS:
            action = self._speed_reduction(point, point.speed_knots * factor, vessel)
            if action.success_probability > 0.3:
                options.append(action)

        options.append(self._emergency_stop(point, vessel))
        options.sort(key=lambda a: (-a.success_probability, -a.priority))
        return options

    def _course_change(
        self,
        point: _PathPoint,
        new_heading: float,
        angle: float,
        side: str,
        vessel: VesselProfile,
        readings: Sequence[DepthReading],
    ) -> AvoidanceAction:
        success = 0.0
        for p in self._path(point.location, new_heading, point.speed_knots,
                            self._config.course_check_seconds):
            depth = self.depth_at(p.location, readings)
            if depth is not None and depth > vessel.draft_m * 1.5:
                success += 0.1
        success = min(1.0, success)
        return AvoidanceAction(
            type="course_change",
            priority=8 if success > 0.7 else 6,
            success_probability=success,
            time_required_s=turn_time_s(vessel, angle),
            description=f"Turn {angle}° to {side}",
            recommended_heading_deg=new_heading,
            recommended_speed_knots=point.speed_knots,
        )

    @staticmethod
    def _distance_to_hazard(point: _PathPoint) -> float:
        return point.time_s * geodesy.knots_to_mps(point.speed_knots)

    def _speed_reduction(
        self, point: _PathPoint, new_speed: float, vessel: VesselProfile,
    ) -> AvoidanceAction:
        stopping = stopping_distance_m(new_speed, vessel)
        success = 0.9 if stopping < self._distance_to_hazard(point) else 0.3
        return AvoidanceAction(
            type="speed_reduction",
            priority=7 if success > 0.7 else 4,
            success_probability=success,
            time_required_s=stopping_time_s(new_speed, vessel),
            description=f"Reduce speed to {new_speed:.1f} knots",
            recommended_speed_knots=new_speed,
        )

    def _emergency_stop(self, point: _PathPoint, vessel: VesselProfile) -> AvoidanceAction:
        stopping = stopping_distance_m(point.speed_knots, vessel)
        success = 0.8 if stopping < self._distance_to_hazard(point) * 0.8 else 0.2
        return AvoidanceAction(
            type="emergency_stop",
            priority=10,
            success_probability=success,
            time_required_s=stopping_time_s(point.speed_knots, vessel),
            description="Emergency stop - all stop",
            recommended_speed_knots=0.0,
        )

    def _confidence(self, location: Location, readings: Sequence[DepthReading]) -> float:
        nearby = [
            r for r in readings
            if r.confidence_score > self._config.min_reading_confidence
            and geodesy.distance(location, r.location) <= CONFIDENCE_RADIUS_M
        ]
        if not nearby:
            return 0.0
        avg = sum(r.confidence_score for r in nearby) / len(nearby)
        return min(1.0, avg + min(0.3, len(nearby) * 0.1))
