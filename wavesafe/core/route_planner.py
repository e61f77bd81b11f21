"""Depth-aware route planning and active route monitoring.

Planning lays one waypoint per kilometre along the great circle, validates
each against the depth data and, depending on the strategy, swaps weak
waypoints for a laterally offset alternative. A route carries an aggregate
risk assessment and, optionally, a flat list of alternative routes built
with the other strategies.

Monitoring compares each location fix against the active route. Findings go
to the alert hierarchy, at most one live alert per kind; recommendations
expire and are never handed out after expiry.
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Sequence

import structlog

from wavesafe.config import NavigationConfig
from wavesafe.core import geodesy
from wavesafe.core.depth_validation import DepthValidationEngine
from wavesafe.core.errors import check_vessel
from wavesafe.core.events import TOPIC_NAVIGATION, EventBus
from wavesafe.core.models import (
    AlternativeWaypoint,
    ContingencyAction,
    ContingencyPlan,
    DepthReading,
    Location,
    NavigationRecommendation,
    NavigationStatus,
    RiskFactor,
    RiskLevel,
    RouteHazard,
    RouteRiskAssessment,
    RouteWaypoint,
    SafeRoute,
    Severity,
    ValidationResult,
    VesselProfile,
    WeatherConditions,
)

if TYPE_CHECKING:
    from wavesafe.core.alerts import AlertHierarchy

log = structlog.get_logger()

STRATEGIES = ("balanced", "shortest", "safest")
MAX_ALTERNATIVE_ROUTES = 3

RISK_PENALTY = {
    RiskLevel.LOW: 0.0,
    RiskLevel.MEDIUM: 0.1,
    RiskLevel.HIGH: 0.3,
    RiskLevel.CRITICAL: 0.6,
}

OFFSETS_M = (250.0, 500.0, 1000.0)
SAFEST_EXTRA_OFFSETS_M = (2000.0,)
SAFEST_MIN_CONFIDENCE = 0.8

MIN_SPEED_KNOTS = 2.0
MAX_SPEED_KNOTS = 12.0


@dataclass
class RouteOptions:
    strategy: str = "balanced"  # balanced, shortest or safest
    include_alternatives: bool = True
    weather: WeatherConditions | None = None
    name: str | None = None


def waypoint_safety_score(validation: ValidationResult, draft_m: float, margin_ratio: float = 1.5) -> float:
    """0-1 score mixing confidence and clearance against the desired margin."""
    if validation.safety_margin_m is None:
        return 0.0
    clearance = max(0.0, validation.safety_margin_m) / (draft_m * margin_ratio)
    return 0.5 * validation.confidence + 0.5 * min(1.0, clearance)


class RoutePlanner:
    def __init__(
        self,
        validator: DepthValidationEngine,
        config: NavigationConfig | None = None,
        alerts: AlertHierarchy | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._validator = validator
        self._config = config or NavigationConfig()
        self._alerts = alerts
        self._bus = bus
        self._clock = clock

        # Active monitoring state
        self._route: SafeRoute | None = None
        self._location: Location | None = None
        self._leg_index = 0
        self._status: NavigationStatus | None = None
        self._recommendations: dict[str, NavigationRecommendation] = {}
        self._live_alerts: dict[str, str] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def _margin_ratio(self) -> float:
        return self._validator.config.safety_margin_ratio

    # --- Planning ---

    def plan_route(
        self,
        start: Location,
        end: Location,
        vessel: VesselProfile,
        readings: Sequence[DepthReading],
        options: RouteOptions | None = None,
    ) -> SafeRoute:
        check_vessel(vessel)
        options = options or RouteOptions()
        if options.strategy not in STRATEGIES:
            raise ValueError(f"unknown route strategy: {options.strategy}")

        route = self._build_route(start, end, vessel, readings, options)

        if options.include_alternatives:
            for strategy in STRATEGIES:
                if strategy == options.strategy:
                    continue
                if len(route.alternative_routes) >= MAX_ALTERNATIVE_ROUTES:
                    break
                alt_options = RouteOptions(
                    strategy=strategy,
                    include_alternatives=False,
                    weather=options.weather,
                    name=f"{route.name} ({strategy})",
                )
                route.alternative_routes.append(
                    self._build_route(start, end, vessel, readings, alt_options)
                )

        log.info("route_planned",
                 route_id=route.id,
                 strategy=route.strategy,
                 waypoints=len(route.waypoints),
                 distance_nm=round(route.total_distance_nm, 2),
                 safety_score=round(route.safety_score, 3),
                 overall_risk=route.risk_assessment.overall_risk.value,
                 alternatives=len(route.alternative_routes))
        return route

    def _build_route(
        self,
        start: Location,
        end: Location,
        vessel: VesselProfile,
        readings: Sequence[DepthReading],
        options: RouteOptions,
    ) -> SafeRoute:
        draft = vessel.draft_m
        direct = geodesy.distance(start, end)
        n = max(2, int(direct // self._config.waypoint_spacing_m))
        track_bearing = geodesy.bearing(start, end)
        line = [geodesy.intermediate(start, end, i / n) for i in range(n + 1)]

        locations: list[Location] = []
        validations: list[ValidationResult] = []
        alternatives: list[list[AlternativeWaypoint]] = []
        substituted: list[bool] = []

        for i, loc in enumerate(line):
            validation = self._validator.validate(loc, draft, readings)
            alts: list[AlternativeWaypoint] = []
            swapped = False
            is_endpoint = i == 0 or i == n
            if not is_endpoint and self._needs_alternative(validation, draft, options.strategy):
                alts = self._alternative_waypoints(
                    loc, line[i - 1], line[i + 1], track_bearing, validation, vessel, readings,
                    options.strategy,
                )
                if alts and options.strategy != "shortest":
                    best = alts[0]
                    loc = best.location
                    validation = self._validator.validate(loc, draft, readings)
                    swapped = True
            locations.append(loc)
            validations.append(validation)
            alternatives.append(alts)
            substituted.append(swapped)

        created = self._now_ms()
        waypoints: list[RouteWaypoint] = []
        eta = created
        for i, (loc, validation) in enumerate(zip(locations, validations)):
            speed = self._recommended_speed(validation, draft)
            if i > 0:
                leg = geodesy.distance(locations[i - 1], loc)
                eta += int(leg / geodesy.knots_to_mps(speed) * 1000)
            if i < len(locations) - 1:
                heading = geodesy.bearing(loc, locations[i + 1])
            else:
                heading = geodesy.bearing(locations[i - 1], loc)
            waypoints.append(RouteWaypoint(
                id=f"waypoint_{i}",
                location=loc,
                estimated_depth_m=validation.estimated_depth_m,
                safety_margin_m=validation.safety_margin_m,
                confidence=validation.confidence,
                eta_ms=eta,
                recommended_speed_knots=speed,
                heading_deg=heading,
                hazards=self._hazards(loc, validation, draft),
                alternatives=alternatives[i],
                substituted=substituted[i],
            ))

        total = sum(
            geodesy.distance(a.location, b.location) for a, b in zip(waypoints, waypoints[1:])
        )
        duration = (eta - created) / 1000.0
        mean_conf = sum(w.confidence for w in waypoints) / len(waypoints)
        risk = self.assess_risk(waypoints, vessel, options.weather)

        return SafeRoute(
            id=f"route_{uuid.uuid4().hex[:12]}",
            name=options.name or f"Route to {end.latitude:.4f}, {end.longitude:.4f}",
            strategy=options.strategy,
            waypoints=waypoints,
            total_distance_m=total,
            estimated_duration_s=duration,
            safety_score=max(0.0, mean_conf - RISK_PENALTY[risk.overall_risk]),
            confidence=mean_conf,
            vessel=vessel,
            risk_assessment=risk,
            created_ms=created,
        )

    def _needs_alternative(self, validation: ValidationResult, draft: float, strategy: str) -> bool:
        if strategy == "safest":
            return (
                validation.confidence < SAFEST_MIN_CONFIDENCE
                or validation.safety_margin_m is None
                or validation.safety_margin_m < draft * self._margin_ratio
            )
        return not validation.is_valid or validation.confidence < self._config.min_waypoint_confidence

    def _alternative_waypoints(
        self,
        loc: Location,
        prev: Location,
        nxt: Location,
        track_bearing: float,
        original: ValidationResult,
        vessel: VesselProfile,
        readings: Sequence[DepthReading],
        strategy: str,
    ) -> list[AlternativeWaypoint]:
        draft = vessel.draft_m
        base_score = waypoint_safety_score(original, draft, self._margin_ratio)
        straight = geodesy.distance(prev, loc) + geodesy.distance(loc, nxt)
        cruise_mps = geodesy.knots_to_mps(self._config.cruise_speed_knots)
        offsets = OFFSETS_M + (SAFEST_EXTRA_OFFSETS_M if strategy == "safest" else ())

        found: list[AlternativeWaypoint] = []
        for offset in offsets:
            for side, turn in (("starboard", 90.0), ("port", -90.0)):
                candidate = geodesy.destination(loc, (track_bearing + turn) % 360, offset)
                validation = self._validator.validate(candidate, draft, readings)
                improvement = waypoint_safety_score(validation, draft, self._margin_ratio) - base_score
                if improvement <= 0:
                    continue
                detour = max(
                    0.0,
                    geodesy.distance(prev, candidate) + geodesy.distance(candidate, nxt) - straight,
                )
                found.append(AlternativeWaypoint(
                    location=Location(candidate.latitude, candidate.longitude),
                    detour_distance_m=detour,
                    detour_time_s=detour / cruise_mps,
                    safety_improvement=improvement,
                    confidence=validation.confidence,
                    reason=f"Better depth data {offset:.0f}m to {side}",
                ))
        found.sort(key=lambda a: (-a.safety_improvement, a.detour_distance_m))
        return found

    def _recommended_speed(self, validation: ValidationResult, draft: float) -> float:
        speed = self._config.cruise_speed_knots
        if validation.confidence < 0.6:
            speed *= 0.7
        if validation.safety_margin_m is not None and validation.safety_margin_m < draft:
            speed *= 0.5
        return max(MIN_SPEED_KNOTS, min(speed, MAX_SPEED_KNOTS))

    @staticmethod
    def _hazards(loc: Location, validation: ValidationResult, draft: float) -> list[RouteHazard]:
        margin = validation.safety_margin_m
        if validation.estimated_depth_m is None or margin is None:
            return [RouteHazard(
                type="unsurveyed",
                severity=RiskLevel.MEDIUM,
                location=loc,
                radius_m=500.0,
                description="No reliable depth data for this waypoint",
                avoidance_distance_m=0.0,
            )]
        if margin >= draft:
            return []
        if margin < 0:
            severity = RiskLevel.CRITICAL
        elif margin < 0.5 * draft:
            severity = RiskLevel.HIGH
        else:
            severity = RiskLevel.MEDIUM
        return [RouteHazard(
            type="shallow_water",
            severity=severity,
            location=loc,
            radius_m=200.0,
            description=(
                f"Estimated depth {validation.estimated_depth_m:.1f}m, clearance {margin:.1f}m"
            ),
            avoidance_distance_m=200.0 + max(0.0, draft - margin) * 100.0,
        )]

    # --- Risk assessment ---

    def assess_risk(
        self,
        waypoints: Sequence[RouteWaypoint],
        vessel: VesselProfile,
        weather: WeatherConditions | None = None,
    ) -> RouteRiskAssessment:
        factors = [self._depth_risk(waypoints, vessel), self._navigation_risk(waypoints)]
        if weather is not None:
            factors.append(self._weather_risk(weather))

        overall = max((f.severity for f in factors), key=lambda s: s.rank, default=RiskLevel.LOW)
        plans = tuple(
            self._contingency_plan(f, waypoints, vessel)
            for f in factors if f.severity.rank >= RiskLevel.MEDIUM.rank
        )
        return RouteRiskAssessment(
            overall_risk=overall,
            risk_factors=tuple(factors),
            contingency_plans=plans,
            depth_margin_m=vessel.draft_m * self._margin_ratio,
        )

    @staticmethod
    def _depth_risk(waypoints: Sequence[RouteWaypoint], vessel: VesselProfile) -> RiskFactor:
        draft = vessel.draft_m
        margins = [w.safety_margin_m for w in waypoints if w.safety_margin_m is not None]
        if not margins:
            return RiskFactor("depth", RiskLevel.LOW, 0.0, 0.0, ())
        worst = min(margins)
        if worst < 0:
            severity = RiskLevel.CRITICAL
        elif worst < 0.5 * draft:
            severity = RiskLevel.HIGH
        elif worst < draft:
            severity = RiskLevel.MEDIUM
        else:
            severity = RiskLevel.LOW
        shallow = sum(1 for m in margins if m < draft)
        return RiskFactor(
            type="depth",
            severity=severity,
            probability=shallow / len(waypoints),
            impact=severity.rank / 4,
            mitigation=(
                "Reduce speed through shallow sections",
                "Monitor depth sounder continuously",
                "Transit shallow sections near high tide",
            ),
        )

    @staticmethod
    def _navigation_risk(waypoints: Sequence[RouteWaypoint]) -> RiskFactor:
        mean_conf = sum(w.confidence for w in waypoints) / len(waypoints)
        unsurveyed = sum(1 for w in waypoints if w.estimated_depth_m is None) / len(waypoints)
        if unsurveyed > 0.5:
            severity = RiskLevel.CRITICAL
        elif mean_conf < 0.4 or unsurveyed > 0.25:
            severity = RiskLevel.HIGH
        elif mean_conf < 0.6 or unsurveyed > 0:
            severity = RiskLevel.MEDIUM
        else:
            severity = RiskLevel.LOW
        return RiskFactor(
            type="navigation",
            severity=severity,
            probability=max(unsurveyed, 1.0 - mean_conf),
            impact=severity.rank / 4,
            mitigation=(
                "Cross-check position against official charts",
                "Post a lookout in poorly surveyed areas",
            ),
        )

    @staticmethod
    def _weather_risk(weather: WeatherConditions) -> RiskFactor:
        wind, wave, vis = weather.wind_speed_knots, weather.wave_height_m, weather.visibility_nm
        if wind >= 34 or wave >= 4.0:
            severity = RiskLevel.CRITICAL
        elif wind >= 25 or wave >= 2.5 or vis < 0.5:
            severity = RiskLevel.HIGH
        elif wind >= 15 or wave >= 1.5 or vis < 2.0:
            severity = RiskLevel.MEDIUM
        else:
            severity = RiskLevel.LOW
        return RiskFactor(
            type="weather",
            severity=severity,
            probability=min(1.0, max(wind / 40.0, wave / 5.0)),
            impact=severity.rank / 4,
            mitigation=(
                "Check forecast before departure",
                "Identify sheltered anchorages along the route",
            ),
        )

    def _contingency_plan(
        self, factor: RiskFactor, waypoints: Sequence[RouteWaypoint], vessel: VesselProfile,
    ) -> ContingencyPlan:
        surveyed = [w for w in waypoints if w.safety_margin_m is not None]
        safest = sorted(surveyed, key=lambda w: (-w.safety_margin_m, -w.confidence))[:2]
        destinations = tuple(w.location for w in safest)

        if factor.type == "depth":
            return ContingencyPlan(
                id="contingency_depth",
                trigger="depth_below_safety_margin",
                description="Measured depth falls below the planned safety margin",
                actions=(
                    ContingencyAction(1, "Reduce to minimum steerage speed", False, 9),
                    ContingencyAction(2, "Activate shallow water depth alarm", True, 8),
                    ContingencyAction(3, "Divert to nearest deeper waypoint", False, 7),
                ),
                alternative_destinations=destinations,
                emergency_procedures=(
                    "If grounded: stop engines and check for hull breach",
                    "Contact coast guard if taking on water",
                ),
            )
        if factor.type == "weather":
            return ContingencyPlan(
                id="contingency_weather",
                trigger="weather_deterioration",
                description="Wind or sea state exceeds safe limits for the vessel",
                actions=(
                    ContingencyAction(1, "Reduce speed and secure deck", False, 8),
                    ContingencyAction(2, "Proceed to nearest sheltered anchorage", False, 7),
                ),
                alternative_destinations=destinations,
                emergency_procedures=("Issue PAN-PAN if unable to make safe harbour",),
            )
        return ContingencyPlan(
            id="contingency_navigation",
            trigger="position_uncertainty",
            description="Depth data along the route is sparse or unreliable",
            actions=(
                ContingencyAction(1, "Switch to official chart soundings", True, 7),
                ContingencyAction(2, "Reduce speed until depth is confirmed", False, 6),
            ),
            alternative_destinations=destinations,
            emergency_procedures=("Anchor and wait for better visibility if position is doubtful",),
        )

    # --- Active monitoring ---

    @property
    def active_route(self) -> SafeRoute | None:
        return copy.deepcopy(self._route) if self._route else None

    @property
    def status(self) -> NavigationStatus | None:
        return self._status

    @property
    def is_monitoring(self) -> bool:
        return self._route is not None

    def start_monitoring(
        self, route: SafeRoute, current_location: Location,
        readings: Sequence[DepthReading] = (),
    ) -> NavigationStatus:
        self.stop_monitoring()
        self._route = copy.deepcopy(route)
        self._location = current_location
        self._leg_index = 0
        log.info("navigation_started", route_id=route.id, waypoints=len(route.waypoints))
        return self._evaluate(current_location, readings)

    def stop_monitoring(self) -> None:
        if self._route is not None:
            log.info("navigation_stopped", route_id=self._route.id)
        self._route = None
        self._location = None
        self._leg_index = 0
        self._status = None
        self._recommendations.clear()
        self._live_alerts.clear()

    def update_location(
        self, location: Location, readings: Sequence[DepthReading] = (),
    ) -> NavigationStatus | None:
        if self._route is None:
            return None
        self._location = location
        return self._evaluate(location, readings)

    def monitoring_tick(self, readings: Sequence[DepthReading] = ()) -> NavigationStatus | None:
        """Re-evaluate the latest location against the route."""
        if self._route is None or self._location is None:
            return None
        return self._evaluate(self._location, readings)

    def _evaluate(self, location: Location, readings: Sequence[DepthReading]) -> NavigationStatus:
        route = self._route
        assert route is not None
        wps = route.waypoints
        now = self._now_ms()

        # Nearest leg at or after the current one; the leg index never moves back.
        last_leg = len(wps) - 2
        best_leg, best_dev, best_along = self._leg_index, float("inf"), 0.0
        for k in range(self._leg_index, last_leg + 1):
            dev, along = geodesy.distance_to_segment_m(location, wps[k].location, wps[k + 1].location)
            if dev < best_dev:
                best_leg, best_dev, best_along = k, dev, along
        self._leg_index = best_leg
        deviation = best_dev

        current_wp, next_wp = wps[best_leg], wps[best_leg + 1]
        distance_to_wp = geodesy.distance(location, next_wp.location)
        speed = location.speed_knots if location.speed_knots else next_wp.recommended_speed_knots
        time_to_wp = distance_to_wp / geodesy.knots_to_mps(speed) if speed > 0 else 0.0

        done = sum(
            geodesy.distance(a.location, b.location) for a, b in zip(wps[:best_leg], wps[1:best_leg + 1])
        )
        progress = (done + best_along) / route.total_distance_m if route.total_distance_m > 0 else 1.0
        progress = max(0.0, min(1.0, progress))

        variance = 0.0
        if location.speed_knots is not None:
            variance = abs(location.speed_knots - current_wp.recommended_speed_knots)

        draft = route.vessel.draft_m
        validation = self._validator.validate(location, draft, readings)
        depth, margin = validation.estimated_depth_m, validation.safety_margin_m

        self._check_alerts(location, deviation, variance, margin, draft)
        self._update_recommendations(location, next_wp, deviation, variance, now)

        status = NavigationStatus(
            route_id=route.id,
            current_location=location,
            current_waypoint=copy.deepcopy(current_wp),
            next_waypoint=copy.deepcopy(next_wp),
            leg_index=best_leg,
            distance_to_waypoint_m=distance_to_wp,
            time_to_waypoint_s=time_to_wp,
            route_progress=progress,
            current_depth_m=depth,
            safety_margin_m=margin,
            route_deviation_m=deviation,
            speed_variance_knots=variance,
            active_alert_ids=tuple(self._live_alert_ids()),
            recommended_actions=tuple(self.pending_recommendations()),
            updated_ms=now,
        )
        self._status = status
        if self._bus is not None:
            self._bus.publish(TOPIC_NAVIGATION, status)
        return status

    def _live_alert_ids(self) -> list[str]:
        if self._alerts is None:
            return []
        return [aid for aid in self._live_alerts.values() if self._alerts.is_active(aid)]

    def _raise_once(
        self, kind: str, severity: Severity, category: str, title: str, message: str,
        location: Location, **extra,
    ) -> None:
        if self._alerts is None:
            return
        live = self._live_alerts.get(kind)
        if live is not None and self._alerts.is_active(live):
            return
        alert = self._alerts.create_alert(severity, category, title, message, location, **extra)
        self._live_alerts[kind] = alert.id

    def _check_alerts(
        self, location: Location, deviation: float, variance: float,
        margin: float | None, draft: float,
    ) -> None:
        cfg = self._config
        if margin is not None and margin / draft < cfg.depth_alert_ratio:
            self._raise_once(
                "depth", Severity.CRITICAL, "grounding", "Shallow Water Alert",
                f"Safety margin reduced to {margin:.1f}m", location, time_to_impact_s=30.0,
            )
        if deviation > cfg.route_deviation_threshold_m:
            self._raise_once(
                "deviation", Severity.WARNING, "navigation", "Route Deviation",
                f"Off planned route by {deviation:.0f}m", location,
            )
        if variance > cfg.speed_variance_threshold_knots:
            self._raise_once(
                "speed", Severity.CAUTION, "navigation", "Speed Variance",
                f"Speed differs from recommended by {variance:.1f} knots", location,
            )

    def _update_recommendations(
        self, location: Location, next_wp: RouteWaypoint, deviation: float, variance: float, now: int,
    ) -> None:
        cfg = self._config
        ttl_ms = int(cfg.recommendation_ttl_seconds * 1000)
        self._purge_expired(now)

        if deviation > cfg.route_deviation_threshold_m:
            minor = deviation < cfg.major_deviation_threshold_m
            automatic = cfg.auto_correct_minor_deviations and minor
            self._replace_recommendation(NavigationRecommendation(
                id=f"course_correction_{uuid.uuid4().hex[:8]}",
                type="course_correction",
                priority="medium" if minor else "high",
                title="Course Correction Recommended",
                description="Adjust course to return to planned route",
                parameters={
                    "recommended_heading_deg": geodesy.bearing(location, next_wp.location),
                    "deviation_m": round(deviation, 1),
                },
                acceptance="automatic" if automatic else "user_approval",
                created_ms=now,
                expires_at_ms=now + ttl_ms,
            ))

        if variance > 1.0:
            target = next_wp.recommended_speed_knots
            self._replace_recommendation(NavigationRecommendation(
                id=f"speed_adjustment_{uuid.uuid4().hex[:8]}",
                type="speed_change",
                priority="low",
                title="Speed Adjustment",
                description=f"Adjust speed to {target:.1f} knots for optimal navigation",
                parameters={"recommended_speed_knots": target},
                acceptance="user_approval",
                created_ms=now,
                expires_at_ms=now + ttl_ms,
            ))

    def _replace_recommendation(self, rec: NavigationRecommendation) -> None:
        for rid in [rid for rid, r in self._recommendations.items() if r.type == rec.type]:
            del self._recommendations[rid]
        self._recommendations[rec.id] = rec

    def _purge_expired(self, now: int) -> None:
        for rid in [rid for rid, r in self._recommendations.items() if r.is_expired(now)]:
            del self._recommendations[rid]

    def pending_recommendations(self) -> list[NavigationRecommendation]:
        now = self._now_ms()
        return [r for r in self._recommendations.values() if not r.is_expired(now)]

    def accept_recommendation(self, recommendation_id: str) -> NavigationRecommendation | None:
        rec = self._recommendations.pop(recommendation_id, None)
        if rec is None:
            log.warning("recommendation_unknown", recommendation_id=recommendation_id)
            return None
        if rec.is_expired(self._now_ms()):
            log.warning("recommendation_expired", recommendation_id=recommendation_id)
            return None
        log.info("recommendation_accepted", recommendation_id=rec.id, type=rec.type)
        return rec
