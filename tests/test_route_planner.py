"""Tests for RoutePlanner: planning, risk assessment and active monitoring."""

from __future__ import annotations

import pytest

from tests.fakes import ORIGIN, make_reading
from wavesafe.config import AlertsConfig, NavigationConfig
from wavesafe.core import geodesy
from wavesafe.core.depth_validation import DepthValidationEngine
from wavesafe.core.errors import InvalidInputError
from wavesafe.core.events import TOPIC_NAVIGATION
from wavesafe.core.models import (
    Location,
    RiskLevel,
    Severity,
    VesselProfile,
    WeatherConditions,
)
from wavesafe.core.route_planner import RouteOptions, RoutePlanner

VESSEL = VesselProfile(draft_m=2.0, name="Test Boat", id="v1")
TRACK_M = 4000.0
END = geodesy.destination(ORIGIN, 90.0, TRACK_M)


def along(meters: float, lateral: float = 0.0, **kwargs) -> Location:
    """Point `meters` east of ORIGIN, `lateral` meters north of the track."""
    p = geodesy.destination(ORIGIN, 90.0, meters)
    if lateral:
        p = geodesy.destination(p, 0.0 if lateral > 0 else 180.0, abs(lateral))
    return Location(p.latitude, p.longitude, **kwargs)


def survey(depth_fn, now_ms: int) -> list:
    """Grid of soundings every 250 m covering the track and 1-2 km either side.

    Built row by row so readings of similar depth stay next to each other in time.
    """
    readings = []
    for lateral in range(-1000, 2001, 250):
        for x in range(-250, int(TRACK_M) + 251, 250):
            readings.append(make_reading(depth_fn(lateral), along(x, lateral), timestamp_ms=now_ms))
    return readings


def deep(lateral):
    return 10.0


def shoal_on_track(lateral):
    # Shallow along and south of the track, deep water from 500 m north.
    return 1.5 if lateral <= 250 else 12.0


@pytest.fixture
def now_ms(scheduler):
    return int(scheduler.now() * 1000)


@pytest.fixture
def validator(scheduler):
    return DepthValidationEngine(clock=scheduler.now)


@pytest.fixture
def planner(validator, hierarchy, bus, scheduler):
    return RoutePlanner(validator, alerts=hierarchy, bus=bus, clock=scheduler.now)


@pytest.fixture
def deep_survey(now_ms):
    return survey(deep, now_ms)


# --- Planning ---

def test_endpoints_preserved(planner, deep_survey):
    route = planner.plan_route(ORIGIN, END, VESSEL, deep_survey)
    assert route.waypoints[0].location == ORIGIN
    assert route.waypoints[-1].location == END
    assert len(route.waypoints) >= 2


def test_short_route_still_has_two_legs(planner, deep_survey):
    route = planner.plan_route(ORIGIN, along(300), VESSEL, deep_survey)
    assert len(route.waypoints) == 3


def test_unknown_strategy_rejected(planner, deep_survey):
    with pytest.raises(ValueError):
        planner.plan_route(ORIGIN, END, VESSEL, deep_survey, RouteOptions(strategy="scenic"))


def test_zero_draft_vessel_rejected(planner, deep_survey):
    with pytest.raises(InvalidInputError):
        planner.plan_route(ORIGIN, END, VesselProfile(draft_m=0.0), deep_survey)


def test_deep_water_route(planner, deep_survey):
    route = planner.plan_route(ORIGIN, END, VESSEL, deep_survey, RouteOptions(name="Harbour run"))

    assert route.name == "Harbour run"
    assert route.strategy == "balanced"
    assert route.risk_assessment.overall_risk == RiskLevel.LOW
    assert route.risk_assessment.contingency_plans == ()
    assert route.risk_assessment.depth_margin_m == pytest.approx(3.0)
    assert route.total_distance_m == pytest.approx(TRACK_M, rel=1e-3)
    assert route.safety_score == pytest.approx(route.confidence)
    for wp in route.waypoints:
        assert wp.hazards == []
        assert not wp.substituted
        assert wp.recommended_speed_knots == 8.0
        assert wp.estimated_depth_m == pytest.approx(10.0)

    etas = [wp.eta_ms for wp in route.waypoints]
    assert etas == sorted(etas)
    assert route.estimated_duration_s == pytest.approx(
        TRACK_M / geodesy.knots_to_mps(8.0), rel=1e-2,
    )


def test_alternatives_are_flat_and_bounded(planner, deep_survey):
    route = planner.plan_route(ORIGIN, END, VESSEL, deep_survey)
    assert len(route.alternative_routes) <= 3
    assert {r.strategy for r in route.alternative_routes} == {"shortest", "safest"}
    for alt in route.alternative_routes:
        assert alt.alternative_routes == []


def test_alternatives_can_be_skipped(planner, deep_survey):
    route = planner.plan_route(ORIGIN, END, VESSEL, deep_survey,
                               RouteOptions(include_alternatives=False))
    assert route.alternative_routes == []


def test_shallow_track_is_critical(planner, now_ms):
    readings = survey(shoal_on_track, now_ms)
    route = planner.plan_route(ORIGIN, END, VESSEL, readings, RouteOptions(include_alternatives=False))

    risk = route.risk_assessment
    assert risk.overall_risk == RiskLevel.CRITICAL
    depth = next(f for f in risk.risk_factors if f.type == "depth")
    assert depth.severity == RiskLevel.CRITICAL
    assert "contingency_depth" in {p.id for p in risk.contingency_plans}
    assert route.safety_score == pytest.approx(max(0.0, route.confidence - 0.6))

    start = route.waypoints[0]
    assert start.hazards and start.hazards[0].type == "shallow_water"
    assert start.hazards[0].severity == RiskLevel.CRITICAL
    assert start.recommended_speed_knots == 4.0


def test_safest_strategy_detours_into_deep_water(planner, now_ms):
    readings = survey(shoal_on_track, now_ms)
    route = planner.plan_route(ORIGIN, END, VESSEL, readings,
                               RouteOptions(strategy="safest", include_alternatives=False))

    middle = route.waypoints[1:-1]
    assert middle
    assert all(wp.substituted for wp in middle)
    for wp in middle:
        assert wp.safety_margin_m > VESSEL.draft_m
        assert wp.alternatives
        best = wp.alternatives[0]
        assert best.safety_improvement > 0
        assert best.detour_distance_m > 0
        assert "north" not in best.reason
        assert best.reason.endswith("to port")
    # Endpoints never move.
    assert route.waypoints[0].location == ORIGIN
    assert route.waypoints[-1].location == END


def test_shortest_strategy_lists_but_keeps_line(planner, now_ms):
    readings = survey(shoal_on_track, now_ms)
    safest = planner.plan_route(ORIGIN, END, VESSEL, readings,
                                RouteOptions(strategy="safest", include_alternatives=False))
    shortest = planner.plan_route(ORIGIN, END, VESSEL, readings,
                                  RouteOptions(strategy="shortest", include_alternatives=False))
    assert not any(wp.substituted for wp in shortest.waypoints)
    assert shortest.total_distance_m < safest.total_distance_m


def test_unsurveyed_route(planner):
    route = planner.plan_route(ORIGIN, END, VESSEL, [], RouteOptions(include_alternatives=False))

    assert route.risk_assessment.overall_risk == RiskLevel.CRITICAL
    nav = next(f for f in route.risk_assessment.risk_factors if f.type == "navigation")
    assert nav.severity == RiskLevel.CRITICAL
    assert route.safety_score == 0.0
    for wp in route.waypoints:
        assert wp.estimated_depth_m is None
        assert wp.hazards[0].type == "unsurveyed"
        assert wp.recommended_speed_knots == pytest.approx(5.6)
        assert not wp.substituted


def test_weather_adds_risk_factor(planner, deep_survey):
    options = RouteOptions(include_alternatives=False,
                           weather=WeatherConditions(wind_speed_knots=28, wave_height_m=1.0))
    route = planner.plan_route(ORIGIN, END, VESSEL, deep_survey, options)

    weather = next(f for f in route.risk_assessment.risk_factors if f.type == "weather")
    assert weather.severity == RiskLevel.HIGH
    assert route.risk_assessment.overall_risk == RiskLevel.HIGH
    assert "contingency_weather" in {p.id for p in route.risk_assessment.contingency_plans}


# --- Monitoring ---

@pytest.fixture
def route(planner, deep_survey):
    return planner.plan_route(ORIGIN, END, VESSEL, deep_survey, RouteOptions(include_alternatives=False))


def test_start_monitoring_on_track(planner, route, deep_survey, recorder):
    status = planner.start_monitoring(route, ORIGIN, deep_survey)

    assert planner.is_monitoring
    assert status.route_id == route.id
    assert status.leg_index == 0
    assert status.route_deviation_m == pytest.approx(0.0, abs=1.0)
    assert status.route_progress == pytest.approx(0.0, abs=1e-3)
    assert status.active_alert_ids == ()
    assert status.recommended_actions == ()
    assert recorder[TOPIC_NAVIGATION] == [status]


def test_progress_and_leg_tracking(planner, route, deep_survey):
    planner.start_monitoring(route, ORIGIN, deep_survey)

    status = planner.update_location(along(2000), deep_survey)
    assert status.route_progress == pytest.approx(0.5, abs=0.01)
    assert status.distance_to_waypoint_m == pytest.approx(
        geodesy.distance(along(2000), status.next_waypoint.location), rel=1e-6,
    )

    late = planner.update_location(along(TRACK_M - 200), deep_survey)
    last_leg = len(route.waypoints) - 2
    assert late.leg_index == last_leg
    # Backtracking never moves the leg index back.
    back = planner.update_location(along(100), deep_survey)
    assert back.leg_index == last_leg


def test_major_deviation_raises_one_alert(planner, route, deep_survey, hierarchy):
    planner.start_monitoring(route, ORIGIN, deep_survey)

    status = planner.update_location(along(1000, 200), deep_survey)
    assert status.route_deviation_m == pytest.approx(200, rel=0.02)
    nav_alerts = hierarchy.alerts_by_category("navigation")
    assert len(nav_alerts) == 1
    assert nav_alerts[0].severity == Severity.WARNING
    assert nav_alerts[0].title == "Route Deviation"
    assert status.active_alert_ids == (nav_alerts[0].id,)

    rec = status.recommended_actions[0]
    assert rec.type == "course_correction"
    assert rec.priority == "high"
    assert rec.acceptance == "user_approval"

    planner.update_location(along(1100, 220), deep_survey)
    assert len(hierarchy.alerts_by_category("navigation")) == 1
    # Recommendations of one type replace each other.
    assert len([r for r in planner.pending_recommendations() if r.type == "course_correction"]) == 1


def test_minor_deviation_is_auto_corrected(planner, route, deep_survey):
    planner.start_monitoring(route, ORIGIN, deep_survey)
    status = planner.update_location(along(1000, 70), deep_survey)

    rec = status.recommended_actions[0]
    assert rec.priority == "medium"
    assert rec.acceptance == "automatic"


def test_speed_variance(planner, route, deep_survey, hierarchy):
    planner.start_monitoring(route, ORIGIN, deep_survey)
    status = planner.update_location(along(500, speed_knots=12.0), deep_survey)

    assert status.speed_variance_knots == pytest.approx(4.0)
    alerts = [a for a in hierarchy.alerts_by_category("navigation") if a.title == "Speed Variance"]
    assert len(alerts) == 1 and alerts[0].severity == Severity.CAUTION
    rec = next(r for r in status.recommended_actions if r.type == "speed_change")
    assert rec.parameters["recommended_speed_knots"] == 8.0


def test_depth_alert_when_margin_collapses(planner, route, deep_survey, hierarchy, now_ms):
    planner.start_monitoring(route, ORIGIN, deep_survey)
    spot = along(1500)
    shallow = [make_reading(1.0, geodesy.destination(spot, 120 * i, 30), timestamp_ms=now_ms)
               for i in range(3)]

    status = planner.update_location(spot, shallow)
    assert status.safety_margin_m == pytest.approx(-1.0)
    grounding = hierarchy.alerts_by_category("grounding")
    assert len(grounding) == 1
    assert grounding[0].severity == Severity.CRITICAL
    assert grounding[0].title == "Shallow Water Alert"
    assert grounding[0].time_to_impact_s == 30.0


def test_depth_alert_returns_after_acknowledged_one_retires(
    planner, route, deep_survey, hierarchy, scheduler, now_ms,
):
    planner.start_monitoring(route, ORIGIN, deep_survey)
    spot = along(1500)
    shallow = [make_reading(1.0, geodesy.destination(spot, 120 * i, 30), timestamp_ms=now_ms)
               for i in range(3)]

    planner.update_location(spot, shallow)
    (first,) = hierarchy.alerts_by_category("grounding")
    assert hierarchy.acknowledge_alert(first.id, "helm")
    planner.update_location(spot, shallow)
    assert [a.id for a in hierarchy.alerts_by_category("grounding")] == [first.id]

    scheduler.advance(AlertsConfig().acknowledged_retention_seconds)
    assert not hierarchy.is_active(first.id)
    planner.update_location(spot, shallow)
    (second,) = hierarchy.alerts_by_category("grounding")
    assert second.id != first.id
    assert second.title == "Shallow Water Alert"


def test_recommendations_expire(planner, route, deep_survey, scheduler):
    planner.start_monitoring(route, ORIGIN, deep_survey)
    status = planner.update_location(along(1000, 200), deep_survey)
    rec_id = status.recommended_actions[0].id

    scheduler.advance(NavigationConfig().recommendation_ttl_seconds + 1)
    assert planner.pending_recommendations() == []
    assert planner.accept_recommendation(rec_id) is None


def test_accept_recommendation_once(planner, route, deep_survey):
    planner.start_monitoring(route, ORIGIN, deep_survey)
    status = planner.update_location(along(1000, 200), deep_survey)
    rec_id = status.recommended_actions[0].id

    accepted = planner.accept_recommendation(rec_id)
    assert accepted is not None and accepted.id == rec_id
    assert planner.accept_recommendation(rec_id) is None


def test_monitoring_tick_reuses_last_fix(planner, route, deep_survey):
    assert planner.monitoring_tick(deep_survey) is None
    planner.start_monitoring(route, ORIGIN, deep_survey)
    planner.update_location(along(800), deep_survey)
    status = planner.monitoring_tick(deep_survey)
    assert status.current_location == along(800)


def test_stop_monitoring_clears_state(planner, route, deep_survey):
    planner.start_monitoring(route, ORIGIN, deep_survey)
    planner.update_location(along(1000, 200), deep_survey)
    planner.stop_monitoring()

    assert not planner.is_monitoring
    assert planner.status is None
    assert planner.active_route is None
    assert planner.pending_recommendations() == []
    assert planner.update_location(along(1200), deep_survey) is None


def test_monitoring_works_on_a_copy(planner, route, deep_survey):
    planner.start_monitoring(route, ORIGIN, deep_survey)
    route.waypoints.clear()
    assert len(planner.active_route.waypoints) >= 2
