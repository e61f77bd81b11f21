#!/usr/bin/env python3
"""wavesafe voyage simulator.

Builds a synthetic depth survey around a shoal, plans a route across it and
drives a vessel along the direct track on a virtual clock, printing every
alert, escalation and incident the engine raises.

Usage:
    # Default: 2 m draft motorboat crossing a 1.2 m shoal off Brest
    python -m tools.simulator.simulate

    # Deeper keel, faster, acknowledge alerts as they come in
    python -m tools.simulator.simulate --draft 2.6 --speed 12 --ack

    # Different area, JSON logs
    python -m tools.simulator.simulate --center 43.29,5.36 --log-format json
"""

from __future__ import annotations

import argparse
import asyncio
import math
import random
import time
import uuid

from wavesafe.config import AppConfig
from wavesafe.core import geodesy
from wavesafe.core.alerts import AlertEvent
from wavesafe.core.emergency import (
    ContactAvailability,
    EmergencyContact,
    ServiceArea,
    ServiceCapability,
)
from wavesafe.core.events import TOPIC_ALERTS, TOPIC_INCIDENTS
from wavesafe.core.models import DepthReading, Location, ReadingSource, VesselProfile
from wavesafe.core.route_planner import RouteOptions
from wavesafe.main import Engine, create_engine, setup_logging
from wavesafe.scheduling.manual import ManualScheduler


def shoal_depth(point: Location, shoal: Location, shoal_radius_m: float,
                shoal_depth_m: float, ambient_depth_m: float) -> float:
    """Smooth bowl-shaped shoal: ambient depth far away, shoal depth at the center."""
    d = geodesy.distance(point, shoal)
    factor = math.exp(-0.5 * (d / shoal_radius_m) ** 2)
    return ambient_depth_m - (ambient_depth_m - shoal_depth_m) * factor


def make_survey(args: argparse.Namespace, center: Location, now_ms: int) -> list[DepthReading]:
    """Scatter crowdsourced soundings around the shoal."""
    readings = []
    for _ in range(args.readings):
        angle = random.uniform(0, 360)
        dist = args.radius_km * 1000 * math.sqrt(random.random())
        loc = geodesy.destination(center, angle, dist)
        depth = shoal_depth(loc, center, args.shoal_radius_m, args.shoal_depth, args.ambient_depth)
        depth = max(0.2, depth + random.gauss(0, 0.2))
        readings.append(DepthReading(
            id=str(uuid.uuid4()),
            location=loc,
            depth_m=round(depth, 2),
            confidence_score=round(random.uniform(0.6, 0.95), 2),
            timestamp_ms=now_ms - random.randint(0, 10 * 86_400_000),
            source=ReadingSource.CROWDSOURCE,
            user_id=f"user-{random.randint(1, 20)}",
            gps_accuracy_m=random.uniform(2, 8),
        ))
    return readings


def drain_queue(engine: Engine) -> None:
    while True:
        update = engine.queue.get_nowait()
        if update is None:
            return
        engine.monitor.apply(update)


def print_alert(event: AlertEvent) -> None:
    alert = event.alert
    print(f"  [alert {event.action:>12}] {alert.severity.value.upper():<9} "
          f"{alert.category}: {alert.title} - {alert.message}")


def print_incident(incident) -> None:
    print(f"  [incident] {incident.id} {incident.status.value} "
          f"({len(incident.contacts_notified)} notification attempts)")


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    random.seed(args.seed)
    scheduler = ManualScheduler(start=time.time())

    config = AppConfig()
    config.outbox.base_dir = args.outbox
    config.logging.level = args.log_level
    config.logging.format = args.log_format
    setup_logging(config)

    vessel = VesselProfile(draft_m=args.draft, name="Simulated Vessel", id="sim-1",
                           vessel_type=args.vessel_type)
    engine = create_engine(config, scheduler=scheduler, vessel=vessel)

    center = Location(*args.center)
    engine.emergency.add_contact(EmergencyContact(
        id="coast_guard",
        name="Coast Guard",
        type="coast_guard",
        priority=10,
        service_area=ServiceArea(center=center, radius_km=50),
        availability=ContactAvailability(available_24h=True),
        capabilities=(ServiceCapability("rescue"), ServiceCapability("coordination")),
        phone_numbers=("+33 2 98 00 00 00",),
        vhf_channel=16,
    ))

    engine.bus.subscribe(TOPIC_ALERTS, print_alert)
    engine.bus.subscribe(TOPIC_INCIDENTS, print_incident)

    readings = make_survey(args, center, int(scheduler.now() * 1000))
    await engine.monitor.submit_readings(readings)
    drain_queue(engine)

    half = args.radius_km * 1000 * 0.8
    start = geodesy.destination(center, 270, half)
    end = geodesy.destination(center, 90, half)

    route = engine.planner.plan_route(start, end, vessel, engine.monitor.readings(),
                                      RouteOptions(strategy=args.strategy, name="Shoal crossing"))

    print(f"Starting simulation: draft {args.draft} m, {args.speed} kn, {args.readings} soundings")
    print(f"  Route: {len(route.waypoints)} waypoints, {route.total_distance_nm:.2f} nm, "
          f"safety score {route.safety_score:.2f}, risk {route.risk_assessment.overall_risk.value}")
    for alt in route.alternative_routes:
        print(f"  Alternative ({alt.strategy}): safety score {alt.safety_score:.2f}, "
              f"{alt.total_distance_nm:.2f} nm")
    print()

    engine.planner.start_monitoring(route, start, engine.monitor.readings())

    heading = geodesy.bearing(start, end)
    total = geodesy.distance(start, end)
    step_s = config.monitoring.tick_interval_seconds
    speed_mps = geodesy.knots_to_mps(args.speed)
    travelled = 0.0

    while travelled <= total:
        position = geodesy.destination(start, heading, travelled)
        loc = Location(position.latitude, position.longitude, heading_deg=heading,
                       speed_knots=args.speed, timestamp_ms=int(scheduler.now() * 1000))
        await engine.monitor.submit_location(loc)
        drain_queue(engine)

        engine.monitor.tick()
        await scheduler.drain()

        if args.ack:
            for alert in engine.alerts.active_alerts():
                if not alert.acknowledged:
                    engine.alerts.acknowledge_alert(alert.id, "helm")

        depth = shoal_depth(loc, center, args.shoal_radius_m, args.shoal_depth, args.ambient_depth)
        if depth < args.draft:
            print(f"\n  AGROUND at {loc.latitude:.5f}, {loc.longitude:.5f} "
                  f"(depth {depth:.1f} m) after {travelled:.0f} m")
            break

        scheduler.advance(step_s)
        await scheduler.drain()
        travelled += speed_mps * step_s

    engine.planner.stop_monitoring()

    stats = engine.stats.snapshot()
    print("\nSimulation complete")
    print(f"  Ticks: {stats['ticks']}")
    print(f"  Alerts: {stats['alerts']['total']} ({stats['alerts']['escalations']} escalations)")
    print(f"  Incidents: {stats['incidents_reported']}")
    print(f"  Notifications sent/failed: {stats['notifications_sent']}/{stats['notifications_failed']}")
    for incident in engine.emergency.active_incidents():
        print(f"  Open incident {incident.id}: {incident.status.value}, lead {incident.lead_agency or '-'}")


def main():
    parser = argparse.ArgumentParser(description="wavesafe voyage simulator")
    parser.add_argument("--center", type=str, default="48.35,-4.55",
                        help="Shoal center lat,lon (default: off Brest)")
    parser.add_argument("--radius-km", type=float, default=2.0, help="Survey radius in km")
    parser.add_argument("--readings", type=int, default=400, help="Number of soundings")
    parser.add_argument("--shoal-depth", type=float, default=1.2, help="Depth at shoal center (m)")
    parser.add_argument("--shoal-radius-m", type=float, default=250.0, help="Shoal radius (m)")
    parser.add_argument("--ambient-depth", type=float, default=12.0, help="Depth away from the shoal (m)")
    parser.add_argument("--draft", type=float, default=2.0, help="Vessel draft (m)")
    parser.add_argument("--vessel-type", default="motorboat", help="motorboat, sailboat, ...")
    parser.add_argument("--speed", type=float, default=6.0, help="Vessel speed (knots)")
    parser.add_argument("--strategy", default="balanced", choices=("balanced", "shortest", "safest"))
    parser.add_argument("--ack", action="store_true", help="Acknowledge alerts as they arrive")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--outbox", default="data/sim-outbox", help="Notification outbox directory")
    parser.add_argument("--log-level", default="warning")
    parser.add_argument("--log-format", default="console", choices=("console", "json"))

    args = parser.parse_args()

    # Parse center
    lat, lon = args.center.split(",")
    args.center = (float(lat), float(lon))

    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
