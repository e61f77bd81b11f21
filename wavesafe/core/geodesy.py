"""Geodesy helpers on a spherical earth.

Pure functions, no state. Distances in meters, angles in degrees.
"""

from __future__ import annotations

import math

from wavesafe.core.models import Location

# Earth radius in meters (for Haversine).
EARTH_RADIUS_M = 6_371_000.0

METERS_PER_NM = 1852.0
MPS_PER_KNOT = 0.514444


def knots_to_mps(knots: float) -> float:
    return knots * MPS_PER_KNOT


def mps_to_knots(mps: float) -> float:
    return mps / MPS_PER_KNOT


def meters_to_nm(meters: float) -> float:
    return meters / METERS_PER_NM


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def distance(a: Location, b: Location) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def bearing(a: Location, b: Location) -> float:
    """Initial great-circle bearing from a to b, 0-360 degrees."""
    phi1, phi2 = math.radians(a.latitude), math.radians(b.latitude)
    dlon = math.radians(b.longitude - a.longitude)
    x = math.sin(dlon) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlon)
    return (math.degrees(math.atan2(x, y)) + 360.0) % 360.0


def destination(start: Location, bearing_deg: float, meters: float) -> Location:
    """Point reached travelling `meters` from start on an initial bearing."""
    delta = meters / EARTH_RADIUS_M
    theta = math.radians(bearing_deg)
    phi1 = math.radians(start.latitude)
    lam1 = math.radians(start.longitude)

    phi2 = math.asin(
        math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
    )
    lam2 = lam1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )
    lon = (math.degrees(lam2) + 540.0) % 360.0 - 180.0
    return Location(
        latitude=math.degrees(phi2),
        longitude=lon,
        heading_deg=bearing_deg,
        speed_knots=start.speed_knots,
    )


def intermediate(a: Location, b: Location, fraction: float) -> Location:
    """Point at `fraction` (0-1) of the way along the great circle from a to b.

    The endpoints are returned unchanged so routes keep their exact start/end.
    """
    if fraction <= 0.0:
        return a
    if fraction >= 1.0:
        return b
    d = distance(a, b)
    if d == 0.0:
        return a
    return destination(a, bearing(a, b), d * fraction)


def cross_track_m(point: Location, start: Location, end: Location) -> float:
    """Signed distance of point from the great circle start->end (+ is starboard)."""
    d13 = distance(start, point) / EARTH_RADIUS_M
    theta13 = math.radians(bearing(start, point))
    theta12 = math.radians(bearing(start, end))
    return math.asin(max(-1.0, min(1.0, math.sin(d13) * math.sin(theta13 - theta12)))) * EARTH_RADIUS_M


def along_track_m(point: Location, start: Location, end: Location) -> float:
    """Distance from start to the foot of the perpendicular from point, signed."""
    d13 = distance(start, point) / EARTH_RADIUS_M
    dxt = cross_track_m(point, start, end) / EARTH_RADIUS_M
    cos_dxt = math.cos(dxt)
    if cos_dxt == 0.0:
        return 0.0
    dat = math.acos(max(-1.0, min(1.0, math.cos(d13) / cos_dxt)))
    theta13 = math.radians(bearing(start, point))
    theta12 = math.radians(bearing(start, end))
    sign = 1.0 if math.cos(theta13 - theta12) >= 0 else -1.0
    return sign * dat * EARTH_RADIUS_M


def distance_to_segment_m(point: Location, start: Location, end: Location) -> tuple[float, float]:
    """Return (distance to segment, clamped along-track position) in meters."""
    leg = distance(start, end)
    if leg == 0.0:
        return distance(point, start), 0.0
    along = along_track_m(point, start, end)
    if along <= 0.0:
        return distance(point, start), 0.0
    if along >= leg:
        return distance(point, end), leg
    return abs(cross_track_m(point, start, end)), along
