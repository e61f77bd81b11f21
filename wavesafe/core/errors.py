"""Boundary checks for inputs entering the engine.

Core algorithms assume their inputs already passed these checks; they never
raise for data-quality problems.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wavesafe.core.models import DepthReading, Location, VesselProfile

MAX_PLAUSIBLE_DEPTH_M = 11_000.0


class InvalidInputError(ValueError):
    """Raised when an input violates the basic data-model invariants."""


def _finite(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def check_location(location: Location) -> None:
    if not _finite(location.latitude) or abs(location.latitude) > 90:
        raise InvalidInputError(f"latitude out of range: {location.latitude}")
    if not _finite(location.longitude) or abs(location.longitude) > 180:
        raise InvalidInputError(f"longitude out of range: {location.longitude}")
    if location.speed_knots is not None and (not _finite(location.speed_knots) or location.speed_knots < 0):
        raise InvalidInputError(f"speed must be >= 0: {location.speed_knots}")
    if location.heading_deg is not None and not _finite(location.heading_deg):
        raise InvalidInputError(f"heading is not a number: {location.heading_deg}")


def check_vessel(vessel: VesselProfile) -> None:
    check_draft(vessel.draft_m)
    if not _finite(vessel.displacement_t) or vessel.displacement_t < 0:
        raise InvalidInputError(f"displacement must be >= 0: {vessel.displacement_t}")


def check_draft(draft_m: float) -> None:
    if not _finite(draft_m) or draft_m <= 0:
        raise InvalidInputError(f"draft must be > 0: {draft_m}")


def check_reading(reading: DepthReading) -> None:
    if not reading.id:
        raise InvalidInputError("reading id is required")
    check_location(reading.location)
    if not _finite(reading.depth_m) or not 0 <= reading.depth_m <= MAX_PLAUSIBLE_DEPTH_M:
        raise InvalidInputError(f"depth out of range: {reading.depth_m}")
    if not _finite(reading.confidence_score) or not 0 <= reading.confidence_score <= 1:
        raise InvalidInputError(f"confidence must be within 0-1: {reading.confidence_score}")


def check_priority(priority: int) -> None:
    if not 1 <= priority <= 10:
        raise InvalidInputError(f"contact priority must be within 1-10: {priority}")
