"""wavesafe — core internal data models.

These are plain dataclasses with no framework dependencies. Value types are
frozen; the three lifecycle entities (SafetyAlert, EmergencyIncident,
LocationSharingSession) live in their own modules because each is owned by
exactly one coordinating component.

Timestamps are epoch milliseconds, distances are meters and speeds are knots
unless a field name says otherwise.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


def now_ms() -> int:
    return int(time.time() * 1000)


class Severity(str, Enum):
    """Alert severity, totally ordered from INFO to EMERGENCY."""

    INFO = "info"
    CAUTION = "caution"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def level(self) -> int:
        """Escalation level 1-5, one-to-one with severity."""
        return _SEVERITY_LEVELS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.level < other.level

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.level <= other.level

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.level > other.level

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.level >= other.level


_SEVERITY_LEVELS = {
    Severity.INFO: 1,
    Severity.CAUTION: 2,
    Severity.WARNING: 3,
    Severity.CRITICAL: 4,
    Severity.EMERGENCY: 5,
}


class ReadingSource(str, Enum):
    OFFICIAL = "official"
    CROWDSOURCE = "crowdsource"
    PREDICTED = "predicted"
    SENSOR = "sensor"


class ValidationMethod(str, Enum):
    OFFICIAL_CHART = "official_chart"
    INTERPOLATION = "interpolation"
    ML_PREDICTION = "ml_prediction"
    INSUFFICIENT_DATA = "insufficient_data"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANKS[self]


_RISK_RANKS = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    accuracy_m: float | None = None
    heading_deg: float | None = None
    speed_knots: float | None = None
    timestamp_ms: int | None = None


@dataclass(frozen=True)
class DepthReading:
    id: str
    location: Location
    depth_m: float
    confidence_score: float
    timestamp_ms: int
    source: ReadingSource = ReadingSource.CROWDSOURCE
    vessel_draft_m: float | None = None
    user_id: str | None = None
    gps_accuracy_m: float | None = None
    vessel_speed_mps: float | None = None


@dataclass(frozen=True)
class VesselProfile:
    draft_m: float
    length_m: float = 10.0
    beam_m: float = 3.5
    displacement_t: float = 10.0
    vessel_type: str = "motorboat"
    name: str = ""
    id: str = ""


@dataclass(frozen=True)
class DataQualityMetrics:
    total_readings: int = 0
    official_readings: int = 0
    crowdsource_readings: int = 0
    average_age_ms: float = 0.0
    spatial_coverage: float = 0.0
    temporal_consistency: float = 1.0
    outlier_rate: float = 0.0
    confidence_score: float = 0.0


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    confidence: float
    estimated_depth_m: float | None
    safety_margin_m: float | None
    quality_metrics: DataQualityMetrics
    validation_method: ValidationMethod
    warnings: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    computed_at_ms: int = 0


@dataclass(frozen=True)
class WeatherConditions:
    wind_speed_knots: float = 0.0
    wave_height_m: float = 0.0
    visibility_nm: float = 10.0


@dataclass(frozen=True)
class RouteHazard:
    type: str  # "shallow_water" or "unsurveyed"
    severity: RiskLevel
    location: Location
    radius_m: float
    description: str
    avoidance_distance_m: float = 0.0


@dataclass(frozen=True)
class AlternativeWaypoint:
    location: Location
    detour_distance_m: float
    detour_time_s: float
    safety_improvement: float
    confidence: float
    reason: str


@dataclass
class RouteWaypoint:
    id: str
    location: Location
    estimated_depth_m: float | None
    safety_margin_m: float | None
    confidence: float
    eta_ms: int
    recommended_speed_knots: float
    heading_deg: float
    hazards: list[RouteHazard] = field(default_factory=list)
    alternatives: list[AlternativeWaypoint] = field(default_factory=list)
    substituted: bool = False


@dataclass(frozen=True)
class RiskFactor:
    type: str  # "depth", "weather" or "navigation"
    severity: RiskLevel
    probability: float
    impact: float
    mitigation: tuple[str, ...] = ()


@dataclass(frozen=True)
class ContingencyAction:
    step: int
    action: str
    automatic: bool
    priority: int


@dataclass(frozen=True)
class ContingencyPlan:
    id: str
    trigger: str
    description: str
    actions: tuple[ContingencyAction, ...]
    alternative_destinations: tuple[Location, ...] = ()
    emergency_procedures: tuple[str, ...] = ()


@dataclass(frozen=True)
class RouteRiskAssessment:
    overall_risk: RiskLevel
    risk_factors: tuple[RiskFactor, ...]
    contingency_plans: tuple[ContingencyPlan, ...]
    depth_margin_m: float
    weather_margin: float = 0.7
    time_buffer_s: float = 1800.0


@dataclass
class SafeRoute:
    id: str
    name: str
    strategy: str
    waypoints: list[RouteWaypoint]
    total_distance_m: float
    estimated_duration_s: float
    safety_score: float
    confidence: float
    vessel: VesselProfile
    risk_assessment: RouteRiskAssessment
    created_ms: int
    # Flat list, one level deep: alternatives never carry alternatives of their own.
    alternative_routes: list[SafeRoute] = field(default_factory=list)

    @property
    def total_distance_nm(self) -> float:
        return self.total_distance_m / 1852.0


@dataclass(frozen=True)
class NavigationRecommendation:
    id: str
    type: str  # "course_correction" or "speed_change"
    priority: str
    title: str
    description: str
    parameters: dict
    acceptance: str  # "automatic", "user_approval" or "user_required"
    created_ms: int
    expires_at_ms: int

    def is_expired(self, at_ms: int) -> bool:
        return at_ms >= self.expires_at_ms


@dataclass(frozen=True)
class NavigationStatus:
    route_id: str
    current_location: Location
    current_waypoint: RouteWaypoint | None
    next_waypoint: RouteWaypoint | None
    leg_index: int
    distance_to_waypoint_m: float
    time_to_waypoint_s: float
    route_progress: float
    current_depth_m: float | None
    safety_margin_m: float | None
    route_deviation_m: float
    speed_variance_knots: float
    active_alert_ids: tuple[str, ...]
    recommended_actions: tuple[NavigationRecommendation, ...]
    updated_ms: int


@dataclass(frozen=True)
class MonitorUpdate:
    """One item on the ingestion queue: a position fix or a batch of readings."""

    kind: str  # "location" or "readings"
    received_ms: int
    location: Location | None = None
    readings: tuple[DepthReading, ...] = ()
