"""Depth validation.

Scores and fuses the depth readings around a position into one estimated
depth, a confidence and a safety margin for a given draft. Official chart
soundings are preferred when any lie close by; otherwise crowdsourced
readings go through IQR outlier analysis and a weighted mean.

Results are cached per (position rounded to 3 dp, draft, data fingerprint)
for a short TTL. The fingerprint covers the in-range readings and the nearby
chart soundings, so a changed data set never hits a stale entry.
"""

from __future__ import annotations

import math
import statistics
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Sequence

import structlog

from wavesafe.config import ValidationConfig
from wavesafe.core import geodesy
from wavesafe.core.cache import BoundedStore
from wavesafe.core.errors import InvalidInputError, check_draft
from wavesafe.core.models import (
    DataQualityMetrics,
    DepthReading,
    Location,
    ReadingSource,
    ValidationMethod,
    ValidationResult,
)
from wavesafe.core.stats import EngineStats

log = structlog.get_logger()

CacheKey = tuple[float, float, float, frozenset]

MS_PER_DAY = 24 * 60 * 60 * 1000
WEIGHT_HALF_LIFE_MS = 7 * MS_PER_DAY
FRESHNESS_DECAY_MS = 14 * MS_PER_DAY
CHART_OUTDATED_MS = 365 * MS_PER_DAY

CROWDSOURCE_CONFIDENCE_CAP = 0.9
OFFICIAL_CONFIDENCE_CAP = 0.95

SOURCE_WEIGHTS = {
    ReadingSource.OFFICIAL: 2.0,
    ReadingSource.PREDICTED: 0.8,
}

# Readings flagged as part of a temporal-inconsistency pattern keep this
# fraction of their weight.
TEMPORAL_DOWNWEIGHT = 0.5

INSUFFICIENT_DATA_RECOMMENDATIONS = (
    "Use official nautical charts",
    "Deploy depth sounder",
    "Proceed with extreme caution at reduced speed",
    "Consider alternative route",
)


@dataclass(frozen=True)
class UserReliability:
    user_id: str
    score: float = 0.5
    contribution_count: int = 0
    verification_rate: float = 0.0
    outlier_rate: float = 0.0
    avg_confidence: float = 0.5
    recent_activity: bool = False
    expertise: str = "novice"  # novice, intermediate, expert or professional


@dataclass(frozen=True)
class SuspiciousPattern:
    type: str  # depth_anomaly, temporal_inconsistency or user_reliability
    severity: str
    description: str
    affected_ids: frozenset[str]


@dataclass(frozen=True)
class OutlierAnalysis:
    outlier_ids: frozenset[str]
    outlier_rate: float
    patterns: tuple[SuspiciousPattern, ...]

    @property
    def excluded_ids(self) -> frozenset[str]:
        ids: set[str] = set()
        for p in self.patterns:
            if p.type in ("depth_anomaly", "user_reliability"):
                ids |= p.affected_ids
        return frozenset(ids)

    @property
    def downweighted_ids(self) -> frozenset[str]:
        ids: set[str] = set()
        for p in self.patterns:
            if p.type == "temporal_inconsistency":
                ids |= p.affected_ids
        return frozenset(ids)


@dataclass(frozen=True)
class ReadingQuality:
    is_valid: bool
    confidence: float
    warnings: tuple[str, ...]
    errors: tuple[str, ...]
    quality_score: float


@dataclass(frozen=True)
class TideCorrection:
    corrected_depth_m: float
    correction_m: float
    confidence: float
    notes: str = ""


def interpolate_depth(position: Location, readings: Sequence[DepthReading]) -> float | None:
    """Inverse-distance-squared interpolation, each weight scaled by reading confidence.

    Distances are floored at 1 m. Returns None for an empty sample.
    """
    if not readings:
        return None
    if len(readings) == 1:
        return readings[0].depth_m

    total_weight = 0.0
    weighted_sum = 0.0
    for r in readings:
        d = max(geodesy.distance(position, r.location), 1.0)
        w = r.confidence_score / (d * d)
        total_weight += w
        weighted_sum += r.depth_m * w
    if total_weight <= 0:
        return readings[0].depth_m
    return weighted_sum / total_weight


def tide_correct(depth_m: float, tide_level_m: float, chart_datum_m: float = 0.0) -> TideCorrection:
    """Correct a charted depth for the current tide height above datum."""
    correction = tide_level_m - chart_datum_m
    magnitude = abs(correction)
    notes = ""
    if magnitude > 1.0:
        notes = f"Significant tide correction applied: {magnitude:.1f}m"
    return TideCorrection(
        corrected_depth_m=max(0.0, depth_m + correction),
        correction_m=correction,
        confidence=max(0.7, 1.0 - magnitude / 3.0),
        notes=notes,
    )


class DepthValidationEngine:
    """Fuses nearby depth readings into a ValidationResult for a vessel draft."""

    def __init__(
        self,
        config: ValidationConfig | None = None,
        stats: EngineStats | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ValidationConfig()
        self._stats = stats
        self._clock = clock
        self._users: dict[str, UserReliability] = {}
        self._cache: BoundedStore[CacheKey, ValidationResult] = BoundedStore(
            max_entries=self._config.cache_max_entries,
            ttl_seconds=self._config.cache_ttl_seconds,
            clock=clock,
            name="validation_cache",
        )

    @property
    def config(self) -> ValidationConfig:
        return self._config

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def _max_age_ms(self) -> float:
        return self._config.max_data_age_days * MS_PER_DAY

    # --- User reliability ---

    def update_user_reliability(self, user_id: str, **fields) -> UserReliability:
        score = fields.get("score")
        if score is not None and not 0.0 <= score <= 1.0:
            raise InvalidInputError(f"reliability score must be within 0-1: {score}")
        existing = self._users.get(user_id) or UserReliability(user_id=user_id)
        updated = replace(existing, **fields)
        self._users[user_id] = updated
        return updated

    def user_reliability(self, user_id: str) -> UserReliability | None:
        return self._users.get(user_id)

    # --- Cache ---

    @staticmethod
    def cache_key(position: Location, draft_m: float, data: Iterable[DepthReading] = ()) -> CacheKey:
        fingerprint = frozenset((r.id, r.source, r.depth_m, r.timestamp_ms) for r in data)
        return (round(position.latitude, 3), round(position.longitude, 3), draft_m, fingerprint)

    def invalidate_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    # --- Validation ---

    def validate(
        self,
        position: Location,
        draft_m: float,
        readings: Iterable[DepthReading],
        official_chart: Iterable[DepthReading] | None = None,
        *,
        use_cache: bool = True,
    ) -> ValidationResult:
        check_draft(draft_m)
        now = self._now_ms()
        relevant = self._filter_relevant(position, readings, now)
        nearest = (
            self._nearest(position, official_chart, self._config.official_radius_m)
            if official_chart else []
        )

        key = self.cache_key(position, draft_m, relevant + nearest)
        if use_cache:
            cached = self._cache.get(key)
            if cached is not None:
                if self._stats:
                    self._stats.record_validation(cached.validation_method.value, cache_hit=True)
                return cached

        metrics = self._quality_metrics(relevant, position, now)

        result: ValidationResult | None = None
        if nearest:
            result = self._validate_official(position, draft_m, nearest, relevant, metrics, now)

        if result is None:
            if len(relevant) < self._config.min_data_points:
                result = self._insufficient(metrics, now)
            else:
                result = self._validate_crowdsource(position, draft_m, relevant, metrics, now)

        if use_cache:
            self._cache.put(key, result)
        if self._stats:
            self._stats.record_validation(result.validation_method.value)
        log.debug("depth_validated",
                  method=result.validation_method.value,
                  confidence=round(result.confidence, 3),
                  readings=len(relevant),
                  valid=result.is_valid)
        return result

    def _filter_relevant(
        self, position: Location, readings: Iterable[DepthReading], now: int,
    ) -> list[DepthReading]:
        max_age = self._max_age_ms
        radius = self._config.search_radius_m
        return [
            r for r in readings
            if now - r.timestamp_ms <= max_age and geodesy.distance(position, r.location) <= radius
        ]

    @staticmethod
    def _nearest(position: Location, readings: Iterable[DepthReading], radius_m: float) -> list[DepthReading]:
        with_dist = [(geodesy.distance(position, r.location), r) for r in readings]
        return [r for d, r in sorted(with_dist, key=lambda t: t[0]) if d <= radius_m]

    def _quality_metrics(
        self, readings: Sequence[DepthReading], position: Location, now: int,
    ) -> DataQualityMetrics:
        if not readings:
            return DataQualityMetrics()

        official = sum(1 for r in readings if r.source == ReadingSource.OFFICIAL)
        crowd = sum(1 for r in readings if r.source == ReadingSource.CROWDSOURCE)
        avg_age = sum(now - r.timestamp_ms for r in readings) / len(readings)
        max_distance = max(geodesy.distance(position, r.location) for r in readings)
        coverage = min(1.0, max_distance / 1000.0) if max_distance > 0 else 0.0

        by_time = sorted(readings, key=lambda r: r.timestamp_ms)
        if len(by_time) > 1:
            consistent = sum(
                1 for a, b in zip(by_time, by_time[1:]) if abs(b.depth_m - a.depth_m) < 2.0
            )
            temporal = consistent / (len(by_time) - 1)
        else:
            temporal = 1.0

        return DataQualityMetrics(
            total_readings=len(readings),
            official_readings=official,
            crowdsource_readings=crowd,
            average_age_ms=avg_age,
            spatial_coverage=coverage,
            temporal_consistency=temporal,
            outlier_rate=0.0,
            confidence_score=sum(r.confidence_score for r in readings) / len(readings),
        )

    def _validate_official(
        self,
        position: Location,
        draft_m: float,
        nearest: list[DepthReading],
        crowdsourced: list[DepthReading],
        metrics: DataQualityMetrics,
        now: int,
    ) -> ValidationResult:
        depth = interpolate_depth(position, nearest)
        assert depth is not None
        confidence = self._official_confidence(position, nearest)
        warnings: list[str] = []
        recommendations: list[str] = []

        crowd_depth = interpolate_depth(position, crowdsourced)
        if crowd_depth is not None:
            difference = abs(depth - crowd_depth)
            if difference > max(2.0, depth * 0.2):
                warnings.append(
                    f"Significant difference between official chart ({depth:.1f}m) "
                    f"and crowdsource data ({crowd_depth:.1f}m)"
                )
                recommendations.append("Exercise extra caution - verify depth manually with depth sounder")

        avg_age = sum(now - r.timestamp_ms for r in nearest) / len(nearest)
        if avg_age > CHART_OUTDATED_MS:
            warnings.append("Chart data may be outdated - verify current conditions")

        margin = depth - draft_m
        self._margin_advice(margin, draft_m, warnings, recommendations)

        return ValidationResult(
            is_valid=confidence >= self._config.confidence_threshold,
            confidence=confidence,
            estimated_depth_m=depth,
            safety_margin_m=margin,
            quality_metrics=metrics,
            validation_method=ValidationMethod.OFFICIAL_CHART,
            warnings=tuple(warnings),
            recommendations=tuple(recommendations),
            computed_at_ms=now,
        )

    @staticmethod
    def _official_confidence(position: Location, nearest: Sequence[DepthReading]) -> float:
        confidence = 0.8
        confidence += min(0.1, len(nearest) * 0.02)
        avg_distance = sum(geodesy.distance(position, r.location) for r in nearest) / len(nearest)
        confidence += max(0.0, 0.1 - avg_distance / 1000.0)
        return min(OFFICIAL_CONFIDENCE_CAP, confidence)

    def _validate_crowdsource(
        self,
        position: Location,
        draft_m: float,
        relevant: list[DepthReading],
        metrics: DataQualityMetrics,
        now: int,
    ) -> ValidationResult:
        warnings: list[str] = []
        recommendations: list[str] = []

        analysis = self.analyze_outliers(relevant)
        metrics = replace(metrics, outlier_rate=analysis.outlier_rate)
        if analysis.outlier_rate > 0.3:
            warnings.append(
                f"High outlier rate ({analysis.outlier_rate * 100:.1f}%) - data quality may be compromised"
            )

        excluded = analysis.excluded_ids
        cleaned = [r for r in relevant if r.id not in excluded]
        if not cleaned:
            log.info("all_readings_excluded", readings=len(relevant))
            warnings.append("All nearby readings were rejected by quality analysis")
            return self._insufficient(metrics, now, extra_warnings=warnings)

        depth = self._weighted_depth(position, cleaned, analysis.downweighted_ids, now)
        confidence = self._crowdsource_confidence(cleaned, metrics, analysis)
        margin = depth - draft_m

        if self._config.statistical_validation:
            depths = [r.depth_m for r in cleaned]
            std_dev = statistics.pstdev(depths) if len(depths) > 1 else 0.0
            if std_dev > depth * 0.3:
                warnings.append("High variance in depth readings - exercise caution")
                recommendations.append("Consider reducing speed and using depth sounder for verification")
            if len(cleaned) < 5:
                warnings.append("Limited data points available for validation")

        avg_age = sum(now - r.timestamp_ms for r in cleaned) / len(cleaned)
        if avg_age > self._max_age_ms / 2:
            warnings.append("Depth data may not reflect current conditions")
            recommendations.append("Consider environmental factors that may affect depth (tides, weather)")

        self._margin_advice(margin, draft_m, warnings, recommendations)

        return ValidationResult(
            is_valid=confidence >= self._config.confidence_threshold,
            confidence=confidence,
            estimated_depth_m=depth,
            safety_margin_m=margin,
            quality_metrics=metrics,
            validation_method=ValidationMethod.INTERPOLATION,
            warnings=tuple(warnings),
            recommendations=tuple(recommendations),
            computed_at_ms=now,
        )

    def _margin_advice(
        self, margin: float, draft_m: float, warnings: list[str], recommendations: list[str],
    ) -> None:
        if margin < draft_m:
            warnings.append("Shallow water - proceed with extreme caution")
            recommendations.append("Use depth sounder, reduce speed, post lookout")
        elif margin < draft_m * self._config.safety_margin_ratio:
            warnings.append("Limited clearance - monitor depth carefully")
            recommendations.append("Maintain slow speed and continuous depth monitoring")

    def _insufficient(
        self, metrics: DataQualityMetrics, now: int, extra_warnings: Sequence[str] = (),
    ) -> ValidationResult:
        return ValidationResult(
            is_valid=False,
            confidence=0.0,
            estimated_depth_m=None,
            safety_margin_m=None,
            quality_metrics=metrics,
            validation_method=ValidationMethod.INSUFFICIENT_DATA,
            warnings=tuple(extra_warnings) + ("Insufficient depth data for safe navigation validation",),
            recommendations=INSUFFICIENT_DATA_RECOMMENDATIONS,
            computed_at_ms=now,
        )

    def analyze_outliers(self, readings: Sequence[DepthReading]) -> OutlierAnalysis:
        """IQR outliers plus temporal and user-reliability patterns."""
        n = len(readings)
        if n < 3:
            return OutlierAnalysis(frozenset(), 0.0, ())

        depths = sorted(r.depth_m for r in readings)
        q1 = depths[int(n * 0.25)]
        q3 = depths[int(n * 0.75)]
        iqr = q3 - q1
        lower, upper = q1 - 1.5 * iqr, q3 + 1.5 * iqr
        outliers = [r for r in readings if r.depth_m < lower or r.depth_m > upper]
        patterns: list[SuspiciousPattern] = []

        extreme = [r for r in outliers if r.depth_m < q1 - 3 * iqr or r.depth_m > q3 + 3 * iqr]
        if extreme:
            patterns.append(SuspiciousPattern(
                type="depth_anomaly",
                severity="high",
                description=f"{len(extreme)} extreme depth outliers detected",
                affected_ids=frozenset(r.id for r in extreme),
            ))

        by_time = sorted(readings, key=lambda r: r.timestamp_ms)
        jumps = 0
        jump_ids: set[str] = set()
        for a, b in zip(by_time, by_time[1:]):
            if abs(b.depth_m - a.depth_m) > 5.0 and b.timestamp_ms - a.timestamp_ms < 3_600_000:
                jumps += 1
                jump_ids.update((a.id, b.id))
        if jumps > n * 0.2:
            patterns.append(SuspiciousPattern(
                type="temporal_inconsistency",
                severity="medium",
                description=f"{jumps} suspicious temporal depth changes",
                affected_ids=frozenset(jump_ids),
            ))

        by_user: dict[str, list[DepthReading]] = {}
        for r in readings:
            if r.user_id:
                by_user.setdefault(r.user_id, []).append(r)
        for user_id, contributed in by_user.items():
            reliability = self._users.get(user_id)
            if reliability and reliability.score < 0.5 and len(contributed) > n * 0.3:
                patterns.append(SuspiciousPattern(
                    type="user_reliability",
                    severity="medium",
                    description=f"High contribution from low-reliability user ({user_id})",
                    affected_ids=frozenset(r.id for r in contributed),
                ))

        return OutlierAnalysis(
            outlier_ids=frozenset(r.id for r in outliers),
            outlier_rate=len(outliers) / n,
            patterns=tuple(patterns),
        )

    def _weighted_depth(
        self,
        position: Location,
        readings: Sequence[DepthReading],
        downweighted: frozenset[str],
        now: int,
    ) -> float:
        total_weight = 0.0
        weighted_sum = 0.0
        for r in readings:
            d = max(geodesy.distance(position, r.location), 1.0)
            weight = r.confidence_score / (d * d)
            if r.user_id:
                reliability = self._users.get(r.user_id)
                if reliability:
                    weight *= reliability.score
            weight *= SOURCE_WEIGHTS.get(r.source, 1.0)
            weight *= math.exp(-max(0, now - r.timestamp_ms) / WEIGHT_HALF_LIFE_MS)
            if r.id in downweighted:
                weight *= TEMPORAL_DOWNWEIGHT
            total_weight += weight
            weighted_sum += r.depth_m * weight

        if total_weight <= 0:
            return sum(r.depth_m for r in readings) / len(readings)
        return weighted_sum / total_weight

    @staticmethod
    def _crowdsource_confidence(
        readings: Sequence[DepthReading], metrics: DataQualityMetrics, analysis: OutlierAnalysis,
    ) -> float:
        confidence = 0.5
        confidence += min(0.3, len(readings) * 0.05)
        confidence += 0.3 * (sum(r.confidence_score for r in readings) / len(readings))
        confidence -= 0.4 * analysis.outlier_rate
        confidence += 0.2 * metrics.spatial_coverage
        confidence *= math.exp(-metrics.average_age_ms / FRESHNESS_DECAY_MS)
        return max(0.0, min(CROWDSOURCE_CONFIDENCE_CAP, confidence))

    # --- Single readings ---

    tide_correct = staticmethod(tide_correct)

    def validate_reading(
        self, reading: DepthReading, nearby: Iterable[DepthReading] = (),
    ) -> ReadingQuality:
        """Quality check for one incoming reading before it joins the data set."""
        warnings: list[str] = []
        errors: list[str] = []

        if reading.depth_m < 0:
            errors.append(f"Depth cannot be negative: {reading.depth_m}m")
        if reading.depth_m > 200:
            errors.append(f"Depth exceeds maximum: {reading.depth_m}m > 200m")

        gps = reading.gps_accuracy_m
        if gps is not None and gps > 10:
            if gps > 20:
                errors.append(f"GPS accuracy too poor for navigation use: {gps:.1f}m")
            else:
                warnings.append(f"GPS accuracy is below optimal: {gps:.1f}m")

        speed = reading.vessel_speed_mps or 0.0
        if speed > 2:
            warnings.append(
                f"Reading taken while moving at {speed:.1f} m/s. Stationary readings are more accurate."
            )

        close = [
            r.depth_m for r in nearby
            if r.id != reading.id and geodesy.distance(reading.location, r.location) <= 100
        ]
        if len(close) >= 3:
            mean = statistics.fmean(close)
            std_dev = statistics.pstdev(close)
            low, high = max(0.0, mean - 2 * std_dev), mean + 2 * std_dev
            if not low <= reading.depth_m <= high:
                warnings.append(
                    f"Depth differs significantly from nearby readings. "
                    f"Expected: {low:.1f}-{high:.1f}m, Actual: {reading.depth_m:.1f}m"
                )

        gps_score = 0.5 if gps is None else max(0.0, min(1.0, (10 - gps) / 10))
        environment_score = max(0.0, 1 - min(1.0, speed / 5))
        consistency_score = max(0.0, 1 - 0.5 * len(errors) - 0.1 * len(warnings))
        overall = gps_score * 0.4 + environment_score * 0.3 + consistency_score * 0.3

        if errors:
            confidence = 0.0
        else:
            confidence = overall * max(0.5, 1 - 0.1 * len(warnings))
            confidence = max(0.0, min(1.0, confidence))

        return ReadingQuality(
            is_valid=not errors,
            confidence=confidence,
            warnings=tuple(warnings),
            errors=tuple(errors),
            quality_score=overall,
        )
