"""Engine configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: WAVES_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class ValidationConfig:
    min_data_points: int = 3
    max_data_age_days: float = 30.0
    confidence_threshold: float = 0.6
    safety_margin_ratio: float = 1.5
    search_radius_m: float = 2000.0
    official_radius_m: float = 500.0
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 1000
    statistical_validation: bool = True


@dataclass
class GroundingConfig:
    projection_seconds: float = 600.0
    time_step_seconds: float = 10.0
    interpolation_radius_m: float = 1000.0
    min_reading_confidence: float = 0.3
    course_check_seconds: float = 300.0


@dataclass
class NavigationConfig:
    waypoint_spacing_m: float = 1000.0
    min_waypoint_confidence: float = 0.6
    route_deviation_threshold_m: float = 50.0
    major_deviation_threshold_m: float = 100.0
    speed_variance_threshold_knots: float = 2.0
    auto_correct_minor_deviations: bool = True
    recommendation_ttl_seconds: float = 1800.0
    depth_alert_ratio: float = 0.5
    cruise_speed_knots: float = 8.0


@dataclass
class AlertsConfig:
    history_size: int = 500
    max_active_alerts: int = 200
    # Acknowledged critical/emergency alerts retire after this long unless
    # they carry their own auto_expiry_s.
    acknowledged_retention_seconds: float = 900.0
    # Each entry: {category, severity, time_threshold_seconds, escalate_to, conditions}.
    # Empty means the built-in rule set.
    escalation_rules: list[dict] = field(default_factory=list)


@dataclass
class EmergencyConfig:
    retry_delay_seconds: float = 60.0
    mayday_share_interval_seconds: float = 60.0
    default_share_interval_seconds: float = 300.0
    incident_history: int = 200
    max_sessions: int = 100
    contacts: list[dict] = field(default_factory=list)


@dataclass
class MonitoringConfig:
    tick_interval_seconds: float = 10.0
    queue_max_size: int = 10_000
    max_readings: int = 50_000


@dataclass
class OutboxConfig:
    base_dir: str = "data/outbox"


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"
    file: str = ""


@dataclass
class AppConfig:
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    grounding: GroundingConfig = field(default_factory=GroundingConfig)
    navigation: NavigationConfig = field(default_factory=NavigationConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    emergency: EmergencyConfig = field(default_factory=EmergencyConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "WAVES_VALIDATION_MIN_DATA_POINTS": lambda v: setattr(config.validation, "min_data_points", int(v)),
        "WAVES_VALIDATION_MAX_DATA_AGE_DAYS": lambda v: setattr(config.validation, "max_data_age_days", float(v)),
        "WAVES_VALIDATION_CONFIDENCE_THRESHOLD": lambda v: setattr(config.validation, "confidence_threshold", float(v)),
        "WAVES_VALIDATION_CACHE_TTL": lambda v: setattr(config.validation, "cache_ttl_seconds", float(v)),
        "WAVES_VALIDATION_CACHE_MAX_ENTRIES": lambda v: setattr(config.validation, "cache_max_entries", int(v)),
        "WAVES_VALIDATION_STATISTICAL": lambda v: setattr(config.validation, "statistical_validation", _parse_bool(v)),
        "WAVES_GROUNDING_PROJECTION_SECONDS": lambda v: setattr(config.grounding, "projection_seconds", float(v)),
        "WAVES_GROUNDING_TIME_STEP": lambda v: setattr(config.grounding, "time_step_seconds", float(v)),
        "WAVES_NAVIGATION_DEVIATION_THRESHOLD": lambda v: setattr(config.navigation, "route_deviation_threshold_m", float(v)),
        "WAVES_NAVIGATION_SPEED_VARIANCE": lambda v: setattr(config.navigation, "speed_variance_threshold_knots", float(v)),
        "WAVES_NAVIGATION_AUTO_CORRECT": lambda v: setattr(config.navigation, "auto_correct_minor_deviations", _parse_bool(v)),
        "WAVES_NAVIGATION_RECOMMENDATION_TTL": lambda v: setattr(config.navigation, "recommendation_ttl_seconds", float(v)),
        "WAVES_ALERTS_HISTORY_SIZE": lambda v: setattr(config.alerts, "history_size", int(v)),
        "WAVES_ALERTS_MAX_ACTIVE": lambda v: setattr(config.alerts, "max_active_alerts", int(v)),
        "WAVES_ALERTS_ACK_RETENTION": lambda v: setattr(config.alerts, "acknowledged_retention_seconds", float(v)),
        "WAVES_EMERGENCY_RETRY_DELAY": lambda v: setattr(config.emergency, "retry_delay_seconds", float(v)),
        "WAVES_EMERGENCY_MAX_SESSIONS": lambda v: setattr(config.emergency, "max_sessions", int(v)),
        "WAVES_MONITORING_TICK_INTERVAL": lambda v: setattr(config.monitoring, "tick_interval_seconds", float(v)),
        "WAVES_MONITORING_QUEUE_MAX_SIZE": lambda v: setattr(config.monitoring, "queue_max_size", int(v)),
        "WAVES_MONITORING_MAX_READINGS": lambda v: setattr(config.monitoring, "max_readings", int(v)),
        "WAVES_OUTBOX_BASE_DIR": lambda v: setattr(config.outbox, "base_dir", v),
        "WAVES_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "WAVES_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
        "WAVES_LOG_FILE": lambda v: setattr(config.logging, "file", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    if config_path is None:
        config_path = Path("config.yaml")
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section_name in (
            "validation", "grounding", "navigation", "alerts",
            "emergency", "monitoring", "outbox", "logging",
        ):
            section = getattr(config, section_name)
            for k, v in (raw.get(section_name) or {}).items():
                if hasattr(section, k):
                    setattr(section, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
