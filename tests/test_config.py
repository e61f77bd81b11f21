"""Tests for configuration loading."""

from __future__ import annotations

import pytest

from wavesafe.config import AppConfig, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("WAVES_"):
            monkeypatch.delenv(key)


def test_defaults():
    config = AppConfig()
    assert config.validation.min_data_points == 3
    assert config.validation.max_data_age_days == 30.0
    assert config.validation.confidence_threshold == 0.6
    assert config.validation.cache_ttl_seconds == 300.0
    assert config.validation.cache_max_entries == 1000
    assert config.navigation.route_deviation_threshold_m == 50.0
    assert config.navigation.speed_variance_threshold_knots == 2.0
    assert config.navigation.recommendation_ttl_seconds == 1800.0
    assert config.monitoring.tick_interval_seconds == 10.0
    assert config.emergency.retry_delay_seconds == 60.0
    assert config.alerts.max_active_alerts == 200
    assert config.alerts.acknowledged_retention_seconds == 900.0
    assert config.emergency.max_sessions == 100


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(tmp_path / "nope.yaml")
    assert config == AppConfig()


def test_yaml_sections_override_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "validation:\n"
        "  min_data_points: 5\n"
        "  confidence_threshold: 0.7\n"
        "  unknown_key: ignored\n"
        "navigation:\n"
        "  auto_correct_minor_deviations: false\n"
        "emergency:\n"
        "  contacts:\n"
        "    - id: cg\n"
        "      priority: 9\n"
        "      service_area: {latitude: 48.3, longitude: -4.5, radius_km: 30}\n"
    )
    config = load_config(path)
    assert config.validation.min_data_points == 5
    assert config.validation.confidence_threshold == 0.7
    assert not hasattr(config.validation, "unknown_key")
    assert config.navigation.auto_correct_minor_deviations is False
    assert config.emergency.contacts[0]["id"] == "cg"


def test_env_overrides_win(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("validation:\n  min_data_points: 5\n")
    monkeypatch.setenv("WAVES_VALIDATION_MIN_DATA_POINTS", "7")
    monkeypatch.setenv("WAVES_VALIDATION_STATISTICAL", "off")
    monkeypatch.setenv("WAVES_NAVIGATION_AUTO_CORRECT", "yes")
    monkeypatch.setenv("WAVES_LOG_FORMAT", "json")
    monkeypatch.setenv("WAVES_ALERTS_MAX_ACTIVE", "40")
    monkeypatch.setenv("WAVES_ALERTS_ACK_RETENTION", "120")
    monkeypatch.setenv("WAVES_EMERGENCY_MAX_SESSIONS", "5")

    config = load_config(path)
    assert config.validation.min_data_points == 7
    assert config.validation.statistical_validation is False
    assert config.navigation.auto_correct_minor_deviations is True
    assert config.logging.format == "json"
    assert config.alerts.max_active_alerts == 40
    assert config.alerts.acknowledged_retention_seconds == 120.0
    assert config.emergency.max_sessions == 5


def test_empty_yaml_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(path) == AppConfig()
