"""Tests for EngineStats."""

from __future__ import annotations

from wavesafe.core.stats import EngineStats


def test_initial_stats():
    snap = EngineStats().snapshot()
    assert snap["validations"] == {}
    assert snap["cache"] == {"hits": 0, "misses": 0}
    assert snap["alerts"]["total"] == 0
    assert snap["alerts"]["escalation_rate"] == 0.0
    assert snap["queue_depth"] == 0


def test_validation_counters():
    stats = EngineStats()
    stats.record_validation("interpolation")
    stats.record_validation("interpolation")
    stats.record_validation("insufficient_data")
    stats.record_validation("interpolation", cache_hit=True)

    snap = stats.snapshot()
    assert snap["validations"] == {"interpolation": 2, "insufficient_data": 1}
    assert snap["cache"] == {"hits": 1, "misses": 3}


def test_alert_and_escalation_rate():
    stats = EngineStats()
    stats.record_alert("warning", "grounding")
    stats.record_alert("critical", "grounding")
    stats.record_alert("caution", "navigation")
    stats.record_escalation()
    stats.record_acknowledgement(10.0)
    stats.record_acknowledgement(20.0)

    alerts = stats.snapshot()["alerts"]
    assert alerts["total"] == 3
    assert alerts["by_category"] == {"grounding": 2, "navigation": 1}
    assert alerts["escalation_rate"] == round(1 / 3, 3)
    assert alerts["mean_ack_seconds"] == 15.0


def test_queue_depth_tracks_max():
    stats = EngineStats()
    stats.update_queue_depth(5)
    stats.update_queue_depth(12)
    stats.update_queue_depth(3)

    snap = stats.snapshot()
    assert snap["queue_depth"] == 3
    assert snap["queue_max_depth_ever"] == 12


def test_notifications_and_ingestion():
    stats = EngineStats()
    stats.record_notification(True)
    stats.record_notification(False)
    stats.record_notification(False)
    stats.record_readings(10, 2)
    stats.record_location()
    stats.record_location(accepted=False)
    stats.record_incident()

    snap = stats.snapshot()
    assert snap["notifications_sent"] == 1
    assert snap["notifications_failed"] == 2
    assert snap["readings_accepted"] == 10
    assert snap["readings_rejected"] == 2
    assert snap["location_updates"] == 1
    assert snap["locations_rejected"] == 1
    assert snap["incidents_reported"] == 1
