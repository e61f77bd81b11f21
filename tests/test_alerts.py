"""Tests for AlertHierarchy: lifecycle, escalation and emergency protocols."""

from __future__ import annotations

import pytest

from tests.fakes import ORIGIN, make_contact
from wavesafe.config import AlertsConfig
from wavesafe.core.alerts import (
    EMERGENCY_ACTIONS,
    AlertHierarchy,
    EscalationCondition,
    EscalationRule,
)
from wavesafe.core.emergency import IncidentSeverity, IncidentStatus
from wavesafe.core.events import TOPIC_ALERTS, TOPIC_PROTOCOL_STEPS, TOPIC_PROTOCOLS
from wavesafe.core.models import Severity

AUTO_REASON = "Automatic escalation due to unmet conditions"


@pytest.fixture
def fast_rules(config, scheduler, bus, stats, coordinator):
    config.alerts.escalation_rules = [{
        "category": "grounding",
        "severity": "caution",
        "time_threshold_seconds": 60,
        "escalate_to": "warning",
        "conditions": ["acknowledgment_timeout"],
    }]
    h = AlertHierarchy(scheduler=scheduler, config=config.alerts, bus=bus,
                       emergency=coordinator, stats=stats)
    yield h
    h.close()


def steps_of(recorder, **match):
    return [s for s in recorder.get(TOPIC_PROTOCOL_STEPS, [])
            if all(s[k] == v for k, v in match.items())]


# --- Creation ---

def test_create_alert_defaults(hierarchy, recorder):
    alert = hierarchy.create_alert(Severity.WARNING, "grounding", "Grounding Risk",
                                   "Shallow water ahead", ORIGIN)

    assert alert.id.startswith("alert_")
    assert alert.escalation_level == 3
    assert alert.dismissible
    assert not alert.acknowledgment_required
    assert alert.audio.sound == "alarm"
    assert [a.id for a in alert.action_items] == ["reduce_speed", "check_depth"]
    assert hierarchy.is_active(alert.id)
    assert [e.action for e in recorder[TOPIC_ALERTS]] == ["created"]


def test_urgent_alerts_need_acknowledgement(hierarchy):
    alert = hierarchy.create_alert("critical", "grounding", "Shallow Water Alert", "Margin gone", ORIGIN)
    assert alert.acknowledgment_required
    assert alert.broadcast_required
    assert not alert.dismissible
    assert next(a for a in alert.action_items if a.id == "reduce_speed").automatic


def test_unknown_severity_rejected(hierarchy):
    with pytest.raises(ValueError):
        hierarchy.create_alert("apocalyptic", "grounding", "x", "y")


def test_returned_alert_is_a_copy(hierarchy):
    alert = hierarchy.create_alert(Severity.CAUTION, "navigation", "Route Deviation", "Off track")
    alert.title = "changed"
    assert hierarchy.get_alert(alert.id).title == "Route Deviation"


def test_active_alerts_ordering(hierarchy, scheduler):
    caution = hierarchy.create_alert(Severity.CAUTION, "navigation", "a", "a")
    scheduler.advance(1)
    critical = hierarchy.create_alert(Severity.CRITICAL, "weather", "b", "b")
    scheduler.advance(1)
    warning_old = hierarchy.create_alert(Severity.WARNING, "navigation", "c", "c")
    scheduler.advance(1)
    warning_new = hierarchy.create_alert(Severity.WARNING, "navigation", "d", "d")

    ids = [a.id for a in hierarchy.active_alerts()]
    assert ids == [critical.id, warning_new.id, warning_old.id, caution.id]
    assert [a.id for a in hierarchy.alerts_by_category("navigation", "warning")] == [
        warning_new.id, warning_old.id,
    ]


# --- Acknowledgement, dismissal, expiry ---

def test_acknowledge_mutes_audio_and_haptic(hierarchy, scheduler, stats):
    alert = hierarchy.create_alert(Severity.WARNING, "grounding", "t", "m", ORIGIN)
    scheduler.advance(12)

    assert hierarchy.acknowledge_alert(alert.id, "helm")
    acked = hierarchy.get_alert(alert.id)
    assert acked.acknowledged
    assert acked.acknowledged_by == "helm"
    assert not acked.audio.enabled
    assert not acked.haptic.enabled
    assert acked.visual.enabled
    assert stats.snapshot()["alerts"]["mean_ack_seconds"] == pytest.approx(12.0)

    assert not hierarchy.acknowledge_alert(alert.id, "helm")
    assert not hierarchy.acknowledge_alert("alert_missing")


def test_acknowledged_emergency_keeps_sounding(hierarchy):
    alert = hierarchy.create_alert(Severity.EMERGENCY, "weather", "Storm", "Knockdown", ORIGIN)
    assert hierarchy.acknowledge_alert(alert.id)
    acked = hierarchy.get_alert(alert.id)
    assert acked.audio.enabled and acked.haptic.enabled


def test_dismiss(hierarchy, recorder):
    alert = hierarchy.create_alert(Severity.CAUTION, "navigation", "t", "m")
    assert hierarchy.dismiss_alert(alert.id)
    assert not hierarchy.is_active(alert.id)
    gone = hierarchy.get_alert(alert.id)
    assert gone.dismissed_at_ms is not None
    assert not gone.is_active
    assert recorder[TOPIC_ALERTS][-1].action == "dismissed"
    assert not hierarchy.dismiss_alert(alert.id)


def test_critical_alert_cannot_be_dismissed(hierarchy):
    alert = hierarchy.create_alert(Severity.CRITICAL, "grounding", "t", "m", ORIGIN)
    assert not hierarchy.dismiss_alert(alert.id)
    assert hierarchy.is_active(alert.id)


def test_auto_expiry(hierarchy, scheduler):
    info = hierarchy.create_alert(Severity.INFO, "navigation", "t", "m", auto_expiry_s=30)
    critical = hierarchy.create_alert(Severity.CRITICAL, "weather", "t", "m", auto_expiry_s=30)

    scheduler.advance(29)
    assert hierarchy.is_active(info.id)
    scheduler.advance(1)
    assert not hierarchy.is_active(info.id)
    assert hierarchy.get_alert(info.id).expired_at_ms is not None
    # Non-dismissible alerts outlive their expiry.
    assert hierarchy.is_active(critical.id)

    # ...until someone acknowledges them; then their own expiry applies again.
    assert hierarchy.acknowledge_alert(critical.id, "helm")
    scheduler.advance(29)
    assert hierarchy.is_active(critical.id)
    scheduler.advance(1)
    assert not hierarchy.is_active(critical.id)


def test_acknowledged_urgent_alert_retires_after_retention(hierarchy, scheduler, recorder):
    alert = hierarchy.create_alert(Severity.CRITICAL, "weather", "Squall", "Gusts over 40 kn", ORIGIN)
    scheduler.advance(86_400)
    assert hierarchy.is_active(alert.id)

    assert hierarchy.acknowledge_alert(alert.id, "helm")
    scheduler.advance(AlertsConfig().acknowledged_retention_seconds - 1)
    assert hierarchy.is_active(alert.id)
    scheduler.advance(1)
    assert not hierarchy.is_active(alert.id)
    assert hierarchy.get_alert(alert.id).expired_at_ms is not None
    assert recorder[TOPIC_ALERTS][-1].action == "expired"


def test_resolve_alert(hierarchy, recorder):
    alert = hierarchy.create_alert(Severity.CRITICAL, "weather", "Squall", "Gusts over 40 kn", ORIGIN)
    assert not hierarchy.resolve_alert(alert.id)

    hierarchy.acknowledge_alert(alert.id, "helm")
    assert hierarchy.resolve_alert(alert.id, "helm")
    assert not hierarchy.is_active(alert.id)
    resolved = hierarchy.get_alert(alert.id)
    assert resolved.resolved_at_ms is not None
    assert not resolved.is_active
    assert recorder[TOPIC_ALERTS][-1].action == "resolved"
    assert not hierarchy.resolve_alert(alert.id)

    caution = hierarchy.create_alert(Severity.CAUTION, "navigation", "t", "m")
    assert hierarchy.resolve_alert(caution.id)


def test_active_registry_is_bounded(scheduler):
    hierarchy = AlertHierarchy(scheduler=scheduler, config=AlertsConfig(max_active_alerts=50))
    for i in range(1200):
        alert = hierarchy.create_alert(Severity.CRITICAL, "weather", "Squall", f"cell {i}")
        hierarchy.acknowledge_alert(alert.id)
    assert len(hierarchy.active_alerts()) <= 50
    assert hierarchy.metrics()["active_alerts"] <= 50

    scheduler.advance(86_400)
    assert hierarchy.active_alerts() == []
    hierarchy.close()


# --- Escalation ---

def test_rule_from_dict():
    rule = EscalationRule.from_dict({
        "category": "collision",
        "severity": "warning",
        "time_threshold_seconds": "45",
        "escalate_to": "critical",
        "conditions": [{"type": "proximity_increase", "threshold": 0.5}, "acknowledgment_timeout"],
    })
    assert rule.severity == Severity.WARNING
    assert rule.time_threshold_s == 45.0
    assert rule.conditions == (
        EscalationCondition("proximity_increase", 0.5),
        EscalationCondition("acknowledgment_timeout"),
    )


def test_configured_rules_replace_defaults(fast_rules, scheduler):
    assert len(fast_rules.rules) == 1
    assert len(AlertHierarchy(scheduler=scheduler).rules) == 4


def test_acknowledged_alert_does_not_escalate(fast_rules, scheduler, stats):
    alert = fast_rules.create_alert(Severity.CAUTION, "grounding", "t", "m", ORIGIN)
    scheduler.advance(30)
    assert fast_rules.acknowledge_alert(alert.id, "helm")
    scheduler.advance(30)

    assert fast_rules.get_alert(alert.id).severity == Severity.CAUTION
    assert stats.snapshot()["alerts"]["escalations"] == 0


def test_unacknowledged_alert_escalates(fast_rules, scheduler, recorder):
    alert = fast_rules.create_alert(Severity.CAUTION, "grounding", "t", "m", ORIGIN)
    scheduler.advance(59)
    assert fast_rules.get_alert(alert.id).severity == Severity.CAUTION
    scheduler.advance(1)

    escalated = fast_rules.get_alert(alert.id)
    assert escalated.severity == Severity.WARNING
    assert escalated.escalated_from == Severity.CAUTION
    assert escalated.escalation_reason == AUTO_REASON
    assert escalated.generation == 1
    assert escalated.escalation_level == 3
    assert [e.action for e in recorder[TOPIC_ALERTS]] == ["created", "escalated"]


def test_default_chain_reaches_emergency(hierarchy, coordinator, scheduler, stats):
    alert = hierarchy.create_alert(Severity.CAUTION, "grounding", "Grounding Risk", "Shoal", ORIGIN)

    scheduler.advance(120)
    assert hierarchy.get_alert(alert.id).severity == Severity.WARNING
    scheduler.advance(60)
    assert hierarchy.get_alert(alert.id).severity == Severity.CRITICAL
    assert not hierarchy.get_alert(alert.id).dismissible
    scheduler.advance(30)

    final = hierarchy.get_alert(alert.id)
    assert final.severity == Severity.EMERGENCY
    assert all(a in final.action_items for a in EMERGENCY_ACTIONS)
    assert final.incident_id is not None
    assert stats.snapshot()["alerts"]["escalations"] == 3
    assert hierarchy.metrics()["escalation_rate"] == 3.0

    incident = coordinator.get_incident(final.incident_id)
    assert incident.severity == IncidentSeverity.MAYDAY
    assert incident.alert_id == alert.id
    assert incident.description == "Grounding Risk: Shoal"


def test_escalation_must_raise_severity(hierarchy):
    alert = hierarchy.create_alert(Severity.WARNING, "navigation", "t", "m")
    assert hierarchy.escalate_alert(alert.id, Severity.WARNING) is None
    assert hierarchy.escalate_alert(alert.id, Severity.CAUTION) is None
    assert hierarchy.get_alert(alert.id).severity == Severity.WARNING
    assert hierarchy.escalate_alert("alert_missing", Severity.CRITICAL) is None


def test_supersede_may_lower(hierarchy):
    alert = hierarchy.create_alert(Severity.CRITICAL, "grounding", "t", "m", ORIGIN)
    lowered = hierarchy.supersede_alert(alert.id, Severity.CAUTION, "Depth confirmed by sounder")
    assert lowered.severity == Severity.CAUTION
    assert lowered.escalated_from == Severity.CRITICAL
    assert lowered.dismissible


def test_escalation_resets_acknowledgement(hierarchy, scheduler):
    alert = hierarchy.create_alert(Severity.WARNING, "grounding", "t", "m", ORIGIN)
    hierarchy.acknowledge_alert(alert.id, "helm")

    raised = hierarchy.escalate_alert(alert.id, Severity.CRITICAL, "Depth dropping")
    assert not raised.acknowledged
    assert raised.escalation_reason == "Depth dropping"
    # The critical rule runs against the new generation: unacknowledged, so it fires.
    scheduler.advance(30)
    assert hierarchy.get_alert(alert.id).severity == Severity.EMERGENCY


def test_stale_timer_after_manual_escalation(hierarchy, scheduler, stats):
    alert = hierarchy.create_alert(Severity.WARNING, "grounding", "t", "m", ORIGIN)
    scheduler.advance(10)
    hierarchy.escalate_alert(alert.id, Severity.CRITICAL, "Depth dropping")
    scheduler.advance(10)
    hierarchy.acknowledge_alert(alert.id, "helm")

    # Neither the old warning timer (t=60) nor the critical timer (t=40) may fire.
    scheduler.advance(100)
    assert hierarchy.get_alert(alert.id).severity == Severity.CRITICAL
    assert stats.snapshot()["alerts"]["escalations"] == 1


def test_proximity_condition(hierarchy, scheduler):
    closing = hierarchy.create_alert(Severity.WARNING, "collision", "Vessel", "Closing fast", ORIGIN)
    steady = hierarchy.create_alert(Severity.WARNING, "collision", "Vessel", "Holding off", ORIGIN)
    hierarchy.report_alert_context(closing.id, distance_m=1000)
    hierarchy.report_alert_context(closing.id, distance_m=400)
    hierarchy.report_alert_context(steady.id, distance_m=1000)
    hierarchy.report_alert_context(steady.id, distance_m=900)

    scheduler.advance(45)
    assert hierarchy.get_alert(closing.id).severity == Severity.CRITICAL
    assert hierarchy.get_alert(steady.id).severity == Severity.WARNING


def test_context_only_for_active_alerts(hierarchy):
    assert not hierarchy.report_alert_context("alert_missing", distance_m=10)


# --- Emergency protocols ---

@pytest.mark.asyncio
async def test_emergency_alert_runs_protocol(hierarchy, coordinator, channel, scheduler, recorder):
    coordinator.add_contact(make_contact("coast_guard", 10))
    alert = hierarchy.create_alert(Severity.EMERGENCY, "grounding", "Aground", "Hard aground", ORIGIN)

    assert alert.incident_id is not None
    (activation,) = hierarchy.active_protocols()
    assert activation.protocol_id == "grounding_emergency"
    assert activation.incident_id == alert.incident_id
    assert recorder[TOPIC_PROTOCOLS][0].alert_id == alert.id
    executed = {s["step"] for s in steps_of(recorder, state="executed")}
    assert executed == {1, 3, 4}
    assert activation.step_states[2] == "pending"

    await scheduler.drain()
    assert channel.methods_for("coast_guard")[0] == "phone"
    assert any(m == "vhf" and "MAYDAY" in text for cid, m, text in channel.sent)
    incident = coordinator.get_incident(alert.incident_id)
    assert incident.status == IncidentStatus.ACKNOWLEDGED
    # Contact established, so the coast guard step is done and its fallback never runs.
    assert steps_of(recorder, step=3, state="resolved")
    scheduler.advance(60)
    assert not steps_of(recorder, action="notify_emergency_contacts")

    assert hierarchy.resolve_protocol_step(activation.id, 2)
    assert not hierarchy.resolve_protocol_step(activation.id, 2)
    assert not hierarchy.resolve_protocol_step(activation.id, 99)


@pytest.mark.asyncio
async def test_unanswered_contact_step_falls_back(hierarchy, coordinator, channel, scheduler, recorder):
    coordinator.add_contact(make_contact("coast_guard", 10))
    channel.failing_methods = {"phone", "vhf", "email"}
    alert = hierarchy.create_alert(Severity.EMERGENCY, "grounding", "Aground", "Hard aground", ORIGIN)
    await scheduler.drain()
    assert coordinator.get_incident(alert.incident_id).status == IncidentStatus.REPORTED

    scheduler.advance(60)
    await scheduler.drain()

    fallback = steps_of(recorder, action="notify_emergency_contacts")
    assert len(fallback) == 1 and fallback[0]["state"] == "fallback"
    incident = coordinator.get_incident(alert.incident_id)
    assert any(u.urgent and "notifying all emergency contacts" in u.content for u in incident.updates)


def test_general_protocol_for_other_categories(hierarchy):
    hierarchy.create_alert(Severity.EMERGENCY, "fire", "Fire", "Engine room fire", ORIGIN)
    (activation,) = hierarchy.active_protocols()
    assert activation.protocol_id == "general_distress"


def test_emergency_without_location_reports_no_incident(hierarchy, coordinator):
    alert = hierarchy.create_alert(Severity.EMERGENCY, "medical", "Injury", "Crew injured")
    assert alert.incident_id is None
    assert coordinator.active_incidents() == []
    assert len(hierarchy.active_protocols()) == 1


def test_resolving_alert_closes_its_protocol(hierarchy, scheduler, recorder):
    alert = hierarchy.create_alert(Severity.EMERGENCY, "medical", "Injury", "Crew injured")
    assert len(hierarchy.active_protocols()) == 1
    hierarchy.acknowledge_alert(alert.id, "helm")
    assert hierarchy.resolve_alert(alert.id)
    assert hierarchy.active_protocols() == []

    # Pending step timeouts were cancelled with the protocol.
    before = len(recorder.get(TOPIC_PROTOCOL_STEPS, []))
    scheduler.advance(600)
    assert len(recorder.get(TOPIC_PROTOCOL_STEPS, [])) == before


def test_metrics(hierarchy):
    a = hierarchy.create_alert(Severity.CAUTION, "navigation", "t", "m")
    hierarchy.create_alert(Severity.WARNING, "grounding", "t", "m", ORIGIN)
    hierarchy.escalate_alert(a.id, Severity.WARNING)

    metrics = hierarchy.metrics()
    assert metrics["total_alerts"] == 2
    assert metrics["active_alerts"] == 2
    assert metrics["by_category"] == {"navigation": 1, "grounding": 1}
    assert metrics["by_severity"] == {"warning": 2}
    assert metrics["escalation_rate"] == 0.5
