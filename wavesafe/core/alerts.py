"""Tiered safety alerts.

Each alert walks created -> [escalated]* -> acknowledged and/or
dismissed/expired/resolved. Critical and emergency alerts cannot be dismissed;
they retire through resolve_alert() or expiry once acknowledged.

Escalation checks are scheduled per alert and carry the alert's generation;
a check whose generation no longer matches (because the alert was escalated,
superseded, acknowledged or dismissed meanwhile) is a no-op. Reaching
emergency severity activates the matching emergency protocol and hands the
incident to the EmergencyCoordinator.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Sequence

import structlog

from wavesafe.config import AlertsConfig
from wavesafe.core.cache import BoundedStore
from wavesafe.core.emergency import EmergencyCoordinator, IncidentSeverity
from wavesafe.core.events import (
    TOPIC_ALERTS,
    TOPIC_INCIDENTS,
    TOPIC_PROTOCOL_STEPS,
    TOPIC_PROTOCOLS,
    EventBus,
)
from wavesafe.core.models import Location, Severity, VesselProfile
from wavesafe.core.stats import EngineStats
from wavesafe.scheduling.base import Scheduler, TimerHandle

log = structlog.get_logger()


# --- Presentation ---

@dataclass(frozen=True)
class AudioConfig:
    enabled: bool
    sound: str
    volume: float
    frequency: str  # once, repeating or continuous
    priority: int
    interval_s: float | None = None
    duration_s: float | None = None


@dataclass(frozen=True)
class VisualConfig:
    enabled: bool
    color: str
    animation: str
    icon: str
    position: str
    opacity: float
    full_screen: bool = False
    overlay: bool = False


@dataclass(frozen=True)
class HapticConfig:
    enabled: bool
    pattern: str
    duration_ms: int
    repeats: int
    interval_ms: int | None = None


AUDIO = {
    Severity.INFO: AudioConfig(True, "beep", 0.3, "once", 1),
    Severity.CAUTION: AudioConfig(True, "beep", 0.5, "once", 2),
    Severity.WARNING: AudioConfig(True, "alarm", 0.7, "repeating", 4, interval_s=5),
    Severity.CRITICAL: AudioConfig(True, "siren", 0.9, "repeating", 7, interval_s=2),
    Severity.EMERGENCY: AudioConfig(True, "horn", 1.0, "continuous", 10, duration_s=10),
}

VISUAL = {
    Severity.INFO: VisualConfig(True, "#00C851", "static", "info", "top", 0.9),
    Severity.CAUTION: VisualConfig(True, "#FFB000", "pulse", "warning", "top", 0.9),
    Severity.WARNING: VisualConfig(True, "#FF8800", "flash", "alert", "center", 0.95),
    Severity.CRITICAL: VisualConfig(True, "#FF4444", "flash", "danger", "center", 1.0, True, True),
    Severity.EMERGENCY: VisualConfig(True, "#CC0000", "flash", "emergency", "overlay", 1.0, True, True),
}

HAPTIC = {
    Severity.INFO: HapticConfig(True, "light", 100, 1),
    Severity.CAUTION: HapticConfig(True, "medium", 200, 1),
    Severity.WARNING: HapticConfig(True, "heavy", 300, 2, 500),
    Severity.CRITICAL: HapticConfig(True, "pulse", 500, 3, 300),
    Severity.EMERGENCY: HapticConfig(True, "emergency", 1000, 5, 200),
}


@dataclass(frozen=True)
class AlertAction:
    id: str
    type: str  # stop, reduce_speed, change_course, call, broadcast, log
    label: str
    description: str
    automatic: bool = False
    priority: int = 5
    parameters: tuple[tuple[str, Any], ...] = ()
    confirmation_required: bool = False
    emergency_action: bool = False


EMERGENCY_ACTIONS = (
    AlertAction("emergency_stop", "stop", "Emergency Stop", "Stop all engines immediately",
                priority=10, confirmation_required=True, emergency_action=True),
    AlertAction("mayday_call", "call", "Mayday Call", "Initiate Mayday distress call",
                priority=10, parameters=(("contact_type", "coast_guard"),),
                confirmation_required=True, emergency_action=True),
    AlertAction("location_broadcast", "broadcast", "Broadcast Location",
                "Broadcast current position to nearby vessels",
                automatic=True, priority=9, emergency_action=True),
)


def default_actions(category: str, severity: Severity) -> list[AlertAction]:
    actions: list[AlertAction] = []
    if category == "grounding":
        actions += [
            AlertAction("reduce_speed", "reduce_speed", "Reduce Speed",
                        "Reduce vessel speed to minimize impact",
                        automatic=severity == Severity.CRITICAL, priority=8,
                        parameters=(("target_speed_knots", 2.0),)),
            AlertAction("check_depth", "log", "Check Depth",
                        "Verify current depth with depth sounder", priority=6),
        ]
    elif category == "collision":
        actions += [
            AlertAction("sound_horn", "broadcast", "Sound Horn",
                        "Alert other vessels with horn signal", automatic=True, priority=9,
                        parameters=(("signal", "five_short"),)),
            AlertAction("change_course", "change_course", "Take Evasive Action",
                        "Execute collision avoidance maneuver",
                        automatic=severity == Severity.EMERGENCY, priority=10,
                        emergency_action=True),
        ]
    if severity == Severity.EMERGENCY:
        actions += EMERGENCY_ACTIONS
    return actions


@dataclass
class SafetyAlert:
    id: str
    severity: Severity
    category: str
    title: str
    message: str
    location: Location | None
    timestamp_ms: int
    escalation_level: int
    acknowledgment_required: bool
    dismissible: bool
    broadcast_required: bool
    audio: AudioConfig
    visual: VisualConfig
    haptic: HapticConfig
    action_items: list[AlertAction] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    time_to_impact_s: float | None = None
    auto_expiry_s: float | None = None
    acknowledged_at_ms: int | None = None
    acknowledged_by: str | None = None
    dismissed_at_ms: int | None = None
    expired_at_ms: int | None = None
    resolved_at_ms: int | None = None
    escalated_from: Severity | None = None
    escalation_reason: str | None = None
    escalated_at_ms: int | None = None
    generation: int = 0
    # Observed values (distance_m, speed_knots, ...) since the last (re)generation.
    context: dict[str, list[float]] = field(default_factory=dict)
    incident_id: str | None = None

    @property
    def acknowledged(self) -> bool:
        return self.acknowledged_at_ms is not None

    @property
    def is_active(self) -> bool:
        return self.dismissed_at_ms is None and self.expired_at_ms is None and self.resolved_at_ms is None


@dataclass(frozen=True)
class AlertEvent:
    action: str  # created, escalated, superseded, acknowledged, dismissed, expired, resolved
    alert: SafetyAlert


# --- Escalation rules ---

@dataclass(frozen=True)
class EscalationCondition:
    type: str  # acknowledgment_timeout, proximity_increase or speed_increase
    threshold: float = 1.0


@dataclass(frozen=True)
class EscalationRule:
    category: str
    severity: Severity
    time_threshold_s: float
    escalate_to: Severity
    conditions: tuple[EscalationCondition, ...]

    @classmethod
    def from_dict(cls, raw: dict) -> EscalationRule:
        conditions = []
        for c in raw.get("conditions", ("acknowledgment_timeout",)):
            if isinstance(c, str):
                conditions.append(EscalationCondition(c))
            else:
                conditions.append(EscalationCondition(c["type"], float(c.get("threshold", 1.0))))
        return cls(
            category=raw["category"],
            severity=Severity(raw["severity"]),
            time_threshold_s=float(raw["time_threshold_seconds"]),
            escalate_to=Severity(raw["escalate_to"]),
            conditions=tuple(conditions),
        )


DEFAULT_ESCALATION_RULES = (
    EscalationRule("grounding", Severity.CAUTION, 120.0, Severity.WARNING,
                   (EscalationCondition("acknowledgment_timeout"),)),
    EscalationRule("grounding", Severity.WARNING, 60.0, Severity.CRITICAL,
                   (EscalationCondition("acknowledgment_timeout"),
                    EscalationCondition("proximity_increase", 0.8))),
    EscalationRule("grounding", Severity.CRITICAL, 30.0, Severity.EMERGENCY,
                   (EscalationCondition("acknowledgment_timeout"),)),
    EscalationRule("collision", Severity.WARNING, 45.0, Severity.CRITICAL,
                   (EscalationCondition("proximity_increase", 0.5),)),
)


def condition_holds(condition: EscalationCondition, alert: SafetyAlert) -> bool:
    if condition.type == "acknowledgment_timeout":
        return not alert.acknowledged
    if condition.type == "proximity_increase":
        samples = alert.context.get("distance_m", [])
        return len(samples) >= 2 and samples[-1] <= samples[0] * condition.threshold
    if condition.type == "speed_increase":
        samples = alert.context.get("speed_knots", [])
        return len(samples) >= 2 and samples[-1] > samples[0] * condition.threshold
    log.warning("unknown_escalation_condition", condition=condition.type)
    return False


# --- Emergency protocols ---

@dataclass(frozen=True)
class ProtocolStep:
    step: int
    action: str
    automatic: bool
    timeout_s: float = 0.0
    fallback: str | None = None


@dataclass(frozen=True)
class EmergencyProtocol:
    id: str
    name: str
    categories: tuple[str, ...]  # empty matches any category
    steps: tuple[ProtocolStep, ...]
    broadcast_message: str
    location_sharing: bool = True


DEFAULT_PROTOCOLS = (
    EmergencyProtocol(
        id="grounding_emergency",
        name="Grounding Emergency Protocol",
        categories=("grounding",),
        steps=(
            ProtocolStep(1, "emergency_stop", True, 10),
            ProtocolStep(2, "assess_damage", False, 30),
            ProtocolStep(3, "contact_coast_guard", True, 60, fallback="notify_emergency_contacts"),
            ProtocolStep(4, "broadcast_mayday", True, 120),
        ),
        broadcast_message="MAYDAY MAYDAY MAYDAY - Vessel aground, requesting immediate assistance",
    ),
    EmergencyProtocol(
        id="collision_emergency",
        name="Collision Avoidance Emergency",
        categories=("collision",),
        steps=(
            ProtocolStep(1, "emergency_maneuver", True, 5),
            ProtocolStep(2, "sound_horn", True, 0),
            ProtocolStep(3, "contact_vessel", False, 30),
        ),
        broadcast_message="SECURITE SECURITE SECURITE - Collision risk, taking evasive action",
    ),
    EmergencyProtocol(
        id="general_distress",
        name="General Distress Protocol",
        categories=(),
        steps=(
            ProtocolStep(1, "contact_coast_guard", True, 60, fallback="notify_emergency_contacts"),
            ProtocolStep(2, "broadcast_mayday", True, 120),
        ),
        broadcast_message="MAYDAY MAYDAY MAYDAY - Vessel in distress, requesting assistance",
    ),
)

CONTACT_ACTIONS = ("contact_coast_guard", "notify_emergency_contacts")


@dataclass
class ProtocolActivation:
    id: str
    protocol_id: str
    protocol_name: str
    alert_id: str
    started_ms: int
    # step number -> pending, executed, resolved or fallback
    step_states: dict[int, str]
    incident_id: str | None = None

    @property
    def completed(self) -> bool:
        return all(s in ("resolved", "fallback") for s in self.step_states.values())


class AlertHierarchy:
    def __init__(
        self,
        scheduler: Scheduler,
        config: AlertsConfig | None = None,
        bus: EventBus | None = None,
        emergency: EmergencyCoordinator | None = None,
        stats: EngineStats | None = None,
        vessel: VesselProfile | None = None,
        protocols: Sequence[EmergencyProtocol] = DEFAULT_PROTOCOLS,
    ) -> None:
        self._scheduler = scheduler
        self._config = config or AlertsConfig()
        self._bus = bus
        self._emergency = emergency
        self._stats = stats
        self.vessel = vessel
        self._protocols = tuple(protocols)
        self._rules = (
            tuple(EscalationRule.from_dict(r) for r in self._config.escalation_rules)
            or DEFAULT_ESCALATION_RULES
        )

        self._active: BoundedStore[str, SafetyAlert] = BoundedStore(
            max_entries=self._config.max_active_alerts, name="active_alerts",
        )
        self._history: BoundedStore[str, SafetyAlert] = BoundedStore(
            max_entries=self._config.history_size, name="alert_history",
        )
        self._escalation_timers: dict[str, list[TimerHandle]] = {}
        self._expiry_timers: dict[str, TimerHandle] = {}
        self._activations: BoundedStore[str, ProtocolActivation] = BoundedStore(
            max_entries=self._config.history_size, name="protocol_activations",
        )
        self._step_timers: dict[tuple[str, int], TimerHandle] = {}

        self._total = 0
        self._escalations = 0
        self._acks = 0
        self._ack_total_s = 0.0

        self._incident_sub = bus.subscribe(TOPIC_INCIDENTS, self._on_incident) if bus else None

    @property
    def rules(self) -> tuple[EscalationRule, ...]:
        return self._rules

    def _now_ms(self) -> int:
        return int(self._scheduler.now() * 1000)

    def _publish(self, action: str, alert: SafetyAlert) -> None:
        if self._bus is not None:
            self._bus.publish(TOPIC_ALERTS, AlertEvent(action, copy.deepcopy(alert)))

    # --- Lifecycle ---

    def create_alert(
        self,
        severity: Severity | str,
        category: str,
        title: str,
        message: str,
        location: Location | None = None,
        *,
        time_to_impact_s: float | None = None,
        auto_expiry_s: float | None = None,
        action_items: Sequence[AlertAction] | None = None,
        metadata: dict | None = None,
    ) -> SafetyAlert:
        severity = Severity(severity)
        urgent = severity in (Severity.CRITICAL, Severity.EMERGENCY)
        alert = SafetyAlert(
            id=f"alert_{uuid.uuid4().hex[:12]}",
            severity=severity,
            category=category,
            title=title,
            message=message,
            location=location,
            timestamp_ms=self._now_ms(),
            escalation_level=severity.level,
            acknowledgment_required=urgent,
            dismissible=not urgent,
            broadcast_required=urgent,
            audio=AUDIO[severity],
            visual=VISUAL[severity],
            haptic=HAPTIC[severity],
            action_items=list(action_items) if action_items is not None else default_actions(category, severity),
            metadata=dict(metadata or {}),
            time_to_impact_s=time_to_impact_s,
            auto_expiry_s=auto_expiry_s,
        )
        self._active.put(alert.id, alert)
        self._history.put(alert.id, alert)
        self._total += 1
        if self._stats:
            self._stats.record_alert(severity.value, category)

        log.info("alert_created", alert_id=alert.id, severity=severity.value,
                 category=category, title=title)

        if severity == Severity.EMERGENCY:
            self._activate_protocol(alert)
        self._publish("created", alert)
        self._schedule_escalation(alert)
        if auto_expiry_s:
            self._schedule_expiry(alert, auto_expiry_s)
        return copy.deepcopy(alert)

    def get_alert(self, alert_id: str) -> SafetyAlert | None:
        alert = self._active.get(alert_id) or self._history.get(alert_id)
        return copy.deepcopy(alert) if alert else None

    def is_active(self, alert_id: str) -> bool:
        return alert_id in self._active

    def acknowledge_alert(self, alert_id: str, user_id: str | None = None) -> bool:
        alert = self._active.get(alert_id)
        if alert is None or alert.acknowledged:
            return False
        now = self._now_ms()
        alert.acknowledged_at_ms = now
        alert.acknowledged_by = user_id
        if alert.severity != Severity.EMERGENCY:
            alert.audio = replace(alert.audio, enabled=False)
            alert.haptic = replace(alert.haptic, enabled=False)
        self._cancel_escalation(alert_id)
        if not alert.dismissible:
            self._schedule_expiry(
                alert, alert.auto_expiry_s or self._config.acknowledged_retention_seconds,
            )

        response_s = (now - alert.timestamp_ms) / 1000
        self._acks += 1
        self._ack_total_s += response_s
        if self._stats:
            self._stats.record_acknowledgement(response_s)
        log.info("alert_acknowledged", alert_id=alert_id, by=user_id or "system",
                 response_s=round(response_s, 1))
        self._publish("acknowledged", alert)
        return True

    def dismiss_alert(self, alert_id: str) -> bool:
        alert = self._active.get(alert_id)
        if alert is None:
            return False
        if not alert.dismissible:
            log.warning("alert_not_dismissible", alert_id=alert_id, severity=alert.severity.value)
            return False
        alert.dismissed_at_ms = self._now_ms()
        self._retire(alert)
        log.info("alert_dismissed", alert_id=alert_id)
        self._publish("dismissed", alert)
        return True

    def resolve_alert(self, alert_id: str, user_id: str | None = None) -> bool:
        """Retire an alert whose situation is over. Urgent alerts must be acknowledged first."""
        alert = self._active.get(alert_id)
        if alert is None:
            return False
        if not alert.dismissible and not alert.acknowledged:
            log.warning("alert_resolve_rejected", alert_id=alert_id, reason="not acknowledged")
            return False
        alert.resolved_at_ms = self._now_ms()
        self._retire(alert)
        log.info("alert_resolved", alert_id=alert_id, by=user_id or "system")
        self._publish("resolved", alert)
        return True

    def _schedule_expiry(self, alert: SafetyAlert, delay_s: float) -> None:
        previous = self._expiry_timers.pop(alert.id, None)
        if previous is not None:
            previous.cancel()
        self._expiry_timers[alert.id] = self._scheduler.call_later(delay_s, self._expire, alert.id)

    def _expire(self, alert_id: str) -> None:
        alert = self._active.get(alert_id)
        self._expiry_timers.pop(alert_id, None)
        if alert is None:
            return
        # Urgent alerts only retire once someone has acknowledged them.
        if not alert.dismissible and not alert.acknowledged:
            log.info("alert_expiry_skipped", alert_id=alert_id, severity=alert.severity.value)
            return
        alert.expired_at_ms = self._now_ms()
        self._retire(alert)
        log.info("alert_expired", alert_id=alert_id)
        self._publish("expired", alert)

    def _retire(self, alert: SafetyAlert) -> None:
        self._active.pop(alert.id)
        self._cancel_escalation(alert.id)
        timer = self._expiry_timers.pop(alert.id, None)
        if timer is not None:
            timer.cancel()
        for activation in self._activations.values():
            if activation.alert_id == alert.id:
                self._close_activation(activation.id)

    def _close_activation(self, activation_id: str) -> None:
        activation = self._activations.pop(activation_id)
        if activation is None:
            return
        for step_no in activation.step_states:
            timer = self._step_timers.pop((activation_id, step_no), None)
            if timer is not None:
                timer.cancel()
        log.info("emergency_protocol_closed", activation_id=activation_id,
                 completed=activation.completed)

    def escalate_alert(self, alert_id: str, new_severity: Severity | str, reason: str = "") -> SafetyAlert | None:
        """Raise an active alert to a strictly higher severity."""
        alert = self._active.get(alert_id)
        if alert is None:
            return None
        new_severity = Severity(new_severity)
        if new_severity <= alert.severity:
            log.warning("escalation_rejected", alert_id=alert_id,
                        current=alert.severity.value, requested=new_severity.value)
            return None
        self._change_severity(alert, new_severity, reason or "Escalated")
        self._escalations += 1
        if self._stats:
            self._stats.record_escalation()
        log.warning("alert_escalated", alert_id=alert_id, previous=alert.escalated_from.value,
                    to=new_severity.value, reason=reason)
        if new_severity == Severity.EMERGENCY:
            alert.action_items.extend(a for a in EMERGENCY_ACTIONS if a not in alert.action_items)
            self._activate_protocol(alert)
        self._publish("escalated", alert)
        self._schedule_escalation(alert)
        return copy.deepcopy(alert)

    def supersede_alert(self, alert_id: str, new_severity: Severity | str, reason: str) -> SafetyAlert | None:
        """Explicitly replace an alert's severity, which may lower it."""
        alert = self._active.get(alert_id)
        if alert is None:
            return None
        new_severity = Severity(new_severity)
        previous = alert.severity
        self._change_severity(alert, new_severity, reason)
        log.info("alert_superseded", alert_id=alert_id, previous=previous.value, to=new_severity.value)
        if new_severity == Severity.EMERGENCY and previous != Severity.EMERGENCY:
            self._activate_protocol(alert)
        self._publish("superseded", alert)
        self._schedule_escalation(alert)
        return copy.deepcopy(alert)

    def _change_severity(self, alert: SafetyAlert, new_severity: Severity, reason: str) -> None:
        self._cancel_escalation(alert.id)
        alert.escalated_from = alert.severity
        alert.escalation_reason = reason
        alert.escalated_at_ms = self._now_ms()
        alert.severity = new_severity
        alert.escalation_level = new_severity.level
        alert.audio = AUDIO[new_severity]
        alert.visual = VISUAL[new_severity]
        alert.haptic = HAPTIC[new_severity]
        urgent = new_severity in (Severity.CRITICAL, Severity.EMERGENCY)
        alert.acknowledgment_required = urgent
        alert.dismissible = not urgent
        alert.broadcast_required = urgent
        # A new severity needs a fresh acknowledgement.
        alert.acknowledged_at_ms = None
        alert.acknowledged_by = None
        alert.context = {}
        alert.generation += 1

    def report_alert_context(self, alert_id: str, **values: float) -> bool:
        """Record observed values (distance_m, speed_knots) for condition checks."""
        alert = self._active.get(alert_id)
        if alert is None:
            return False
        for key, value in values.items():
            alert.context.setdefault(key, []).append(float(value))
        return True

    # --- Escalation scheduling ---

    def _schedule_escalation(self, alert: SafetyAlert) -> None:
        for rule in self._rules:
            if rule.category != alert.category or rule.severity != alert.severity:
                continue
            handle = self._scheduler.call_later(
                rule.time_threshold_s, self._check_escalation, alert.id, alert.generation, rule,
            )
            self._escalation_timers.setdefault(alert.id, []).append(handle)

    def _cancel_escalation(self, alert_id: str) -> None:
        for handle in self._escalation_timers.pop(alert_id, []):
            handle.cancel()

    def _check_escalation(self, alert_id: str, generation: int, rule: EscalationRule) -> None:
        alert = self._active.get(alert_id)
        if alert is None:
            self._cancel_escalation(alert_id)
            log.debug("stale_escalation_check", alert_id=alert_id)
            return
        if alert.generation != generation or alert.acknowledged:
            log.debug("stale_escalation_check", alert_id=alert_id)
            return
        if alert.severity != rule.severity or rule.escalate_to <= alert.severity:
            return
        if any(condition_holds(c, alert) for c in rule.conditions):
            self.escalate_alert(alert_id, rule.escalate_to,
                                "Automatic escalation due to unmet conditions")

    # --- Queries ---

    def active_alerts(self) -> list[SafetyAlert]:
        """Highest escalation level first, then newest."""
        alerts = sorted(self._active.values(), key=lambda a: (-a.escalation_level, -a.timestamp_ms))
        return [copy.deepcopy(a) for a in alerts]

    def alerts_by_category(self, category: str, severity: Severity | str | None = None) -> list[SafetyAlert]:
        wanted = Severity(severity) if severity is not None else None
        return [
            a for a in self.active_alerts()
            if a.category == category and (wanted is None or a.severity == wanted)
        ]

    def metrics(self) -> dict:
        by_severity: dict[str, int] = {}
        by_category: dict[str, int] = {}
        for alert in self._history.values():
            by_severity[alert.severity.value] = by_severity.get(alert.severity.value, 0) + 1
            by_category[alert.category] = by_category.get(alert.category, 0) + 1
        return {
            "total_alerts": self._total,
            "active_alerts": len(self._active),
            "by_severity": by_severity,
            "by_category": by_category,
            "escalations": self._escalations,
            "escalation_rate": round(self._escalations / self._total, 3) if self._total else 0.0,
            "acknowledgements": self._acks,
            "mean_ack_seconds": round(self._ack_total_s / self._acks, 1) if self._acks else 0.0,
        }

    # --- Emergency protocols ---

    def _protocols_for(self, category: str) -> list[EmergencyProtocol]:
        matching = [p for p in self._protocols if category in p.categories]
        if not matching:
            matching = [p for p in self._protocols if not p.categories]
        return matching

    def _activate_protocol(self, alert: SafetyAlert) -> None:
        incident_id = self._report_incident(alert)
        for protocol in self._protocols_for(alert.category):
            activation = ProtocolActivation(
                id=f"protocol_{uuid.uuid4().hex[:12]}",
                protocol_id=protocol.id,
                protocol_name=protocol.name,
                alert_id=alert.id,
                started_ms=self._now_ms(),
                step_states={s.step: "pending" for s in protocol.steps},
                incident_id=incident_id,
            )
            self._activations.put(activation.id, activation)
            log.warning("emergency_protocol_activated", protocol=protocol.id,
                        alert_id=alert.id, activation_id=activation.id)
            if self._bus is not None:
                self._bus.publish(TOPIC_PROTOCOLS, copy.deepcopy(activation))

            for step in protocol.steps:
                if step.automatic:
                    self._execute_step(activation, protocol, step, step.action, alert)
                if step.timeout_s and step.fallback:
                    self._step_timers[(activation.id, step.step)] = self._scheduler.call_later(
                        step.timeout_s, self._step_timeout, activation.id, step.step,
                    )

    def _report_incident(self, alert: SafetyAlert) -> str | None:
        if self._emergency is None:
            return None
        if alert.incident_id is not None:
            return alert.incident_id
        if alert.location is None:
            log.warning("incident_not_reported", alert_id=alert.id, reason="alert has no location")
            return None
        incident = self._emergency.report_incident_nowait(
            alert.category,
            IncidentSeverity.MAYDAY,
            alert.location,
            self.vessel,
            f"{alert.title}: {alert.message}",
            alert_id=alert.id,
        )
        alert.incident_id = incident.id
        return incident.id

    def _execute_step(
        self,
        activation: ProtocolActivation,
        protocol: EmergencyProtocol,
        step: ProtocolStep,
        action: str,
        alert: SafetyAlert,
    ) -> None:
        log.info("protocol_step_executed", activation_id=activation.id, step=step.step, action=action)
        if action == "broadcast_mayday" and self._emergency is not None and alert.location is not None:
            self._scheduler.spawn(self._emergency.broadcast_distress(alert.location, protocol.broadcast_message))
        elif action == "notify_emergency_contacts" and self._emergency is not None:
            if activation.incident_id is not None:
                self._emergency.add_incident_update(
                    activation.incident_id,
                    "No acknowledgement from coast guard, notifying all emergency contacts",
                    urgent=True,
                )
            if alert.location is not None:
                self._scheduler.spawn(
                    self._emergency.broadcast_distress(alert.location, protocol.broadcast_message),
                )
        # Remaining actions (emergency_stop, sound_horn, ...) are carried out on board;
        # the step event is the signal to the helm.
        activation.step_states[step.step] = "fallback" if action != step.action else "executed"
        if self._bus is not None:
            self._bus.publish(TOPIC_PROTOCOL_STEPS, {
                "activation_id": activation.id,
                "protocol_id": activation.protocol_id,
                "alert_id": activation.alert_id,
                "step": step.step,
                "action": action,
                "state": activation.step_states[step.step],
            })

    def _step_timeout(self, activation_id: str, step_no: int) -> None:
        self._step_timers.pop((activation_id, step_no), None)
        activation = self._activations.get(activation_id)
        if activation is None or activation.step_states.get(step_no) == "resolved":
            return
        protocol = next(p for p in self._protocols if p.id == activation.protocol_id)
        step = next(s for s in protocol.steps if s.step == step_no)
        alert = self._active.get(activation.alert_id) or self._history.get(activation.alert_id)
        if alert is None or step.fallback is None:
            return
        log.warning("protocol_step_timeout", activation_id=activation_id, step=step_no,
                    fallback=step.fallback)
        self._execute_step(activation, protocol, step, step.fallback, alert)

    def resolve_protocol_step(self, activation_id: str, step_no: int) -> bool:
        activation = self._activations.get(activation_id)
        if activation is None or step_no not in activation.step_states:
            return False
        if activation.step_states[step_no] == "resolved":
            return False
        activation.step_states[step_no] = "resolved"
        timer = self._step_timers.pop((activation_id, step_no), None)
        if timer is not None:
            timer.cancel()
        log.info("protocol_step_resolved", activation_id=activation_id, step=step_no)
        if self._bus is not None:
            self._bus.publish(TOPIC_PROTOCOL_STEPS, {
                "activation_id": activation.id,
                "protocol_id": activation.protocol_id,
                "alert_id": activation.alert_id,
                "step": step_no,
                "action": None,
                "state": "resolved",
            })
        if activation.completed:
            self._close_activation(activation_id)
        return True

    def active_protocols(self) -> list[ProtocolActivation]:
        return [copy.deepcopy(a) for a in self._activations.values() if not a.completed]

    def _on_incident(self, incident) -> None:
        """Contact steps count as resolved once someone acknowledged the incident."""
        if incident.status.value in ("reported", "cancelled"):
            return
        for activation in list(self._activations.values()):
            if activation.incident_id != incident.id:
                continue
            protocol = next(p for p in self._protocols if p.id == activation.protocol_id)
            for step in protocol.steps:
                if step.action in CONTACT_ACTIONS and activation.step_states[step.step] != "resolved":
                    self.resolve_protocol_step(activation.id, step.step)

    def close(self) -> None:
        if self._incident_sub is not None:
            self._incident_sub.unsubscribe()
        for handles in self._escalation_timers.values():
            for handle in handles:
                handle.cancel()
        self._escalation_timers.clear()
        for handle in list(self._expiry_timers.values()) + list(self._step_timers.values()):
            handle.cancel()
        self._expiry_timers.clear()
        self._step_timers.clear()
