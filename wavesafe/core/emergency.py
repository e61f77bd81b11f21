"""Emergency coordination.

Owns the contact directory, incident lifecycle and location-sharing
sessions. Notification dispatch goes through a NotificationChannel and is
always awaited off the monitoring path (report_incident_nowait spawns it on
the scheduler). Every attempt is recorded on the incident.

Incident status moves forward only:
reported -> acknowledged -> responding -> on_scene -> resolved,
or to cancelled from any non-terminal state.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo

import structlog

from wavesafe.config import EmergencyConfig
from wavesafe.core import geodesy
from wavesafe.core.cache import BoundedStore
from wavesafe.core.errors import InvalidInputError, check_location, check_priority
from wavesafe.core.events import TOPIC_INCIDENTS, TOPIC_POSITION_REPORTS, EventBus
from wavesafe.core.models import Location, VesselProfile
from wavesafe.core.stats import EngineStats
from wavesafe.notify.base import NotificationChannel
from wavesafe.scheduling.base import Scheduler

log = structlog.get_logger()

NOTIFY_METHODS = ("phone", "vhf", "email")


class IncidentSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    MAYDAY = "mayday"

    @property
    def urgent(self) -> bool:
        return self in (IncidentSeverity.CRITICAL, IncidentSeverity.MAYDAY)


class IncidentStatus(str, Enum):
    REPORTED = "reported"
    ACKNOWLEDGED = "acknowledged"
    RESPONDING = "responding"
    ON_SCENE = "on_scene"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (IncidentStatus.RESOLVED, IncidentStatus.CANCELLED)


_STATUS_ORDER = {
    IncidentStatus.REPORTED: 0,
    IncidentStatus.ACKNOWLEDGED: 1,
    IncidentStatus.RESPONDING: 2,
    IncidentStatus.ON_SCENE: 3,
    IncidentStatus.RESOLVED: 4,
}

# Capability types that can help with each incident type.
INCIDENT_CAPABILITIES = {
    "grounding": {"rescue", "towing", "coordination"},
    "collision": {"rescue", "coordination", "law_enforcement"},
    "fire": {"firefighting", "rescue", "coordination"},
    "flooding": {"rescue", "towing", "coordination"},
    "medical": {"medical", "rescue", "coordination"},
    "mechanical": {"towing", "coordination"},
    "weather": {"rescue", "coordination"},
    "missing": {"rescue", "coordination", "law_enforcement"},
    "distress": {"rescue", "coordination"},
}

COORDINATION_CENTRES = {
    "coast_guard": "Coast Guard Operations Center",
    "rescue_service": "Marine Rescue Coordination Center",
}


# --- Contacts ---

@dataclass(frozen=True)
class ServiceArea:
    center: Location
    radius_km: float
    jurisdictions: tuple[str, ...] = ()


@dataclass(frozen=True)
class BusinessHours:
    start: str  # HH:MM
    end: str  # HH:MM
    timezone: str = "UTC"
    days_of_week: tuple[int, ...] = (0, 1, 2, 3, 4)  # 0=Monday


@dataclass(frozen=True)
class SeasonalLimitation:
    start: str  # MM-DD
    end: str  # MM-DD
    reason: str = ""


@dataclass(frozen=True)
class ContactAvailability:
    available_24h: bool = True
    business_hours: BusinessHours | None = None
    seasonal: SeasonalLimitation | None = None
    emergency_override: bool = True


@dataclass(frozen=True)
class ServiceCapability:
    type: str  # rescue, towing, medical, firefighting, law_enforcement, coordination, ...
    vessel_types: tuple[str, ...] = ("all",)


@dataclass(frozen=True)
class EmergencyContact:
    id: str
    name: str
    type: str  # coast_guard, harbor_master, marine_police, rescue_service, tow_service, family, ...
    priority: int
    service_area: ServiceArea
    availability: ContactAvailability = field(default_factory=ContactAvailability)
    capabilities: tuple[ServiceCapability, ...] = ()
    phone_numbers: tuple[str, ...] = ()
    vhf_channel: int | None = None
    email: str | None = None
    languages: tuple[str, ...] = ("en",)


def check_contact(contact: EmergencyContact) -> None:
    if not contact.id:
        raise InvalidInputError("contact id is required")
    check_priority(contact.priority)
    check_location(contact.service_area.center)
    if contact.service_area.radius_km <= 0:
        raise InvalidInputError(f"service radius must be > 0: {contact.service_area.radius_km}")


def contact_from_dict(raw: dict) -> EmergencyContact:
    """Build a contact from a config.yaml entry."""
    area = raw["service_area"]
    avail = raw.get("availability") or {}
    hours = avail.get("business_hours")
    season = avail.get("seasonal")
    return EmergencyContact(
        id=raw["id"],
        name=raw.get("name", raw["id"]),
        type=raw.get("type", "rescue_service"),
        priority=int(raw.get("priority", 5)),
        service_area=ServiceArea(
            center=Location(area["latitude"], area["longitude"]),
            radius_km=float(area["radius_km"]),
            jurisdictions=tuple(area.get("jurisdictions", ())),
        ),
        availability=ContactAvailability(
            available_24h=avail.get("available_24h", True),
            business_hours=BusinessHours(
                start=hours["start"],
                end=hours["end"],
                timezone=hours.get("timezone", "UTC"),
                days_of_week=tuple(hours.get("days_of_week", (0, 1, 2, 3, 4))),
            ) if hours else None,
            seasonal=SeasonalLimitation(
                start=season["start"], end=season["end"], reason=season.get("reason", ""),
            ) if season else None,
            emergency_override=avail.get("emergency_override", True),
        ),
        capabilities=tuple(
            ServiceCapability(type=c["type"], vessel_types=tuple(c.get("vessel_types", ("all",))))
            for c in raw.get("capabilities", ())
        ),
        phone_numbers=tuple(raw.get("phone_numbers", ())),
        vhf_channel=raw.get("vhf_channel"),
        email=raw.get("email"),
        languages=tuple(raw.get("languages", ("en",))),
    )


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def is_available(contact: EmergencyContact, at: datetime, emergency: bool = True) -> bool:
    """Whether the contact can be reached at `at` (an aware datetime).

    Hours and seasons are read in the contact's local time (the business-hours
    timezone, UTC when there is none). A window whose end is before its start
    runs overnight and belongs to the day it started on.
    """
    avail = contact.availability
    if avail.available_24h:
        return True
    fallback = emergency and avail.emergency_override

    hours = avail.business_hours
    local = at.astimezone(ZoneInfo(hours.timezone if hours is not None else "UTC"))
    if hours is not None:
        now_min = local.hour * 60 + local.minute
        start, end = _minutes(hours.start), _minutes(hours.end)
        day = local.weekday()
        if start <= end:
            in_hours = start <= now_min <= end
        else:
            in_hours = now_min >= start or now_min <= end
            if now_min < start:
                day = (day - 1) % 7
        if day not in hours.days_of_week or not in_hours:
            return fallback

    season = avail.seasonal
    if season is not None:
        today = f"{local.month:02d}-{local.day:02d}"
        if season.start <= season.end:
            limited = season.start <= today <= season.end
        else:
            limited = today >= season.start or today <= season.end
        if limited:
            return fallback

    return True


# --- Incidents ---

@dataclass(frozen=True)
class NotificationRecord:
    contact_id: str
    method: str
    attempted_at_ms: int
    successful: bool
    response_time_ms: int | None = None
    retry_count: int = 0


@dataclass(frozen=True)
class IncidentUpdate:
    id: str
    timestamp_ms: int
    type: str  # status_change, position_update, progress_report
    content: str
    source: str = "system"
    urgent: bool = False


@dataclass(frozen=True)
class IncidentResolution:
    resolved_at_ms: int
    outcome: str  # rescued, self_recovered, towed, false_alarm, cancelled
    summary: str
    lessons_learned: tuple[str, ...] = ()


@dataclass
class EmergencyIncident:
    id: str
    type: str
    severity: IncidentSeverity
    status: IncidentStatus
    reported_at_ms: int
    location: Location
    vessel: VesselProfile | None
    description: str
    persons_on_board: int = 1
    injuries: bool = False
    immediate_danger: bool = False
    alert_id: str | None = None
    lead_agency: str = ""
    coordination_center: str = ""
    contacts_notified: list[NotificationRecord] = field(default_factory=list)
    updates: list[IncidentUpdate] = field(default_factory=list)
    resolution: IncidentResolution | None = None
    sharing_session_id: str | None = None


# --- Location sharing ---

@dataclass(frozen=True)
class SharingPermission:
    contact_id: str
    can_view_location: bool = True
    can_view_vessel_data: bool = False
    can_view_environmental: bool = False
    can_receive_alerts: bool = False
    access_level: str = "basic"  # basic, detailed or full


@dataclass
class LocationSharingSession:
    id: str
    vessel_id: str
    started_at_ms: int
    share_with: list[str]
    frequency_s: float
    emergency: bool
    permissions: list[SharingPermission]
    ends_at_ms: int | None = None
    last_update_ms: int | None = None
    update_count: int = 0
    incident_id: str | None = None

    def is_active(self, at_ms: int) -> bool:
        return self.ends_at_ms is None or at_ms < self.ends_at_ms


@dataclass(frozen=True)
class PositionReport:
    vessel_id: str
    timestamp_ms: int
    location: Location
    course_deg: float = 0.0
    speed_knots: float = 0.0
    status: str = "underway"  # underway, anchored, moored, aground, disabled, emergency
    vessel_data: dict | None = None
    environmental: dict | None = None
    emergency_status: dict | None = None


def filter_report(report: PositionReport, permission: SharingPermission) -> dict:
    """Strip the parts of a report a contact is not allowed to see."""
    filtered: dict = {"vessel_id": report.vessel_id, "timestamp_ms": report.timestamp_ms}
    if permission.can_view_location:
        filtered.update(
            location=report.location,
            course_deg=report.course_deg,
            speed_knots=report.speed_knots,
            status=report.status,
        )
    if permission.can_view_vessel_data and report.vessel_data:
        filtered["vessel_data"] = dict(report.vessel_data)
    if permission.can_view_environmental and report.environmental:
        filtered["environmental"] = dict(report.environmental)
    if permission.can_receive_alerts and report.emergency_status:
        filtered["emergency_status"] = dict(report.emergency_status)
    return filtered


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class EmergencyCoordinator:
    def __init__(
        self,
        channel: NotificationChannel,
        scheduler: Scheduler,
        config: EmergencyConfig | None = None,
        bus: EventBus | None = None,
        stats: EngineStats | None = None,
    ) -> None:
        self._channel = channel
        self._scheduler = scheduler
        self._config = config or EmergencyConfig()
        self._bus = bus
        self._stats = stats
        self._contacts: dict[str, EmergencyContact] = {}
        self._incidents: BoundedStore[str, EmergencyIncident] = BoundedStore(
            max_entries=self._config.incident_history, name="incidents",
        )
        self._sessions: BoundedStore[str, LocationSharingSession] = BoundedStore(
            max_entries=self._config.max_sessions, name="sharing_sessions",
        )

        for raw in self._config.contacts:
            self.add_contact(contact_from_dict(raw))

    def _now_ms(self) -> int:
        return int(self._scheduler.now() * 1000)

    # --- Contact directory ---

    def add_contact(self, contact: EmergencyContact) -> EmergencyContact:
        check_contact(contact)
        self._contacts[contact.id] = contact
        log.info("contact_added", contact=contact.id, type=contact.type, priority=contact.priority)
        return contact

    def remove_contact(self, contact_id: str) -> bool:
        return self._contacts.pop(contact_id, None) is not None

    def contacts(self) -> list[EmergencyContact]:
        return list(self._contacts.values())

    def select_contacts(
        self,
        location: Location,
        incident_type: str | None = None,
        vessel_type: str | None = None,
        *,
        emergency: bool = True,
    ) -> list[EmergencyContact]:
        """Reachable contacts covering `location`, highest priority first, then nearest."""
        at = datetime.fromtimestamp(self._scheduler.now(), tz=timezone.utc)
        wanted = INCIDENT_CAPABILITIES.get(incident_type) if incident_type else None

        selected: list[tuple[int, float, EmergencyContact]] = []
        for contact in self._contacts.values():
            dist = geodesy.distance(location, contact.service_area.center)
            if dist > contact.service_area.radius_km * 1000:
                continue
            caps = contact.capabilities
            if vessel_type and caps:
                if not any(vessel_type in c.vessel_types or "all" in c.vessel_types for c in caps):
                    continue
            if wanted and caps:
                if not any(c.type in wanted for c in caps):
                    continue
            if not is_available(contact, at, emergency=emergency):
                continue
            selected.append((-contact.priority, dist, contact))

        selected.sort(key=lambda t: (t[0], t[1]))
        return [c for _, _, c in selected]

    # --- Incidents ---

    def _snapshot(self, incident: EmergencyIncident) -> EmergencyIncident:
        return copy.deepcopy(incident)

    def _publish(self, incident: EmergencyIncident) -> None:
        if self._bus is not None:
            self._bus.publish(TOPIC_INCIDENTS, self._snapshot(incident))

    def _add_update(self, incident: EmergencyIncident, content: str, kind: str, urgent: bool = False) -> None:
        incident.updates.append(IncidentUpdate(
            id=_new_id("update"),
            timestamp_ms=self._now_ms(),
            type=kind,
            content=content,
            urgent=urgent,
        ))

    def _create_incident(
        self,
        incident_type: str,
        severity: IncidentSeverity | str,
        location: Location,
        vessel: VesselProfile | None,
        description: str,
        persons_on_board: int,
        injuries: bool,
        immediate_danger: bool | None,
        alert_id: str | None,
    ) -> EmergencyIncident:
        check_location(location)
        severity = IncidentSeverity(severity)
        incident = EmergencyIncident(
            id=_new_id("incident"),
            type=incident_type,
            severity=severity,
            status=IncidentStatus.REPORTED,
            reported_at_ms=self._now_ms(),
            location=location,
            vessel=vessel,
            description=description,
            persons_on_board=persons_on_board,
            injuries=injuries,
            immediate_danger=(
                immediate_danger if immediate_danger is not None
                else severity == IncidentSeverity.MAYDAY
            ),
            alert_id=alert_id,
        )
        self._incidents.put(incident.id, incident)
        if self._stats:
            self._stats.record_incident()
        log.warning("incident_reported",
                    incident_id=incident.id,
                    type=incident_type,
                    severity=severity.value,
                    lat=round(location.latitude, 5),
                    lon=round(location.longitude, 5))
        self._publish(incident)
        return incident

    async def report_incident(
        self,
        incident_type: str,
        severity: IncidentSeverity | str,
        location: Location,
        vessel: VesselProfile | None,
        description: str,
        *,
        persons_on_board: int = 1,
        injuries: bool = False,
        immediate_danger: bool | None = None,
        alert_id: str | None = None,
    ) -> EmergencyIncident:
        """Create an incident and notify contacts, returning once dispatch finished."""
        incident = self._create_incident(
            incident_type, severity, location, vessel, description,
            persons_on_board, injuries, immediate_danger, alert_id,
        )
        await self._dispatch(incident.id)
        return self._snapshot(incident)

    def report_incident_nowait(
        self,
        incident_type: str,
        severity: IncidentSeverity | str,
        location: Location,
        vessel: VesselProfile | None,
        description: str,
        *,
        persons_on_board: int = 1,
        injuries: bool = False,
        immediate_danger: bool | None = None,
        alert_id: str | None = None,
    ) -> EmergencyIncident:
        """Create an incident now; notification runs in the background."""
        incident = self._create_incident(
            incident_type, severity, location, vessel, description,
            persons_on_board, injuries, immediate_danger, alert_id,
        )
        self._scheduler.spawn(self._dispatch(incident.id))
        return self._snapshot(incident)

    async def _dispatch(self, incident_id: str) -> None:
        incident = self._incidents.get(incident_id)
        if incident is None:
            return
        vessel_type = incident.vessel.vessel_type if incident.vessel else None
        contacts = self.select_contacts(incident.location, incident.type, vessel_type)

        if incident.severity.urgent:
            to_notify = contacts
        elif incident.severity == IncidentSeverity.HIGH:
            to_notify = contacts[:3]
        else:
            to_notify = contacts[:1]

        if not to_notify:
            log.error("no_contacts_available", incident_id=incident.id,
                      severity=incident.severity.value)

        if to_notify:
            lead = to_notify[0]
            incident.lead_agency = lead.name
            incident.coordination_center = COORDINATION_CENTRES.get(lead.type, "")

        for contact in to_notify:
            await self._notify_contact(incident, contact, retry_count=0)

        if incident.severity.urgent and not incident.status.terminal:
            session = self._start_emergency_sharing(incident, [c.id for c in to_notify])
            incident.sharing_session_id = session.id

        self._publish(incident)

    def format_message(self, incident: EmergencyIncident) -> str:
        vessel = incident.vessel.name if incident.vessel and incident.vessel.name else "Unknown Vessel"
        reported = datetime.fromtimestamp(incident.reported_at_ms / 1000, tz=timezone.utc)
        lines = [
            f"{incident.severity.value.upper()} - {incident.type.replace('_', ' ').upper()}",
            f"Vessel: {vessel}",
            f"Position: {incident.location.latitude:.4f}, {incident.location.longitude:.4f}",
            f"POB: {incident.persons_on_board}",
        ]
        if incident.injuries:
            lines.append("INJURIES REPORTED")
        if incident.immediate_danger:
            lines.append("IMMEDIATE DANGER")
        lines.append(f"Description: {incident.description}")
        lines.append(f"Time: {reported.isoformat()}")
        return "\n".join(lines)

    async def _notify_contact(
        self, incident: EmergencyIncident, contact: EmergencyContact, retry_count: int,
    ) -> bool:
        message = self.format_message(incident)
        delivered = False
        for method in NOTIFY_METHODS:
            started = self._now_ms()
            try:
                ok = bool(await self._channel.send(contact, method, message))
            except Exception:
                log.error("notification_error", contact=contact.id, method=method, exc_info=True)
                ok = False
            incident.contacts_notified.append(NotificationRecord(
                contact_id=contact.id,
                method=method,
                attempted_at_ms=started,
                successful=ok,
                response_time_ms=self._now_ms() - started if ok else None,
                retry_count=retry_count,
            ))
            if self._stats:
                self._stats.record_notification(ok)
            if ok:
                delivered = True
                break

        if delivered:
            log.info("contact_notified", incident_id=incident.id, contact=contact.id,
                     method=incident.contacts_notified[-1].method)
            if incident.status == IncidentStatus.REPORTED:
                incident.status = IncidentStatus.ACKNOWLEDGED
                self._add_update(incident, f"Contact established with {contact.name}", "status_change")
                self._publish(incident)
            return True

        log.warning("notification_failed", incident_id=incident.id, contact=contact.id,
                    retry=retry_count)
        if incident.severity.urgent and retry_count == 0:
            self._scheduler.call_later(
                self._config.retry_delay_seconds, self._schedule_retry, incident.id, contact.id,
            )
        return False

    def _schedule_retry(self, incident_id: str, contact_id: str) -> None:
        incident = self._incidents.get(incident_id)
        contact = self._contacts.get(contact_id)
        if incident is None or contact is None or incident.status.terminal:
            return
        self._scheduler.spawn(self._retry(incident_id, contact_id))

    async def _retry(self, incident_id: str, contact_id: str) -> None:
        incident = self._incidents.get(incident_id)
        contact = self._contacts.get(contact_id)
        if incident is None or contact is None or incident.status.terminal:
            return
        log.info("notification_retry", incident_id=incident_id, contact=contact_id)
        await self._notify_contact(incident, contact, retry_count=1)

    def get_incident(self, incident_id: str) -> EmergencyIncident | None:
        incident = self._incidents.get(incident_id)
        return self._snapshot(incident) if incident else None

    def active_incidents(self) -> list[EmergencyIncident]:
        return [self._snapshot(i) for i in self._incidents.values() if not i.status.terminal]

    def update_incident_status(self, incident_id: str, status: IncidentStatus | str) -> bool:
        """Move an incident forward. Resolution and cancellation have their own calls."""
        incident = self._incidents.get(incident_id)
        if incident is None:
            return False
        status = IncidentStatus(status)
        if status == IncidentStatus.CANCELLED:
            return self.cancel_incident(incident_id)
        if status == IncidentStatus.RESOLVED:
            log.warning("incident_transition_rejected", incident_id=incident_id,
                        current=incident.status.value, requested=status.value,
                        reason="use resolve_incident")
            return False
        if incident.status.terminal or _STATUS_ORDER[status] <= _STATUS_ORDER[incident.status]:
            log.warning("incident_transition_rejected", incident_id=incident_id,
                        current=incident.status.value, requested=status.value)
            return False
        incident.status = status
        self._add_update(incident, f"Status changed to {status.value}", "status_change")
        log.info("incident_status_changed", incident_id=incident_id, status=status.value)
        self._publish(incident)
        return True

    def add_incident_update(
        self, incident_id: str, content: str, kind: str = "progress_report",
        *, location: Location | None = None, urgent: bool = False,
    ) -> bool:
        incident = self._incidents.get(incident_id)
        if incident is None:
            return False
        if location is not None:
            check_location(location)
            incident.location = location
            kind = "position_update"
        self._add_update(incident, content, kind, urgent)
        self._publish(incident)
        return True

    def resolve_incident(
        self, incident_id: str, outcome: str, summary: str, lessons_learned: Sequence[str] = (),
    ) -> bool:
        incident = self._incidents.get(incident_id)
        if incident is None or incident.status.terminal:
            return False
        now = self._now_ms()
        incident.status = IncidentStatus.RESOLVED
        incident.resolution = IncidentResolution(
            resolved_at_ms=now,
            outcome=outcome,
            summary=summary,
            lessons_learned=tuple(lessons_learned),
        )
        self._add_update(incident, f"Incident resolved: {outcome}", "status_change")
        self._end_emergency_sessions(incident, now)
        log.info("incident_resolved", incident_id=incident_id, outcome=outcome)
        self._publish(incident)
        return True

    def cancel_incident(self, incident_id: str, reason: str = "") -> bool:
        incident = self._incidents.get(incident_id)
        if incident is None or incident.status.terminal:
            return False
        now = self._now_ms()
        incident.status = IncidentStatus.CANCELLED
        self._add_update(incident, f"Incident cancelled{': ' + reason if reason else ''}", "status_change")
        self._end_emergency_sessions(incident, now)
        log.info("incident_cancelled", incident_id=incident_id, reason=reason)
        self._publish(incident)
        return True

    async def broadcast_distress(self, location: Location, message: str) -> int:
        """Send `message` over VHF to every reachable contact. Returns the delivery count."""
        delivered = 0
        for contact in self.select_contacts(location):
            if contact.vhf_channel is None:
                continue
            try:
                ok = bool(await self._channel.send(contact, "vhf", message))
            except Exception:
                log.error("notification_error", contact=contact.id, method="vhf", exc_info=True)
                ok = False
            if self._stats:
                self._stats.record_notification(ok)
            delivered += int(ok)
        log.warning("distress_broadcast", delivered=delivered)
        return delivered

    # --- Location sharing ---

    def _start_emergency_sharing(
        self, incident: EmergencyIncident, contact_ids: list[str],
    ) -> LocationSharingSession:
        frequency = (
            self._config.mayday_share_interval_seconds
            if incident.severity == IncidentSeverity.MAYDAY
            else self._config.default_share_interval_seconds
        )
        vessel_id = (incident.vessel.id or incident.vessel.name) if incident.vessel else "unknown"
        session = LocationSharingSession(
            id=_new_id("sharing"),
            vessel_id=vessel_id or "unknown",
            started_at_ms=self._now_ms(),
            share_with=list(contact_ids),
            frequency_s=frequency,
            emergency=True,
            permissions=[
                SharingPermission(
                    contact_id=cid,
                    can_view_location=True,
                    can_view_vessel_data=True,
                    can_view_environmental=True,
                    can_receive_alerts=True,
                    access_level="full",
                )
                for cid in contact_ids
            ],
            incident_id=incident.id,
        )
        self._prune_sessions(self._now_ms())
        self._sessions.put(session.id, session)
        log.info("location_sharing_started", session_id=session.id, emergency=True,
                 contacts=len(contact_ids), frequency_s=frequency)
        return session

    def _end_emergency_sessions(self, incident: EmergencyIncident, now: int) -> None:
        for session in self._sessions.values():
            if session.emergency and session.incident_id == incident.id and session.is_active(now):
                session.ends_at_ms = now
                self._sessions.pop(session.id)
                log.info("location_sharing_stopped", session_id=session.id)

    def start_location_sharing(
        self,
        vessel_id: str,
        contact_ids: Iterable[str],
        frequency_s: float = 1800.0,
        duration_s: float | None = None,
        permissions: Sequence[dict] | None = None,
    ) -> LocationSharingSession:
        ids = list(contact_ids)
        now = self._now_ms()
        perms = []
        for i, cid in enumerate(ids):
            perm = SharingPermission(contact_id=cid)
            if permissions and i < len(permissions):
                perm = replace(perm, **permissions[i])
            perms.append(perm)
        session = LocationSharingSession(
            id=_new_id("sharing"),
            vessel_id=vessel_id,
            started_at_ms=now,
            share_with=ids,
            frequency_s=frequency_s,
            emergency=False,
            permissions=perms,
            ends_at_ms=now + int(duration_s * 1000) if duration_s else None,
        )
        self._prune_sessions(now)
        self._sessions.put(session.id, session)
        log.info("location_sharing_started", session_id=session.id, emergency=False,
                 contacts=len(ids), frequency_s=frequency_s)
        return copy.deepcopy(session)

    def stop_location_sharing(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        now = self._now_ms()
        if session is None or not session.is_active(now):
            return False
        session.ends_at_ms = now
        self._sessions.pop(session_id)
        log.info("location_sharing_stopped", session_id=session_id)
        return True

    def _prune_sessions(self, now: int) -> None:
        for session in self._sessions.values():
            if not session.is_active(now):
                self._sessions.pop(session.id)

    def active_sessions(self) -> list[LocationSharingSession]:
        now = self._now_ms()
        self._prune_sessions(now)
        return [copy.deepcopy(s) for s in self._sessions.values()]

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def send_position_report(self, report: PositionReport) -> int:
        """Deliver a report to every due session for the vessel. Returns reports published."""
        now = self._now_ms()
        published = 0
        self._prune_sessions(now)
        for session in self._sessions.values():
            if session.vessel_id != report.vessel_id or not session.is_active(now):
                continue
            if session.last_update_ms is not None and now - session.last_update_ms < session.frequency_s * 1000:
                continue
            for permission in session.permissions:
                if permission.contact_id not in self._contacts:
                    continue
                payload = {
                    "session_id": session.id,
                    "contact_id": permission.contact_id,
                    "report": filter_report(report, permission),
                }
                if self._bus is not None:
                    self._bus.publish(TOPIC_POSITION_REPORTS, payload)
                published += 1
            session.last_update_ms = now
            session.update_count += 1
        return published
