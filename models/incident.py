from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from normalize.times import parse_feed_time, to_iso


class IncidentStatus(StrEnum):
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class IncidentSource(StrEnum):
    PULSEPOINT = "pulsepoint"
    MANUAL = "manual"


class CallTypeCategory(StrEnum):
    FIRE = "fire"
    MEDICAL = "medical"
    RESCUE = "rescue"
    TRAFFIC = "traffic"
    HAZMAT = "hazmat"
    OTHER = "other"


class InvalidTransitionError(ValueError):
    def __init__(self, current: IncidentStatus, target: IncidentStatus) -> None:
        super().__init__(f"invalid incident transition {current} -> {target}")
        self.current = current
        self.target = target


_ALLOWED_TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = {
    IncidentStatus.ACTIVE: frozenset(
        {IncidentStatus.ACTIVE, IncidentStatus.CLOSED, IncidentStatus.ARCHIVED}
    ),
    IncidentStatus.CLOSED: frozenset({IncidentStatus.CLOSED, IncidentStatus.ARCHIVED}),
    IncidentStatus.ARCHIVED: frozenset({IncidentStatus.ARCHIVED}),
}


def check_transition(current: IncidentStatus, target: IncidentStatus) -> None:
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)


_UNIT_TIME_FIELDS = (
    "time_dispatched",
    "time_acknowledged",
    "time_enroute",
    "time_on_scene",
    "time_cleared",
)


@dataclass(frozen=True)
class UnitStatus:
    unit_id: str
    status: str
    time_dispatched: datetime | None = None
    time_acknowledged: datetime | None = None
    time_enroute: datetime | None = None
    time_on_scene: datetime | None = None
    time_cleared: datetime | None = None

    def timestamps(self) -> tuple[datetime | None, ...]:
        return tuple(getattr(self, name) for name in _UNIT_TIME_FIELDS)

    def latest_time(self) -> datetime | None:
        present = [ts for ts in self.timestamps() if ts is not None]
        return max(present) if present else None

    def to_dict(self) -> dict:
        out: dict = {"unit": self.unit_id, "status": self.status}
        for name in _UNIT_TIME_FIELDS:
            value = getattr(self, name)
            if value is not None:
                out[name] = to_iso(value)
        return out


def decode_unit_statuses(value: object) -> list[UnitStatus]:
    """Accept both stored shapes and return the list form.

    Legacy rows keep a mapping of ``{unit_id: {unit, status, timestamp}}``; newer rows
    keep a list of per-unit records with individual lifecycle timestamps.
    """
    if not value:
        return []

    if isinstance(value, dict):
        statuses: list[UnitStatus] = []
        for unit_id, entry in value.items():
            if not isinstance(entry, dict):
                continue
            statuses.append(
                UnitStatus(
                    unit_id=str(entry.get("unit") or unit_id),
                    status=str(entry.get("status") or "DP"),
                    time_dispatched=parse_feed_time(entry.get("timestamp")),
                )
            )
        return statuses

    if isinstance(value, list):
        statuses = []
        for entry in value:
            if not isinstance(entry, dict):
                continue
            unit_id = entry.get("unit") or entry.get("unit_id")
            if not unit_id:
                continue
            statuses.append(
                UnitStatus(
                    unit_id=str(unit_id),
                    status=str(entry.get("status") or "DP"),
                    **{
                        name: parse_feed_time(entry.get(name))
                        for name in _UNIT_TIME_FIELDS
                    },
                )
            )
        return statuses

    return []


@dataclass
class Incident:
    tenant_id: str
    external_id: str | None
    call_type: str
    call_type_category: CallTypeCategory
    full_address: str
    normalized_address: str
    call_received_time: datetime
    status: IncidentStatus = IncidentStatus.ACTIVE
    source: IncidentSource = IncidentSource.PULSEPOINT
    call_closed_time: datetime | None = None
    latitude: float | None = None
    longitude: float | None = None
    units: list[str] = field(default_factory=list)
    unit_statuses: list[UnitStatus] = field(default_factory=list)
    group_id: str | None = None
    incident_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "incident_id": self.incident_id,
            "tenant_id": self.tenant_id,
            "external_id": self.external_id,
            "source": str(self.source),
            "call_type": self.call_type,
            "call_type_category": str(self.call_type_category),
            "full_address": self.full_address,
            "normalized_address": self.normalized_address,
            "lat": self.latitude,
            "lon": self.longitude,
            "units": list(self.units),
            "unit_statuses": [u.to_dict() for u in self.unit_statuses],
            "status": str(self.status),
            "call_received_time": to_iso(self.call_received_time),
            "call_closed_time": to_iso(self.call_closed_time)
            if self.call_closed_time is not None
            else None,
            "group_id": self.group_id,
        }
