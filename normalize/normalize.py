from __future__ import annotations

import re
from datetime import datetime, timedelta

from ingest.errors import RecordValidationError
from models.incident import (
    Incident,
    IncidentSource,
    IncidentStatus,
    UnitStatus,
)
from models.weather import (
    AlertStatus,
    WeatherAlert,
    parse_certainty,
    parse_message_type,
    parse_severity,
    parse_urgency,
)
from normalize.call_types import map_call_type_to_category
from normalize.times import parse_feed_time


_ID_FIELDS = ("PulsePointIncidentID", "ID", "id", "IncidentID")
_CALL_TYPE_FIELDS = ("PulsePointIncidentCallType", "CallType", "CallTypeDescription")
_ADDRESS_FIELDS = ("FullDisplayAddress", "Address", "DisplayAddress")
_RECEIVED_FIELDS = (
    "CallReceivedDateTime",
    "TimeCallOpened",
    "CallTime",
    "IncidentTime",
)
_CLOSED_FIELDS = ("TimeCallClosed", "CloseTime", "ClosedDateTime")

_UNIT_ID_FIELDS = ("UnitID", "Unit", "UnitKey")
_UNIT_STATUS_FIELDS = ("PulsePointDispatchStatus", "DispatchStatus")
_UNIT_TIME_FIELDS: dict[str, tuple[str, ...]] = {
    "time_dispatched": ("TimeDispatched", "UnitDispatchedDateTime"),
    "time_acknowledged": ("TimeAcknowledged", "UnitAcknowledgedDateTime"),
    "time_enroute": ("TimeEnroute", "UnitEnrouteDateTime"),
    "time_on_scene": ("TimeOnScene", "UnitOnSceneDateTime"),
    "time_cleared": ("TimeCleared", "UnitClearedDateTime"),
}

UNKNOWN_CALL_TYPE = "Unknown"
UNKNOWN_ADDRESS = "Unknown Address"


def _first(record: dict, fields: tuple[str, ...]) -> object | None:
    for name in fields:
        value = record.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _first_str(record: dict, fields: tuple[str, ...]) -> str | None:
    value = _first(record, fields)
    if value is None:
        return None
    return str(value).strip()


_ADDRESS_PUNCT_RE = re.compile(r"[^\w\s&]+", flags=re.UNICODE)
_ADDRESS_WHITESPACE_RE = re.compile(r"\s+")

_ADDRESS_TOKENS = {
    "street": "st",
    "avenue": "ave",
    "av": "ave",
    "boulevard": "blvd",
    "drive": "dr",
    "road": "rd",
    "lane": "ln",
    "court": "ct",
    "circle": "cir",
    "place": "pl",
    "highway": "hwy",
    "parkway": "pkwy",
    "terrace": "ter",
    "trail": "trl",
    "expressway": "expy",
    "freeway": "fwy",
    "square": "sq",
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
    "northeast": "ne",
    "northwest": "nw",
    "southeast": "se",
    "southwest": "sw",
    "apartment": "apt",
    "suite": "ste",
}


def normalize_address(address: str) -> str:
    normalized = address.strip().casefold()
    normalized = _ADDRESS_PUNCT_RE.sub(" ", normalized)
    tokens = _ADDRESS_WHITESPACE_RE.split(normalized)
    return " ".join(_ADDRESS_TOKENS.get(t, t) for t in tokens if t)


def _coordinate(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if out != out:
        return None
    return out


def _coordinates(record: dict) -> tuple[float | None, float | None]:
    lat = _coordinate(record.get("Latitude"))
    lon = _coordinate(record.get("Longitude"))
    if lat is None or lon is None:
        return None, None
    if lat == 0 and lon == 0:
        return None, None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None, None
    return lat, lon


def _is_vtac(unit_id: str) -> bool:
    return "VTAC" in unit_id.upper()


def normalize_units(raw_units: object) -> tuple[list[str], list[UnitStatus]]:
    if not isinstance(raw_units, list):
        return [], []

    units: list[str] = []
    statuses: list[UnitStatus] = []
    for entry in raw_units:
        if not isinstance(entry, dict):
            continue
        unit_id = _first_str(entry, _UNIT_ID_FIELDS)
        if not unit_id or _is_vtac(unit_id) or unit_id in units:
            continue

        times = {
            name: parse_feed_time(_first(entry, fields))
            for name, fields in _UNIT_TIME_FIELDS.items()
        }
        status = _first_str(entry, _UNIT_STATUS_FIELDS) or "DP"
        if times["time_cleared"] is not None:
            status = "CL"

        units.append(unit_id)
        statuses.append(UnitStatus(unit_id=unit_id, status=status.upper(), **times))
    return units, statuses


def normalize_incident_record(
    record: dict,
    *,
    tenant_id: str,
    fetched_at: datetime,
) -> Incident:
    external_id = _first_str(record, _ID_FIELDS)
    if not external_id:
        raise RecordValidationError("incident record has no vendor id")

    call_type = _first_str(record, _CALL_TYPE_FIELDS) or UNKNOWN_CALL_TYPE
    description = record.get("CallTypeDescription")
    address = _first_str(record, _ADDRESS_FIELDS) or UNKNOWN_ADDRESS

    received = parse_feed_time(_first(record, _RECEIVED_FIELDS)) or fetched_at
    closed = parse_feed_time(_first(record, _CLOSED_FIELDS))

    lat, lon = _coordinates(record)
    units, unit_statuses = normalize_units(record.get("Unit"))

    return Incident(
        tenant_id=tenant_id,
        external_id=external_id,
        source=IncidentSource.PULSEPOINT,
        call_type=call_type,
        call_type_category=map_call_type_to_category(call_type, description),
        full_address=address,
        normalized_address=normalize_address(address),
        latitude=lat,
        longitude=lon,
        units=units,
        unit_statuses=unit_statuses,
        status=IncidentStatus.CLOSED if closed is not None else IncidentStatus.ACTIVE,
        call_received_time=received,
        call_closed_time=closed,
    )


def extract_incident_records(payload: object) -> list[dict]:
    """Pull raw incident records out of a decrypted feed payload."""
    if not isinstance(payload, dict):
        return []
    incidents = payload.get("incidents")
    if isinstance(incidents, list):
        return [r for r in incidents if isinstance(r, dict)]
    if not isinstance(incidents, dict):
        return []

    records: list[dict] = []
    for bucket in ("active", "recent", "closed"):
        entries = incidents.get(bucket)
        if isinstance(entries, list):
            records.extend(r for r in entries if isinstance(r, dict))
    return records


def filter_recent_incidents(
    incidents: list[Incident],
    *,
    now: datetime,
    horizon: timedelta,
    limit: int,
) -> list[Incident]:
    cutoff = now - horizon
    recent = [i for i in incidents if i.call_received_time >= cutoff]
    recent.sort(key=lambda i: i.call_received_time, reverse=True)
    return recent[:limit]


def normalize_nws_alert(record: dict, *, tenant_id: str) -> WeatherAlert:
    properties = record.get("properties")
    if not isinstance(properties, dict):
        raise RecordValidationError("alert feature has no properties")

    nws_id = str(properties.get("id") or record.get("id") or "").strip()
    if not nws_id:
        raise RecordValidationError("alert feature has no id")

    event = str(properties.get("event") or "").strip() or "Weather Alert"
    onset = parse_feed_time(properties.get("onset") or properties.get("effective"))
    expires = parse_feed_time(properties.get("expires"))
    ends = parse_feed_time(properties.get("ends"))
    if onset is not None and expires is not None and expires <= onset:
        raise RecordValidationError(f"alert {nws_id} expires before onset")

    zones = properties.get("affectedZones") or []
    references = properties.get("references") or []

    return WeatherAlert(
        tenant_id=tenant_id,
        nws_id=nws_id,
        event=event,
        headline=properties.get("headline"),
        description=str(properties.get("description") or ""),
        instruction=properties.get("instruction"),
        category=properties.get("category"),
        severity=parse_severity(properties.get("severity")),
        urgency=parse_urgency(properties.get("urgency")),
        certainty=parse_certainty(properties.get("certainty")),
        onset=onset,
        expires=expires,
        ends=ends,
        affected_zones=[str(z) for z in zones if z],
        message_type=parse_message_type(properties.get("messageType")),
        references=[
            str(ref.get("identifier"))
            for ref in references
            if isinstance(ref, dict) and ref.get("identifier")
        ],
        status=AlertStatus.ACTIVE,
    )
