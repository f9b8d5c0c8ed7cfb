from __future__ import annotations

from models.incident import Incident, UnitStatus


COORDINATE_TOLERANCE = 0.0001


def _coordinate_changed(a: float | None, b: float | None) -> bool:
    if a is None and b is None:
        return False
    if a is None or b is None:
        return True
    return abs(a - b) > COORDINATE_TOLERANCE


def _unit_status_changed(existing: list[UnitStatus], incoming: list[UnitStatus]) -> bool:
    if len(existing) != len(incoming):
        return True
    by_unit = {u.unit_id: u for u in existing}
    for unit in incoming:
        prior = by_unit.get(unit.unit_id)
        if prior is None:
            return True
        if prior.status != unit.status:
            return True
        if prior.timestamps() != unit.timestamps():
            return True
    return False


def has_incident_changed(existing: Incident, incoming: Incident) -> bool:
    if existing.call_type != incoming.call_type:
        return True
    if existing.status != incoming.status:
        return True
    if existing.call_closed_time != incoming.call_closed_time:
        return True
    if existing.normalized_address != incoming.normalized_address:
        return True
    if _coordinate_changed(existing.latitude, incoming.latitude):
        return True
    if _coordinate_changed(existing.longitude, incoming.longitude):
        return True
    if sorted(existing.units) != sorted(incoming.units):
        return True
    return _unit_status_changed(existing.unit_statuses, incoming.unit_statuses)
