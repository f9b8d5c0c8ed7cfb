from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

import structlog

from models.incident import Incident, UnitStatus
from normalize.times import to_iso, utc_now_iso
from store.db import Database
from store.incidents import row_to_incident


logger = structlog.get_logger(__name__)

MERGE_WINDOW = timedelta(minutes=10)
MERGE_REASON_ADDRESS_TIME = "auto_address_time"


def window_floor(ts: datetime, window: timedelta = MERGE_WINDOW) -> datetime:
    ts = ts.astimezone(UTC)
    step = int(window.total_seconds())
    epoch = int(ts.timestamp())
    return datetime.fromtimestamp(epoch - (epoch % step), tz=UTC)


def merge_key_for(normalized_address: str, call_type: str, received: datetime) -> str:
    return f"{normalized_address}|{call_type.casefold()}|{to_iso(window_floor(received))}"


@dataclass(frozen=True)
class GroupingResult:
    incident_id: str
    group_id: str | None
    action: str  # "unchanged" | "attached" | "created" | "ungrouped"
    attached_ids: tuple[str, ...] = ()


def assign_incident_to_group(db: Database, incident_id: str) -> GroupingResult:
    with db.lock:
        row = db.conn.execute(
            "SELECT * FROM incidents WHERE incident_id = ?;", (incident_id,)
        ).fetchone()
        if row is None:
            raise KeyError(f"unknown incident_id: {incident_id}")
        incident = row_to_incident(row)
        if incident.group_id is not None:
            return GroupingResult(incident_id, incident.group_id, "unchanged")

        received = incident.call_received_time
        merge_key = merge_key_for(
            incident.normalized_address, incident.call_type, received
        )

        group = db.conn.execute(
            "SELECT group_id FROM incident_groups WHERE tenant_id = ? AND merge_key = ?;",
            (incident.tenant_id, merge_key),
        ).fetchone()
        if group is not None:
            group_id = str(group["group_id"])
            db.conn.execute(
                "UPDATE incidents SET group_id = ? WHERE incident_id = ?;",
                (group_id, incident_id),
            )
            db.conn.commit()
            return GroupingResult(incident_id, group_id, "attached", (incident_id,))

        candidates = db.conn.execute(
            """
            SELECT incident_id FROM incidents
            WHERE tenant_id = ?
              AND incident_id <> ?
              AND group_id IS NULL
              AND normalized_address = ?
              AND lower(call_type) = lower(?)
              AND call_received_time >= ?
              AND call_received_time <= ?;
            """,
            (
                incident.tenant_id,
                incident_id,
                incident.normalized_address,
                incident.call_type,
                to_iso(received - MERGE_WINDOW),
                to_iso(received + MERGE_WINDOW),
            ),
        ).fetchall()
        if not candidates:
            return GroupingResult(incident_id, None, "ungrouped")

        window_start = window_floor(received)
        group_id = str(uuid.uuid4())
        member_ids = [incident_id] + [str(r["incident_id"]) for r in candidates]
        try:
            db.conn.execute(
                """
                INSERT INTO incident_groups(
                  group_id, tenant_id, merge_key, merge_reason, call_type,
                  normalized_address, window_start, window_end, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    group_id,
                    incident.tenant_id,
                    merge_key,
                    MERGE_REASON_ADDRESS_TIME,
                    incident.call_type,
                    incident.normalized_address,
                    to_iso(window_start),
                    to_iso(window_start + MERGE_WINDOW),
                    utc_now_iso(),
                ),
            )
        except sqlite3.IntegrityError:
            db.conn.rollback()
            return GroupingResult(incident_id, None, "ungrouped")

        db.conn.executemany(
            "UPDATE incidents SET group_id = ? WHERE incident_id = ?;",
            [(group_id, member_id) for member_id in member_ids],
        )
        db.conn.commit()

    logger.info(
        "incident_group_created",
        tenant_id=incident.tenant_id,
        group_id=group_id,
        merge_key=merge_key,
        members=len(member_ids),
    )
    return GroupingResult(incident_id, group_id, "created", tuple(member_ids))


def group_incidents(db: Database, incident_ids: list[str]) -> int:
    """Run grouping over a batch; returns how many incidents gained a group."""
    grouped = 0
    for incident_id in incident_ids:
        result = assign_incident_to_group(db, incident_id)
        if result.action == "attached":
            grouped += 1
        elif result.action == "created":
            grouped += len(result.attached_ids)
    return grouped


def _merge_unit_statuses(members: list[Incident]) -> list[UnitStatus]:
    latest: dict[str, UnitStatus] = {}
    for member in members:
        for status in member.unit_statuses:
            current = latest.get(status.unit_id)
            if current is None:
                latest[status.unit_id] = status
                continue
            current_ts = current.latest_time()
            candidate_ts = status.latest_time()
            if candidate_ts is not None and (
                current_ts is None or candidate_ts > current_ts
            ):
                latest[status.unit_id] = status
    return list(latest.values())


def _collapse(members: list[Incident]) -> Incident:
    ordered = sorted(members, key=lambda i: i.call_received_time)
    primary = ordered[0]
    if len(ordered) == 1:
        return primary

    units: list[str] = []
    for member in ordered:
        for unit in member.units:
            if unit not in units:
                units.append(unit)
    return replace(primary, units=units, unit_statuses=_merge_unit_statuses(ordered))


def collapse_grouped_incidents(incidents: list[Incident]) -> list[Incident]:
    """Collapse persisted groups, then bucket ungrouped incidents by merge key.

    Ungrouped buckets never absorb an incident that already has a group_id.
    """
    by_group: dict[str, list[Incident]] = {}
    by_key: dict[tuple[str, str], list[Incident]] = {}
    for incident in incidents:
        if incident.group_id is not None:
            by_group.setdefault(incident.group_id, []).append(incident)
            continue
        key = merge_key_for(
            incident.normalized_address,
            incident.call_type,
            incident.call_received_time,
        )
        by_key.setdefault((incident.tenant_id, key), []).append(incident)

    collapsed = [_collapse(members) for members in by_group.values()]
    collapsed.extend(_collapse(members) for members in by_key.values())
    collapsed.sort(key=lambda i: i.call_received_time, reverse=True)
    return collapsed
