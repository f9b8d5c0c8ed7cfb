from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from cluster.changes import has_incident_changed
from ingest.errors import PersistenceError
from models.incident import (
    CallTypeCategory,
    Incident,
    IncidentSource,
    IncidentStatus,
    InvalidTransitionError,
    check_transition,
    decode_unit_statuses,
)
from normalize.times import parse_iso, parse_iso_or_none, to_iso, utc_now_iso
from store.db import Database


logger = structlog.get_logger(__name__)


@dataclass
class UpsertSummary:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    rejected: int = 0
    incident_ids: list[str] = field(default_factory=list)


def row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        incident_id=str(row["incident_id"]),
        tenant_id=str(row["tenant_id"]),
        external_id=row["external_id"],
        source=IncidentSource(row["source"]),
        call_type=str(row["call_type"]),
        call_type_category=CallTypeCategory(row["call_type_category"]),
        full_address=str(row["full_address"]),
        normalized_address=str(row["normalized_address"]),
        latitude=row["lat"],
        longitude=row["lon"],
        units=list(json.loads(row["units"] or "[]")),
        unit_statuses=decode_unit_statuses(json.loads(row["unit_statuses"] or "[]")),
        status=IncidentStatus(row["status"]),
        call_received_time=parse_iso(str(row["call_received_time"])),
        call_closed_time=parse_iso_or_none(row["call_closed_time"]),
        group_id=row["group_id"],
    )


def _insert(conn: sqlite3.Connection, incident: Incident, now_iso: str) -> str:
    incident_id = incident.incident_id or str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO incidents(
          incident_id, tenant_id, external_id, source, call_type, call_type_category,
          full_address, normalized_address, lat, lon, units, unit_statuses, status,
          call_received_time, call_closed_time, group_id, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            incident_id,
            incident.tenant_id,
            incident.external_id,
            str(incident.source),
            incident.call_type,
            str(incident.call_type_category),
            incident.full_address,
            incident.normalized_address,
            incident.latitude,
            incident.longitude,
            json.dumps(incident.units),
            json.dumps([u.to_dict() for u in incident.unit_statuses]),
            str(incident.status),
            to_iso(incident.call_received_time),
            to_iso(incident.call_closed_time)
            if incident.call_closed_time is not None
            else None,
            incident.group_id,
            now_iso,
            now_iso,
        ),
    )
    return incident_id


def _update(
    conn: sqlite3.Connection, incident_id: str, incoming: Incident, now_iso: str
) -> None:
    conn.execute(
        """
        UPDATE incidents
        SET call_type = ?,
            call_type_category = ?,
            full_address = ?,
            normalized_address = ?,
            lat = ?,
            lon = ?,
            units = ?,
            unit_statuses = ?,
            status = ?,
            call_closed_time = ?,
            updated_at = ?
        WHERE incident_id = ?;
        """,
        (
            incoming.call_type,
            str(incoming.call_type_category),
            incoming.full_address,
            incoming.normalized_address,
            incoming.latitude,
            incoming.longitude,
            json.dumps(incoming.units),
            json.dumps([u.to_dict() for u in incoming.unit_statuses]),
            str(incoming.status),
            to_iso(incoming.call_closed_time)
            if incoming.call_closed_time is not None
            else None,
            now_iso,
            incident_id,
        ),
    )


def insert_incident(db: Database, incident: Incident) -> str:
    now_iso = utc_now_iso()
    try:
        with db.lock:
            incident_id = _insert(db.conn, incident, now_iso)
            db.conn.commit()
    except sqlite3.Error as e:
        raise PersistenceError(f"insert incident failed: {e}") from e
    return incident_id


def upsert_incidents(
    db: Database, tenant_id: str, incidents: list[Incident]
) -> UpsertSummary:
    """Create, update or skip each incident keyed by (tenant_id, external_id)."""
    summary = UpsertSummary()
    now_iso = utc_now_iso()
    try:
        with db.lock:
            for incoming in incidents:
                row = db.conn.execute(
                    "SELECT * FROM incidents WHERE tenant_id = ? AND external_id = ?;",
                    (tenant_id, incoming.external_id),
                ).fetchone()
                if row is None:
                    summary.incident_ids.append(_insert(db.conn, incoming, now_iso))
                    summary.created += 1
                    continue

                existing = row_to_incident(row)
                summary.incident_ids.append(str(existing.incident_id))
                if not has_incident_changed(existing, incoming):
                    summary.skipped += 1
                    continue

                try:
                    check_transition(existing.status, incoming.status)
                except InvalidTransitionError as e:
                    logger.warning(
                        "incident_transition_rejected",
                        tenant_id=tenant_id,
                        external_id=incoming.external_id,
                        error=str(e),
                    )
                    summary.rejected += 1
                    summary.skipped += 1
                    continue

                _update(db.conn, str(existing.incident_id), incoming, now_iso)
                summary.updated += 1
            db.conn.commit()
    except sqlite3.Error as e:
        with db.lock:
            db.conn.rollback()
        raise PersistenceError(f"incident upsert failed: {e}") from e
    return summary


def get_incident(db: Database, incident_id: str) -> Incident | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT * FROM incidents WHERE incident_id = ?;", (incident_id,)
        ).fetchone()
    return row_to_incident(row) if row is not None else None


def list_incidents(
    db: Database,
    tenant_id: str,
    *,
    statuses: list[IncidentStatus] | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 500,
) -> list[Incident]:
    where = ["tenant_id = ?"]
    params: list = [tenant_id]
    if statuses:
        where.append(f"status IN ({','.join('?' for _ in statuses)})")
        params.extend(str(s) for s in statuses)
    if since is not None:
        where.append("call_received_time >= ?")
        params.append(to_iso(since))
    if until is not None:
        where.append("call_received_time <= ?")
        params.append(to_iso(until))
    params.append(limit)

    with db.lock:
        rows = db.conn.execute(
            f"""
            SELECT * FROM incidents
            WHERE {" AND ".join(where)}
            ORDER BY call_received_time DESC
            LIMIT ?;
            """,
            params,
        ).fetchall()
    return [row_to_incident(r) for r in rows]


def close_stale_incidents(
    db: Database, *, received_before: datetime, now: datetime
) -> int:
    with db.lock:
        cur = db.conn.execute(
            """
            UPDATE incidents
            SET status = 'closed', call_closed_time = ?, updated_at = ?
            WHERE status = 'active' AND call_received_time < ?;
            """,
            (to_iso(now), to_iso(now), to_iso(received_before)),
        )
        db.conn.commit()
    return int(cur.rowcount)


def archive_closed_incidents(db: Database, *, closed_before: datetime) -> int:
    with db.lock:
        cur = db.conn.execute(
            """
            UPDATE incidents
            SET status = 'archived', updated_at = ?
            WHERE status = 'closed'
              AND call_closed_time IS NOT NULL
              AND call_closed_time < ?;
            """,
            (utc_now_iso(), to_iso(closed_before)),
        )
        db.conn.commit()
    return int(cur.rowcount)


def delete_incidents_received_before(db: Database, cutoff: datetime) -> int:
    with db.lock:
        cur = db.conn.execute(
            "DELETE FROM incidents WHERE call_received_time < ?;", (to_iso(cutoff),)
        )
        db.conn.commit()
    return int(cur.rowcount)


def delete_empty_groups(db: Database) -> int:
    with db.lock:
        cur = db.conn.execute(
            """
            DELETE FROM incident_groups
            WHERE group_id NOT IN (
              SELECT DISTINCT group_id FROM incidents WHERE group_id IS NOT NULL
            );
            """
        )
        db.conn.commit()
    return int(cur.rowcount)
