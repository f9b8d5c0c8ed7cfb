from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from ingest.errors import PersistenceError
from models.weather import (
    AlertStatus,
    MessageType,
    WeatherAlert,
    parse_certainty,
    parse_message_type,
    parse_severity,
    parse_urgency,
)
from normalize.times import parse_iso_or_none, to_iso, utc_now_iso
from store.db import Database


@dataclass
class AlertUpsertSummary:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    cancelled: int = 0
    alert_ids: list[str] = field(default_factory=list)


def _iso(dt: datetime | None) -> str | None:
    return to_iso(dt) if dt is not None else None


def row_to_alert(row: sqlite3.Row) -> WeatherAlert:
    return WeatherAlert(
        alert_id=str(row["alert_id"]),
        tenant_id=str(row["tenant_id"]),
        nws_id=str(row["nws_id"]),
        event=str(row["event"]),
        headline=row["headline"],
        description=str(row["description"] or ""),
        instruction=row["instruction"],
        category=row["category"],
        severity=parse_severity(row["severity"]),
        urgency=parse_urgency(row["urgency"]),
        certainty=parse_certainty(row["certainty"]),
        onset=parse_iso_or_none(row["onset"]),
        expires=parse_iso_or_none(row["expires"]),
        ends=parse_iso_or_none(row["ends"]),
        affected_zones=list(json.loads(row["affected_zones"] or "[]")),
        message_type=parse_message_type(row["message_type"]),
        references=list(json.loads(row["refs"] or "[]")),
        status=AlertStatus(row["status"]),
        last_facebook_post_time=parse_iso_or_none(row["last_facebook_post_time"]),
        facebook_post_id=row["facebook_post_id"],
    )


def _content(alert: WeatherAlert) -> tuple:
    return (
        alert.event,
        alert.headline,
        alert.description,
        alert.instruction,
        str(alert.severity),
        str(alert.urgency),
        str(alert.certainty),
        _iso(alert.onset),
        _iso(alert.expires),
        _iso(alert.ends),
        tuple(alert.affected_zones),
        str(alert.message_type),
    )


def _insert(conn: sqlite3.Connection, alert: WeatherAlert, now_iso: str) -> str:
    alert_id = alert.alert_id or str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO weather_alerts(
          alert_id, tenant_id, nws_id, event, headline, description, instruction,
          category, severity, urgency, certainty, onset, expires, ends, affected_zones,
          message_type, refs, status, last_facebook_post_time, facebook_post_id,
          created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            alert_id,
            alert.tenant_id,
            alert.nws_id,
            alert.event,
            alert.headline,
            alert.description,
            alert.instruction,
            alert.category,
            str(alert.severity),
            str(alert.urgency),
            str(alert.certainty),
            _iso(alert.onset),
            _iso(alert.expires),
            _iso(alert.ends),
            json.dumps(alert.affected_zones),
            str(alert.message_type),
            json.dumps(alert.references),
            str(alert.status),
            _iso(alert.last_facebook_post_time),
            alert.facebook_post_id,
            now_iso,
            now_iso,
        ),
    )
    return alert_id


def _update_content(
    conn: sqlite3.Connection, alert_id: str, alert: WeatherAlert, now_iso: str
) -> None:
    conn.execute(
        """
        UPDATE weather_alerts
        SET event = ?, headline = ?, description = ?, instruction = ?, category = ?,
            severity = ?, urgency = ?, certainty = ?, onset = ?, expires = ?, ends = ?,
            affected_zones = ?, message_type = ?, refs = ?, updated_at = ?
        WHERE alert_id = ?;
        """,
        (
            alert.event,
            alert.headline,
            alert.description,
            alert.instruction,
            alert.category,
            str(alert.severity),
            str(alert.urgency),
            str(alert.certainty),
            _iso(alert.onset),
            _iso(alert.expires),
            _iso(alert.ends),
            json.dumps(alert.affected_zones),
            str(alert.message_type),
            json.dumps(alert.references),
            now_iso,
            alert_id,
        ),
    )


def _retire_referenced(
    conn: sqlite3.Connection,
    tenant_id: str,
    references: list[str],
    status: AlertStatus,
    now_iso: str,
) -> list[sqlite3.Row]:
    if not references:
        return []
    placeholders = ",".join("?" for _ in references)
    rows = conn.execute(
        f"""
        SELECT * FROM weather_alerts
        WHERE tenant_id = ? AND status = 'active' AND nws_id IN ({placeholders});
        """,
        (tenant_id, *references),
    ).fetchall()
    conn.execute(
        f"""
        UPDATE weather_alerts SET status = ?, updated_at = ?
        WHERE tenant_id = ? AND status = 'active' AND nws_id IN ({placeholders});
        """,
        (str(status), now_iso, tenant_id, *references),
    )
    return rows


def upsert_alerts(
    db: Database, tenant_id: str, alerts: list[WeatherAlert]
) -> AlertUpsertSummary:
    """Insert new alerts, refresh active resends in place, apply cancels and updates.

    An ``Update`` supersedes the alerts it references: those become expired and the
    newer record inherits their posting history, so cooldown spans the whole chain.
    """
    summary = AlertUpsertSummary()
    now_iso = utc_now_iso()
    try:
        with db.lock:
            for alert in alerts:
                if alert.message_type == MessageType.CANCEL:
                    retired = _retire_referenced(
                        db.conn, tenant_id, alert.references, AlertStatus.CANCELLED, now_iso
                    )
                    summary.cancelled += len(retired)
                    alert.status = AlertStatus.CANCELLED

                row = db.conn.execute(
                    "SELECT * FROM weather_alerts WHERE tenant_id = ? AND nws_id = ?;",
                    (tenant_id, alert.nws_id),
                ).fetchone()

                if row is None:
                    if alert.message_type == MessageType.UPDATE:
                        retired = _retire_referenced(
                            db.conn,
                            tenant_id,
                            alert.references,
                            AlertStatus.EXPIRED,
                            now_iso,
                        )
                        posted = [r for r in retired if r["facebook_post_id"]]
                        if posted:
                            latest = max(
                                posted, key=lambda r: str(r["last_facebook_post_time"])
                            )
                            alert.facebook_post_id = latest["facebook_post_id"]
                            alert.last_facebook_post_time = parse_iso_or_none(
                                latest["last_facebook_post_time"]
                            )
                    summary.alert_ids.append(_insert(db.conn, alert, now_iso))
                    summary.created += 1
                    continue

                existing = row_to_alert(row)
                summary.alert_ids.append(str(existing.alert_id))
                if existing.status != AlertStatus.ACTIVE:
                    summary.skipped += 1
                    continue
                if _content(existing) == _content(alert):
                    summary.skipped += 1
                    continue
                _update_content(db.conn, str(existing.alert_id), alert, now_iso)
                summary.updated += 1
            db.conn.commit()
    except sqlite3.Error as e:
        with db.lock:
            db.conn.rollback()
        raise PersistenceError(f"weather alert upsert failed: {e}") from e
    return summary


def expire_alerts(db: Database, *, now: datetime, tenant_id: str | None = None) -> int:
    where = "status = 'active' AND expires IS NOT NULL AND expires <= ?"
    params: list = [to_iso(now)]
    if tenant_id is not None:
        where += " AND tenant_id = ?"
        params.append(tenant_id)
    with db.lock:
        cur = db.conn.execute(
            f"UPDATE weather_alerts SET status = 'expired', updated_at = ? WHERE {where};",
            [utc_now_iso(), *params],
        )
        db.conn.commit()
    return int(cur.rowcount)


def mark_alert_posted(
    db: Database, alert_id: str, *, post_id: str, posted_at: datetime
) -> None:
    with db.lock:
        db.conn.execute(
            """
            UPDATE weather_alerts
            SET facebook_post_id = ?, last_facebook_post_time = ?, updated_at = ?
            WHERE alert_id = ?;
            """,
            (post_id, to_iso(posted_at), utc_now_iso(), alert_id),
        )
        db.conn.commit()


def list_alerts(
    db: Database,
    tenant_id: str,
    *,
    statuses: list[AlertStatus] | None = None,
    limit: int = 200,
) -> list[WeatherAlert]:
    where = ["tenant_id = ?"]
    params: list = [tenant_id]
    if statuses:
        where.append(f"status IN ({','.join('?' for _ in statuses)})")
        params.extend(str(s) for s in statuses)
    params.append(limit)
    with db.lock:
        rows = db.conn.execute(
            f"""
            SELECT * FROM weather_alerts
            WHERE {" AND ".join(where)}
            ORDER BY COALESCE(onset, created_at) DESC
            LIMIT ?;
            """,
            params,
        ).fetchall()
    return [row_to_alert(r) for r in rows]


def delete_old_alerts(db: Database, *, expires_before: datetime) -> int:
    with db.lock:
        cur = db.conn.execute(
            """
            DELETE FROM weather_alerts
            WHERE status <> 'active'
              AND expires IS NOT NULL
              AND expires < ?;
            """,
            (to_iso(expires_before),),
        )
        db.conn.commit()
    return int(cur.rowcount)
