from __future__ import annotations

from normalize.times import utc_now_iso
from store.db import Database


_SYNC_COLUMNS = {
    "incidents": "last_incident_sync_at",
    "weather": "last_weather_sync_at",
}


def record_sync_success(db: Database, *, tenant_id: str, kind: str) -> None:
    column = _SYNC_COLUMNS[kind]
    with db.lock:
        db.conn.execute(
            f"""
            UPDATE tenants
            SET {column} = ?,
                consecutive_failures = 0,
                last_error = NULL,
                last_error_at = NULL
            WHERE tenant_id = ?;
            """,
            (utc_now_iso(), tenant_id),
        )
        db.conn.commit()


def record_sync_error(db: Database, *, tenant_id: str, kind: str, error: str) -> int:
    with db.lock:
        row = db.conn.execute(
            "SELECT consecutive_failures FROM tenants WHERE tenant_id = ?;",
            (tenant_id,),
        ).fetchone()
        if row is None:
            return 0
        failures = int(row["consecutive_failures"]) + 1
        db.conn.execute(
            """
            UPDATE tenants
            SET last_error_at = ?,
                last_error = ?,
                consecutive_failures = ?
            WHERE tenant_id = ?;
            """,
            (utc_now_iso(), f"{kind}: {error}", failures, tenant_id),
        )
        db.conn.commit()
    return failures


def tenant_sync_health(db: Database) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT tenant_id, name, enabled, last_incident_sync_at, last_weather_sync_at,
                   last_error_at, last_error, consecutive_failures, unit_legend_updated_at
            FROM tenants
            ORDER BY name ASC;
            """
        ).fetchall()
    return [{k: r[k] for k in r.keys()} for r in rows]
