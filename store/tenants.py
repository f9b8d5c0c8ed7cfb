from __future__ import annotations

import json
import sqlite3

from ingest.tenants import TenantConfig
from normalize.times import utc_now_iso
from store.db import Database


def ensure_tenants(db: Database, tenants: list[TenantConfig]) -> None:
    with db.lock:
        for t in tenants:
            db.conn.execute(
                """
                INSERT INTO tenants(
                  tenant_id, name, enabled, agency_ids, weather_zones,
                  incidents_enabled, weather_alerts_enabled, facebook_auto_post,
                  facebook_page_id, facebook_page_token, timezone
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                  name = excluded.name,
                  enabled = excluded.enabled,
                  agency_ids = excluded.agency_ids,
                  weather_zones = excluded.weather_zones,
                  incidents_enabled = excluded.incidents_enabled,
                  weather_alerts_enabled = excluded.weather_alerts_enabled,
                  facebook_auto_post = excluded.facebook_auto_post,
                  facebook_page_id = excluded.facebook_page_id,
                  facebook_page_token = excluded.facebook_page_token,
                  timezone = excluded.timezone;
                """,
                (
                    t.tenant_id,
                    t.name,
                    1 if t.enabled else 0,
                    json.dumps(t.agency_ids),
                    json.dumps(t.weather_zones),
                    1 if t.incidents_enabled else 0,
                    1 if t.weather_alerts_enabled else 0,
                    1 if t.facebook_auto_post else 0,
                    t.facebook_page_id,
                    t.facebook_page_token,
                    t.timezone,
                ),
            )
        db.conn.commit()


def _row_to_tenant(row: sqlite3.Row) -> TenantConfig:
    return TenantConfig(
        tenant_id=str(row["tenant_id"]),
        name=str(row["name"]),
        agency_ids=list(json.loads(row["agency_ids"] or "[]")),
        weather_zones=list(json.loads(row["weather_zones"] or "[]")),
        incidents_enabled=bool(row["incidents_enabled"]),
        weather_alerts_enabled=bool(row["weather_alerts_enabled"]),
        facebook_auto_post=bool(row["facebook_auto_post"]),
        facebook_page_id=row["facebook_page_id"],
        facebook_page_token=row["facebook_page_token"],
        timezone=str(row["timezone"]),
        enabled=bool(row["enabled"]),
    )


def get_tenant(db: Database, tenant_id: str) -> TenantConfig | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT * FROM tenants WHERE tenant_id = ?;", (tenant_id,)
        ).fetchone()
    return _row_to_tenant(row) if row is not None else None


def list_tenants(db: Database) -> list[TenantConfig]:
    with db.lock:
        rows = db.conn.execute("SELECT * FROM tenants ORDER BY tenant_id ASC;").fetchall()
    return [_row_to_tenant(r) for r in rows]


def set_unit_legend(db: Database, tenant_id: str, legend: dict[str, str]) -> None:
    with db.lock:
        db.conn.execute(
            """
            UPDATE tenants
            SET unit_legend = ?, unit_legend_updated_at = ?
            WHERE tenant_id = ?;
            """,
            (json.dumps(legend, sort_keys=True), utc_now_iso(), tenant_id),
        )
        db.conn.commit()


def get_unit_legend(db: Database, tenant_id: str) -> dict[str, str]:
    with db.lock:
        row = db.conn.execute(
            "SELECT unit_legend FROM tenants WHERE tenant_id = ?;", (tenant_id,)
        ).fetchone()
    if row is None:
        return {}
    return dict(json.loads(row["unit_legend"] or "{}"))
