from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Database:
    conn: sqlite3.Connection
    lock: threading.Lock


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS tenants (
          tenant_id TEXT NOT NULL PRIMARY KEY,
          name TEXT NOT NULL,
          enabled INTEGER NOT NULL DEFAULT 1,
          agency_ids TEXT NOT NULL DEFAULT '[]',
          weather_zones TEXT NOT NULL DEFAULT '[]',
          incidents_enabled INTEGER NOT NULL DEFAULT 1,
          weather_alerts_enabled INTEGER NOT NULL DEFAULT 1,
          facebook_auto_post INTEGER NOT NULL DEFAULT 0,
          facebook_page_id TEXT NULL,
          facebook_page_token TEXT NULL,
          timezone TEXT NOT NULL DEFAULT 'America/New_York',

          last_incident_sync_at TEXT NULL,
          last_weather_sync_at TEXT NULL,
          last_error_at TEXT NULL,
          last_error TEXT NULL,
          consecutive_failures INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS incident_groups (
          group_id TEXT NOT NULL PRIMARY KEY,
          tenant_id TEXT NOT NULL,
          merge_key TEXT NOT NULL,
          merge_reason TEXT NOT NULL,
          call_type TEXT NOT NULL,
          normalized_address TEXT NOT NULL,
          window_start TEXT NOT NULL,
          window_end TEXT NOT NULL,
          created_at TEXT NOT NULL,

          FOREIGN KEY (tenant_id) REFERENCES tenants(tenant_id) ON DELETE CASCADE
        );

        CREATE UNIQUE INDEX IF NOT EXISTS incident_groups_merge_key_uq
          ON incident_groups(tenant_id, merge_key);

        CREATE TABLE IF NOT EXISTS incidents (
          incident_id TEXT NOT NULL PRIMARY KEY,
          tenant_id TEXT NOT NULL,
          external_id TEXT NULL,
          source TEXT NOT NULL,
          call_type TEXT NOT NULL,
          call_type_category TEXT NOT NULL,
          full_address TEXT NOT NULL,
          normalized_address TEXT NOT NULL,
          lat REAL NULL,
          lon REAL NULL,
          units TEXT NOT NULL DEFAULT '[]',
          unit_statuses TEXT NOT NULL DEFAULT '[]',
          status TEXT NOT NULL,
          call_received_time TEXT NOT NULL,
          call_closed_time TEXT NULL,
          group_id TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,

          FOREIGN KEY (tenant_id) REFERENCES tenants(tenant_id) ON DELETE CASCADE,
          FOREIGN KEY (group_id) REFERENCES incident_groups(group_id) ON DELETE SET NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS incidents_tenant_external_uq
          ON incidents(tenant_id, external_id);
        CREATE INDEX IF NOT EXISTS incidents_tenant_status_idx
          ON incidents(tenant_id, status, call_received_time);
        CREATE INDEX IF NOT EXISTS incidents_merge_idx
          ON incidents(tenant_id, normalized_address, call_received_time);
        CREATE INDEX IF NOT EXISTS incidents_group_id_idx ON incidents(group_id);

        CREATE TABLE IF NOT EXISTS weather_alerts (
          alert_id TEXT NOT NULL PRIMARY KEY,
          tenant_id TEXT NOT NULL,
          nws_id TEXT NOT NULL,
          event TEXT NOT NULL,
          headline TEXT NULL,
          description TEXT NOT NULL DEFAULT '',
          instruction TEXT NULL,
          category TEXT NULL,
          severity TEXT NOT NULL,
          urgency TEXT NOT NULL,
          certainty TEXT NOT NULL,
          onset TEXT NULL,
          expires TEXT NULL,
          ends TEXT NULL,
          affected_zones TEXT NOT NULL DEFAULT '[]',
          message_type TEXT NOT NULL DEFAULT 'Alert',
          refs TEXT NOT NULL DEFAULT '[]',
          status TEXT NOT NULL,
          last_facebook_post_time TEXT NULL,
          facebook_post_id TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,

          FOREIGN KEY (tenant_id) REFERENCES tenants(tenant_id) ON DELETE CASCADE
        );

        CREATE UNIQUE INDEX IF NOT EXISTS weather_alerts_tenant_nws_uq
          ON weather_alerts(tenant_id, nws_id);
        CREATE INDEX IF NOT EXISTS weather_alerts_status_expires_idx
          ON weather_alerts(tenant_id, status, expires);
        """,
    ),
    (
        2,
        """
        ALTER TABLE tenants ADD COLUMN unit_legend TEXT NOT NULL DEFAULT '{}';
        ALTER TABLE tenants ADD COLUMN unit_legend_updated_at TEXT NULL;
        """,
    ),
]


def open_database(path: Path) -> Database:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    _apply_migrations(conn)
    return Database(conn=conn, lock=threading.Lock())


def close_database(db: Database) -> None:
    with db.lock:
        db.conn.close()


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))
        conn.commit()
