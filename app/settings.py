from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_path: Path = Field(
        default=Path("data/dispatch-sync.db"), validation_alias="DB_PATH"
    )
    tenants_file: Path = Field(
        default=Path("tenants.yaml"), validation_alias="TENANTS_FILE"
    )

    user_agent: str = Field(
        default="dispatch-sync/0.1 Emergency Platform (ops@dispatch-sync.local)",
        validation_alias="USER_AGENT",
    )
    feed_password: str = Field(default="tombrady5rings", validation_alias="FEED_PASSWORD")

    pulsepoint_primary_url: str = Field(
        default="https://api.pulsepoint.org/v1/webapp",
        validation_alias="PULSEPOINT_PRIMARY_URL",
    )
    pulsepoint_fallback_url: str = Field(
        default="https://web.pulsepoint.org/DB/giba.php",
        validation_alias="PULSEPOINT_FALLBACK_URL",
    )
    nws_base_url: str = Field(
        default="https://api.weather.gov", validation_alias="NWS_BASE_URL"
    )
    facebook_graph_url: str = Field(
        default="https://graph.facebook.com/v24.0",
        validation_alias="FACEBOOK_GRAPH_URL",
    )

    fetch_timeout_seconds: float = Field(
        default=10.0, validation_alias="FETCH_TIMEOUT_SECONDS"
    )
    min_fetch_interval_seconds: float = Field(
        default=15.0, validation_alias="MIN_FETCH_INTERVAL_SECONDS"
    )
    tenant_concurrency: int = Field(default=5, validation_alias="TENANT_CONCURRENCY")

    incident_recency_hours: int = Field(
        default=6, validation_alias="INCIDENT_RECENCY_HOURS"
    )
    incident_max_per_sync: int = Field(
        default=200, validation_alias="INCIDENT_MAX_PER_SYNC"
    )
    stale_incident_hours: int = Field(default=2, validation_alias="STALE_INCIDENT_HOURS")

    alert_post_threshold: int = Field(default=55, validation_alias="ALERT_POST_THRESHOLD")
    alert_post_cooldown_hours: int = Field(
        default=6, validation_alias="ALERT_POST_COOLDOWN_HOURS"
    )

    sync_interval_seconds: int = Field(
        default=120, validation_alias="SYNC_INTERVAL_SECONDS"
    )
    maintenance_interval_seconds: int = Field(
        default=900, validation_alias="MAINTENANCE_INTERVAL_SECONDS"
    )
    daily_cleanup_hour_utc: int = Field(
        default=6, validation_alias="DAILY_CLEANUP_HOUR_UTC"
    )

    alert_retention_days: int = Field(default=30, validation_alias="ALERT_RETENTION_DAYS")
    incident_retention_days: int = Field(
        default=30, validation_alias="INCIDENT_RETENTION_DAYS"
    )
    incident_archive_days: int = Field(
        default=7, validation_alias="INCIDENT_ARCHIVE_DAYS"
    )

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    structured_logging: bool = Field(
        default=False, validation_alias="STRUCTURED_LOGGING"
    )
