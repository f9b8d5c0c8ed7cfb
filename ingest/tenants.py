from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(frozen=True)
class TenantConfig:
    tenant_id: str
    name: str
    agency_ids: list[str] = field(default_factory=list)
    weather_zones: list[str] = field(default_factory=list)
    incidents_enabled: bool = True
    weather_alerts_enabled: bool = True
    facebook_auto_post: bool = False
    facebook_page_id: str | None = None
    facebook_page_token: str | None = None
    timezone: str = "America/New_York"
    enabled: bool = True

    @property
    def incident_sync_eligible(self) -> bool:
        return self.enabled and self.incidents_enabled and bool(self.agency_ids)

    @property
    def weather_sync_eligible(self) -> bool:
        return self.enabled and self.weather_alerts_enabled and bool(self.weather_zones)

    @property
    def can_post_weather(self) -> bool:
        return (
            self.facebook_auto_post
            and bool(self.facebook_page_id)
            and bool(self.facebook_page_token)
        )


def _str_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    if not isinstance(value, list):
        raise ValueError(f"expected a list, got {type(value).__name__}")
    return [str(v).strip() for v in value if str(v).strip()]


def load_tenant_entries(path: Path) -> list[TenantConfig]:
    if not path.exists():
        return []

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = raw.get("tenants") or []
    if not isinstance(raw, list):
        raise ValueError(f"invalid tenants file: {path}")

    tenants: list[TenantConfig] = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValueError(f"invalid tenant entry in: {path}")
        features = entry.get("features") or {}
        tenants.append(
            TenantConfig(
                tenant_id=str(entry["id"]),
                name=str(entry.get("name") or entry["id"]),
                agency_ids=_str_list(entry.get("agency_ids")),
                weather_zones=[z.upper() for z in _str_list(entry.get("weather_zones"))],
                incidents_enabled=bool(features.get("incidents", True)),
                weather_alerts_enabled=bool(features.get("weather_alerts", True)),
                facebook_auto_post=bool(features.get("facebook_auto_post", False)),
                facebook_page_id=entry.get("facebook_page_id"),
                facebook_page_token=entry.get("facebook_page_token"),
                timezone=str(entry.get("timezone") or "America/New_York"),
                enabled=bool(entry.get("enabled", True)),
            )
        )
    return tenants
