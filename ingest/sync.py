from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import TypeVar

import httpx
import structlog

from app.settings import Settings
from cluster.clusterer import group_incidents
from health.health import record_sync_error, record_sync_success
from ingest.decrypt import decrypt_envelope
from ingest.errors import (
    DecryptionError,
    FetchError,
    ParseError,
    PersistenceError,
    PublishError,
    RecordValidationError,
)
from ingest.fetch import BROWSER_USER_AGENT, VENDOR_HEADERS, fetch_json
from ingest.locks import (
    RESOURCE_INCIDENTS,
    RESOURCE_UNIT_LEGEND,
    RESOURCE_WEATHER,
    FetchLockRegistry,
)
from ingest.parsers.geojson import parse_alert_features
from ingest.tenants import TenantConfig
from models.incident import Incident
from models.weather import AlertStatus, MessageType, WeatherAlert
from normalize.normalize import (
    extract_incident_records,
    filter_recent_incidents,
    normalize_incident_record,
    normalize_nws_alert,
)
from normalize.times import utc_now
from publish.facebook import SocialPublisher
from publish.format import format_weather_post
from publish.threat import evaluate_alert_for_posting
from store.alerts import expire_alerts, list_alerts, mark_alert_posted, upsert_alerts
from store.db import Database
from store.incidents import upsert_incidents
from store.tenants import get_tenant, list_tenants, set_unit_legend


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SyncContext:
    settings: Settings
    db: Database
    client: httpx.AsyncClient
    locks: FetchLockRegistry
    publisher: SocialPublisher | None = None


@dataclass(frozen=True)
class AgencyFetchResult:
    agency_id: str
    records: list[dict]
    endpoint: str | None
    error: str | None = None


@dataclass
class IncidentSyncResult:
    tenant_id: str
    success: bool = True
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    invalid: int = 0
    grouped: int = 0
    errors: list[str] = field(default_factory=list)
    skipped_reason: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class WeatherSyncResult:
    tenant_id: str
    success: bool = True
    fetched: int = 0
    created: int = 0
    updated: int = 0
    expired: int = 0
    cancelled: int = 0
    invalid: int = 0
    posted: int = 0
    errors: list[str] = field(default_factory=list)
    skipped_reason: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class UnitLegendResult:
    tenant_id: str
    success: bool = True
    units: int = 0
    unavailable: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped_reason: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)


async def _fetch_vendor(ctx: SyncContext, url: str, params: dict[str, str]) -> object:
    doc = await fetch_json(
        ctx.client,
        url=url,
        user_agent=BROWSER_USER_AGENT,
        params=params,
        extra_headers=VENDOR_HEADERS,
        timeout_seconds=ctx.settings.fetch_timeout_seconds,
    )
    if isinstance(doc, dict) and "ct" in doc:
        return decrypt_envelope(doc, password=ctx.settings.feed_password)
    return doc


async def fetch_agency_incidents(
    ctx: SyncContext, tenant_id: str, agency_id: str
) -> AgencyFetchResult:
    params = {"resource": "incidents", "agencyid": agency_id}
    endpoints = (
        ("primary", ctx.settings.pulsepoint_primary_url),
        ("fallback", ctx.settings.pulsepoint_fallback_url),
    )
    failures: list[str] = []
    for endpoint, url in endpoints:
        try:
            payload = await _fetch_vendor(ctx, url, params)
        except FetchError as e:
            reason = e.reason
        except DecryptionError as e:
            reason = f"decrypt_error: {e}"
        except ParseError as e:
            reason = f"parse_error: {e}"
        else:
            records = extract_incident_records(payload)
            logger.debug(
                "agency_fetched",
                tenant_id=tenant_id,
                agency_id=agency_id,
                endpoint=endpoint,
                records=len(records),
            )
            return AgencyFetchResult(agency_id, records, endpoint)

        failures.append(f"{endpoint} {reason}")
        logger.warning(
            "agency_endpoint_failed",
            tenant_id=tenant_id,
            agency_id=agency_id,
            endpoint=endpoint,
            error=reason,
        )

    return AgencyFetchResult(
        agency_id, [], None, f"agency {agency_id}: {'; '.join(failures)}"
    )


def _normalize_records(
    records: list[dict], *, tenant_id: str, fetched_at: datetime
) -> tuple[list[Incident], int]:
    incidents: dict[str, Incident] = {}
    invalid = 0
    for record in records:
        try:
            incident = normalize_incident_record(
                record, tenant_id=tenant_id, fetched_at=fetched_at
            )
        except RecordValidationError as e:
            invalid += 1
            logger.warning("incident_record_dropped", tenant_id=tenant_id, error=str(e))
            continue
        # one agency can list an incident under both active and recent
        incidents[str(incident.external_id)] = incident
    return list(incidents.values()), invalid


async def run_incident_sync(ctx: SyncContext, tenant_id: str) -> IncidentSyncResult:
    result = IncidentSyncResult(tenant_id=tenant_id)
    tenant = get_tenant(ctx.db, tenant_id)
    if tenant is None:
        result.success = False
        result.errors.append("tenant not found")
        return result
    if not tenant.incident_sync_eligible:
        result.success = False
        result.errors.append("incident feed not configured")
        return result

    with ctx.locks.held(tenant_id, RESOURCE_INCIDENTS) as decision:
        if not decision.allowed:
            result.skipped_reason = decision.describe()
            logger.info(
                "incident_sync_skipped", tenant_id=tenant_id, reason=result.skipped_reason
            )
            return result

        fetched_at = utc_now()
        agency_results = await asyncio.gather(
            *(
                fetch_agency_incidents(ctx, tenant_id, agency_id)
                for agency_id in tenant.agency_ids
            )
        )

        records: list[dict] = []
        for agency in agency_results:
            if agency.error is not None:
                result.errors.append(agency.error)
            records.extend(agency.records)

        if all(agency.error is not None for agency in agency_results):
            result.success = False
            record_sync_error(
                ctx.db,
                tenant_id=tenant_id,
                kind="incidents",
                error="all agency fetches failed",
            )
            return result

        incidents, result.invalid = _normalize_records(
            records, tenant_id=tenant_id, fetched_at=fetched_at
        )
        incidents = filter_recent_incidents(
            incidents,
            now=fetched_at,
            horizon=timedelta(hours=ctx.settings.incident_recency_hours),
            limit=ctx.settings.incident_max_per_sync,
        )
        result.fetched = len(incidents)

        try:
            summary = upsert_incidents(ctx.db, tenant_id, incidents)
            result.grouped = group_incidents(ctx.db, summary.incident_ids)
        except (PersistenceError, sqlite3.Error) as e:
            result.success = False
            result.errors.append(f"persistence: {e}")
            record_sync_error(ctx.db, tenant_id=tenant_id, kind="incidents", error=str(e))
            logger.error("incident_persist_failed", tenant_id=tenant_id, error=str(e))
            return result

        result.created = summary.created
        result.updated = summary.updated
        result.skipped = summary.skipped
        record_sync_success(ctx.db, tenant_id=tenant_id, kind="incidents")

    logger.info(
        "incident_sync_completed",
        tenant_id=tenant_id,
        fetched=result.fetched,
        created=result.created,
        updated=result.updated,
        skipped=result.skipped,
        grouped=result.grouped,
        errors=len(result.errors),
    )
    return result


async def publish_weather_alerts(
    ctx: SyncContext, tenant: TenantConfig, *, now: datetime
) -> tuple[int, list[str]]:
    if ctx.publisher is None or not tenant.can_post_weather:
        return 0, []

    posted = 0
    errors: list[str] = []
    cooldown = timedelta(hours=ctx.settings.alert_post_cooldown_hours)
    for alert in list_alerts(ctx.db, tenant.tenant_id, statuses=[AlertStatus.ACTIVE]):
        decision = evaluate_alert_for_posting(
            alert,
            now=now,
            threshold=ctx.settings.alert_post_threshold,
            cooldown=cooldown,
        )
        if not decision.should_post:
            logger.debug(
                "weather_alert_not_posted",
                tenant_id=tenant.tenant_id,
                nws_id=alert.nws_id,
                reason=decision.reason,
            )
            continue

        message = format_weather_post(alert, timezone=tenant.timezone)
        try:
            if alert.facebook_post_id and alert.message_type == MessageType.UPDATE:
                post_id = await ctx.publisher.update(
                    post_id=alert.facebook_post_id,
                    token=str(tenant.facebook_page_token),
                    message=message,
                )
            else:
                post_id = await ctx.publisher.publish(
                    page_id=str(tenant.facebook_page_id),
                    token=str(tenant.facebook_page_token),
                    message=message,
                )
        except PublishError as e:
            errors.append(f"publish {alert.nws_id}: {e}")
            logger.warning(
                "weather_alert_publish_failed",
                tenant_id=tenant.tenant_id,
                nws_id=alert.nws_id,
                error=str(e),
            )
            continue

        mark_alert_posted(ctx.db, str(alert.alert_id), post_id=post_id, posted_at=now)
        posted += 1
        logger.info(
            "weather_alert_posted",
            tenant_id=tenant.tenant_id,
            nws_id=alert.nws_id,
            reason=decision.reason,
            post_id=post_id,
        )
    return posted, errors


def _normalize_alerts(
    features: list[dict], *, tenant_id: str
) -> tuple[list[WeatherAlert], int]:
    alerts: list[WeatherAlert] = []
    invalid = 0
    for feature in features:
        try:
            alerts.append(normalize_nws_alert(feature, tenant_id=tenant_id))
        except RecordValidationError as e:
            invalid += 1
            logger.warning("weather_alert_dropped", tenant_id=tenant_id, error=str(e))
    return alerts, invalid


async def run_weather_sync(ctx: SyncContext, tenant_id: str) -> WeatherSyncResult:
    result = WeatherSyncResult(tenant_id=tenant_id)
    tenant = get_tenant(ctx.db, tenant_id)
    if tenant is None:
        result.success = False
        result.errors.append("tenant not found")
        return result
    if not tenant.weather_sync_eligible:
        result.success = False
        result.errors.append("weather zones not configured")
        return result

    with ctx.locks.held(tenant_id, RESOURCE_WEATHER) as decision:
        if not decision.allowed:
            result.skipped_reason = decision.describe()
            logger.info(
                "weather_sync_skipped", tenant_id=tenant_id, reason=result.skipped_reason
            )
            return result

        try:
            doc = await fetch_json(
                ctx.client,
                url=f"{ctx.settings.nws_base_url.rstrip('/')}/alerts/active",
                user_agent=ctx.settings.user_agent,
                params={"zone": ",".join(tenant.weather_zones)},
                extra_headers={"Accept": "application/geo+json"},
                timeout_seconds=ctx.settings.fetch_timeout_seconds,
            )
            features = parse_alert_features(doc)
        except FetchError as e:
            error = (
                f"NWS API returned {e.status_code}"
                if e.status_code is not None
                else f"NWS API request failed: {e.reason}"
            )
            result.success = False
            result.errors.append(error)
            record_sync_error(ctx.db, tenant_id=tenant_id, kind="weather", error=error)
            logger.warning("weather_fetch_failed", tenant_id=tenant_id, error=error)
            return result
        except ParseError as e:
            result.success = False
            result.errors.append(str(e))
            record_sync_error(ctx.db, tenant_id=tenant_id, kind="weather", error=str(e))
            return result

        alerts, result.invalid = _normalize_alerts(features, tenant_id=tenant_id)
        result.fetched = len(alerts)
        now = utc_now()
        try:
            summary = upsert_alerts(ctx.db, tenant_id, alerts)
            result.expired = expire_alerts(ctx.db, now=now, tenant_id=tenant_id)
        except (PersistenceError, sqlite3.Error) as e:
            result.success = False
            result.errors.append(f"persistence: {e}")
            record_sync_error(ctx.db, tenant_id=tenant_id, kind="weather", error=str(e))
            logger.error("weather_persist_failed", tenant_id=tenant_id, error=str(e))
            return result

        result.created = summary.created
        result.updated = summary.updated
        result.cancelled = summary.cancelled
        record_sync_success(ctx.db, tenant_id=tenant_id, kind="weather")

        result.posted, publish_errors = await publish_weather_alerts(ctx, tenant, now=now)
        result.errors.extend(publish_errors)

    logger.info(
        "weather_sync_completed",
        tenant_id=tenant_id,
        fetched=result.fetched,
        created=result.created,
        updated=result.updated,
        expired=result.expired,
        posted=result.posted,
    )
    return result


def _legend_entries(payload: object) -> dict[str, str]:
    entries = payload
    if isinstance(payload, dict):
        entries = payload.get("units") or payload.get("UnitLegend") or []
    if not isinstance(entries, list):
        return {}
    legend: dict[str, str] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        key = entry.get("UnitKey")
        if key:
            legend[str(key)] = str(entry.get("Description") or key)
    return legend


async def sync_unit_legend(ctx: SyncContext, tenant_id: str) -> UnitLegendResult:
    result = UnitLegendResult(tenant_id=tenant_id)
    tenant = get_tenant(ctx.db, tenant_id)
    if tenant is None or not tenant.agency_ids:
        result.success = False
        result.errors.append("incident feed not configured")
        return result

    with ctx.locks.held(tenant_id, RESOURCE_UNIT_LEGEND) as decision:
        if not decision.allowed:
            result.skipped_reason = decision.describe()
            return result

        legend: dict[str, str] = {}
        for agency_id in tenant.agency_ids:
            try:
                payload = await _fetch_vendor(
                    ctx,
                    ctx.settings.pulsepoint_primary_url,
                    {"resource": "unitlegend", "agencyid": agency_id},
                )
            except FetchError as e:
                if e.status_code == 404:
                    result.unavailable.append(agency_id)
                    logger.info(
                        "unit_legend_unavailable", tenant_id=tenant_id, agency_id=agency_id
                    )
                    continue
                result.errors.append(f"agency {agency_id}: {e.reason}")
                continue
            except (DecryptionError, ParseError) as e:
                result.errors.append(f"agency {agency_id}: {e}")
                continue
            legend.update(_legend_entries(payload))

        if legend:
            set_unit_legend(ctx.db, tenant_id, legend)
        result.units = len(legend)
        result.success = not result.errors
    return result


R = TypeVar("R")


async def _fan_out(
    ctx: SyncContext,
    tenants: list[TenantConfig],
    run: Callable[[SyncContext, str], Awaitable[R]],
    on_error: Callable[[str, str], R],
) -> list[R]:
    sem = asyncio.Semaphore(ctx.settings.tenant_concurrency)

    async def _one(tenant_id: str) -> R:
        async with sem:
            try:
                return await run(ctx, tenant_id)
            except Exception as e:
                logger.exception("tenant_sync_crashed", tenant_id=tenant_id)
                return on_error(tenant_id, f"{e.__class__.__name__}: {e}")

    return list(await asyncio.gather(*(_one(t.tenant_id) for t in tenants)))


async def sync_all_tenant_incidents(ctx: SyncContext) -> list[IncidentSyncResult]:
    tenants = [t for t in list_tenants(ctx.db) if t.incident_sync_eligible]
    return await _fan_out(
        ctx,
        tenants,
        run_incident_sync,
        lambda tenant_id, error: IncidentSyncResult(
            tenant_id=tenant_id, success=False, errors=[error]
        ),
    )


async def sync_all_tenant_weather(ctx: SyncContext) -> list[WeatherSyncResult]:
    tenants = [t for t in list_tenants(ctx.db) if t.weather_sync_eligible]
    return await _fan_out(
        ctx,
        tenants,
        run_weather_sync,
        lambda tenant_id, error: WeatherSyncResult(
            tenant_id=tenant_id, success=False, errors=[error]
        ),
    )


async def sync_all_unit_legends(ctx: SyncContext) -> list[UnitLegendResult]:
    tenants = [t for t in list_tenants(ctx.db) if t.incident_sync_eligible]
    return await _fan_out(
        ctx,
        tenants,
        sync_unit_legend,
        lambda tenant_id, error: UnitLegendResult(
            tenant_id=tenant_id, success=False, errors=[error]
        ),
    )
