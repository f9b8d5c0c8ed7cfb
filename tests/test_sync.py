import asyncio
import json
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import httpx
import pytest

import ingest.sync as sync
from app.settings import Settings
from health.health import tenant_sync_health
from ingest.decrypt import encrypt_payload
from ingest.locks import RESOURCE_INCIDENTS, FetchLockRegistry
from ingest.sync import (
    IncidentSyncResult,
    SyncContext,
    WeatherSyncResult,
    run_incident_sync,
    run_weather_sync,
    sync_all_tenant_incidents,
    sync_unit_legend,
)
from ingest.tenants import TenantConfig
from models.incident import IncidentStatus
from models.weather import AlertStatus
from normalize.times import to_iso, utc_now
from store.alerts import list_alerts
from store.db import Database
from store.incidents import list_incidents
from store.tenants import ensure_tenants, get_unit_legend


FIXTURES = Path(__file__).resolve().parent / "fixtures"

Handler = Callable[[httpx.Request], httpx.Response]


class FakePublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []
        self.updated: list[tuple[str, str]] = []

    async def publish(self, *, page_id: str, token: str, message: str) -> str:
        self.published.append((page_id, message))
        return f"{page_id}_{len(self.published)}"

    async def update(self, *, post_id: str, token: str, message: str) -> str:
        self.updated.append((post_id, message))
        return post_id


def _add_tenant(db: Database) -> None:
    ensure_tenants(
        db,
        [
            TenantConfig(
                tenant_id="t2",
                name="Two Agencies",
                agency_ids=["A", "B"],
                weather_zones=["NCZ041"],
                facebook_auto_post=True,
                facebook_page_id="page",
                facebook_page_token="token",
            )
        ],
    )


def _record(external_id: str, address: str, minutes_ago: int) -> dict:
    return {
        "ID": external_id,
        "PulsePointIncidentCallType": "ME",
        "FullDisplayAddress": address,
        "CallReceivedDateTime": to_iso(utc_now() - timedelta(minutes=minutes_ago)),
        "Unit": [{"UnitID": f"M{external_id}", "PulsePointDispatchStatus": "ER"}],
    }


def _sync(
    db: Database,
    settings: Settings,
    handler: Handler,
    run,
    tenant_id: str = "t2",
    *,
    publisher: FakePublisher | None = None,
    locks: FetchLockRegistry | None = None,
):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            ctx = SyncContext(
                settings=settings,
                db=db,
                client=client,
                locks=locks or FetchLockRegistry(min_interval_seconds=0),
                publisher=publisher,
            )
            return await run(ctx, tenant_id)

    return asyncio.run(main())


def test_incident_sync_uses_fallback_for_failed_agency(
    db: Database, settings: Settings
) -> None:
    _add_tenant(db)
    agency_a = {
        "incidents": {
            "active": [
                _record("a1", "10 Oak St", 5),
                _record("a2", "20 Elm St", 15),
                _record("a3", "30 Pine St", 25),
            ]
        }
    }
    agency_b = {
        "incidents": {
            "active": [_record("b1", "1 Main St", 3)],
            "recent": [_record("b2", "2 Main St", 40)],
        }
    }
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        agency = request.url.params.get("agencyid")
        seen.append((request.url.host, agency))
        if request.url.host == "api.pulsepoint.org":
            if agency == "A":
                return httpx.Response(500)
            return httpx.Response(200, json=agency_b)
        if request.url.host == "web.pulsepoint.org":
            return httpx.Response(
                200, json=encrypt_payload(agency_a, password=settings.feed_password)
            )
        return httpx.Response(404)

    result: IncidentSyncResult = _sync(db, settings, handler, run_incident_sync)

    assert result.success
    assert result.errors == []
    assert result.fetched == 5
    assert result.created == 5
    assert ("web.pulsepoint.org", "A") in seen
    assert ("web.pulsepoint.org", "B") not in seen

    stored = list_incidents(db, "t2")
    assert sorted(i.external_id for i in stored) == ["a1", "a2", "a3", "b1", "b2"]
    health = {h["tenant_id"]: h for h in tenant_sync_health(db)}
    assert health["t2"]["last_incident_sync_at"] is not None
    assert health["t2"]["consecutive_failures"] == 0


def test_incident_sync_resync_skips_unchanged(db: Database, settings: Settings) -> None:
    _add_tenant(db)
    payload = {"incidents": {"active": [_record("x1", "5 Ash St", 2)]}}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("agencyid") == "A":
            return httpx.Response(200, json=payload)
        return httpx.Response(200, json={"incidents": {"active": []}})

    locks = FetchLockRegistry(min_interval_seconds=0)
    first = _sync(db, settings, handler, run_incident_sync, locks=locks)
    second = _sync(db, settings, handler, run_incident_sync, locks=locks)
    assert first.created == 1
    assert (second.created, second.updated, second.skipped) == (0, 0, 1)


def test_incident_sync_reports_agency_failures(db: Database, settings: Settings) -> None:
    _add_tenant(db)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("agencyid") == "B":
            return httpx.Response(200, json={"incidents": {"active": []}})
        if request.url.host == "api.pulsepoint.org":
            return httpx.Response(500)
        return httpx.Response(502)

    result: IncidentSyncResult = _sync(db, settings, handler, run_incident_sync)
    assert result.success
    assert result.errors == ["agency A: primary http_500; fallback http_502"]


def test_incident_sync_fails_when_every_agency_fails(
    db: Database, settings: Settings
) -> None:
    _add_tenant(db)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    result: IncidentSyncResult = _sync(db, settings, handler, run_incident_sync)
    assert not result.success
    assert len(result.errors) == 2
    health = {h["tenant_id"]: h for h in tenant_sync_health(db)}
    assert health["t2"]["consecutive_failures"] == 1
    assert health["t2"]["last_error"] == "incidents: all agency fetches failed"


def test_incident_sync_skips_while_fetch_in_progress(
    db: Database, settings: Settings
) -> None:
    _add_tenant(db)
    locks = FetchLockRegistry(min_interval_seconds=0)
    assert locks.try_acquire("t2", RESOURCE_INCIDENTS).allowed

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result: IncidentSyncResult = _sync(
        db, settings, handler, run_incident_sync, locks=locks
    )
    assert result.success
    assert result.skipped_reason == "concurrent_fetch_in_progress"
    assert result.fetched == 0


def test_incident_sync_unknown_tenant(db: Database, settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = _sync(db, settings, handler, run_incident_sync, "missing")
    assert not result.success
    assert result.errors == ["tenant not found"]


def _nws_handler(requests: list[httpx.Request]) -> Handler:
    body = (FIXTURES / "nws_alerts.geojson").read_bytes()

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200, content=body, headers={"Content-Type": "application/geo+json"}
        )

    return handler


def test_weather_sync_stores_and_posts_alerts(db: Database, settings: Settings) -> None:
    _add_tenant(db)
    requests: list[httpx.Request] = []
    publisher = FakePublisher()
    locks = FetchLockRegistry(min_interval_seconds=0)

    result: WeatherSyncResult = _sync(
        db,
        settings,
        _nws_handler(requests),
        run_weather_sync,
        publisher=publisher,
        locks=locks,
    )

    assert result.success
    assert result.errors == []
    assert (result.fetched, result.created) == (2, 2)
    assert result.posted == 2
    assert requests[0].url.path == "/alerts/active"
    assert requests[0].url.params.get("zone") == "NCZ041"
    assert requests[0].headers["Accept"] == "application/geo+json"

    messages = [message for _, message in publisher.published]
    assert any(m.startswith("\U0001f7e2 TORNADO WARNING") for m in messages)
    alerts = list_alerts(db, "t2", statuses=[AlertStatus.ACTIVE])
    assert all(a.facebook_post_id for a in alerts)

    again: WeatherSyncResult = _sync(
        db,
        settings,
        _nws_handler(requests),
        run_weather_sync,
        publisher=publisher,
        locks=locks,
    )
    assert again.created == 0
    assert again.posted == 0
    assert len(publisher.published) == 2


def test_weather_sync_without_auto_post_does_not_publish(
    db: Database, settings: Settings
) -> None:
    ensure_tenants(
        db,
        [TenantConfig(tenant_id="t3", name="Quiet", weather_zones=["NCZ041"])],
    )
    publisher = FakePublisher()
    result: WeatherSyncResult = _sync(
        db, settings, _nws_handler([]), run_weather_sync, "t3", publisher=publisher
    )
    assert result.created == 2
    assert result.posted == 0
    assert publisher.published == []


def test_weather_sync_reports_nws_status(db: Database, settings: Settings) -> None:
    _add_tenant(db)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    result: WeatherSyncResult = _sync(db, settings, handler, run_weather_sync)
    assert not result.success
    assert result.errors == ["NWS API returned 503"]


def test_weather_sync_rejects_non_geojson(db: Database, settings: Settings) -> None:
    _add_tenant(db)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"type": "Feature"})

    result: WeatherSyncResult = _sync(db, settings, handler, run_weather_sync)
    assert not result.success
    assert result.fetched == 0


def test_unit_legend_sync_skips_missing_agencies(
    db: Database, settings: Settings
) -> None:
    _add_tenant(db)
    legend = {"units": [{"UnitKey": "E", "Description": "Engine"}, {"UnitKey": "M"}]}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params.get("resource") == "unitlegend"
        if request.url.params.get("agencyid") == "A":
            return httpx.Response(
                200,
                content=json.dumps(
                    encrypt_payload(legend, password=settings.feed_password)
                ),
            )
        return httpx.Response(404)

    result = _sync(db, settings, handler, sync_unit_legend)
    assert result.success
    assert result.units == 2
    assert result.unavailable == ["B"]
    assert get_unit_legend(db, "t2") == {"E": "Engine", "M": "M"}


def _agency_b_empty(request: httpx.Request) -> httpx.Response | None:
    if request.url.params.get("agencyid") == "B":
        return httpx.Response(200, json={"incidents": {"active": []}})
    return None


def test_primary_timeout_falls_back(db: Database, settings: Settings) -> None:
    _add_tenant(db)
    settings = settings.model_copy(update={"fetch_timeout_seconds": 0.05})
    payload = {"incidents": {"active": [_record("s1", "7 Birch St", 4)]}}

    async def handler(request: httpx.Request) -> httpx.Response:
        empty = _agency_b_empty(request)
        if empty is not None:
            return empty
        if request.url.host == "api.pulsepoint.org":
            await asyncio.sleep(1)
            return httpx.Response(200, json=payload)
        return httpx.Response(200, json=payload)

    result: IncidentSyncResult = _sync(db, settings, handler, run_incident_sync)
    assert result.success
    assert result.errors == []
    assert result.created == 1


def test_primary_timeout_and_fallback_error_are_both_reported(
    db: Database, settings: Settings
) -> None:
    _add_tenant(db)

    def handler(request: httpx.Request) -> httpx.Response:
        empty = _agency_b_empty(request)
        if empty is not None:
            return empty
        if request.url.host == "api.pulsepoint.org":
            raise httpx.ReadTimeout("slow", request=request)
        raise httpx.ConnectError("refused", request=request)

    result: IncidentSyncResult = _sync(db, settings, handler, run_incident_sync)
    assert result.errors == [
        "agency A: primary timeout; fallback request_error:ConnectError"
    ]


@pytest.mark.parametrize(
    "primary",
    [
        httpx.Response(200, json={"ct": "***", "iv": "00", "s": "00"}),
        httpx.Response(200, content=b"<html>maintenance</html>"),
    ],
    ids=["decrypt_error", "parse_error"],
)
def test_unreadable_primary_falls_back(
    db: Database, settings: Settings, primary: httpx.Response
) -> None:
    _add_tenant(db)
    payload = {"incidents": {"active": [_record("p1", "9 Cedar St", 6)]}}
    seen_hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        empty = _agency_b_empty(request)
        if empty is not None:
            return empty
        seen_hosts.append(request.url.host)
        if request.url.host == "api.pulsepoint.org":
            return primary
        return httpx.Response(
            200, json=encrypt_payload(payload, password=settings.feed_password)
        )

    result: IncidentSyncResult = _sync(db, settings, handler, run_incident_sync)
    assert seen_hosts == ["api.pulsepoint.org", "web.pulsepoint.org"]
    assert result.errors == []
    assert result.created == 1


def test_closed_bucket_closes_stored_incident(db: Database, settings: Settings) -> None:
    _add_tenant(db)
    record = _record("z1", "3 Main St", 30)
    feed = {"incidents": {"active": [record]}}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("agencyid") == "A":
            return httpx.Response(200, json=feed)
        return httpx.Response(200, json={"incidents": {"active": []}})

    locks = FetchLockRegistry(min_interval_seconds=0)
    assert _sync(db, settings, handler, run_incident_sync, locks=locks).created == 1

    closed_at = to_iso(utc_now() - timedelta(minutes=1))
    feed = {
        "incidents": {
            "active": [],
            "closed": [{**record, "ClosedDateTime": closed_at}],
        }
    }
    result = _sync(db, settings, handler, run_incident_sync, locks=locks)
    assert result.updated == 1

    [stored] = list_incidents(db, "t2")
    assert stored.status == IncidentStatus.CLOSED
    assert to_iso(stored.call_closed_time) == closed_at


def _add_many_tenants(db: Database, count: int) -> None:
    ensure_tenants(
        db,
        [
            TenantConfig(tenant_id=f"m{i}", name=f"Many {i}", agency_ids=[f"X{i}"])
            for i in range(count)
        ],
    )


def _sync_all_incidents(db: Database, settings: Settings):
    async def run(ctx: SyncContext, tenant_id: str):
        return await sync_all_tenant_incidents(ctx)

    return _sync(db, settings, lambda request: httpx.Response(500), run)


def test_fan_out_isolates_crashing_tenant(
    db: Database, settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    _add_many_tenants(db, 2)

    async def fake_run(ctx: SyncContext, tenant_id: str) -> IncidentSyncResult:
        if tenant_id == "m0":
            raise RuntimeError("boom")
        return IncidentSyncResult(tenant_id=tenant_id, created=3)

    monkeypatch.setattr(sync, "run_incident_sync", fake_run)

    results = {r.tenant_id: r for r in _sync_all_incidents(db, settings)}
    assert set(results) == {"t1", "m0", "m1"}
    assert not results["m0"].success
    assert results["m0"].errors == ["RuntimeError: boom"]
    assert results["m1"].success
    assert results["m1"].created == 3
    assert results["t1"].success


def test_fan_out_respects_tenant_concurrency(
    db: Database, settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    _add_many_tenants(db, 6)
    settings = settings.model_copy(update={"tenant_concurrency": 2})
    active = 0
    peak = 0

    async def fake_run(ctx: SyncContext, tenant_id: str) -> IncidentSyncResult:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return IncidentSyncResult(tenant_id=tenant_id)

    monkeypatch.setattr(sync, "run_incident_sync", fake_run)

    results = _sync_all_incidents(db, settings)
    assert len(results) == 7
    assert peak == 2
