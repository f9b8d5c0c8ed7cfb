from datetime import UTC, datetime, timedelta

import httpx
from fastapi.testclient import TestClient

from app.main import app
from app.settings import Settings
from ingest.scheduler import build_context
from models.incident import CallTypeCategory, Incident
from models.weather import AlertSeverity, WeatherAlert
from store.alerts import upsert_alerts
from store.db import Database
from store.incidents import insert_incident
from store.tenants import set_unit_legend


T0 = datetime(2030, 5, 1, 12, 0, tzinfo=UTC)


def _client(db: Database, settings: Settings) -> TestClient:
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    app.state.ctx = build_context(
        settings=settings, db=db, client=httpx.AsyncClient(transport=transport)
    )
    return TestClient(app)


def _incident(external_id: str, minute: int) -> Incident:
    return Incident(
        tenant_id="t1",
        external_id=external_id,
        call_type="SF",
        call_type_category=CallTypeCategory.FIRE,
        full_address="1 Main St",
        normalized_address="1 main st",
        call_received_time=T0 + timedelta(minutes=minute),
        units=[f"E{external_id}"],
    )


def test_list_tenants_reports_health(db: Database, settings: Settings) -> None:
    res = _client(db, settings).get("/api/tenants")
    assert res.status_code == 200
    [tenant] = res.json()
    assert tenant["tenant_id"] == "t1"
    assert tenant["consecutive_failures"] == 0


def test_incidents_are_collapsed_for_display(db: Database, settings: Settings) -> None:
    insert_incident(db, _incident("1", 1))
    insert_incident(db, _incident("2", 4))
    insert_incident(db, _incident("3", 25))

    res = _client(db, settings).get("/api/tenants/t1/incidents")
    assert res.status_code == 200
    body = res.json()
    assert [i["external_id"] for i in body] == ["3", "1"]
    assert body[1]["units"] == ["E1", "E2"]
    assert body[1]["call_type_description"] == "Structure Fire"


def test_incident_status_filter_is_validated(db: Database, settings: Settings) -> None:
    res = _client(db, settings).get("/api/tenants/t1/incidents?status=bogus")
    assert res.status_code == 422


def test_unknown_tenant_is_404(db: Database, settings: Settings) -> None:
    client = _client(db, settings)
    assert client.get("/api/tenants/nope/incidents").status_code == 404
    assert client.post("/api/tenants/nope/sync/weather").status_code == 404


def test_alerts_include_posting_decision(db: Database, settings: Settings) -> None:
    upsert_alerts(
        db,
        "t1",
        [
            WeatherAlert(
                tenant_id="t1",
                nws_id="urn:x",
                event="Tornado Warning",
                severity=AlertSeverity.MINOR,
                expires=T0 + timedelta(days=3650),
            )
        ],
    )
    res = _client(db, settings).get("/api/tenants/t1/alerts")
    assert res.status_code == 200
    [alert] = res.json()
    assert alert["nws_id"] == "urn:x"
    assert alert["posting"]["should_post"] is True
    assert alert["posting"]["reason"] == "Critical event: Tornado Warning"


def test_unit_legend_is_listed(db: Database, settings: Settings) -> None:
    set_unit_legend(db, "t1", {"M12": "Medic 12", "E1": "Engine 1"})

    res = _client(db, settings).get("/api/tenants/t1/units/legend")
    assert res.status_code == 200
    assert res.json() == [
        {"unit_key": "E1", "description": "Engine 1"},
        {"unit_key": "M12", "description": "Medic 12"},
    ]


def test_unit_legend_for_unknown_tenant_is_404(db: Database, settings: Settings) -> None:
    res = _client(db, settings).get("/api/tenants/nope/units/legend")
    assert res.status_code == 404
