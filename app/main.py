from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import timedelta

import httpx
import structlog
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from app.logging_config import setup_logging
from app.settings import Settings
from cluster.clusterer import collapse_grouped_incidents
from health.health import tenant_sync_health
from ingest.scheduler import build_context, run_scheduler, tick
from ingest.sync import SyncContext, run_incident_sync, run_weather_sync
from ingest.tenants import load_tenant_entries
from models.incident import IncidentStatus
from models.weather import AlertStatus
from normalize.call_types import describe_call_type
from publish.threat import evaluate_alert_for_posting
from store.alerts import list_alerts
from store.db import close_database, open_database
from store.incidents import list_incidents
from store.tenants import ensure_tenants, get_tenant, get_unit_legend


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()
    setup_logging(
        "dispatch-sync",
        level=settings.log_level,
        structured=settings.structured_logging,
    )
    db = open_database(settings.db_path)
    tenants = load_tenant_entries(settings.tenants_file)
    ensure_tenants(db, tenants)
    logger.info("tenants_loaded", count=len(tenants), path=str(settings.tenants_file))

    client = httpx.AsyncClient(follow_redirects=True)
    ctx = build_context(settings=settings, db=db, client=client)
    app.state.ctx = ctx

    scheduler_task = asyncio.create_task(run_scheduler(ctx))
    try:
        yield
    finally:
        scheduler_task.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler_task
        await client.aclose()
        close_database(db)


app = FastAPI(lifespan=lifespan)


def _ctx(request: Request) -> SyncContext:
    return request.app.state.ctx


def _require_tenant(ctx: SyncContext, tenant_id: str) -> None:
    if get_tenant(ctx.db, tenant_id) is None:
        raise HTTPException(status_code=404, detail="tenant not found")


@app.get("/api/tenants")
def api_tenants(request: Request) -> JSONResponse:
    return JSONResponse(tenant_sync_health(_ctx(request).db))


@app.post("/api/tenants/{tenant_id}/sync/incidents")
async def api_sync_incidents(request: Request, tenant_id: str) -> JSONResponse:
    ctx = _ctx(request)
    _require_tenant(ctx, tenant_id)
    result = await run_incident_sync(ctx, tenant_id)
    return JSONResponse(result.as_dict())


@app.post("/api/tenants/{tenant_id}/sync/weather")
async def api_sync_weather(request: Request, tenant_id: str) -> JSONResponse:
    ctx = _ctx(request)
    _require_tenant(ctx, tenant_id)
    result = await run_weather_sync(ctx, tenant_id)
    return JSONResponse(result.as_dict())


@app.post("/api/tick")
async def api_tick(request: Request) -> JSONResponse:
    result = await tick(_ctx(request))
    return JSONResponse(result.as_dict())


@app.get("/api/tenants/{tenant_id}/incidents")
def api_incidents(
    request: Request,
    tenant_id: str,
    status: str = Query(default="active", pattern="^(active|closed|archived|all)$"),
    limit: int = Query(default=200, ge=1, le=1000),
) -> JSONResponse:
    ctx = _ctx(request)
    _require_tenant(ctx, tenant_id)
    statuses = None if status == "all" else [IncidentStatus(status)]
    incidents = list_incidents(ctx.db, tenant_id, statuses=statuses, limit=limit)
    return JSONResponse(
        [
            {**i.to_dict(), "call_type_description": describe_call_type(i.call_type)}
            for i in collapse_grouped_incidents(incidents)
        ]
    )


@app.get("/api/tenants/{tenant_id}/units/legend")
def api_unit_legend(request: Request, tenant_id: str) -> JSONResponse:
    ctx = _ctx(request)
    _require_tenant(ctx, tenant_id)
    legend = get_unit_legend(ctx.db, tenant_id)
    return JSONResponse(
        [
            {"unit_key": key, "description": description}
            for key, description in sorted(legend.items())
        ]
    )


@app.get("/api/tenants/{tenant_id}/alerts")
def api_alerts(request: Request, tenant_id: str) -> JSONResponse:
    ctx = _ctx(request)
    _require_tenant(ctx, tenant_id)
    alerts = list_alerts(ctx.db, tenant_id, statuses=[AlertStatus.ACTIVE])
    out = []
    for alert in alerts:
        decision = evaluate_alert_for_posting(
            alert,
            threshold=ctx.settings.alert_post_threshold,
            cooldown=timedelta(hours=ctx.settings.alert_post_cooldown_hours),
        )
        out.append({**alert.to_dict(), "posting": decision.to_dict()})
    return JSONResponse(out)
