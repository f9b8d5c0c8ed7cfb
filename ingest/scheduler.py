from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

import httpx
import structlog

from app.settings import Settings
from ingest.locks import FetchLockRegistry
from ingest.sync import (
    SyncContext,
    sync_all_tenant_incidents,
    sync_all_tenant_weather,
    sync_all_unit_legends,
)
from normalize.times import utc_now
from publish.facebook import FacebookPublisher
from store.alerts import delete_old_alerts, expire_alerts
from store.db import Database
from store.incidents import (
    archive_closed_incidents,
    close_stale_incidents,
    delete_empty_groups,
    delete_incidents_received_before,
)


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SubtaskOutcome:
    name: str
    ok: bool
    result: object = None
    error: str | None = None


@dataclass(frozen=True)
class TickResult:
    name: str
    duration_ms: int
    outcomes: list[SubtaskOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def as_dict(self) -> dict:
        return asdict(self)


async def _run_subtask(name: str, run: Callable[[], object]) -> SubtaskOutcome:
    try:
        value = run()
        if inspect.isawaitable(value):
            value = await value
    except Exception as e:
        logger.exception("subtask_failed", subtask=name)
        return SubtaskOutcome(name, False, error=f"{e.__class__.__name__}: {e}")
    return SubtaskOutcome(name, True, result=value)


async def _run_tick(
    name: str, subtasks: list[tuple[str, Callable[[], object]]], *, parallel: bool
) -> TickResult:
    started = time.perf_counter()
    if parallel:
        outcomes = list(
            await asyncio.gather(*(_run_subtask(n, run) for n, run in subtasks))
        )
    else:
        outcomes = [await _run_subtask(n, run) for n, run in subtasks]
    result = TickResult(
        name=name,
        duration_ms=int((time.perf_counter() - started) * 1000),
        outcomes=outcomes,
    )
    logger.info(
        "tick_completed",
        tick=name,
        duration_ms=result.duration_ms,
        failed=[o.name for o in outcomes if not o.ok],
    )
    return result


async def tick(ctx: SyncContext) -> TickResult:
    async def incidents() -> object:
        return [r.as_dict() for r in await sync_all_tenant_incidents(ctx)]

    async def weather() -> object:
        return [r.as_dict() for r in await sync_all_tenant_weather(ctx)]

    return await _run_tick(
        "sync", [("incidents", incidents), ("weather", weather)], parallel=True
    )


async def maintenance_tick(ctx: SyncContext, *, now: datetime | None = None) -> TickResult:
    now = now or utc_now()
    stale_before = now - timedelta(hours=ctx.settings.stale_incident_hours)
    return await _run_tick(
        "maintenance",
        [
            (
                "close_stale_incidents",
                lambda: close_stale_incidents(
                    ctx.db, received_before=stale_before, now=now
                ),
            ),
        ],
        parallel=False,
    )


async def daily_tick(ctx: SyncContext, *, now: datetime | None = None) -> TickResult:
    now = now or utc_now()
    settings = ctx.settings
    alert_cutoff = now - timedelta(days=settings.alert_retention_days)
    archive_cutoff = now - timedelta(days=settings.incident_archive_days)
    incident_cutoff = now - timedelta(days=settings.incident_retention_days)

    async def unit_legends() -> object:
        return [r.as_dict() for r in await sync_all_unit_legends(ctx)]

    return await _run_tick(
        "daily",
        [
            ("expire_alerts", lambda: expire_alerts(ctx.db, now=now)),
            (
                "delete_old_alerts",
                lambda: delete_old_alerts(ctx.db, expires_before=alert_cutoff),
            ),
            (
                "archive_closed_incidents",
                lambda: archive_closed_incidents(ctx.db, closed_before=archive_cutoff),
            ),
            (
                "delete_old_incidents",
                lambda: delete_incidents_received_before(ctx.db, incident_cutoff),
            ),
            ("delete_empty_groups", lambda: delete_empty_groups(ctx.db)),
            ("unit_legends", unit_legends),
        ],
        parallel=False,
    )


def next_daily_run(now: datetime, hour_utc: int) -> datetime:
    candidate = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def build_context(
    *, settings: Settings, db: Database, client: httpx.AsyncClient
) -> SyncContext:
    return SyncContext(
        settings=settings,
        db=db,
        client=client,
        locks=FetchLockRegistry(
            min_interval_seconds=settings.min_fetch_interval_seconds
        ),
        publisher=FacebookPublisher(
            client,
            graph_url=settings.facebook_graph_url,
            timeout_seconds=settings.fetch_timeout_seconds,
        ),
    )


_POLL_SECONDS = 1.0


async def _run_cadence(
    name: str,
    run: Callable[[], Awaitable[object]],
    *,
    first_due: datetime,
    next_due: Callable[[datetime], datetime],
) -> None:
    due = first_due
    while True:
        if utc_now() >= due:
            try:
                await run()
            except Exception:
                logger.exception("cadence_failed", cadence=name)
            due = next_due(utc_now())
        await asyncio.sleep(_POLL_SECONDS)


async def run_scheduler(ctx: SyncContext) -> None:
    """Run the sync, maintenance and daily cadences as independent loops."""
    settings = ctx.settings
    now = utc_now()
    sync_every = timedelta(seconds=settings.sync_interval_seconds)
    maintenance_every = timedelta(seconds=settings.maintenance_interval_seconds)

    await asyncio.gather(
        _run_cadence(
            "sync",
            lambda: tick(ctx),
            first_due=now,
            next_due=lambda t: t + sync_every,
        ),
        _run_cadence(
            "maintenance",
            lambda: maintenance_tick(ctx),
            first_due=now + maintenance_every,
            next_due=lambda t: t + maintenance_every,
        ),
        _run_cadence(
            "daily",
            lambda: daily_tick(ctx),
            first_due=next_daily_run(now, settings.daily_cleanup_hour_utc),
            next_due=lambda t: next_daily_run(t, settings.daily_cleanup_hour_utc),
        ),
    )
