from __future__ import annotations

from collections.abc import Iterator

import pytest

from app.settings import Settings
from ingest.tenants import TenantConfig
from store.db import Database, close_database, open_database
from store.tenants import ensure_tenants


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def db(tmp_path) -> Iterator[Database]:
    database = open_database(tmp_path / "test.db")
    ensure_tenants(
        database,
        [
            TenantConfig(
                tenant_id="t1",
                name="Tenant One",
                agency_ids=["A1"],
                weather_zones=["NCZ060"],
            )
        ],
    )
    try:
        yield database
    finally:
        close_database(database)
