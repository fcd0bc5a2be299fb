"""Shared pytest fixtures for TrafficReports tests."""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.config import get_settings
from app.core.database import Base
from app.features.reports.models import schema_translate_map
from app.main import app

TEST_TENANT = "itest"


@pytest.fixture
async def client():
    """Create async HTTP client for testing FastAPI endpoints."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def fact_engine(monkeypatch):
    """Create an engine with throwaway shared and tenant schemas.

    Requires a running PostgreSQL reachable through DATABASE_URL.
    Yields the engine; tenant tables live in the schema of ``TEST_TENANT``.
    """
    monkeypatch.setenv("FACT_SHARED_SCHEMA", "itest_shared")
    get_settings.cache_clear()
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)
    schemas = schema_translate_map(TEST_TENANT)

    async with engine.begin() as conn:
        for schema in schemas.values():
            await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
        conn = await conn.execution_options(schema_translate_map=schemas)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        for schema in schemas.values():
            await conn.execute(text(f'DROP SCHEMA IF EXISTS "{schema}" CASCADE'))

    await engine.dispose()
    get_settings.cache_clear()
