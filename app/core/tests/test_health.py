"""Tests for health check endpoints."""

import pytest
from sqlalchemy.exc import OperationalError

from app.core.database import get_connection
from app.main import app


class _Result:
    def __init__(self, value):
        self._value = value

    def scalar(self):
        return self._value


class _FakeConnection:
    """Answers SELECT 1 and to_regclass lookups for a fixed set of relations."""

    def __init__(self, present=(), fail=False):
        self.present = set(present)
        self.fail = fail

    async def execute(self, stmt, params=None):
        if self.fail:
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))
        if params is None:
            return _Result(1)
        name = params["name"]
        return _Result(name if name in self.present else None)


ALL_SHARED = ["shared.domain", "shared.user_advertiser", "shared.ip", "shared.device"]


@pytest.fixture
def override_connection():
    """Install a fake connection for the readiness probe."""

    def install(conn):
        async def _get_connection():
            yield conn

        app.dependency_overrides[get_connection] = _get_connection

    yield install
    app.dependency_overrides.pop(get_connection, None)


@pytest.mark.asyncio
async def test_health_check_returns_ok(client):
    """Liveness endpoint should return status ok without touching the database."""
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_readiness_ok_with_shared_relations(client, override_connection):
    """A reachable database with every shared relation is ready."""
    override_connection(_FakeConnection(present=ALL_SHARED))

    response = await client.get("/health/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["database"] == "connected"
    assert data["missing_relations"] == []


@pytest.mark.asyncio
async def test_readiness_degraded_without_directory(client, override_connection):
    """Missing shared relations are listed and degrade readiness."""
    override_connection(_FakeConnection(present=["shared.ip", "shared.device"]))

    response = await client.get("/health/ready")

    data = response.json()
    assert data["status"] == "degraded"
    assert data["missing_relations"] == ["shared.domain", "shared.user_advertiser"]


@pytest.mark.asyncio
async def test_readiness_unhealthy_when_database_down(client, override_connection):
    """Database errors report unhealthy instead of raising."""
    override_connection(_FakeConnection(fail=True))

    response = await client.get("/health/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "unhealthy"
    assert data["database"] == "disconnected"
