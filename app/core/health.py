"""Health check endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from app.core.config import get_settings
from app.core.database import get_connection
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])

# Shared relations every report needs, whatever the tenant.
SHARED_RELATIONS = ("domain", "user_advertiser", "ip", "device")


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: Literal["ok", "degraded", "unhealthy"]
    database: Literal["connected", "disconnected"] | None = None
    missing_relations: list[str] = Field(default_factory=list)


async def missing_relations(
    conn: AsyncConnection,
    schema: str,
    relations: tuple[str, ...],
) -> list[str]:
    """Qualified names of the relations absent from ``schema``."""
    missing = []
    for relation in relations:
        name = f"{schema}.{relation}"
        result = await conn.execute(text("SELECT to_regclass(:name)"), {"name": name})
        if result.scalar() is None:
            missing.append(name)
    return missing


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness probe; does not touch the database."""
    logger.debug("health.check_started")
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def readiness_check(
    conn: AsyncConnection = Depends(get_connection),
) -> HealthResponse:
    """Readiness probe: database connectivity plus the shared relations.

    A reachable database missing any shared relation reports ``degraded``:
    tenants cannot be resolved or IP/device dimensions cannot be joined.

    Args:
        conn: Read connection dependency.

    Returns:
        Health status with database state.
    """
    settings = get_settings()
    logger.debug("health.readiness_check_started")

    try:
        await conn.execute(text("SELECT 1"))
        missing = await missing_relations(conn, settings.fact_shared_schema, SHARED_RELATIONS)
    except SQLAlchemyError as e:
        logger.error(
            "health.database_disconnected",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return HealthResponse(status="unhealthy", database="disconnected")

    if missing:
        logger.warning("health.relations_missing", missing=missing)
    return HealthResponse(
        status="degraded" if missing else "ok",
        database="connected",
        missing_relations=missing,
    )
