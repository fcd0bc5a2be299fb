"""Tenant resolution: which fact schema a report reads."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.database import read_connection
from app.core.exceptions import BadRequestError
from app.core.logging import get_logger
from app.features.reports.models import Domain, UserAdvertiser, schema_translate_map

logger = get_logger(__name__)

TENANT_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,64}$")


@dataclass(frozen=True)
class Caller:
    """Identity forwarded by the upstream gateway.

    Attributes:
        user_id: Authenticated user, or None for anonymous calls.
        timezone: Stored timezone preference, if any.
    """

    user_id: int | None = None
    timezone: str | None = None


def validate_tenant_key(tenant: str) -> str:
    """Ensure a tenant key is safe to use as part of a schema name.

    Raises:
        BadRequestError: If the key has characters other than letters,
            digits and '_'.
    """
    if not TENANT_KEY_PATTERN.match(tenant):
        raise BadRequestError(
            message=f"Invalid dkey '{tenant}'",
            details={"dkey": tenant},
        )
    return tenant


@runtime_checkable
class TenantResolverProtocol(Protocol):
    """Resolves the tenant a caller's report should read."""

    async def resolve(self, caller: Caller, explicit: str | None = None) -> str | None:
        """Return the tenant key, or None when the caller has no data access."""
        ...


class SqlTenantResolver:
    """Resolves tenants from the shared domain directory."""

    def __init__(self, engine: AsyncEngine) -> None:
        """Initialize with the shared async engine."""
        self._engine = engine

    async def authorized_tenants(self, user_id: int) -> list[str]:
        """Tenant keys the user may read, ordered by key.

        Args:
            user_id: Authenticated user id.

        Returns:
            Distinct tenant keys (possibly empty).
        """
        stmt = (
            select(Domain.dkey)
            .join(UserAdvertiser, UserAdvertiser.advertiser_id == Domain.aid)
            .where(UserAdvertiser.user_id == user_id)
            .distinct()
            .order_by(Domain.dkey)
        )
        async with read_connection(self._engine, schema_translate_map()) as conn:
            result = await conn.execute(stmt)
            return [row.dkey for row in result]

    async def resolve(self, caller: Caller, explicit: str | None = None) -> str | None:
        """Explicit ``dkey`` wins; otherwise the caller's first authorized tenant.

        Args:
            caller: Forwarded caller identity.
            explicit: ``dkey`` from the request, if any.

        Returns:
            Validated tenant key, or None.
        """
        if explicit:
            return validate_tenant_key(explicit)
        if caller.user_id is None:
            return None

        tenants = await self.authorized_tenants(caller.user_id)
        logger.debug(
            "reports.tenants_listed",
            user_id=caller.user_id,
            tenant_count=len(tenants),
        )
        return validate_tenant_key(tenants[0]) if tenants else None
