"""ORM mappings for the tenant-scoped fact store.

The fact store is owned by the tracking pipeline; these mappings only describe
what the report queries read. Two logical schemas are used:

- ``tenant``: per-tenant ``visit`` and ``action`` facts. The real schema name
  (``<tenant_schema_prefix><dkey>``) is bound per execution through
  ``schema_translate_map``.
- ``shared``: lookup tables shared by all tenants (``ip``, ``device``) and the
  tenant directory (``domain``, ``user_advertiser``).

Grain: one ``visit`` row per visitor (``pkey``); ``action`` rows are ordered
per visitor by ``action`` (1 = landing page).
"""

import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.config import get_settings
from app.core.database import Base

TENANT_SCHEMA = "tenant"
SHARED_SCHEMA = "shared"


# ============================================================================
# TENANT FACT TABLES
# ============================================================================


class Visit(Base):
    """Page-visit fact (one row per visitor).

    Attributes:
        pkey: Visitor key.
        date_created: Visit timestamp (UTC, naive).
        post_date: Postback timestamp (UTC, naive), if any.
        channel: Traffic channel.
        subchannel: Sub-channel / source placement.
        target: Keyword / raw search term.
        ip: Visitor IP address (FK-like to shared ip).
        device_id: Device fingerprint (FK-like to shared device).
        variant: Landing page variant.
        is_bot: Bot flag set by the tracker.
    """

    __tablename__ = "visit"
    __table_args__ = {"schema": TENANT_SCHEMA}

    pkey: Mapped[str] = mapped_column(String(64), primary_key=True)
    date_created: Mapped[datetime.datetime] = mapped_column(DateTime, index=True)
    post_date: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    channel: Mapped[str | None] = mapped_column(String(100), nullable=True)
    subchannel: Mapped[str | None] = mapped_column(String(255), nullable=True)
    target: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    device_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    variant: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_bot: Mapped[bool] = mapped_column(Boolean, default=False)


class Action(Base):
    """Action fact (page views and conversions of a visitor).

    Attributes:
        id: Surrogate key.
        pkey: Visitor key.
        action: 1-based action order for the visitor (1 = landing page).
        name: Page / action name.
        hash: Action hash.
        variant: Page variant.
        revenue: Revenue attributed to the action (> 0 means a sale).
        date_created: Action timestamp (UTC, naive).
    """

    __tablename__ = "action"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pkey: Mapped[str] = mapped_column(String(64), index=True)
    action: Mapped[int] = mapped_column(Integer)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    variant: Mapped[str | None] = mapped_column(String(100), nullable=True)
    revenue: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    date_created: Mapped[datetime.datetime] = mapped_column(DateTime)


# ============================================================================
# SHARED LOOKUP TABLES
# ============================================================================


class IpInfo(Base):
    """IP geolocation and reputation lookup."""

    __tablename__ = "ip"
    __table_args__ = {"schema": SHARED_SCHEMA}

    address: Mapped[str] = mapped_column(String(45), primary_key=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    org: Mapped[str | None] = mapped_column(String(255), nullable=True)
    isp: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_proxy: Mapped[bool] = mapped_column(Boolean, default=False)
    is_crawler: Mapped[bool] = mapped_column(Boolean, default=False)
    threat_level: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Device(Base):
    """Device fingerprint lookup."""

    __tablename__ = "device"
    __table_args__ = {"schema": SHARED_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    device_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    os: Mapped[str | None] = mapped_column(String(50), nullable=True)
    os_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    browser: Mapped[str | None] = mapped_column(String(50), nullable=True)
    browser_version: Mapped[str | None] = mapped_column(String(50), nullable=True)


class Domain(Base):
    """Tenant directory: one tracked domain per ``dkey``."""

    __tablename__ = "domain"
    __table_args__ = {"schema": SHARED_SCHEMA}

    dkey: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    aid: Mapped[int] = mapped_column(Integer, index=True)


class UserAdvertiser(Base):
    """Which users may read which advertiser's domains."""

    __tablename__ = "user_advertiser"
    __table_args__ = {"schema": SHARED_SCHEMA}

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    advertiser_id: Mapped[int] = mapped_column(Integer, primary_key=True)


def schema_translate_map(tenant: str | None = None) -> dict[str, str]:
    """Map the logical schemas to physical schema names.

    Args:
        tenant: Validated tenant key, or None when only shared tables are read.

    Returns:
        Mapping suitable for the ``schema_translate_map`` execution option.
    """
    settings = get_settings()
    mapping = {SHARED_SCHEMA: settings.fact_shared_schema}
    if tenant is not None:
        mapping[TENANT_SCHEMA] = f"{settings.tenant_schema_prefix}{tenant}"
    return mapping
