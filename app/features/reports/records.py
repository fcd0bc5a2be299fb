"""Detail record listing: the target of a report's drill-down links.

A listing returns the individual visits (``visitors``), second actions
(``engaged``) or revenue actions (``sales``) behind one report node. The
node's slice arrives as one query parameter per grouping dimension, exactly
as the link generator writes them.
"""

from __future__ import annotations

import datetime
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import ColumnElement, Select, String, and_, cast, func, or_, select
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.database import read_connection
from app.core.logging import get_logger
from app.features.reports.catalog import DIMENSION_CATALOG, AuxJoin, FactSources, GroupingDimension
from app.features.reports.fetcher import apply_joins, date_conditions
from app.features.reports.models import Action, Visit, schema_translate_map
from app.features.reports.planner import DateRange
from app.features.reports.schemas import DetailRecord, DetailType

logger = get_logger(__name__)

_LANDING_LABEL = re.compile(r"^(.+?)\s*-\s*Variant:\s*(.+)$")


def humanize_since(then: datetime.datetime, now: datetime.datetime) -> str:
    """Elapsed time as ``N minutes``, ``H hours M minutes`` or ``N days``.

    Both timestamps must be naive UTC (or both aware). A timestamp in the
    future counts as 0 minutes.
    """
    minutes = max(int((now - then).total_seconds() // 60), 0)
    if minutes < 60:
        return f"{minutes} minutes"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hours {minutes % 60} minutes"
    return f"{hours // 24} days"


def parse_landing_label(label: str) -> tuple[str, str | None]:
    """Split ``"<page> - Variant: <variant>"``; a plain label is a page name."""
    match = _LANDING_LABEL.match(label)
    if match:
        return match.group(1).strip(), match.group(2).strip()
    return label.strip(), None


@dataclass(frozen=True)
class DetailQuery:
    """One page of a detail listing.

    Attributes:
        detail_type: Which facts to list.
        date_range: Date bounds and timezone.
        dimension_values: Equality filter per grouping dimension.
        label: Landing page filter, used only without dimension values.
        search: Substring matched against visitor id, channel and subchannel.
        include_bots: Keep visits flagged as bots.
        limit: Page size.
        offset: Records to skip.
    """

    detail_type: DetailType
    date_range: DateRange = field(default_factory=DateRange)
    dimension_values: Mapping[GroupingDimension, str] = field(default_factory=dict)
    label: str | None = None
    search: str | None = None
    include_bots: bool = False
    limit: int = 100
    offset: int = 0


@dataclass
class DetailPage:
    """Records of one page plus whether another page exists."""

    records: list[DetailRecord] = field(default_factory=list)
    has_more: bool = False


@runtime_checkable
class DetailFetcherProtocol(Protocol):
    """Anything that can answer a DetailQuery for a tenant."""

    async def fetch(self, query: DetailQuery, tenant: str) -> DetailPage:
        """Fetch one page of records."""
        ...


# =============================================================================
# Statement building
# =============================================================================


def _actions_of_visitor() -> Any:
    # The sales listing already has action in its FROM.
    other = aliased(Action, name="a2")
    return (
        select(func.count(other.id))
        .where(other.pkey == Visit.pkey)
        .correlate(Visit)
        .scalar_subquery()
    )


def _revenue_of_visitor() -> Any:
    other = aliased(Action, name="a2")
    return (
        select(func.coalesce(func.sum(other.revenue), 0))
        .where(other.pkey == Visit.pkey)
        .correlate(Visit)
        .scalar_subquery()
    )


def _base_statement(detail_type: DetailType) -> Select[Any]:
    keyword = Visit.target.label("keyword")
    if detail_type is DetailType.VISITORS:
        return select(
            Visit.pkey.label("visitor_id"),
            _actions_of_visitor().label("total_actions"),
            _revenue_of_visitor().label("revenue"),
            Visit.channel,
            Visit.subchannel,
            keyword,
            Visit.date_created,
        ).select_from(Visit)

    if detail_type is DetailType.ENGAGED:
        return (
            select(
                Action.name.label("page"),
                Visit.pkey.label("visitor_id"),
                Action.hash.label("action_id"),
                Action.action.label("total_actions"),
                Visit.channel,
                Visit.subchannel,
                keyword,
                Visit.date_created,
            )
            .select_from(Action)
            .join(Visit, Visit.pkey == Action.pkey)
            .where(Action.action == 2)
        )

    return (
        select(
            Action.name.label("page"),
            Visit.pkey.label("visitor_id"),
            Action.hash.label("action_id"),
            _actions_of_visitor().label("total_actions"),
            Action.revenue,
            Visit.channel,
            Visit.subchannel,
            keyword,
            Visit.date_created,
        )
        .select_from(Action)
        .join(Visit, Visit.pkey == Action.pkey)
        .where(Action.revenue > 0)
    )


def _order_column(detail_type: DetailType) -> ColumnElement[Any]:
    return Action.date_created if detail_type is DetailType.SALES else Visit.date_created


def build_detail_statement(query: DetailQuery) -> Select[Any]:
    """SELECT for one page of a detail listing (``limit + 1`` rows, newest first)."""
    src = FactSources.for_request(query.date_range.timezone, query.date_range.use_post_date)
    stmt = _base_statement(query.detail_type)

    joins: set[AuxJoin] = set()
    conditions: list[ColumnElement[bool]] = []
    for dimension, value in query.dimension_values.items():
        spec = DIMENSION_CATALOG[dimension]
        joins |= spec.joins
        conditions.append(cast(spec.expression(src), String) == value)

    if not query.dimension_values and query.label:
        page, variant = parse_landing_label(query.label)
        joins.add(AuxJoin.LANDING_ACTION)
        conditions.append(src.landing_action.name == page)
        if variant is not None:
            conditions.append(src.landing_action.variant == variant)

    stmt = apply_joins(stmt, frozenset(joins), src)

    if not query.include_bots:
        stmt = stmt.where(Visit.is_bot.is_(False))
    conditions.extend(date_conditions(query.date_range, src))

    if query.search and query.search.strip():
        term = f"%{query.search.strip()}%"
        conditions.append(
            or_(Visit.pkey.like(term), Visit.channel.like(term), Visit.subchannel.like(term))
        )

    if conditions:
        stmt = stmt.where(and_(*conditions))

    return (
        stmt.order_by(_order_column(query.detail_type).desc(), Visit.pkey)
        .limit(query.limit + 1)
        .offset(query.offset)
    )


# =============================================================================
# Execution
# =============================================================================


class SqlDetailFetcher:
    """Detail listing over the PostgreSQL fact store."""

    def __init__(self, engine: AsyncEngine) -> None:
        """Initialize with the shared async engine."""
        self._engine = engine

    async def fetch(self, query: DetailQuery, tenant: str) -> DetailPage:
        """Fetch one page of records from ``tenant``'s schema.

        Raises:
            SQLAlchemyError: On any database failure (not retried).
        """
        stmt = build_detail_statement(query)

        async with read_connection(self._engine, schema_translate_map(tenant)) as conn:
            result = await conn.execute(stmt)
            rows = result.mappings().all()

        now = datetime.datetime.now(datetime.UTC).replace(tzinfo=None)
        records = [
            DetailRecord(
                since_visit=humanize_since(row["date_created"], now),
                visitor_id=row["visitor_id"],
                page=row.get("page"),
                action_id=row.get("action_id"),
                total_actions=row["total_actions"] or 0,
                revenue=row.get("revenue") or 0,
                channel=row["channel"],
                subchannel=row["subchannel"],
                keyword=row["keyword"],
                date_created=row["date_created"],
            )
            for row in rows[: query.limit]
        ]
        return DetailPage(records=records, has_more=len(rows) > query.limit)
