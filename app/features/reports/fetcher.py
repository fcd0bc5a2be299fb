"""Fact fetcher: executes a QueryPlan against the tenant fact store.

The report engine only depends on ``FactFetcherProtocol``; ``SqlFactFetcher``
is the PostgreSQL implementation over the mappings in ``models``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import (
    ColumnElement,
    Select,
    and_,
    case,
    distinct,
    func,
    literal_column,
    or_,
    select,
)
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.database import read_connection
from app.core.logging import get_logger
from app.features.reports.catalog import (
    DIMENSION_CATALOG,
    FILTER_CATALOG,
    AuxJoin,
    FactSources,
)
from app.features.reports.hierarchy import FactRow, make_fact_row
from app.features.reports.models import Action, Device, IpInfo, Visit, schema_translate_map
from app.features.reports.planner import DateRange, MatchType, QueryPlan

logger = get_logger(__name__)


@dataclass
class FetchResult:
    """Rows returned for a plan.

    Attributes:
        rows: At most ``plan.row_limit`` rows, visitors descending.
        truncated: True when the store had more rows than the limit.
    """

    rows: list[FactRow] = field(default_factory=list)
    truncated: bool = False


@runtime_checkable
class FactFetcherProtocol(Protocol):
    """Anything that can answer a QueryPlan for a tenant."""

    async def fetch(self, plan: QueryPlan, tenant: str) -> FetchResult:
        """Execute ``plan`` against ``tenant``'s facts."""
        ...


# =============================================================================
# Statement building
# =============================================================================


def fraud_signal() -> ColumnElement[bool]:
    """IP reputation says proxy, crawler or a non-zero threat level."""
    return or_(
        IpInfo.is_proxy.is_(True),
        IpInfo.is_crawler.is_(True),
        func.coalesce(IpInfo.threat_level, 0) > 0,
    )


def date_conditions(date_range: DateRange, src: FactSources) -> list[ColumnElement[bool]]:
    """Inclusive calendar-day bounds in the request timezone."""
    local_day = func.date(src.local_time)
    conditions: list[ColumnElement[bool]] = []
    if date_range.start is not None:
        conditions.append(local_day >= date_range.start)
    if date_range.end is not None:
        conditions.append(local_day <= date_range.end)
    return conditions


def filter_predicate(plan: QueryPlan, src: FactSources) -> ColumnElement[bool] | None:
    """Combine the plan's clauses with its connector (None when no clause)."""
    if not plan.clauses:
        return None
    conditions = [
        FILTER_CATALOG[clause.field].column(src).in_(clause.values) for clause in plan.clauses
    ]
    combine = or_ if plan.connector is MatchType.ANY else and_
    return combine(*conditions)


def apply_joins(stmt: Select[Any], joins: frozenset[AuxJoin], src: FactSources) -> Select[Any]:
    """Outer-join the auxiliary relations in a fixed order."""
    if AuxJoin.IP in joins:
        stmt = stmt.outerjoin(IpInfo, Visit.ip == IpInfo.address)
    if AuxJoin.DEVICE in joins:
        stmt = stmt.outerjoin(Device, Visit.device_id == Device.id)
    if AuxJoin.LANDING_ACTION in joins:
        landing = src.landing_action
        stmt = stmt.outerjoin(landing, and_(landing.pkey == Visit.pkey, landing.action == 1))
    return stmt


def build_report_statement(plan: QueryPlan) -> Select[Any]:
    """Grouped SELECT for a report plan.

    One row per distinct combination of the plan's dimensions, with
    ``visitors``, ``engaged``, ``sales``, ``revenue`` and ``flagged``.
    Fetches ``row_limit + 1`` rows so truncation can be detected.
    """
    src = FactSources.for_request(plan.date_range.timezone, plan.date_range.use_post_date)
    dimension_columns = [
        DIMENSION_CATALOG[dim].expression(src).label(dim.value) for dim in plan.dimensions
    ]

    visitors = func.count(distinct(Visit.pkey)).label("visitors")
    stmt = select(
        *dimension_columns,
        visitors,
        func.count(distinct(case((Action.action > 1, Visit.pkey)))).label("engaged"),
        func.count(case((Action.revenue > 0, 1))).label("sales"),
        func.coalesce(func.sum(Action.revenue), 0).label("revenue"),
        func.count(distinct(case((fraud_signal(), Visit.pkey)))).label("flagged"),
    ).select_from(Visit)

    stmt = stmt.outerjoin(Action, Action.pkey == Visit.pkey)
    # The IP relation is always needed for the fraud signal.
    stmt = apply_joins(stmt, plan.joins | {AuxJoin.IP}, src)

    if not plan.include_bots:
        stmt = stmt.where(Visit.is_bot.is_(False))
    for condition in date_conditions(plan.date_range, src):
        stmt = stmt.where(condition)
    predicate = filter_predicate(plan, src)
    if predicate is not None:
        stmt = stmt.where(predicate)

    # Dimension expressions carry bound parameters, so GROUP BY / ORDER BY
    # refer to them by position; PostgreSQL cannot match re-bound copies.
    positions = [literal_column(str(idx)) for idx in range(1, len(dimension_columns) + 1)]
    return (
        stmt.group_by(*positions)
        .order_by(visitors.desc(), *(pos.asc() for pos in positions))
        .limit(plan.row_limit + 1)
    )


# =============================================================================
# Execution
# =============================================================================


def to_fetch_result(records: Sequence[Mapping[str, Any]], plan: QueryPlan) -> FetchResult:
    """Turn raw result mappings into fact rows, honouring the row limit.

    The statement asks for ``row_limit + 1`` rows; seeing the extra one is
    how truncation is detected. It is dropped from the result.
    """
    truncated = len(records) > plan.row_limit
    rows = [
        make_fact_row(
            values={dim: record[dim.value] for dim in plan.dimensions},
            visitors=record["visitors"],
            engaged=record["engaged"],
            sales=record["sales"],
            revenue=record["revenue"],
            flagged=record["flagged"],
        )
        for record in records[: plan.row_limit]
    ]

    if truncated:
        logger.warning(
            "reports.rows_truncated",
            row_limit=plan.row_limit,
            dimensions=[d.value for d in plan.dimensions],
        )

    return FetchResult(rows=rows, truncated=truncated)


class SqlFactFetcher:
    """Fact fetcher over the PostgreSQL fact store."""

    def __init__(self, engine: AsyncEngine) -> None:
        """Initialize with the shared async engine."""
        self._engine = engine

    async def fetch(self, plan: QueryPlan, tenant: str) -> FetchResult:
        """Execute ``plan`` in ``tenant``'s schema.

        Args:
            plan: Report query plan.
            tenant: Validated tenant key.

        Returns:
            Rows (visitors descending) and the truncation flag.

        Raises:
            SQLAlchemyError: On any database failure (not retried).
        """
        stmt = build_report_statement(plan)

        async with read_connection(self._engine, schema_translate_map(tenant)) as conn:
            result = await conn.execute(stmt)
            records = result.mappings().all()

        return to_fetch_result(records, plan)

