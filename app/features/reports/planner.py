"""Filter/query planner.

Turns raw request filters, grouping dimensions and a date range into an
abstract ``QueryPlan``. The plan says *what* to ask the fact store; the fact
fetcher decides how to express it in SQL.
"""

from __future__ import annotations

import datetime
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.exceptions import BadRequestError
from app.core.logging import get_logger
from app.features.reports.catalog import (
    FILTER_CATALOG,
    AuxJoin,
    FilterField,
    GroupingDimension,
    joins_for_dimensions,
)

logger = get_logger(__name__)

_OFFSET_INPUT = re.compile(r"^([+-])(\d{1,2}):?(\d{2})?$")


class MatchType(str, Enum):
    """How active filter clauses combine: OR (``any``) or AND (``all``)."""

    ANY = "any"
    ALL = "all"


# =============================================================================
# Request-side value objects
# =============================================================================


def split_values(raw: str | None) -> tuple[str, ...]:
    """Split a comma-separated filter value.

    Values are trimmed, empties dropped and repeats removed keeping the first
    occurrence.
    """
    if not raw:
        return ()
    seen: dict[str, None] = {}
    for part in raw.split(","):
        value = part.strip()
        if value:
            seen.setdefault(value, None)
    return tuple(seen)


def normalize_timezone(raw: str | None, default: str = "+00:00") -> str:
    """Normalize a timezone given as a UTC offset or an IANA name.

    Accepted: ``+05:00``, ``-0330``, ``+5``, ``Z``, ``UTC``,
    ``America/New_York``. Offsets are returned as ``±HH:MM``.

    Args:
        raw: Timezone from the request or the caller's profile.
        default: Value used when ``raw`` is empty.

    Returns:
        Normalized timezone.

    Raises:
        BadRequestError: If the value is neither an offset nor a known zone.
    """
    value = (raw or "").strip()
    if not value:
        return default
    if value.upper() in ("Z", "UTC", "GMT"):
        return "+00:00"

    match = _OFFSET_INPUT.match(value)
    if match:
        sign, hours, minutes = match.groups()
        hours_int, minutes_int = int(hours), int(minutes or 0)
        if hours_int > 14 or minutes_int > 59:
            raise BadRequestError(
                message=f"Timezone offset out of range: '{value}'",
                details={"timezone": value},
            )
        return f"{sign}{hours_int:02d}:{minutes_int:02d}"

    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise BadRequestError(
            message=f"Unknown timezone: '{value}'",
            details={"timezone": value},
        ) from e
    return value


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar-day range evaluated in ``timezone``.

    Attributes:
        start: First day included (None = unbounded).
        end: Last day included (None = unbounded).
        timezone: Normalized timezone (see ``normalize_timezone``).
        use_post_date: Bucket on the postback timestamp instead of the visit.
    """

    start: datetime.date | None = None
    end: datetime.date | None = None
    timezone: str = "+00:00"
    use_post_date: bool = False

    def validate(self, max_days: int) -> DateRange:
        """Check ordering and span.

        Raises:
            BadRequestError: If ``end`` precedes ``start`` or the span is too long.
        """
        if self.start is not None and self.end is not None:
            if self.end < self.start:
                raise BadRequestError(
                    message="endDate must be >= startDate",
                    details={"startDate": str(self.start), "endDate": str(self.end)},
                )
            span = (self.end - self.start).days + 1
            if span > max_days:
                raise BadRequestError(
                    message=f"Date range of {span} days exceeds the {max_days}-day maximum",
                    details={"startDate": str(self.start), "endDate": str(self.end)},
                )
        return self


@dataclass(frozen=True)
class FilterSpec:
    """Per-field filter values plus the match policy."""

    values: Mapping[FilterField, tuple[str, ...]] = field(default_factory=dict)
    match_type: MatchType = MatchType.ANY

    @classmethod
    def from_params(
        cls,
        params: Mapping[str, str | None],
        match_type: MatchType | str = MatchType.ANY,
    ) -> FilterSpec:
        """Build from raw query parameters keyed by filter field name.

        Unknown keys are ignored; fields whose values are all empty are dropped.
        """
        values: dict[FilterField, tuple[str, ...]] = {}
        for filter_field in FilterField:
            parsed = split_values(params.get(filter_field.value))
            if parsed:
                values[filter_field] = parsed
        return cls(values=values, match_type=MatchType(match_type))

    @property
    def active_fields(self) -> list[FilterField]:
        """Fields with at least one value, in declaration order."""
        return [f for f in FilterField if self.values.get(f)]


# =============================================================================
# Plan
# =============================================================================


@dataclass(frozen=True)
class FilterClause:
    """``field IN values``."""

    field: FilterField
    values: tuple[str, ...]


@dataclass(frozen=True)
class QueryPlan:
    """What to ask the fact store for one report.

    Date bounds are always ANDed; ``clauses`` are combined with ``connector``
    (OR for ``any``, AND for ``all``) across all fields alike.
    """

    dimensions: tuple[GroupingDimension, ...]
    date_range: DateRange
    clauses: tuple[FilterClause, ...]
    connector: MatchType
    joins: frozenset[AuxJoin]
    include_bots: bool = False
    row_limit: int = 1000

    @property
    def has_predicate(self) -> bool:
        """Whether any filter clause applies beyond the date bounds."""
        return bool(self.clauses)


def plan(
    filters: FilterSpec,
    dimensions: list[GroupingDimension] | tuple[GroupingDimension, ...],
    date_range: DateRange,
    *,
    include_bots: bool = False,
    row_limit: int = 1000,
) -> QueryPlan:
    """Build the query plan for a report request.

    Args:
        filters: Parsed request filters and match policy.
        dimensions: Ordered grouping dimensions (at least one).
        date_range: Date bounds and timezone.
        include_bots: Keep visits flagged as bots.
        row_limit: Maximum number of grouped rows to keep.

    Returns:
        The query plan.

    Raises:
        ValueError: If ``dimensions`` is empty.
    """
    if not dimensions:
        raise ValueError("At least one grouping dimension is required")

    clauses = tuple(
        FilterClause(field=f, values=filters.values[f]) for f in filters.active_fields
    )

    joins = set(joins_for_dimensions(list(dimensions)))
    for clause in clauses:
        joins |= FILTER_CATALOG[clause.field].joins

    query_plan = QueryPlan(
        dimensions=tuple(dimensions),
        date_range=date_range,
        clauses=clauses,
        connector=filters.match_type,
        joins=frozenset(joins),
        include_bots=include_bots,
        row_limit=row_limit,
    )

    logger.debug(
        "reports.plan_built",
        dimensions=[d.value for d in query_plan.dimensions],
        clauses={c.field.value: list(c.values) for c in clauses},
        connector=query_plan.connector.value,
        joins=sorted(j.value for j in query_plan.joins),
        include_bots=include_bots,
    )
    return query_plan
