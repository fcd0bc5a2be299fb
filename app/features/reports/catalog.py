"""Dimension catalog: logical grouping/filter names to fact-store expressions.

Every ``GroupingDimension`` has exactly one ``DimensionSpec`` naming the
auxiliary joins it needs and how to compute its value from the fact sources.
The catalog is a module-level constant and is never mutated after import.
"""

from __future__ import annotations

import datetime
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any

from sqlalchemy import ColumnElement, Date, Integer, cast, extract, func
from sqlalchemy.orm import aliased
from sqlalchemy.orm.util import AliasedClass

from app.core.exceptions import BadRequestError
from app.core.logging import get_logger
from app.features.reports.models import Action, Device, IpInfo, Visit

logger = get_logger(__name__)

OFFSET_PATTERN = re.compile(r"^([+-])(\d{2}):(\d{2})$")


# =============================================================================
# Enums
# =============================================================================


class GroupingDimension(str, Enum):
    """Axes a report can be grouped by."""

    CHANNEL = "channel"
    SUBCHANNEL = "subchannel"
    SUBCHANNEL_STRIPPED = "subchannel_stripped"
    COUNTRY = "country"
    KEYWORD = "keyword"
    RAWWORD = "rawword"
    STATE = "state"
    DEVICE_TYPE = "device_type"
    OS = "os"
    OS_VERSION = "os_version"
    BROWSER = "browser"
    BROWSER_VERSION = "browser_version"
    DAY_OF_WEEK = "day_of_week"
    HOUR = "hour"
    LANDING_PAGE = "landing_page"
    LANDING_PAGE_VARIANT = "landing_page_variant"
    STATE_CITY = "state_city"
    SOURCE_DOMAIN = "source_domain"
    IP = "ip"
    IP_ORG = "ip_org"
    ISP = "isp"
    DATE = "date"
    DATE_DOW = "date_dow"


DEFAULT_DIMENSION = GroupingDimension.CHANNEL


class FilterField(str, Enum):
    """Multi-valued request filters (comma-separated in the query string)."""

    CHANNEL = "channel"
    SUBCHANNEL = "subchannel"
    COUNTRY = "country"
    KEYWORD = "keyword"
    IPORG = "iporg"
    PAGE_ACTION = "page_action"


class AuxJoin(str, Enum):
    """Auxiliary relations joined onto visit/action when needed."""

    IP = "ip"
    DEVICE = "device"
    LANDING_ACTION = "landing_action"


# =============================================================================
# Fact sources
# =============================================================================


def local_timestamp(column: Any, timezone: str) -> ColumnElement[Any]:
    """Shift a naive-UTC timestamp column into the caller's local time.

    Offsets are applied as an interval so ``+05:00`` means east of UTC
    (PostgreSQL would read a bare offset string with POSIX sign semantics).

    Args:
        column: Naive UTC timestamp column.
        timezone: Normalized timezone, ``±HH:MM`` or an IANA name.

    Returns:
        Local (naive) timestamp expression.
    """
    match = OFFSET_PATTERN.match(timezone)
    if match:
        sign, hours, minutes = match.groups()
        offset = datetime.timedelta(hours=int(hours), minutes=int(minutes))
        if offset == datetime.timedelta(0):
            return column  # type: ignore[no-any-return]
        return column + offset if sign == "+" else column - offset  # type: ignore[no-any-return]
    return func.timezone(timezone, func.timezone("UTC", column))


@dataclass(frozen=True)
class FactSources:
    """The relations a report or detail query can read from.

    Attributes:
        landing_action: Alias of ``action`` restricted to the landing row.
        local_time: Visit timestamp shifted to the caller's timezone.
    """

    landing_action: AliasedClass[Action]
    local_time: ColumnElement[Any]

    @classmethod
    def for_request(cls, timezone: str, use_post_date: bool = False) -> FactSources:
        """Build the sources for one request's timezone and date column."""
        date_column = Visit.post_date if use_post_date else Visit.date_created
        return cls(
            landing_action=aliased(Action, name="landing_action"),
            local_time=local_timestamp(date_column, timezone),
        )


# =============================================================================
# Catalog entries
# =============================================================================

ExpressionBuilder = Callable[[FactSources], ColumnElement[Any]]


@dataclass(frozen=True)
class DimensionSpec:
    """How to compute one grouping dimension."""

    dimension: GroupingDimension
    joins: frozenset[AuxJoin]
    expression: ExpressionBuilder


@dataclass(frozen=True)
class FilterFieldSpec:
    """Which column a filter field constrains."""

    field: FilterField
    joins: frozenset[AuxJoin]
    column: ExpressionBuilder


_NO_JOIN: frozenset[AuxJoin] = frozenset()
_IP = frozenset({AuxJoin.IP})
_DEVICE = frozenset({AuxJoin.DEVICE})
_LANDING = frozenset({AuxJoin.LANDING_ACTION})


def _spec(
    dimension: GroupingDimension,
    joins: frozenset[AuxJoin],
    expression: ExpressionBuilder,
) -> tuple[GroupingDimension, DimensionSpec]:
    return dimension, DimensionSpec(dimension=dimension, joins=joins, expression=expression)


def _weekday(src: FactSources) -> ColumnElement[Any]:
    return func.to_char(src.local_time, "FMDay")


DIMENSION_CATALOG: Mapping[GroupingDimension, DimensionSpec] = MappingProxyType(
    dict(
        [
            _spec(GroupingDimension.CHANNEL, _NO_JOIN, lambda _: Visit.channel),
            _spec(GroupingDimension.SUBCHANNEL, _NO_JOIN, lambda _: Visit.subchannel),
            _spec(
                GroupingDimension.SUBCHANNEL_STRIPPED,
                _NO_JOIN,
                lambda _: func.split_part(Visit.subchannel, "_", 1),
            ),
            _spec(GroupingDimension.COUNTRY, _IP, lambda _: IpInfo.country),
            _spec(GroupingDimension.KEYWORD, _NO_JOIN, lambda _: Visit.target),
            _spec(GroupingDimension.RAWWORD, _NO_JOIN, lambda _: Visit.target),
            _spec(GroupingDimension.STATE, _IP, lambda _: IpInfo.state),
            _spec(GroupingDimension.DEVICE_TYPE, _DEVICE, lambda _: Device.device_type),
            _spec(GroupingDimension.OS, _DEVICE, lambda _: Device.os),
            _spec(
                GroupingDimension.OS_VERSION,
                _DEVICE,
                lambda _: Device.os + " " + Device.os_version,
            ),
            _spec(GroupingDimension.BROWSER, _DEVICE, lambda _: Device.browser),
            _spec(
                GroupingDimension.BROWSER_VERSION,
                _DEVICE,
                lambda _: Device.browser + " " + Device.browser_version,
            ),
            _spec(GroupingDimension.DAY_OF_WEEK, _NO_JOIN, _weekday),
            _spec(
                GroupingDimension.HOUR,
                _NO_JOIN,
                lambda src: cast(extract("hour", src.local_time), Integer),
            ),
            _spec(GroupingDimension.LANDING_PAGE, _LANDING, lambda src: src.landing_action.name),
            _spec(
                GroupingDimension.LANDING_PAGE_VARIANT,
                _LANDING,
                lambda src: src.landing_action.name
                + " - Variant: "
                + func.coalesce(Visit.variant, "0"),
            ),
            _spec(
                GroupingDimension.STATE_CITY,
                _IP,
                lambda _: IpInfo.state + ", " + IpInfo.city,
            ),
            _spec(GroupingDimension.SOURCE_DOMAIN, _NO_JOIN, lambda _: Visit.subchannel),
            _spec(GroupingDimension.IP, _NO_JOIN, lambda _: Visit.ip),
            _spec(GroupingDimension.IP_ORG, _IP, lambda _: IpInfo.org),
            _spec(GroupingDimension.ISP, _IP, lambda _: IpInfo.isp),
            _spec(GroupingDimension.DATE, _NO_JOIN, lambda src: cast(src.local_time, Date)),
            _spec(
                GroupingDimension.DATE_DOW,
                _NO_JOIN,
                lambda src: func.concat(
                    func.to_char(src.local_time, "YYYY-MM-DD"), " (", _weekday(src), ")"
                ),
            ),
        ]
    )
)

FILTER_CATALOG: Mapping[FilterField, FilterFieldSpec] = MappingProxyType(
    {
        FilterField.CHANNEL: FilterFieldSpec(
            FilterField.CHANNEL, _NO_JOIN, lambda _: Visit.channel
        ),
        FilterField.SUBCHANNEL: FilterFieldSpec(
            FilterField.SUBCHANNEL, _NO_JOIN, lambda _: Visit.subchannel
        ),
        FilterField.COUNTRY: FilterFieldSpec(FilterField.COUNTRY, _IP, lambda _: IpInfo.country),
        FilterField.KEYWORD: FilterFieldSpec(FilterField.KEYWORD, _NO_JOIN, lambda _: Visit.target),
        FilterField.IPORG: FilterFieldSpec(FilterField.IPORG, _IP, lambda _: IpInfo.org),
        FilterField.PAGE_ACTION: FilterFieldSpec(
            FilterField.PAGE_ACTION, _NO_JOIN, lambda _: Action.name
        ),
    }
)


# =============================================================================
# Lookups
# =============================================================================


def dimension_spec(dimension: GroupingDimension) -> DimensionSpec:
    """Return the catalog entry for a dimension."""
    return DIMENSION_CATALOG[dimension]


def resolve_dimension(name: str) -> GroupingDimension:
    """Resolve a requested dimension name, degrading unknown names.

    Args:
        name: Dimension name as sent by the client (case-insensitive).

    Returns:
        The matching dimension, or ``DEFAULT_DIMENSION`` if unknown.
    """
    normalized = name.strip().lower()
    try:
        return GroupingDimension(normalized)
    except ValueError:
        logger.warning(
            "reports.dimension_unknown",
            requested=name,
            fallback=DEFAULT_DIMENSION.value,
        )
        return DEFAULT_DIMENSION


def parse_group_by(raw: str | None, max_dimensions: int) -> list[GroupingDimension]:
    """Parse the comma-separated ``groupBy`` parameter.

    Names are resolved in order; a dimension repeated after resolution keeps
    only its first position. An empty value yields ``[DEFAULT_DIMENSION]``.

    Args:
        raw: Raw ``groupBy`` value.
        max_dimensions: Maximum number of distinct dimensions accepted.

    Returns:
        Ordered, de-duplicated dimensions.

    Raises:
        BadRequestError: If more than ``max_dimensions`` dimensions remain.
    """
    names = [part.strip() for part in (raw or "").split(",") if part.strip()]

    dimensions: list[GroupingDimension] = []
    for name in names:
        dimension = resolve_dimension(name)
        if dimension not in dimensions:
            dimensions.append(dimension)

    if len(dimensions) > max_dimensions:
        raise BadRequestError(
            message=f"groupBy accepts at most {max_dimensions} dimensions, got {len(dimensions)}",
            details={"groupBy": raw, "max_dimensions": max_dimensions},
        )

    return dimensions or [DEFAULT_DIMENSION]


def joins_for_dimensions(dimensions: list[GroupingDimension]) -> frozenset[AuxJoin]:
    """Union of the joins the given dimensions require."""
    joins: set[AuxJoin] = set()
    for dimension in dimensions:
        joins |= DIMENSION_CATALOG[dimension].joins
    return frozenset(joins)
