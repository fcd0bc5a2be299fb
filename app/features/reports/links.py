"""Drill-down link generator.

Attaches to every report node the detail-listing URLs for exactly that
sub-slice: the request's date range, tenant and timezone plus the value of
every dimension from the root down to the node.
"""

from __future__ import annotations

import datetime
from collections.abc import Sequence
from dataclasses import dataclass
from urllib.parse import quote, urlencode

from app.features.reports.catalog import GroupingDimension
from app.features.reports.hierarchy import AggregateNode

LINK_TYPES = ("visitors", "engaged", "sales")


@dataclass(frozen=True)
class AncestorContext:
    """Immutable dimension -> value mapping accumulated from the root.

    ``extend`` returns a new context; the receiver is never changed, so
    sibling branches cannot see each other's values.
    """

    items: tuple[tuple[GroupingDimension, str], ...] = ()

    def get(self, dimension: GroupingDimension) -> str | None:
        """Value recorded for ``dimension``, if any."""
        for dim, value in self.items:
            if dim is dimension:
                return value
        return None

    def extend(self, dimension: GroupingDimension, value: str | None) -> AncestorContext:
        """Context with ``dimension`` set to ``value``.

        A missing value keeps whatever an ancestor recorded.
        """
        if not value:
            return self
        kept = tuple((dim, val) for dim, val in self.items if dim is not dimension)
        return AncestorContext(items=(*kept, (dimension, value)))


@dataclass(frozen=True)
class LinkContext:
    """Request-level values repeated in every link."""

    base_path: str
    tenant: str
    timezone: str | None = None
    start_date: datetime.date | None = None
    end_date: datetime.date | None = None


def build_query(
    dimensions: Sequence[GroupingDimension],
    context: LinkContext,
    ancestors: AncestorContext,
) -> str:
    """Query string shared by a node's links (without ``type``)."""
    params: list[tuple[str, str]] = []
    if context.start_date is not None:
        params.append(("startDate", context.start_date.isoformat()))
    if context.end_date is not None:
        params.append(("endDate", context.end_date.isoformat()))
    params.append(("dkey", context.tenant))

    for dimension in dimensions:
        value = ancestors.get(dimension)
        if value:
            params.append((dimension.value, value))

    # Consumers that only understand a single filter read ``label``.
    label = ancestors.get(dimensions[0]) if dimensions else None
    if label:
        params.append(("label", label))

    if context.timezone:
        params.append(("timezone", context.timezone))

    return urlencode(params, quote_via=quote)


def node_links(query: str, base_path: str) -> dict[str, str]:
    """The three drill-down links for one node."""
    return {link_type: f"{base_path}?{query}&type={link_type}" for link_type in LINK_TYPES}


def annotate(
    nodes: Sequence[AggregateNode],
    dimensions: Sequence[GroupingDimension],
    context: LinkContext,
    ancestors: AncestorContext | None = None,
) -> None:
    """Attach ``links`` to every node, depth-first, in place.

    Args:
        nodes: Nodes at one level of the tree.
        dimensions: Ordered grouping dimensions of the report.
        context: Request-level link values.
        ancestors: Values inherited from the parent (None at the top level).
    """
    inherited = ancestors or AncestorContext()
    for node in nodes:
        own = inherited.extend(node.dimension, node.value)
        node.links = node_links(build_query(dimensions, context, own), context.base_path)
        if node.children:
            annotate(node.children, dimensions, context, own)
