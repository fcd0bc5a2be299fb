"""Hierarchy builder: fold flat grouped fact rows into a report tree.

One level per requested dimension. A leaf carries one fact row's metrics
(or the sum of the rows whose missing values share its Unknown bucket);
every node above a leaf carries the sum over the rows beneath it.

Invariant (checked by ``find_inconsistencies``): for every non-leaf node,
the children's visitors/engaged/sales/revenue sum to the node's own.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from app.core.exceptions import FactContractError
from app.core.logging import get_logger
from app.features.reports.catalog import GroupingDimension
from app.features.reports.metrics import ZERO, DerivedMetrics, compute_derived, to_decimal

logger = get_logger(__name__)

UNKNOWN_LABEL = "Unknown"


# =============================================================================
# Data structures
# =============================================================================


def coerce_value(raw: Any) -> str | None:
    """String form of a dimension value; None and "" mean "no value"."""
    if raw is None:
        return None
    value = str(raw)
    return value if value != "" else None


@dataclass(frozen=True)
class FactRow:
    """One grouped row returned by the fact fetcher.

    Attributes:
        values: Dimension value per requested dimension (may be None).
        visitors: Distinct visitors.
        engaged: Visitors with more than one action.
        sales: Actions with revenue.
        revenue: Revenue sum.
        flagged: Visitors with a fraud signal.
    """

    values: Mapping[GroupingDimension, Any]
    visitors: int = 0
    engaged: int = 0
    sales: int = 0
    revenue: Decimal = ZERO
    flagged: int = 0

    def value(self, dimension: GroupingDimension) -> str | None:
        """Coerced value for ``dimension`` (None when missing)."""
        return coerce_value(self.values.get(dimension))

    def label(self, dimension: GroupingDimension) -> str:
        """Bucket label for ``dimension``."""
        return self.value(dimension) or UNKNOWN_LABEL

    def raw_values(self, dimensions: Sequence[GroupingDimension]) -> tuple[Any, ...]:
        """Values for ``dimensions`` exactly as fetched, before coercion."""
        return tuple(self.values.get(dim) for dim in dimensions)


@dataclass
class AggregateNode:
    """A node of the report tree.

    ``ancestors`` holds the concrete (dimension, value) pairs of every
    ancestor, attached once the tree is complete. ``value`` is None when the
    node buckets missing values under ``UNKNOWN_LABEL``.
    """

    label: str
    level: int
    dimension: GroupingDimension
    value: str | None
    ancestors: tuple[tuple[GroupingDimension, str | None], ...] = ()
    id: str = ""
    visitors: int = 0
    engaged: int = 0
    sales: int = 0
    revenue: Decimal = ZERO
    flagged: int = 0
    is_leaf: bool = False
    metrics: DerivedMetrics = field(default_factory=DerivedMetrics.zero)
    children: list[AggregateNode] = field(default_factory=list)
    links: dict[str, str] = field(default_factory=dict)

    def add(self, row: FactRow) -> None:
        """Accumulate a row's raw metrics into this node."""
        self.visitors += row.visitors
        self.engaged += row.engaged
        self.sales += row.sales
        self.revenue += row.revenue
        self.flagged += row.flagged

    def assign(self, row: FactRow) -> None:
        """Take a row's raw metrics as this leaf's own."""
        self.visitors = row.visitors
        self.engaged = row.engaged
        self.sales = row.sales
        self.revenue = row.revenue
        self.flagged = row.flagged

    @property
    def dimension_values(self) -> dict[str, str]:
        """Ancestor values plus this node's own, keyed by dimension name."""
        values = {dim.value: val for dim, val in self.ancestors if val is not None}
        if self.value is not None:
            values[self.dimension.value] = self.value
        return values

    def walk(self) -> Iterable[AggregateNode]:
        """Yield this node and its descendants in pre-order."""
        yield self
        for child in self.children:
            yield from child.walk()


# =============================================================================
# Build
# =============================================================================


def _sort_key(node: AggregateNode) -> tuple[int, str, int, int, Decimal]:
    # Depends only on node content, so permuted input rows sort identically.
    return (-node.visitors, node.label, -node.engaged, -node.sales, -node.revenue)


def _finalize(nodes: list[AggregateNode]) -> None:
    """Compute derived metrics and sort every level in place."""
    for node in nodes:
        node.metrics = compute_derived(
            node.visitors,
            node.engaged,
            node.sales,
            node.revenue,
            flagged=node.flagged if node.is_leaf else None,
        )
        if node.children:
            _finalize(node.children)
    nodes.sort(key=_sort_key)


def _assign_ids(nodes: list[AggregateNode]) -> None:
    counter = 0
    for root in nodes:
        for node in root.walk():
            node.id = f"l{node.level}-{counter}"
            counter += 1


def _merge_value(node: AggregateNode, value: str | None) -> None:
    # None beats a literal "Unknown" whatever the row order.
    if value is None:
        node.value = None


def _attach_ancestors(
    nodes: list[AggregateNode],
    inherited: tuple[tuple[GroupingDimension, str | None], ...] = (),
) -> None:
    for node in nodes:
        node.ancestors = inherited
        if node.children:
            _attach_ancestors(node.children, (*inherited, (node.dimension, node.value)))


def _build_flat(rows: Sequence[FactRow], dimension: GroupingDimension) -> list[AggregateNode]:
    nodes = []
    unknown: AggregateNode | None = None
    for row in rows:
        label = row.label(dimension)
        if label == UNKNOWN_LABEL and unknown is not None:
            unknown.add(row)
            _merge_value(unknown, row.value(dimension))
            continue

        node = AggregateNode(
            label=label,
            level=0,
            dimension=dimension,
            value=row.value(dimension),
            is_leaf=True,
        )
        node.assign(row)
        nodes.append(node)
        if label == UNKNOWN_LABEL:
            unknown = node

    _finalize(nodes)
    for idx, node in enumerate(nodes):
        node.id = f"row-{idx}"
    return nodes


def build_hierarchy(
    rows: Sequence[FactRow],
    dimensions: Sequence[GroupingDimension],
    *,
    strict: bool = False,
) -> list[AggregateNode]:
    """Fold grouped fact rows into an ordered report tree.

    With one dimension every row becomes its own leaf (the fetcher already
    grouped at that granularity) except that missing values share one
    Unknown leaf. With more, rows are folded in one pass through a
    transient path index keyed by label; intermediate nodes accumulate and
    the leaf takes the row's metrics. Rows whose raw values differ but land
    on the same Unknown leaf (NULL next to "") are summed there.

    Args:
        rows: Grouped rows, at most one per full dimension-value tuple.
        dimensions: Ordered grouping dimensions (at least one).
        strict: Raise instead of logging when two rows share a leaf.

    Returns:
        Top-level nodes ordered by visitors descending.

    Raises:
        ValueError: If ``dimensions`` is empty.
        FactContractError: On a leaf collision when ``strict`` is set.
    """
    if not dimensions:
        raise ValueError("At least one grouping dimension is required")

    if len(dimensions) == 1:
        return _build_flat(rows, dimensions[0])

    depth = len(dimensions)
    roots: list[AggregateNode] = []
    index: dict[tuple[str, ...], AggregateNode] = {}
    leaf_rows: dict[tuple[str, ...], set[tuple[Any, ...]]] = {}
    collisions = 0

    for row in rows:
        labels = tuple(row.label(dim) for dim in dimensions)
        values = tuple(row.value(dim) for dim in dimensions)
        parent: AggregateNode | None = None

        for level in range(depth):
            path = labels[: level + 1]
            node = index.get(path)
            created = node is None

            if node is None:
                node = AggregateNode(
                    label=labels[level],
                    level=level,
                    dimension=dimensions[level],
                    value=values[level],
                    is_leaf=level == depth - 1,
                )
                index[path] = node
                (parent.children if parent is not None else roots).append(node)
            else:
                _merge_value(node, values[level])

            if not node.is_leaf:
                node.add(row)
                parent = node
                continue

            raw = row.raw_values(dimensions)
            seen = leaf_rows.setdefault(path, set())
            if created:
                node.assign(row)
            elif raw in seen:
                collisions += 1
                logger.warning(
                    "reports.leaf_collision",
                    path=list(path),
                    previous_visitors=node.visitors,
                    visitors=row.visitors,
                )
                if strict:
                    raise FactContractError(
                        message="Two fact rows share the same dimension values",
                        details={"path": list(path)},
                    )
                node.assign(row)
            else:
                node.add(row)
            seen.add(raw)

    index.clear()
    leaf_rows.clear()

    _attach_ancestors(roots)
    _finalize(roots)
    _assign_ids(roots)

    logger.debug(
        "reports.hierarchy_built",
        rows=len(rows),
        depth=depth,
        top_level=len(roots),
        collisions=collisions,
    )
    return roots


# =============================================================================
# Consistency
# =============================================================================


def find_inconsistencies(nodes: Iterable[AggregateNode]) -> list[str]:
    """List every non-leaf node whose raw metrics differ from its children's sum.

    Returns:
        Human-readable violations; empty when the tree is consistent.
    """
    problems: list[str] = []
    for root in nodes:
        for node in root.walk():
            if not node.children:
                continue
            for metric in ("visitors", "engaged", "sales", "revenue"):
                total = sum((getattr(c, metric) for c in node.children), start=0)
                own = getattr(node, metric)
                if total != own:
                    problems.append(
                        f"{node.id or node.label}.{metric}: node={own} children={total}"
                    )
    return problems


def make_fact_row(
    values: Mapping[GroupingDimension, Any],
    visitors: Any,
    engaged: Any,
    sales: Any,
    revenue: Any,
    flagged: Any = 0,
) -> FactRow:
    """Build a FactRow from loosely typed driver values."""
    return FactRow(
        values=values,
        visitors=int(visitors or 0),
        engaged=int(engaged or 0),
        sales=int(sales or 0),
        revenue=to_decimal(revenue),
        flagged=int(flagged or 0),
    )
