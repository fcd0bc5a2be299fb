"""Pydantic schemas for the report endpoints.

Report envelopes use the camelCase keys existing clients read
(``groupByFields``, ``isHierarchical``); node metrics keep their
snake_case names.
"""

from __future__ import annotations

import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

from app.features.reports.hierarchy import AggregateNode

# Decimals are emitted as JSON numbers, not strings.
Metric = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


# =============================================================================
# Report
# =============================================================================


class ReportNode(BaseModel):
    """One node of a report tree (or one row of a flat report)."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(
        ...,
        description="Node id, unique within one response (not stable across requests).",
    )
    label: str = Field(
        ...,
        description="Value of this node's dimension ('Unknown' when missing).",
    )
    level: int = Field(..., ge=0, description="0-based depth in the tree.")
    dimension: str = Field(..., description="Grouping dimension of this level.")
    values: dict[str, str] = Field(
        default_factory=dict,
        description="Concrete dimension values from the root down to this node.",
    )
    visitors: int = Field(..., ge=0, description="Distinct visitors.")
    engaged: int = Field(..., ge=0, description="Visitors who reached a second action.")
    sales: int = Field(..., ge=0, description="Actions with revenue.")
    revenue: Metric = Field(..., description="Revenue sum.")
    engage_rate: Metric = Field(..., description="engaged / visitors * 100, 2 dp.")
    sales_rate: Metric = Field(..., description="sales / visitors * 100, 2 dp.")
    aov: Metric = Field(..., description="revenue / sales, 2 dp.")
    epc: Metric = Field(..., description="revenue / visitors, 4 dp.")
    fraud: Metric = Field(
        ...,
        description="Flagged visitors / visitors * 100 at the leaf level; 0 above.",
    )
    children: list[ReportNode] | None = Field(
        None,
        description="Child nodes ordered by visitors descending. Omitted at leaves.",
    )
    links: dict[str, str] = Field(
        default_factory=dict,
        description="Drill-down URLs keyed by detail type (visitors, engaged, sales).",
    )

    @classmethod
    def from_node(cls, node: AggregateNode) -> ReportNode:
        """Convert an engine node (recursively)."""
        return cls(
            id=node.id,
            label=node.label,
            level=node.level,
            dimension=node.dimension.value,
            values=node.dimension_values,
            visitors=node.visitors,
            engaged=node.engaged,
            sales=node.sales,
            revenue=node.revenue,
            engage_rate=node.metrics.engage_rate,
            sales_rate=node.metrics.sales_rate,
            aov=node.metrics.aov,
            epc=node.metrics.epc,
            fraud=node.metrics.fraud,
            children=[cls.from_node(child) for child in node.children] or None,
            links=dict(node.links),
        )


class ReportResponse(BaseModel):
    """Report envelope."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(True, description="Always true for a served report.")
    data: list[ReportNode] = Field(
        default_factory=list,
        description="Flat leaf rows (one dimension) or top-level trees (several).",
    )
    group_by_fields: list[str] = Field(
        default_factory=list,
        alias="groupByFields",
        description="Resolved, ordered grouping dimensions.",
    )
    is_hierarchical: bool = Field(
        False,
        alias="isHierarchical",
        description="True when more than one dimension was requested.",
    )
    truncated: bool = Field(
        False,
        description="True when the fact store had more grouped rows than rowLimit.",
    )
    row_limit: int = Field(
        ...,
        alias="rowLimit",
        description="Maximum number of grouped rows a report reads.",
    )
    message: str | None = Field(
        None,
        description="Explanation when no data could be served (e.g. no tenant).",
    )


# =============================================================================
# Detail listing
# =============================================================================


class DetailType(str, Enum):
    """Which facts a detail listing returns."""

    VISITORS = "visitors"
    ENGAGED = "engaged"
    SALES = "sales"


class DetailRecord(BaseModel):
    """One visit or action in a detail listing."""

    model_config = ConfigDict(from_attributes=True)

    since_visit: str = Field(..., description="Time since the visit, e.g. '3 hours 5 minutes'.")
    visitor_id: str = Field(..., description="Visitor key.")
    page: str | None = Field(None, description="Action page (engaged and sales listings).")
    action_id: str | None = Field(None, description="Action hash or key.")
    total_actions: int = Field(0, ge=0, description="Actions recorded for the visitor.")
    revenue: Metric = Field(Decimal("0"), description="Revenue of the visit or action.")
    channel: str | None = Field(None, description="Traffic channel.")
    subchannel: str | None = Field(None, description="Traffic sub-channel.")
    keyword: str | None = Field(None, description="Keyword / search term.")
    date_created: datetime.datetime = Field(..., description="Visit timestamp (UTC).")


class DetailResponse(BaseModel):
    """Detail listing envelope. ``total`` is not computed and is always -1."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(True, description="Always true for a served listing.")
    data: list[DetailRecord] = Field(default_factory=list, description="Records, newest first.")
    total: int = Field(-1, description="Not computed; always -1.")
    has_more: bool = Field(
        False,
        alias="hasMore",
        description="True when at least one more record exists after this page.",
    )
    limit: int = Field(..., ge=1, description="Page size.")
    offset: int = Field(0, ge=0, description="Records skipped.")
    message: str | None = Field(None, description="Explanation when no data could be served.")
