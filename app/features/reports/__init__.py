"""Reports module: hierarchical traffic reports with drill-down links.

Groups visit and action facts by up to five dimensions, folds them into a
tree of additive aggregates with derived rates, and links every node to the
detail records behind it.
"""

from app.features.reports.catalog import GroupingDimension
from app.features.reports.hierarchy import AggregateNode, build_hierarchy
from app.features.reports.routes import router
from app.features.reports.schemas import DetailResponse, ReportResponse
from app.features.reports.service import ReportService

__all__ = [
    "AggregateNode",
    "DetailResponse",
    "GroupingDimension",
    "ReportResponse",
    "ReportService",
    "build_hierarchy",
    "router",
]
