"""Service layer for reports.

Drives one report request through the engine:
tenant -> plan -> fetch -> hierarchy (with derived metrics) -> links.
"""

from __future__ import annotations

import datetime
from collections.abc import Mapping
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.core.exceptions import DatabaseError
from app.core.logging import get_logger, tenant_ctx
from app.features.reports.catalog import GroupingDimension, parse_group_by
from app.features.reports.fetcher import FactFetcherProtocol
from app.features.reports.hierarchy import build_hierarchy
from app.features.reports.links import LinkContext, annotate
from app.features.reports.planner import DateRange, FilterSpec, MatchType, normalize_timezone, plan
from app.features.reports.records import DetailFetcherProtocol, DetailQuery
from app.features.reports.schemas import DetailResponse, DetailType, ReportNode, ReportResponse
from app.features.reports.tenants import Caller, TenantResolverProtocol

logger = get_logger(__name__)

NO_TENANT_MESSAGE = "No domain access configured for this user"


@dataclass(frozen=True)
class ReportRequest:
    """Parsed query parameters of a report request."""

    group_by: str | None = None
    start_date: datetime.date | None = None
    end_date: datetime.date | None = None
    filters: Mapping[str, str | None] = field(default_factory=dict)
    match_type: MatchType = MatchType.ANY
    dkey: str | None = None
    include_bots: bool = False
    use_post_date: bool = False
    timezone: str | None = None


@dataclass(frozen=True)
class DetailRequest:
    """Parsed query parameters of a detail listing request."""

    detail_type: str = DetailType.VISITORS.value
    start_date: datetime.date | None = None
    end_date: datetime.date | None = None
    dimension_params: Mapping[str, str | None] = field(default_factory=dict)
    label: str | None = None
    search: str | None = None
    dkey: str | None = None
    include_bots: bool = False
    use_post_date: bool = False
    timezone: str | None = None
    limit: int = 100
    offset: int = 0


class ReportService:
    """Builds hierarchical reports and their detail listings.

    The fact store and tenant directory are injected, so the service runs
    unchanged against in-memory fakes.
    """

    def __init__(
        self,
        fetcher: FactFetcherProtocol,
        tenants: TenantResolverProtocol,
        details: DetailFetcherProtocol,
        settings: Settings | None = None,
    ) -> None:
        """Initialize with the collaborators of one request."""
        self.fetcher = fetcher
        self.tenants = tenants
        self.details = details
        self.settings = settings or get_settings()

    def _date_range(
        self,
        start: datetime.date | None,
        end: datetime.date | None,
        timezone: str | None,
        caller: Caller,
        use_post_date: bool,
    ) -> DateRange:
        tz = normalize_timezone(
            timezone or caller.timezone,
            default=self.settings.report_default_timezone,
        )
        return DateRange(start=start, end=end, timezone=tz, use_post_date=use_post_date).validate(
            self.settings.report_max_date_range_days
        )

    async def _resolve_tenant(self, caller: Caller, explicit: str | None) -> str | None:
        try:
            tenant = await self.tenants.resolve(caller, explicit)
        except SQLAlchemyError as e:
            logger.error("reports.tenant_lookup_failed", error=str(e), error_type=type(e).__name__)
            raise DatabaseError(message="Tenant lookup failed") from e

        if tenant is None:
            logger.info("reports.no_tenant", user_id=caller.user_id)
        else:
            tenant_ctx.set(tenant)
        return tenant

    async def build_report(self, request: ReportRequest, caller: Caller) -> ReportResponse:
        """Build a report.

        Args:
            request: Parsed report parameters.
            caller: Identity forwarded by the gateway.

        Returns:
            Report envelope. Without a resolvable tenant the envelope is
            successful, empty and carries ``message``.

        Raises:
            BadRequestError: Invalid timezone, date range, tenant key or too
                many dimensions.
            DatabaseError: The fact store or tenant directory failed.
        """
        settings = self.settings
        dimensions = parse_group_by(request.group_by, settings.report_max_group_by)
        date_range = self._date_range(
            request.start_date,
            request.end_date,
            request.timezone,
            caller,
            request.use_post_date,
        )
        envelope = {
            "group_by_fields": [d.value for d in dimensions],
            "is_hierarchical": len(dimensions) > 1,
            "row_limit": settings.report_row_limit,
        }

        tenant = await self._resolve_tenant(caller, request.dkey)
        if tenant is None:
            return ReportResponse(data=[], message=NO_TENANT_MESSAGE, **envelope)

        query_plan = plan(
            FilterSpec.from_params(request.filters, request.match_type),
            dimensions,
            date_range,
            include_bots=request.include_bots,
            row_limit=settings.report_row_limit,
        )

        try:
            result = await self.fetcher.fetch(query_plan, tenant)
        except SQLAlchemyError as e:
            logger.error("reports.fetch_failed", error=str(e), error_type=type(e).__name__)
            raise DatabaseError(message="Report query failed") from e

        nodes = build_hierarchy(result.rows, dimensions)
        annotate(
            nodes,
            dimensions,
            LinkContext(
                base_path=settings.report_detail_path,
                tenant=tenant,
                timezone=date_range.timezone,
                start_date=date_range.start,
                end_date=date_range.end,
            ),
        )

        logger.info(
            "reports.report_built",
            dimensions=envelope["group_by_fields"],
            rows=len(result.rows),
            top_level=len(nodes),
            truncated=result.truncated,
        )

        return ReportResponse(
            data=[ReportNode.from_node(node) for node in nodes],
            truncated=result.truncated,
            **envelope,
        )

    async def list_details(self, request: DetailRequest, caller: Caller) -> DetailResponse:
        """List the records behind one report node.

        Unknown detail types return an empty listing.

        Raises:
            BadRequestError: Invalid timezone, date range or tenant key.
            DatabaseError: The fact store or tenant directory failed.
        """
        page_info = {"limit": request.limit, "offset": request.offset}
        try:
            detail_type = DetailType(request.detail_type)
        except ValueError:
            logger.info("reports.detail_type_unknown", detail_type=request.detail_type)
            return DetailResponse(data=[], **page_info)

        date_range = self._date_range(
            request.start_date,
            request.end_date,
            request.timezone,
            caller,
            request.use_post_date,
        )

        tenant = await self._resolve_tenant(caller, request.dkey)
        if tenant is None:
            return DetailResponse(data=[], message=NO_TENANT_MESSAGE, **page_info)

        dimension_values = {
            dim: value.strip()
            for dim in GroupingDimension
            if (value := request.dimension_params.get(dim.value)) and value.strip()
        }
        query = DetailQuery(
            detail_type=detail_type,
            date_range=date_range,
            dimension_values=dimension_values,
            label=request.label or None,
            search=request.search,
            include_bots=request.include_bots,
            limit=request.limit,
            offset=request.offset,
        )

        try:
            page = await self.details.fetch(query, tenant)
        except SQLAlchemyError as e:
            logger.error("reports.detail_failed", error=str(e), error_type=type(e).__name__)
            raise DatabaseError(message="Detail query failed") from e

        logger.info(
            "reports.details_listed",
            detail_type=detail_type.value,
            filters=sorted(d.value for d in dimension_values),
            records=len(page.records),
            has_more=page.has_more,
        )
        return DetailResponse(data=page.records, has_more=page.has_more, **page_info)
