"""API routes for hierarchical reports and their detail listings."""

from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request

from app.core.config import get_settings
from app.core.database import get_engine
from app.core.logging import get_logger
from app.features.reports.fetcher import SqlFactFetcher
from app.features.reports.planner import MatchType
from app.features.reports.records import SqlDetailFetcher
from app.features.reports.schemas import DetailResponse, ReportResponse
from app.features.reports.service import DetailRequest, ReportRequest, ReportService
from app.features.reports.tenants import Caller, SqlTenantResolver

logger = get_logger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["reports"])


def get_report_service() -> ReportService:
    """Get report service instance backed by the fact store."""
    engine = get_engine()
    return ReportService(
        fetcher=SqlFactFetcher(engine),
        tenants=SqlTenantResolver(engine),
        details=SqlDetailFetcher(engine),
    )


def get_caller(
    user_id: int | None = Header(None, alias="X-User-ID"),
    user_timezone: str | None = Header(None, alias="X-User-Timezone"),
) -> Caller:
    """Caller identity forwarded by the gateway (anonymous when absent)."""
    return Caller(user_id=user_id, timezone=user_timezone or None)


# =============================================================================
# Report
# =============================================================================


@router.get(
    "/report",
    response_model=ReportResponse,
    response_model_exclude_none=True,
    summary="Build a hierarchical traffic report",
    description="""
Group visit and action facts by up to five dimensions and return a tree of
aggregates with derived rates and drill-down links.

**Grouping**:
- `groupBy`: comma-separated dimensions, outermost first (default `channel`).
  Unknown names fall back to `channel`.
- One dimension returns a flat list of rows; several return trees whose
  parents hold the sums of their children.

**Filtering**:
- `channel`, `subchannel`, `country`, `keyword`, `iporg`, `page_action`:
  comma-separated values.
- `matchType`: `any` (OR across every active filter) or `all` (AND).
- Dates are inclusive calendar days in `timezone`.

**Metrics per node**: `visitors`, `engaged`, `sales`, `revenue`,
`engage_rate`, `sales_rate`, `aov`, `epc`, `fraud` (leaf level only).

**Example Use Cases**:
1. Channel overview: `GET /api/analytics/report?startDate=2024-01-01&endDate=2024-01-31`
2. Channel by country: `GET /api/analytics/report?groupBy=channel,country&startDate=2024-01-01&endDate=2024-01-31`
""",
)
async def get_report(
    service: Annotated[ReportService, Depends(get_report_service)],
    caller: Annotated[Caller, Depends(get_caller)],
    start_date: date | None = Query(
        None,
        alias="startDate",
        description="First day included (YYYY-MM-DD).",
    ),
    end_date: date | None = Query(
        None,
        alias="endDate",
        description="Last day included (YYYY-MM-DD).",
    ),
    group_by: str | None = Query(
        None,
        alias="groupBy",
        description="Comma-separated grouping dimensions, outermost first.",
    ),
    match_type: MatchType = Query(
        MatchType.ANY,
        alias="matchType",
        description="How filters combine: any (OR) or all (AND).",
    ),
    channel: str | None = Query(None, description="Channel filter (comma-separated)."),
    subchannel: str | None = Query(None, description="Sub-channel filter (comma-separated)."),
    country: str | None = Query(None, description="Country code filter (comma-separated)."),
    keyword: str | None = Query(None, description="Keyword filter (comma-separated)."),
    iporg: str | None = Query(None, description="IP organisation filter (comma-separated)."),
    page_action: str | None = Query(None, description="Action page filter (comma-separated)."),
    dkey: str | None = Query(
        None,
        description="Tenant key. Defaults to the caller's first authorized tenant.",
    ),
    include_bots: bool = Query(
        False,
        alias="includeBots",
        description="Include visits flagged as bots.",
    ),
    use_post_date: bool = Query(
        False,
        alias="usePostDate",
        description="Bucket dates on the postback timestamp instead of the visit.",
    ),
    timezone: str | None = Query(
        None,
        description="UTC offset (+05:00) or IANA zone. Defaults to the caller's preference.",
    ),
) -> ReportResponse:
    """Build a report for the caller's tenant.

    Args:
        service: Report service.
        caller: Forwarded caller identity.
        start_date: First day included.
        end_date: Last day included.
        group_by: Grouping dimensions.
        match_type: Filter match policy.
        channel: Channel filter.
        subchannel: Sub-channel filter.
        country: Country filter.
        keyword: Keyword filter.
        iporg: IP organisation filter.
        page_action: Action page filter.
        dkey: Explicit tenant key.
        include_bots: Keep bot visits.
        use_post_date: Bucket on the postback timestamp.
        timezone: Request timezone.

    Returns:
        Report envelope.
    """
    request = ReportRequest(
        group_by=group_by,
        start_date=start_date,
        end_date=end_date,
        filters={
            "channel": channel,
            "subchannel": subchannel,
            "country": country,
            "keyword": keyword,
            "iporg": iporg,
            "page_action": page_action,
        },
        match_type=match_type,
        dkey=dkey,
        include_bots=include_bots,
        use_post_date=use_post_date,
        timezone=timezone,
    )
    return await service.build_report(request, caller)


# =============================================================================
# Detail listing
# =============================================================================


@router.get(
    "/detail",
    response_model=DetailResponse,
    summary="List the records behind a report node",
    description="""
Target of the drill-down links attached to every report node.

**Types**: `visitors` (one row per visit), `engaged` (second actions),
`sales` (actions with revenue). Any other type returns no records.

**Slice**: every grouping dimension name (`channel`, `country`, `hour`, ...)
is accepted as an equality filter. `label` filters on the landing page
(`<page> - Variant: <variant>` or a page name) when no dimension is given.

**Paging**: `limit` / `offset`; `hasMore` tells whether another page exists.
`total` is not computed and is always -1.
""",
)
async def get_detail(
    http_request: Request,
    service: Annotated[ReportService, Depends(get_report_service)],
    caller: Annotated[Caller, Depends(get_caller)],
    detail_type: str = Query(
        "visitors",
        alias="type",
        description="visitors, engaged or sales.",
    ),
    start_date: date | None = Query(None, alias="startDate", description="First day included."),
    end_date: date | None = Query(None, alias="endDate", description="Last day included."),
    label: str | None = Query(None, description="Landing page filter."),
    search: str | None = Query(
        None,
        description="Substring of the visitor id, channel or sub-channel.",
    ),
    dkey: str | None = Query(None, description="Tenant key."),
    include_bots: bool = Query(False, alias="includeBots", description="Include bot visits."),
    use_post_date: bool = Query(
        False,
        alias="usePostDate",
        description="Filter dates on the postback timestamp.",
    ),
    timezone: str | None = Query(None, description="UTC offset or IANA zone."),
    limit: int | None = Query(None, ge=1, description="Page size."),
    offset: int = Query(0, ge=0, description="Records to skip."),
) -> DetailResponse:
    """List detail records for one slice of a report.

    Dimension filters are read from the raw query string because every
    grouping dimension name is a valid parameter.
    """
    settings = get_settings()
    page_size = min(limit or settings.detail_default_limit, settings.detail_max_limit)

    request = DetailRequest(
        detail_type=detail_type,
        start_date=start_date,
        end_date=end_date,
        dimension_params=dict(http_request.query_params),
        label=label,
        search=search,
        dkey=dkey,
        include_bots=include_bots,
        use_post_date=use_post_date,
        timezone=timezone,
        limit=page_size,
        offset=offset,
    )
    return await service.list_details(request, caller)
