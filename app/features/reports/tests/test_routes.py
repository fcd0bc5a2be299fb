"""Tests for the report HTTP routes (service collaborators faked)."""

import datetime

import pytest
from httpx import AsyncClient

from app.features.reports.catalog import FilterField, GroupingDimension
from app.features.reports.planner import MatchType
from app.features.reports.records import DetailPage
from app.features.reports.routes import get_report_service
from app.features.reports.schemas import DetailRecord
from app.features.reports.service import NO_TENANT_MESSAGE, ReportService
from app.main import app


@pytest.fixture
def install_service(fact_fetcher, tenant_resolver, detail_fetcher):
    """Route requests to a report service over in-memory collaborators."""

    def install(fetcher=None, tenants=None, details=None) -> ReportService:
        service = ReportService(
            fetcher=fetcher or fact_fetcher,
            tenants=tenants or tenant_resolver,
            details=details or detail_fetcher,
        )
        app.dependency_overrides[get_report_service] = lambda: service
        return service

    yield install
    app.dependency_overrides.clear()


class TestReportRoute:
    """Tests for GET /api/analytics/report."""

    @pytest.mark.asyncio
    async def test_envelope_uses_camel_case(self, client: AsyncClient, install_service) -> None:
        """Test the envelope keys and the omitted optional fields."""
        install_service()

        response = await client.get(
            "/api/analytics/report",
            params={"groupBy": "channel,country", "startDate": "2024-01-01"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["groupByFields"] == ["channel", "country"]
        assert body["isHierarchical"] is True
        assert body["truncated"] is False
        assert body["rowLimit"] == 1000
        assert "message" not in body

    @pytest.mark.asyncio
    async def test_tree_serialization(self, client: AsyncClient, install_service) -> None:
        """Test parents hold children, leaves omit them and metrics are numbers."""
        install_service()

        response = await client.get("/api/analytics/report", params={"groupBy": "channel,country"})

        email = response.json()["data"][0]
        assert email["label"] == "email"
        assert email["visitors"] == 16
        assert email["revenue"] == 50.0
        assert email["engage_rate"] == 43.75
        assert email["fraud"] == 0
        leaf = email["children"][0]
        assert leaf["values"] == {"channel": "email", "country": "US"}
        assert "children" not in leaf
        assert set(leaf["links"]) == {"visitors", "engaged", "sales"}

    @pytest.mark.asyncio
    async def test_query_parameters_reach_plan(
        self, client: AsyncClient, install_service, fact_fetcher
    ) -> None:
        """Test filters, match policy and flags are parsed from the query string."""
        install_service()

        await client.get(
            "/api/analytics/report",
            params={
                "groupBy": "os",
                "country": "US,CA",
                "page_action": "checkout",
                "matchType": "all",
                "includeBots": "true",
                "usePostDate": "true",
                "timezone": "-0330",
            },
        )

        plan, _ = fact_fetcher.calls[0]
        assert plan.dimensions == (GroupingDimension.OS,)
        assert [c.field for c in plan.clauses] == [FilterField.COUNTRY, FilterField.PAGE_ACTION]
        assert plan.connector is MatchType.ALL
        assert plan.include_bots is True
        assert plan.date_range.use_post_date is True
        assert plan.date_range.timezone == "-03:30"

    @pytest.mark.asyncio
    async def test_caller_headers(
        self, client: AsyncClient, install_service, tenant_resolver, fact_fetcher
    ) -> None:
        """Test the gateway headers become the caller identity."""
        install_service()

        await client.get(
            "/api/analytics/report",
            headers={"X-User-ID": "9", "X-User-Timezone": "Asia/Tokyo"},
        )

        caller, explicit = tenant_resolver.calls[0]
        assert caller.user_id == 9
        assert explicit is None
        plan, _ = fact_fetcher.calls[0]
        assert plan.date_range.timezone == "Asia/Tokyo"

    @pytest.mark.asyncio
    async def test_no_tenant_message(
        self, client: AsyncClient, install_service, fake_resolver_factory
    ) -> None:
        """Test a caller without tenant gets an empty report with a message."""
        install_service(tenants=fake_resolver_factory(tenant=None))

        response = await client.get("/api/analytics/report")

        assert response.status_code == 200
        body = response.json()
        assert body["data"] == []
        assert body["message"] == NO_TENANT_MESSAGE

    @pytest.mark.asyncio
    async def test_too_many_dimensions(self, client: AsyncClient, install_service) -> None:
        """Test more than five dimensions is a problem response."""
        install_service()

        response = await client.get(
            "/api/analytics/report",
            params={"groupBy": "channel,country,os,browser,hour,date"},
        )

        assert response.status_code == 400
        assert response.headers["content-type"].startswith("application/problem+json")

    @pytest.mark.asyncio
    async def test_reversed_dates(self, client: AsyncClient, install_service) -> None:
        """Test an end date before the start date is rejected."""
        install_service()

        response = await client.get(
            "/api/analytics/report",
            params={"startDate": "2024-02-01", "endDate": "2024-01-01"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_match_type(self, client: AsyncClient, install_service) -> None:
        """Test an unknown matchType fails validation."""
        install_service()

        response = await client.get("/api/analytics/report", params={"matchType": "some"})

        assert response.status_code == 422


class TestDetailRoute:
    """Tests for GET /api/analytics/detail."""

    @pytest.mark.asyncio
    async def test_paging_envelope(
        self, client: AsyncClient, install_service, detail_fetcher
    ) -> None:
        """Test records, hasMore and the uncomputed total."""
        detail_fetcher.page = DetailPage(
            records=[
                DetailRecord(
                    since_visit="2 days",
                    visitor_id="v1",
                    revenue="12.50",
                    date_created=datetime.datetime(2024, 1, 1, 8, 30),
                )
            ],
            has_more=True,
        )
        install_service()

        response = await client.get(
            "/api/analytics/detail",
            params={"type": "sales", "limit": 1, "offset": 3},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["hasMore"] is True
        assert body["total"] == -1
        assert (body["limit"], body["offset"]) == (1, 3)
        assert body["data"][0]["visitor_id"] == "v1"
        assert body["data"][0]["revenue"] == 12.5

    @pytest.mark.asyncio
    async def test_dimension_parameters(
        self, client: AsyncClient, install_service, detail_fetcher
    ) -> None:
        """Test any grouping dimension in the query string filters the listing."""
        install_service()

        await client.get(
            "/api/analytics/detail",
            params={"type": "engaged", "channel": "email", "hour": "13", "dkey": "acme"},
        )

        query, tenant = detail_fetcher.calls[0]
        assert tenant == "acme"
        assert query.dimension_values == {
            GroupingDimension.CHANNEL: "email",
            GroupingDimension.HOUR: "13",
        }

    @pytest.mark.asyncio
    async def test_limit_defaults_and_cap(
        self, client: AsyncClient, install_service, detail_fetcher
    ) -> None:
        """Test the default page size and the maximum page size."""
        install_service()

        await client.get("/api/analytics/detail")
        await client.get("/api/analytics/detail", params={"limit": 50000})

        assert [query.limit for query, _ in detail_fetcher.calls] == [100, 1000]

    @pytest.mark.asyncio
    async def test_unknown_type(self, client: AsyncClient, install_service, detail_fetcher) -> None:
        """Test an unknown detail type yields an empty listing."""
        install_service()

        response = await client.get("/api/analytics/detail", params={"type": "bounces"})

        assert response.status_code == 200
        assert response.json()["data"] == []
        assert detail_fetcher.calls == []

    @pytest.mark.asyncio
    async def test_invalid_limit(self, client: AsyncClient, install_service) -> None:
        """Test a zero page size fails validation."""
        install_service()

        response = await client.get("/api/analytics/detail", params={"limit": 0})

        assert response.status_code == 422
