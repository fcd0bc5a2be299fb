"""Test fixtures for the reports module."""

from decimal import Decimal

import pytest

from app.features.reports.catalog import GroupingDimension
from app.features.reports.fetcher import FetchResult
from app.features.reports.hierarchy import FactRow, make_fact_row
from app.features.reports.planner import QueryPlan
from app.features.reports.records import DetailPage, DetailQuery
from app.features.reports.tenants import Caller


def row(visitors, engaged=0, sales=0, revenue="0", flagged=0, **values) -> FactRow:
    """Build a fact row; keyword arguments name grouping dimensions."""
    return make_fact_row(
        values={GroupingDimension(name): value for name, value in values.items()},
        visitors=visitors,
        engaged=engaged,
        sales=sales,
        revenue=Decimal(revenue),
        flagged=flagged,
    )


class FakeFactFetcher:
    """In-memory fact fetcher recording the plans it receives."""

    def __init__(self, rows=None, truncated=False, error=None):
        self.rows = list(rows or [])
        self.truncated = truncated
        self.error = error
        self.calls: list[tuple[QueryPlan, str]] = []

    async def fetch(self, plan: QueryPlan, tenant: str) -> FetchResult:
        self.calls.append((plan, tenant))
        if self.error is not None:
            raise self.error
        return FetchResult(rows=list(self.rows), truncated=self.truncated)


class FakeTenantResolver:
    """Resolves to a fixed tenant (or none); explicit keys win."""

    def __init__(self, tenant="acme", error=None):
        self.tenant = tenant
        self.error = error
        self.calls: list[tuple[Caller, str | None]] = []

    async def resolve(self, caller: Caller, explicit: str | None = None) -> str | None:
        self.calls.append((caller, explicit))
        if self.error is not None:
            raise self.error
        return explicit or self.tenant


class FakeDetailFetcher:
    """In-memory detail fetcher recording the queries it receives."""

    def __init__(self, page=None):
        self.page = page or DetailPage()
        self.calls: list[tuple[DetailQuery, str]] = []

    async def fetch(self, query: DetailQuery, tenant: str) -> DetailPage:
        self.calls.append((query, tenant))
        return self.page


@pytest.fixture
def channel_country_rows() -> list[FactRow]:
    """Rows of the channel x country worked example."""
    return [
        row(10, engaged=4, sales=1, revenue="50.00", channel="email", country="US"),
        row(6, engaged=3, sales=0, revenue="0", channel="email", country="CA"),
        row(8, engaged=2, sales=2, revenue="20.00", channel="search", country="US"),
    ]


@pytest.fixture
def fact_fetcher(channel_country_rows) -> FakeFactFetcher:
    """Fact fetcher serving the worked example."""
    return FakeFactFetcher(rows=channel_country_rows)


@pytest.fixture
def tenant_resolver() -> FakeTenantResolver:
    """Resolver returning tenant 'acme'."""
    return FakeTenantResolver()


@pytest.fixture
def detail_fetcher() -> FakeDetailFetcher:
    """Detail fetcher returning an empty page."""
    return FakeDetailFetcher()


@pytest.fixture
def make_row():
    """Factory for fact rows; keyword arguments name grouping dimensions."""
    return row


@pytest.fixture
def fake_fetcher_factory():
    """Factory for fact fetchers serving arbitrary rows."""
    return FakeFactFetcher


@pytest.fixture
def fake_resolver_factory():
    """Factory for tenant resolvers."""
    return FakeTenantResolver
