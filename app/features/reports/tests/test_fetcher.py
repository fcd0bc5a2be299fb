"""Tests for SQL generation of the fact fetcher."""

import datetime
from decimal import Decimal

import pytest
from sqlalchemy.dialects import postgresql

from app.features.reports.catalog import GroupingDimension
from app.features.reports.fetcher import (
    FactFetcherProtocol,
    SqlFactFetcher,
    build_report_statement,
    to_fetch_result,
)
from app.features.reports.planner import DateRange, FilterSpec, MatchType, plan

CHANNEL = GroupingDimension.CHANNEL
COUNTRY = GroupingDimension.COUNTRY


def _compile(query_plan):
    return build_report_statement(query_plan).compile(dialect=postgresql.dialect())


def _plan(params=None, dimensions=(CHANNEL,), match_type=MatchType.ANY, **kwargs):
    return plan(
        FilterSpec.from_params(params or {}, match_type),
        list(dimensions),
        kwargs.pop("date_range", DateRange()),
        **kwargs,
    )


class TestBuildReportStatement:
    """Tests for build_report_statement."""

    def test_selects_dimensions_and_metrics(self) -> None:
        """Test one labelled column per dimension plus the raw metrics."""
        stmt = build_report_statement(_plan(dimensions=(CHANNEL, COUNTRY)))

        names = [col.name for col in stmt.selected_columns]
        assert names == [
            "channel",
            "country",
            "visitors",
            "engaged",
            "sales",
            "revenue",
            "flagged",
        ]

    def test_groups_and_orders_by_position(self) -> None:
        """Test grouping refers to the dimension columns by position."""
        sql = str(_compile(_plan(dimensions=(CHANNEL, COUNTRY))))

        assert "GROUP BY 1, 2" in sql
        assert "ORDER BY visitors DESC, 1 ASC, 2 ASC" in sql

    def test_fetches_one_extra_row(self) -> None:
        """Test the limit is row_limit + 1 to detect truncation."""
        compiled = _compile(_plan(row_limit=25))
        assert 26 in compiled.params.values()

    def test_excludes_bots_by_default(self) -> None:
        """Test bot visits are filtered unless requested."""
        assert "visit.is_bot IS false" in str(_compile(_plan()))
        assert "is_bot" not in str(_compile(_plan(include_bots=True)))

    def test_always_joins_action_and_ip(self) -> None:
        """Test the action and IP relations are always outer-joined."""
        sql = str(_compile(_plan()))

        assert "LEFT OUTER JOIN tenant.action" in sql
        assert "LEFT OUTER JOIN shared.ip" in sql
        assert "shared.device" not in sql

    def test_device_join_when_needed(self) -> None:
        """Test device dimensions add the device join."""
        sql = str(_compile(_plan(dimensions=(GroupingDimension.BROWSER,))))
        assert "LEFT OUTER JOIN shared.device" in sql

    def test_landing_action_join(self) -> None:
        """Test landing page dimensions join the first action."""
        sql = str(_compile(_plan(dimensions=(GroupingDimension.LANDING_PAGE,))))
        assert "LEFT OUTER JOIN tenant.action AS landing_action" in sql
        assert "landing_action.action = " in sql

    def test_any_combines_fields_with_or(self) -> None:
        """Test 'any' joins clauses of different fields with OR."""
        sql = str(_compile(_plan({"channel": "email", "country": "US,CA"})))

        assert "visit.channel IN" in sql
        assert "ip.country IN" in sql
        assert " OR " in sql

    def test_all_combines_fields_with_and(self) -> None:
        """Test 'all' joins clauses with AND."""
        query_plan = _plan({"channel": "email", "country": "US"}, match_type=MatchType.ALL)
        sql = str(_compile(query_plan))

        assert " OR " not in sql.split("WHERE", 1)[1].split("GROUP BY", 1)[0]

    def test_filter_values_are_bound(self) -> None:
        """Test filter values travel as parameters, never inline SQL."""
        compiled = _compile(_plan({"channel": "x'; DROP TABLE visit; --"}))

        assert "DROP TABLE" not in str(compiled)
        assert ["x'; DROP TABLE visit; --"] in compiled.params.values()

    def test_date_bounds(self) -> None:
        """Test inclusive day bounds on the local calendar day."""
        date_range = DateRange(
            start=datetime.date(2024, 1, 1),
            end=datetime.date(2024, 1, 31),
            timezone="America/New_York",
        )
        compiled = _compile(_plan(date_range=date_range))
        sql = str(compiled)

        assert "date(timezone(" in sql
        assert ">=" in sql
        assert "<=" in sql
        assert datetime.date(2024, 1, 1) in compiled.params.values()

    def test_post_date_column(self) -> None:
        """Test usePostDate buckets on the postback timestamp."""
        date_range = DateRange(start=datetime.date(2024, 1, 1), use_post_date=True)
        sql = str(_compile(_plan(date_range=date_range)))
        assert "visit.post_date" in sql


def _records(*visitors):
    return [
        {
            "channel": f"ch{idx}",
            "visitors": count,
            "engaged": 1,
            "sales": 0,
            "revenue": "2.50",
            "flagged": 0,
        }
        for idx, count in enumerate(visitors)
    ]


class TestToFetchResult:
    """Tests for turning result mappings into fact rows."""

    def test_exactly_at_limit_is_not_truncated(self) -> None:
        """Test row_limit rows come back whole and unflagged."""
        result = to_fetch_result(_records(9, 5, 1), _plan(row_limit=3))

        assert result.truncated is False
        assert [r.visitors for r in result.rows] == [9, 5, 1]

    def test_extra_row_marks_truncation(self) -> None:
        """Test the row past the limit sets truncated and is dropped."""
        result = to_fetch_result(_records(9, 5, 1, 1), _plan(row_limit=3))

        assert result.truncated is True
        assert [r.value(CHANNEL) for r in result.rows] == ["ch0", "ch1", "ch2"]

    def test_empty_result(self) -> None:
        """Test no records give no rows and no truncation."""
        result = to_fetch_result([], _plan(row_limit=3))

        assert result.rows == []
        assert result.truncated is False

    def test_metrics_are_carried(self) -> None:
        """Test dimension values and metrics land on the fact row."""
        row = to_fetch_result(_records(4), _plan(row_limit=10)).rows[0]

        assert row.value(CHANNEL) == "ch0"
        assert (row.visitors, row.engaged, row.sales) == (4, 1, 0)
        assert row.revenue == Decimal("2.50")


def test_sql_fetcher_satisfies_protocol() -> None:
    """SqlFactFetcher implements the fetcher protocol."""
    assert isinstance(SqlFactFetcher(engine=None), FactFetcherProtocol)  # type: ignore[arg-type]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_sql_fetcher_against_database(fact_engine) -> None:
    """Round trip through PostgreSQL (requires a running database)."""
    from sqlalchemy import insert

    from app.features.reports.models import Action, Visit, schema_translate_map

    async with fact_engine.begin() as conn:
        conn = await conn.execution_options(schema_translate_map=schema_translate_map("itest"))
        day = datetime.datetime(2024, 1, 2, 10)
        await conn.execute(
            insert(Visit),
            [
                {"pkey": "a", "date_created": day, "channel": "email"},
                {"pkey": "b", "date_created": day, "channel": "email"},
                {"pkey": "c", "date_created": day, "channel": "search"},
            ],
        )
        await conn.execute(
            insert(Action),
            [
                {"id": 1, "pkey": "a", "action": 1, "date_created": day},
                {"id": 2, "pkey": "a", "action": 2, "revenue": 12.5, "date_created": day},
            ],
        )

    fetcher = SqlFactFetcher(fact_engine)
    result = await fetcher.fetch(_plan(row_limit=1), "itest")

    assert result.truncated is True
    assert len(result.rows) == 1
    top = result.rows[0]
    assert top.value(CHANNEL) == "email"
    assert (top.visitors, top.engaged, top.sales) == (2, 1, 1)
