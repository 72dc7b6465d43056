"""
Unit tests for nested grouping, validation, derived metrics and rollups
"""

import pytest
from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock

from core.exceptions import ValidationError
from models.base import PeriodType
from pipeline.transformers.nested_transformer import NestedDataTransformer, safe_divide
from pipeline.transformers.period_rollup import PeriodRollup
from schemas.sync import WriteResult
from schemas.warehouse import (
    ClickData,
    ImpressionData,
    PurchaseData,
    SearchQueryData,
)

START = date(2024, 1, 1)
END = date(2024, 1, 14)


@pytest.fixture
def transformer():
    return NestedDataTransformer()


class TestGrouping:

    def test_rows_group_by_asin_window(self, transformer, make_row):
        rows = [
            make_row(asin="B0TEST0001", query="earbuds"),
            make_row(asin="B0TEST0001", query="headphones"),
            make_row(asin="B0TEST0002", query="earbuds"),
            make_row(asin="B0TEST0001", query="earbuds",
                     period_start=date(2024, 1, 8), period_end=date(2024, 1, 14)),
        ]

        nested = transformer.group_rows(rows, PeriodType.WEEKLY, START, END)

        assert len(nested.entities) == 3
        assert nested.total_query_records == 4
        first = nested.entities[0]
        assert (first.asin, first.start_date, first.end_date) == ("B0TEST0001", date(2024, 1, 1), date(2024, 1, 7))
        assert [q.search_query for q in first.search_query_data] == ["earbuds", "headphones"]

    def test_row_values_map_onto_funnel_objects(self, transformer, make_row):
        nested = transformer.group_rows(
            [make_row(impressions=1200, clicks=60, cart_adds=12, purchases=3)],
            PeriodType.WEEKLY, START, END,
        )
        query = nested.entities[0].search_query_data[0]

        assert query.impression_data.asin_impression_count == 1200
        assert query.impression_data.total_query_impression_count == 12000
        assert query.click_data.asin_click_count == 60
        assert query.click_data.asin_median_click_price == 22.5
        assert query.cart_add_data.asin_cart_add_count == 12
        assert query.purchase_data.asin_purchase_count == 3
        assert query.query_totals.impressions == 12000

    def test_string_and_datetime_values_are_parsed(self, transformer, make_row):
        row = make_row(
            period_start=datetime(2024, 1, 1, 0, 0),
            period_end="2024-01-07",
            asin_click_count="10.0",
        )

        nested = transformer.group_rows([row], PeriodType.WEEKLY, START, END)
        entity = nested.entities[0]

        assert entity.start_date == date(2024, 1, 1)
        assert entity.end_date == date(2024, 1, 7)
        assert entity.search_query_data[0].click_data.asin_click_count == 10

    def test_missing_funnel_columns_leave_object_empty(self, transformer, make_row):
        row = make_row()
        for key in ("asin_purchase_count", "total_purchase_count"):
            row.pop(key)

        nested = transformer.group_rows([row], PeriodType.WEEKLY, START, END)

        assert nested.entities[0].search_query_data[0].purchase_data is None

    def test_empty_rows(self, transformer):
        nested = transformer.group_rows([], PeriodType.WEEKLY, START, END)

        assert nested.entities == []
        assert nested.total_query_records == 0


class TestValidation:

    def test_valid_structure(self, transformer, make_row):
        nested = transformer.group_rows([make_row()], PeriodType.WEEKLY, START, END)

        result = transformer.validate_nested_data(nested)

        assert result.is_valid
        assert result.errors == []
        assert result.entity_count == 1
        assert result.query_record_count == 1

    def test_missing_asin_and_inverted_window(self, transformer, make_row):
        rows = [
            make_row(asin=""),
            make_row(asin="B0TEST0002", period_start=date(2024, 1, 7), period_end=date(2024, 1, 1)),
        ]
        nested = transformer.group_rows(rows, PeriodType.WEEKLY, START, END)

        result = transformer.validate_nested_data(nested)

        assert not result.is_valid
        assert any("missing ASIN" in e for e in result.errors)
        assert any("start_date after end_date" in e for e in result.errors)

    def test_duplicate_query_and_missing_funnel(self, transformer, make_row):
        broken = make_row(query="earbuds")
        broken.pop("asin_click_count")
        broken.pop("total_click_count")
        nested = transformer.group_rows(
            [make_row(query="earbuds"), broken], PeriodType.WEEKLY, START, END
        )

        result = transformer.validate_nested_data(nested)

        assert any("duplicate search query" in e for e in result.errors)
        assert any("missing click_data" in e for e in result.errors)

    def test_ensure_valid_raises(self, transformer, make_row):
        nested = transformer.group_rows([make_row(query="")], PeriodType.WEEKLY, START, END)

        with pytest.raises(ValidationError) as exc_info:
            transformer.ensure_valid(nested)

        assert "1 errors" in exc_info.value.message
        assert exc_info.value.context["entity_groups"] == 1


class TestDerivedMetrics:

    def test_ratios(self):
        query = SearchQueryData(
            search_query="earbuds",
            impression_data=ImpressionData(asin_impression_count=1000),
            click_data=ClickData(asin_click_count=100),
            purchase_data=PurchaseData(asin_purchase_count=10),
        )

        metrics = NestedDataTransformer.calculate_derived_metrics(query)

        assert metrics.click_through_rate == pytest.approx(0.1)
        assert metrics.conversion_rate == pytest.approx(0.1)
        assert metrics.funnel_completion_rate == pytest.approx(0.01)
        # No cart add data
        assert metrics.cart_to_click_rate == 0.0
        assert metrics.purchase_to_cart_rate == 0.0

    def test_zero_denominators_yield_zero(self):
        query = SearchQueryData(
            search_query="earbuds",
            impression_data=ImpressionData(asin_impression_count=0),
            click_data=ClickData(asin_click_count=0),
        )

        metrics = NestedDataTransformer.calculate_derived_metrics(query)

        assert metrics.click_through_rate == 0.0
        assert metrics.conversion_rate == 0.0

    def test_safe_divide(self):
        assert safe_divide(5, 0) == 0.0
        assert safe_divide(5, None) == 0.0
        assert safe_divide(None, 4) == 0.0
        assert safe_divide(1, 4) == 0.25


class TestTransformAndSync:

    @pytest.mark.asyncio
    async def test_enriches_then_delegates_to_loader(self, make_row):
        loader = MagicMock()
        loader.write = AsyncMock(return_value=WriteResult(query_records_written=1))
        transformer = NestedDataTransformer(loader)
        nested = transformer.group_rows([make_row()], PeriodType.WEEKLY, START, END)

        result = await transformer.transform_and_sync(nested, sync_run_id=7)

        assert result.query_records_written == 1
        loader.write.assert_awaited_once_with(nested, 7)
        assert nested.entities[0].search_query_data[0].derived_metrics.click_through_rate == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_invalid_structure_never_reaches_loader(self, make_row):
        loader = MagicMock()
        loader.write = AsyncMock()
        transformer = NestedDataTransformer(loader)
        nested = transformer.group_rows([make_row(asin="")], PeriodType.WEEKLY, START, END)

        with pytest.raises(ValidationError):
            await transformer.transform_and_sync(nested, sync_run_id=7)

        loader.write.assert_not_awaited()


class TestPeriodRollup:

    @staticmethod
    def weekly(period_start, impressions, clicks, cart_adds=0, purchases=0, query="earbuds", asin="B0TEST0001"):
        return {
            "period_start": period_start,
            "query": query,
            "asin": asin,
            "total_impressions": impressions,
            "total_clicks": clicks,
            "total_cart_adds": cart_adds,
            "total_purchases": purchases,
            "query_total_impressions": impressions * 4,
            "query_total_clicks": clicks * 2,
            "query_total_cart_adds": cart_adds * 2,
            "query_total_purchases": purchases * 2,
        }

    def test_monthly_rollup_recomputes_rates_from_totals(self):
        rows = [
            self.weekly(date(2024, 1, 1), 3000, 300),
            self.weekly(date(2024, 1, 8), 4000, 400),
        ]

        records = PeriodRollup().rollup(rows, PeriodType.MONTHLY, sync_run_id=3)

        assert len(records) == 1
        record = records[0]
        assert record["total_impressions"] == 7000
        assert record["total_clicks"] == 700
        assert record["active_weeks"] == 2
        assert record["avg_ctr"] == pytest.approx(0.1)
        assert (record["year"], record["month"]) == (2024, 1)
        assert (record["period_start"], record["period_end"]) == (date(2024, 1, 1), date(2024, 1, 31))
        assert record["sync_run_id"] == 3

    def test_ctr_is_not_the_mean_of_weekly_rates(self):
        rows = [
            self.weekly(date(2024, 1, 1), 1000, 500),    # 50% CTR
            self.weekly(date(2024, 1, 8), 9000, 0),      # 0% CTR
        ]

        record = PeriodRollup().rollup(rows, PeriodType.MONTHLY)[0]

        assert record["avg_ctr"] == pytest.approx(0.05)

    def test_shares_recomputed_from_summed_denominators(self):
        rows = [
            self.weekly(date(2024, 1, 1), 3000, 300),
            self.weekly(date(2024, 1, 8), 4000, 400),
        ]

        record = PeriodRollup().rollup(rows, PeriodType.QUARTERLY)[0]

        assert record["quarter"] == 1
        assert record["impression_share"] == pytest.approx(7000 / 28000)
        assert record["click_share"] == pytest.approx(0.5)

    def test_dispersion(self):
        rows = [
            self.weekly(date(2024, 1, 1), 3000, 300),
            self.weekly(date(2024, 1, 8), 4000, 400),
        ]

        record = PeriodRollup().rollup(rows, PeriodType.YEARLY)[0]

        assert record["min_impressions"] == 3000
        assert record["max_impressions"] == 4000
        assert record["avg_impressions"] == pytest.approx(3500)
        assert record["stddev_impressions"] == pytest.approx(707.1067811865476)

    def test_single_week_has_no_stddev(self):
        record = PeriodRollup().rollup([self.weekly(date(2024, 1, 1), 3000, 300)], PeriodType.MONTHLY)[0]

        assert record["active_weeks"] == 1
        assert record["stddev_impressions"] is None

    def test_groups_split_by_bucket_query_and_asin(self):
        rows = [
            self.weekly(date(2024, 1, 29), 100, 10),
            self.weekly(date(2024, 2, 5), 100, 10),
            self.weekly(date(2024, 2, 5), 100, 10, query="headphones"),
            self.weekly(date(2024, 2, 5), 100, 10, asin="B0TEST0002"),
        ]

        records = PeriodRollup().rollup(rows, PeriodType.MONTHLY)

        assert len(records) == 4
        assert [(r["month"], r["query"], r["asin"]) for r in records] == [
            (1, "earbuds", "B0TEST0001"),
            (2, "earbuds", "B0TEST0001"),
            (2, "headphones", "B0TEST0001"),
            (2, "earbuds", "B0TEST0002"),
        ]

    def test_weekly_target_is_rejected(self):
        with pytest.raises(ValueError):
            PeriodRollup().rollup([], PeriodType.WEEKLY)
