"""
Parametrized BigQuery aggregation statements per period type.

The builder is pure: identical inputs always produce textually identical
SQL, so it can be tested without a warehouse. Only named, escaped source
columns are referenced.
"""

from dataclasses import dataclass
from datetime import date
from typing import List, Tuple, Any

from core.exceptions import ConfigurationError
from models.base import PeriodType
from pipeline.asin_filter import AsinFilter, AllAsins

DATE = "`Date`"
ASIN = "`Child ASIN`"
QUERY = "`Search Query`"
ASIN_IMPRESSIONS = "`ASIN Impression Count`"
ASIN_CLICKS = "`ASIN Click Count`"
ASIN_CART_ADDS = "`ASIN Cart Add Count`"
ASIN_PURCHASES = "`ASIN Purchase Count`"
TOTAL_IMPRESSIONS = "`Total Query Impression Count`"
TOTAL_CLICKS = "`Total Click Count`"
TOTAL_CART_ADDS = "`Total Cart Add Count`"
TOTAL_PURCHASES = "`Total Purchase Count`"

# (output alias, aggregate expression over the source table)
SUMMED_COLUMNS: List[Tuple[str, str]] = [
    ("search_query_volume", "SUM(`Search Query Volume`)"),
    ("total_query_impression_count", f"SUM({TOTAL_IMPRESSIONS})"),
    ("asin_impression_count", f"SUM({ASIN_IMPRESSIONS})"),
    ("total_click_count", f"SUM({TOTAL_CLICKS})"),
    ("asin_click_count", f"SUM({ASIN_CLICKS})"),
    ("total_same_day_shipping_click_count", "SUM(`Total Same Day Shipping Click Count`)"),
    ("total_one_day_shipping_click_count", "SUM(`Total One Day Shipping Click Count`)"),
    ("total_two_day_shipping_click_count", "SUM(`Total Two Day Shipping Click Count`)"),
    ("total_cart_add_count", f"SUM({TOTAL_CART_ADDS})"),
    ("asin_cart_add_count", f"SUM({ASIN_CART_ADDS})"),
    ("total_same_day_shipping_cart_add_count", "SUM(`Total Same Day Shipping Cart Add Count`)"),
    ("total_one_day_shipping_cart_add_count", "SUM(`Total One Day Shipping Cart Add Count`)"),
    ("total_two_day_shipping_cart_add_count", "SUM(`Total Two Day Shipping Cart Add Count`)"),
    ("total_purchase_count", f"SUM({TOTAL_PURCHASES})"),
    ("asin_purchase_count", f"SUM({ASIN_PURCHASES})"),
    ("total_same_day_shipping_purchase_count", "SUM(`Total Same Day Shipping Purchase Count`)"),
    ("total_one_day_shipping_purchase_count", "SUM(`Total One Day Shipping Purchase Count`)"),
    ("total_two_day_shipping_purchase_count", "SUM(`Total Two Day Shipping Purchase Count`)"),
]

PRICE_COLUMNS: List[Tuple[str, str]] = [
    ("total_median_click_price", "AVG(`Total Median Click Price Amount`)"),
    ("asin_median_click_price", "AVG(`ASIN Median Click Price Amount`)"),
    ("total_median_cart_add_price", "AVG(`Total Median Cart Add Price Amount`)"),
    ("asin_median_cart_add_price", "AVG(`ASIN Median Cart Add Price Amount`)"),
    ("total_median_purchase_price", "AVG(`Total Median Purchase Price Amount`)"),
    ("asin_median_purchase_price", "AVG(`ASIN Median Purchase Price Amount`)"),
]

MARKET_RATE_COLUMNS: List[Tuple[str, str]] = [
    ("total_click_rate", f"SAFE_DIVIDE(SUM({TOTAL_CLICKS}), SUM({TOTAL_IMPRESSIONS}))"),
    ("total_cart_add_rate", f"SAFE_DIVIDE(SUM({TOTAL_CART_ADDS}), SUM({TOTAL_CLICKS}))"),
    ("total_purchase_rate", f"SAFE_DIVIDE(SUM({TOTAL_PURCHASES}), SUM({TOTAL_CLICKS}))"),
]

ASIN_RATE_COLUMNS: List[Tuple[str, str]] = [
    ("click_through_rate", f"SAFE_DIVIDE(SUM({ASIN_CLICKS}), SUM({ASIN_IMPRESSIONS}))"),
    ("conversion_rate", f"SAFE_DIVIDE(SUM({ASIN_PURCHASES}), SUM({ASIN_CLICKS}))"),
    ("purchases_per_impression", f"SAFE_DIVIDE(SUM({ASIN_PURCHASES}), SUM({ASIN_IMPRESSIONS}))"),
]

TOTALS_ALIAS = "query_totals"

# (share alias, denominator alias, ASIN-level source column)
SHARE_COLUMNS: List[Tuple[str, str, str]] = [
    ("asin_impression_share", "query_total_impressions", ASIN_IMPRESSIONS),
    ("asin_click_share", "query_total_clicks", ASIN_CLICKS),
    ("asin_cart_add_share", "query_total_cart_adds", ASIN_CART_ADDS),
    ("asin_purchase_share", "query_total_purchases", ASIN_PURCHASES),
]

DISPERSION_COLUMNS: List[Tuple[str, str]] = [
    ("min_impressions", f"MIN({ASIN_IMPRESSIONS})"),
    ("max_impressions", f"MAX({ASIN_IMPRESSIONS})"),
    ("avg_impressions", f"AVG({ASIN_IMPRESSIONS})"),
    ("stddev_impressions", f"STDDEV({ASIN_IMPRESSIONS})"),
]

WEEK_START = f"DATE_TRUNC({DATE}, WEEK(MONDAY))"

# Group expression, then the aggregated companions emitted for each period type.
# Coarser periods bucket whole Monday-start weeks by the day each week starts.
PERIOD_GROUP_EXPRESSIONS = {
    PeriodType.WEEKLY: WEEK_START,
    PeriodType.MONTHLY: f"DATE_TRUNC({WEEK_START}, MONTH)",
    PeriodType.QUARTERLY: f"DATE_TRUNC({WEEK_START}, QUARTER)",
    PeriodType.YEARLY: f"DATE_TRUNC({WEEK_START}, YEAR)",
}

PERIOD_COMPANION_COLUMNS = {
    PeriodType.WEEKLY: [
        ("period_end", f"DATE_ADD(MIN({WEEK_START}), INTERVAL 6 DAY)"),
    ],
    PeriodType.MONTHLY: [
        ("period_end", f"LAST_DAY(MIN({WEEK_START}), MONTH)"),
        ("year", f"EXTRACT(YEAR FROM MIN({WEEK_START}))"),
        ("month", f"EXTRACT(MONTH FROM MIN({WEEK_START}))"),
    ],
    PeriodType.QUARTERLY: [
        ("period_end", f"LAST_DAY(MIN({WEEK_START}), QUARTER)"),
        ("year", f"EXTRACT(YEAR FROM MIN({WEEK_START}))"),
        ("quarter", f"EXTRACT(QUARTER FROM MIN({WEEK_START}))"),
    ],
    PeriodType.YEARLY: [
        ("period_end", f"LAST_DAY(MIN({WEEK_START}), YEAR)"),
        ("year", f"EXTRACT(YEAR FROM MIN({WEEK_START}))"),
    ],
}


@dataclass(frozen=True)
class AggregationQuery:
    """SQL text plus its named scalar parameters: (name, type, value)"""
    sql: str
    parameters: Tuple[Tuple[str, str, Any], ...]


class AggregationQueryBuilder:
    """
    Builds one aggregation statement per (period type, window, ASIN filter).

    Output grouping: (period_start, search_query, asin). Shares divide the
    ASIN's summed metric by the summed metric of every ASIN for the same
    query and period. Those totals come from the query_totals CTE, which
    applies only the date window, so an ASIN filter narrows the returned
    rows but never the share denominators.
    """

    def __init__(self, project_id: str, dataset: str, table: str):
        for label, value in (("project_id", project_id), ("dataset", dataset), ("table", table)):
            if not value or "`" in value:
                raise ConfigurationError(
                    f"Invalid warehouse {label}: {value!r}",
                    context={label: value}
                )
        self.project_id = project_id
        self.dataset = dataset
        self.table = table

    @property
    def table_ref(self) -> str:
        return f"`{self.project_id}.{self.dataset}.{self.table}`"

    def build(
        self,
        period_type: PeriodType,
        start_date: date,
        end_date: date,
        asin_filter: AsinFilter = None,
    ) -> AggregationQuery:
        if start_date > end_date:
            raise ConfigurationError(
                "start_date must not be after end_date",
                context={"start_date": str(start_date), "end_date": str(end_date)}
            )

        period_type = PeriodType(period_type)
        asin_filter = asin_filter or AllAsins()
        group_expression = PERIOD_GROUP_EXPRESSIONS[period_type]
        window_predicate = f"{DATE} BETWEEN @start_date AND @end_date"

        select_lines = [
            f"{group_expression} AS period_start",
        ]
        select_lines += [f"{expr} AS {alias}" for alias, expr in PERIOD_COMPANION_COLUMNS[period_type]]
        select_lines += [
            f"{QUERY} AS search_query",
            f"{ASIN} AS asin",
            "MAX(`Search Query Score`) AS search_query_score",
        ]
        select_lines += [f"{expr} AS {alias}" for alias, expr in SUMMED_COLUMNS]
        select_lines += [f"{expr} AS {alias}" for alias, expr in PRICE_COLUMNS]
        select_lines += [f"{expr} AS {alias}" for alias, expr in MARKET_RATE_COLUMNS]

        for share_alias, total_alias, column in SHARE_COLUMNS:
            query_total = f"MAX({TOTALS_ALIAS}.{total_alias})"
            select_lines.append(f"{query_total} AS {total_alias}")
            select_lines.append(f"SAFE_DIVIDE(SUM({column}), {query_total}) AS {share_alias}")

        select_lines += [f"{expr} AS {alias}" for alias, expr in ASIN_RATE_COLUMNS]
        select_lines += [f"{expr} AS {alias}" for alias, expr in DISPERSION_COLUMNS]

        if period_type != PeriodType.WEEKLY:
            select_lines.append(
                f"COUNT(DISTINCT {WEEK_START}) AS active_weeks"
            )

        where_lines = [window_predicate]
        filter_clause = asin_filter.build_clause(self.table_ref)
        if filter_clause:
            where_lines.append(filter_clause)

        sql = (
            self._query_totals_cte(group_expression, window_predicate)
            + "\nSELECT\n  "
            + ",\n  ".join(select_lines)
            + f"\nFROM {self.table_ref}"
            + f"\nJOIN {TOTALS_ALIAS}"
            + f"\n  ON {TOTALS_ALIAS}.totals_search_query = {QUERY}"
            + f"\n  AND {TOTALS_ALIAS}.totals_period_start = {group_expression}"
            + "\nWHERE "
            + "\n  ".join(where_lines)
            + f"\nGROUP BY {group_expression}, {QUERY}, {ASIN}"
            + "\nORDER BY period_start, search_query, asin"
        )

        return AggregationQuery(
            sql=sql,
            parameters=(
                ("start_date", "DATE", start_date),
                ("end_date", "DATE", end_date),
            ),
        )

    def _query_totals_cte(self, group_expression: str, window_predicate: str) -> str:
        """Per (query, period) totals over every ASIN in the window"""
        total_lines = [
            f"{group_expression} AS totals_period_start",
            f"{QUERY} AS totals_search_query",
        ]
        total_lines += [f"SUM({column}) AS {total_alias}" for _, total_alias, column in SHARE_COLUMNS]
        return (
            f"WITH {TOTALS_ALIAS} AS (\n  SELECT\n    "
            + ",\n    ".join(total_lines)
            + f"\n  FROM {self.table_ref}"
            + f"\n  WHERE {window_predicate}"
            + "\n  GROUP BY totals_period_start, totals_search_query\n)"
        )

    def build_latest_date_query(self) -> AggregationQuery:
        """Most recent source date, used to detect pending data"""
        return AggregationQuery(
            sql=f"SELECT MAX({DATE}) AS latest_date FROM {self.table_ref}",
            parameters=(),
        )
