"""
Reshape flat warehouse rows into the per-ASIN hierarchy and write it.

Order per sync:
1. Group rows by (start_date, end_date, asin)
2. Validate the nested structure (fatal, before any write)
3. Compute derived funnel metrics per query record
4. Hand the structure to the loader for the batched upsert phases
"""

from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

from core.exceptions import ValidationError
from models.base import PeriodType
from schemas.sync import ValidationResult, WriteResult
from schemas.warehouse import (
    CartAddData,
    ClickData,
    DerivedMetrics,
    EntityData,
    ImpressionData,
    ImpressionStats,
    NestedPerformanceData,
    PurchaseData,
    QueryTotals,
    SearchQueryData,
)

logger = logging.getLogger(__name__)

EntityKey = Tuple[Optional[date], Optional[date], str]


class NestedDataTransformer:
    """
    Transform aggregated warehouse rows into EntityData groups.

    Rows for the same (start_date, end_date, asin) accumulate into one
    group; each row becomes one SearchQueryData appended to it.
    """

    def __init__(self, loader=None):
        self.loader = loader

    # ------------------------------------------------------------------
    # Grouping
    # ------------------------------------------------------------------

    def group_rows(
        self,
        rows: List[Dict[str, Any]],
        period_type: PeriodType,
        start_date: date,
        end_date: date,
    ) -> NestedPerformanceData:
        groups: "OrderedDict[EntityKey, EntityData]" = OrderedDict()

        for row in rows:
            period_start = self._parse_date(row.get("period_start"))
            period_end = self._parse_date(row.get("period_end"))
            asin = str(row.get("asin") or "").strip()
            key = (period_start, period_end, asin)

            entity = groups.get(key)
            if entity is None:
                entity = EntityData(
                    asin=asin,
                    start_date=period_start,
                    end_date=period_end,
                    period_type=period_type,
                    year=self._parse_int(row.get("year")),
                    month=self._parse_int(row.get("month")),
                    quarter=self._parse_int(row.get("quarter")),
                )
                groups[key] = entity

            entity.search_query_data.append(self._build_query_record(row))

        nested = NestedPerformanceData(
            period_type=period_type,
            start_date=start_date,
            end_date=end_date,
            entities=list(groups.values()),
        )

        logger.info(
            f"Grouped {len(rows)} rows into {len(nested.entities)} ASIN windows "
            f"({nested.total_query_records} query records)"
        )
        return nested

    def _build_query_record(self, row: Dict[str, Any]) -> SearchQueryData:
        return SearchQueryData(
            search_query=str(row.get("search_query") or "").strip(),
            search_query_score=self._parse_int(row.get("search_query_score")),
            search_query_volume=self._count(row, "search_query_volume"),
            impression_data=self._build_impression_data(row),
            click_data=self._build_click_data(row),
            cart_add_data=self._build_cart_add_data(row),
            purchase_data=self._build_purchase_data(row),
            query_totals=QueryTotals(
                impressions=self._count(row, "query_total_impressions"),
                clicks=self._count(row, "query_total_clicks"),
                cart_adds=self._count(row, "query_total_cart_adds"),
                purchases=self._count(row, "query_total_purchases"),
            ),
            impression_stats=ImpressionStats(
                min_impressions=self._parse_int(row.get("min_impressions")),
                max_impressions=self._parse_int(row.get("max_impressions")),
                avg_impressions=self._parse_float(row.get("avg_impressions")),
                stddev_impressions=self._parse_float(row.get("stddev_impressions")),
            ),
            active_weeks=self._parse_int(row.get("active_weeks")),
        )

    def _build_impression_data(self, row: Dict[str, Any]) -> Optional[ImpressionData]:
        if not self._has_any(row, "asin_impression_count", "total_query_impression_count"):
            return None
        return ImpressionData(
            total_query_impression_count=self._count(row, "total_query_impression_count"),
            asin_impression_count=self._count(row, "asin_impression_count"),
            asin_impression_share=self._rate(row, "asin_impression_share"),
        )

    def _build_click_data(self, row: Dict[str, Any]) -> Optional[ClickData]:
        if not self._has_any(row, "asin_click_count", "total_click_count"):
            return None
        return ClickData(
            total_click_count=self._count(row, "total_click_count"),
            total_click_rate=self._rate(row, "total_click_rate"),
            asin_click_count=self._count(row, "asin_click_count"),
            asin_click_share=self._rate(row, "asin_click_share"),
            total_median_click_price=self._parse_float(row.get("total_median_click_price")),
            asin_median_click_price=self._parse_float(row.get("asin_median_click_price")),
            total_same_day_shipping_click_count=self._count(row, "total_same_day_shipping_click_count"),
            total_one_day_shipping_click_count=self._count(row, "total_one_day_shipping_click_count"),
            total_two_day_shipping_click_count=self._count(row, "total_two_day_shipping_click_count"),
        )

    def _build_cart_add_data(self, row: Dict[str, Any]) -> Optional[CartAddData]:
        if not self._has_any(row, "asin_cart_add_count", "total_cart_add_count"):
            return None
        return CartAddData(
            total_cart_add_count=self._count(row, "total_cart_add_count"),
            total_cart_add_rate=self._rate(row, "total_cart_add_rate"),
            asin_cart_add_count=self._count(row, "asin_cart_add_count"),
            asin_cart_add_share=self._rate(row, "asin_cart_add_share"),
            total_median_cart_add_price=self._parse_float(row.get("total_median_cart_add_price")),
            asin_median_cart_add_price=self._parse_float(row.get("asin_median_cart_add_price")),
            total_same_day_shipping_cart_add_count=self._count(row, "total_same_day_shipping_cart_add_count"),
            total_one_day_shipping_cart_add_count=self._count(row, "total_one_day_shipping_cart_add_count"),
            total_two_day_shipping_cart_add_count=self._count(row, "total_two_day_shipping_cart_add_count"),
        )

    def _build_purchase_data(self, row: Dict[str, Any]) -> Optional[PurchaseData]:
        if not self._has_any(row, "asin_purchase_count", "total_purchase_count"):
            return None
        return PurchaseData(
            total_purchase_count=self._count(row, "total_purchase_count"),
            total_purchase_rate=self._rate(row, "total_purchase_rate"),
            asin_purchase_count=self._count(row, "asin_purchase_count"),
            asin_purchase_share=self._rate(row, "asin_purchase_share"),
            total_median_purchase_price=self._parse_float(row.get("total_median_purchase_price")),
            asin_median_purchase_price=self._parse_float(row.get("asin_median_purchase_price")),
            total_same_day_shipping_purchase_count=self._count(row, "total_same_day_shipping_purchase_count"),
            total_one_day_shipping_purchase_count=self._count(row, "total_one_day_shipping_purchase_count"),
            total_two_day_shipping_purchase_count=self._count(row, "total_two_day_shipping_purchase_count"),
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_nested_data(self, nested: NestedPerformanceData) -> ValidationResult:
        """
        Check the structure without raising.

        Errors (structural, fatal):
        - empty ASIN or missing window dates
        - window start after window end
        - empty search query
        - missing funnel sub-object
        - the same search query twice in one ASIN window
        """
        result = ValidationResult(
            entity_count=len(nested.entities),
            query_record_count=nested.total_query_records,
        )

        for index, entity in enumerate(nested.entities):
            label = f"entity[{index}] asin={entity.asin!r}"

            if not entity.asin:
                result.errors.append(f"{label}: missing ASIN")
            if entity.start_date is None or entity.end_date is None:
                result.errors.append(f"{label}: missing start_date or end_date")
            elif entity.start_date > entity.end_date:
                result.errors.append(f"{label}: start_date after end_date")
            if not entity.search_query_data:
                result.warnings.append(f"{label}: no search query records")

            seen_queries = set()
            for query in entity.search_query_data:
                query_label = f"{label} query={query.search_query!r}"

                if not query.search_query:
                    result.errors.append(f"{query_label}: missing search query")
                elif query.search_query in seen_queries:
                    result.errors.append(f"{query_label}: duplicate search query")
                seen_queries.add(query.search_query)

                for field in ("impression_data", "click_data", "cart_add_data", "purchase_data"):
                    if getattr(query, field) is None:
                        result.errors.append(f"{query_label}: missing {field}")

        result.is_valid = not result.errors
        return result

    def ensure_valid(self, nested: NestedPerformanceData) -> ValidationResult:
        """Validate and raise ValidationError on any structural error"""
        result = self.validate_nested_data(nested)

        for warning in result.warnings:
            logger.warning(f"Nested data warning: {warning}")

        if not result.is_valid:
            raise ValidationError(
                f"Nested data failed validation with {len(result.errors)} errors",
                context={
                    "errors": result.errors[:20],
                    "entity_groups": result.entity_count,
                }
            )
        return result

    # ------------------------------------------------------------------
    # Derived metrics
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_derived_metrics(query: SearchQueryData) -> DerivedMetrics:
        impressions = query.impression_data.asin_impression_count if query.impression_data else 0
        clicks = query.click_data.asin_click_count if query.click_data else 0
        cart_adds = query.cart_add_data.asin_cart_add_count if query.cart_add_data else 0
        purchases = query.purchase_data.asin_purchase_count if query.purchase_data else 0

        return DerivedMetrics(
            click_through_rate=safe_divide(clicks, impressions),
            conversion_rate=safe_divide(purchases, clicks),
            cart_to_click_rate=safe_divide(cart_adds, clicks),
            purchase_to_cart_rate=safe_divide(purchases, cart_adds),
            funnel_completion_rate=safe_divide(purchases, impressions),
        )

    def apply_derived_metrics(self, nested: NestedPerformanceData) -> NestedPerformanceData:
        for entity in nested.entities:
            for query in entity.search_query_data:
                query.derived_metrics = self.calculate_derived_metrics(query)
        return nested

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def transform_and_sync(
        self,
        nested: NestedPerformanceData,
        sync_run_id: Optional[int] = None,
    ) -> WriteResult:
        """
        Validate, enrich and write a nested structure.

        Raises:
            ValidationError: Structural violation; nothing has been written
        """
        self.ensure_valid(nested)
        self.apply_derived_metrics(nested)

        if self.loader is None:
            raise RuntimeError("NestedDataTransformer has no loader configured")

        return await self.loader.write(nested, sync_run_id)

    # ------------------------------------------------------------------
    # Parsing helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _has_any(row: Dict[str, Any], *keys: str) -> bool:
        return any(key in row for key in keys)

    def _count(self, row: Dict[str, Any], key: str) -> int:
        return self._parse_int(row.get(key)) or 0

    def _rate(self, row: Dict[str, Any], key: str) -> float:
        return self._parse_float(row.get(key)) or 0.0

    @staticmethod
    def _parse_float(value: Any) -> Optional[float]:
        """Safely parse float value"""
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _parse_int(value: Any) -> Optional[int]:
        """Safely parse int value"""
        if value is None or value == "":
            return None
        if isinstance(value, (float, Decimal)):
            return int(value)
        try:
            return int(float(value))  # Handle "10.0" strings
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _parse_date(value: Any) -> Optional[date]:
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return date.fromisoformat(str(value)[:10])
        except ValueError:
            return None


def safe_divide(numerator: float, denominator: float) -> float:
    """Null-safe ratio: a zero or missing denominator yields 0"""
    if not denominator:
        return 0.0
    return (numerator or 0) / denominator
