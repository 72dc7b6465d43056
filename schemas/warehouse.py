"""
Pydantic schemas for the nested per-ASIN warehouse structure
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date
from models.base import PeriodType


class ImpressionData(BaseModel):
    total_query_impression_count: int = 0
    asin_impression_count: int = 0
    asin_impression_share: float = 0.0


class ClickData(BaseModel):
    total_click_count: int = 0
    total_click_rate: float = 0.0
    asin_click_count: int = 0
    asin_click_share: float = 0.0
    total_median_click_price: Optional[float] = None
    asin_median_click_price: Optional[float] = None
    total_same_day_shipping_click_count: int = 0
    total_one_day_shipping_click_count: int = 0
    total_two_day_shipping_click_count: int = 0


class CartAddData(BaseModel):
    total_cart_add_count: int = 0
    total_cart_add_rate: float = 0.0
    asin_cart_add_count: int = 0
    asin_cart_add_share: float = 0.0
    total_median_cart_add_price: Optional[float] = None
    asin_median_cart_add_price: Optional[float] = None
    total_same_day_shipping_cart_add_count: int = 0
    total_one_day_shipping_cart_add_count: int = 0
    total_two_day_shipping_cart_add_count: int = 0


class PurchaseData(BaseModel):
    total_purchase_count: int = 0
    total_purchase_rate: float = 0.0
    asin_purchase_count: int = 0
    asin_purchase_share: float = 0.0
    total_median_purchase_price: Optional[float] = None
    asin_median_purchase_price: Optional[float] = None
    total_same_day_shipping_purchase_count: int = 0
    total_one_day_shipping_purchase_count: int = 0
    total_two_day_shipping_purchase_count: int = 0


class QueryTotals(BaseModel):
    """Share denominators: the summed metric of every ASIN for the query in the period"""
    impressions: int = 0
    clicks: int = 0
    cart_adds: int = 0
    purchases: int = 0


class ImpressionStats(BaseModel):
    """Dispersion of impressions across the source rows of a group"""
    min_impressions: Optional[int] = None
    max_impressions: Optional[int] = None
    avg_impressions: Optional[float] = None
    stddev_impressions: Optional[float] = None


class DerivedMetrics(BaseModel):
    """Funnel ratios computed per query record. A zero denominator yields 0."""
    click_through_rate: float = 0.0
    conversion_rate: float = 0.0
    cart_to_click_rate: float = 0.0
    purchase_to_cart_rate: float = 0.0
    funnel_completion_rate: float = 0.0


class SearchQueryData(BaseModel):
    """
    One search query's funnel for one ASIN window.

    The four funnel sub-objects are optional at parse time so that a
    malformed warehouse row can be reported by validation instead of
    failing construction.
    """

    search_query: str
    search_query_score: Optional[int] = None
    search_query_volume: int = 0

    impression_data: Optional[ImpressionData] = None
    click_data: Optional[ClickData] = None
    cart_add_data: Optional[CartAddData] = None
    purchase_data: Optional[PurchaseData] = None

    query_totals: QueryTotals = Field(default_factory=QueryTotals)
    impression_stats: ImpressionStats = Field(default_factory=ImpressionStats)
    active_weeks: Optional[int] = None

    derived_metrics: Optional[DerivedMetrics] = None


class EntityData(BaseModel):
    """All query records of one ASIN for one (start_date, end_date) window"""

    asin: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    period_type: PeriodType = PeriodType.WEEKLY
    year: Optional[int] = None
    month: Optional[int] = None
    quarter: Optional[int] = None
    search_query_data: List[SearchQueryData] = Field(default_factory=list)


class NestedPerformanceData(BaseModel):
    """Grouped warehouse output of one sync window"""

    period_type: PeriodType
    start_date: date
    end_date: date
    entities: List[EntityData] = Field(default_factory=list)

    @property
    def total_query_records(self) -> int:
        return sum(len(entity.search_query_data) for entity in self.entities)
