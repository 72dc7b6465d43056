from sqlalchemy import (
    Column, BigInteger, Integer, String, Date, DateTime, Float,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import declared_attr
from datetime import datetime
from models.base import Base, PeriodType


class SummaryMetricsMixin:
    """
    Columns shared by every period summary table.

    Rates and shares are always recomputed from the summed numerator and
    denominator of the period; they are never averaged across finer rows.
    The query_total_* columns hold the share denominators so coarser periods
    can recompute shares exactly.
    """

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    query = Column(String(500), nullable=False)
    asin = Column(String(20), nullable=False)

    # Funnel totals
    total_impressions = Column(BigInteger, default=0, nullable=False)
    total_clicks = Column(BigInteger, default=0, nullable=False)
    total_cart_adds = Column(BigInteger, default=0, nullable=False)
    total_purchases = Column(BigInteger, default=0, nullable=False)

    # Share denominators (all ASINs for the query in the period)
    query_total_impressions = Column(BigInteger, default=0, nullable=False)
    query_total_clicks = Column(BigInteger, default=0, nullable=False)
    query_total_cart_adds = Column(BigInteger, default=0, nullable=False)
    query_total_purchases = Column(BigInteger, default=0, nullable=False)

    # Rates
    avg_ctr = Column(Float, default=0)
    avg_cvr = Column(Float, default=0)
    purchases_per_impression = Column(Float, default=0)

    # Shares
    impression_share = Column(Float, default=0)
    click_share = Column(Float, default=0)
    cart_add_share = Column(Float, default=0)
    purchase_share = Column(Float, default=0)

    # Dispersion of impressions across constituent rows
    min_impressions = Column(BigInteger, nullable=True)
    max_impressions = Column(BigInteger, nullable=True)
    avg_impressions = Column(Float, nullable=True)
    stddev_impressions = Column(Float, nullable=True)

    # Provenance
    last_synced_at = Column(DateTime, nullable=True, default=datetime.utcnow)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @declared_attr
    def sync_run_id(cls):
        return Column(BigInteger, ForeignKey("sync_run.id", ondelete="SET NULL"), nullable=True)


class WeeklySummary(SummaryMetricsMixin, Base):
    """Monday-start weekly summary. Natural key: (period_start, query, asin)."""
    __tablename__ = "weekly_summary"

    __table_args__ = (
        UniqueConstraint("period_start", "query", "asin", name="uq_weekly_summary"),
        Index("idx_weekly_summary_period_end", "period_end"),
    )


class MonthlySummary(SummaryMetricsMixin, Base):
    """Natural key: (year, month, query, asin)."""
    __tablename__ = "monthly_summary"

    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    active_weeks = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("year", "month", "query", "asin", name="uq_monthly_summary"),
    )


class QuarterlySummary(SummaryMetricsMixin, Base):
    """Natural key: (year, quarter, query, asin)."""
    __tablename__ = "quarterly_summary"

    year = Column(Integer, nullable=False)
    quarter = Column(Integer, nullable=False)
    active_weeks = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("year", "quarter", "query", "asin", name="uq_quarterly_summary"),
    )


class YearlySummary(SummaryMetricsMixin, Base):
    """Natural key: (year, query, asin)."""
    __tablename__ = "yearly_summary"

    year = Column(Integer, nullable=False)
    active_weeks = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("year", "query", "asin", name="uq_yearly_summary"),
    )


SUMMARY_MODELS = {
    PeriodType.WEEKLY: WeeklySummary,
    PeriodType.MONTHLY: MonthlySummary,
    PeriodType.QUARTERLY: QuarterlySummary,
    PeriodType.YEARLY: YearlySummary,
}

SUMMARY_NATURAL_KEYS = {
    PeriodType.WEEKLY: ["period_start", "query", "asin"],
    PeriodType.MONTHLY: ["year", "month", "query", "asin"],
    PeriodType.QUARTERLY: ["year", "quarter", "query", "asin"],
    PeriodType.YEARLY: ["year", "query", "asin"],
}
