from sqlalchemy import (
    Column, BigInteger, Integer, String, Date, DateTime, Float,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base


class EntityPerformance(Base):
    """
    One tracked ASIN's performance window (parent record).

    Natural key: (start_date, end_date, asin). Every sync upserts on this key
    so re-applying a window updates the row in place.
    """
    __tablename__ = "asin_performance_data"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    asin = Column(String(20), nullable=False, index=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    query_records = relationship(
        "QueryPerformance",
        back_populates="entity",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("start_date", "end_date", "asin", name="uq_asin_performance_window"),
        Index("idx_asin_performance_dates", "start_date", "end_date"),
    )


class QueryPerformance(Base):
    """
    Funnel counts, rates and shares of one search query for one ASIN window.

    Natural key: (asin_performance_id, search_query).

    Field groups:
    - total_* : the whole market for the query ("total market" variant)
    - asin_*  : the tracked ASIN's portion ("entity share" variant)
    - *_rate derived columns at the bottom are recomputed on every sync
    """
    __tablename__ = "search_query_performance"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    asin_performance_id = Column(
        BigInteger,
        ForeignKey("asin_performance_data.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    search_query = Column(String(500), nullable=False, index=True)
    search_query_score = Column(Integer, nullable=True)
    search_query_volume = Column(BigInteger, nullable=True)

    # Impressions
    total_query_impression_count = Column(BigInteger, default=0)
    asin_impression_count = Column(BigInteger, default=0)
    asin_impression_share = Column(Float, default=0)

    # Clicks
    total_click_count = Column(BigInteger, default=0)
    total_click_rate = Column(Float, default=0)
    asin_click_count = Column(BigInteger, default=0)
    asin_click_share = Column(Float, default=0)
    total_median_click_price = Column(Float, nullable=True)
    asin_median_click_price = Column(Float, nullable=True)
    total_same_day_shipping_click_count = Column(BigInteger, default=0)
    total_one_day_shipping_click_count = Column(BigInteger, default=0)
    total_two_day_shipping_click_count = Column(BigInteger, default=0)

    # Cart adds
    total_cart_add_count = Column(BigInteger, default=0)
    total_cart_add_rate = Column(Float, default=0)
    asin_cart_add_count = Column(BigInteger, default=0)
    asin_cart_add_share = Column(Float, default=0)
    total_median_cart_add_price = Column(Float, nullable=True)
    asin_median_cart_add_price = Column(Float, nullable=True)
    total_same_day_shipping_cart_add_count = Column(BigInteger, default=0)
    total_one_day_shipping_cart_add_count = Column(BigInteger, default=0)
    total_two_day_shipping_cart_add_count = Column(BigInteger, default=0)

    # Purchases
    total_purchase_count = Column(BigInteger, default=0)
    total_purchase_rate = Column(Float, default=0)
    asin_purchase_count = Column(BigInteger, default=0)
    asin_purchase_share = Column(Float, default=0)
    total_median_purchase_price = Column(Float, nullable=True)
    asin_median_purchase_price = Column(Float, nullable=True)
    total_same_day_shipping_purchase_count = Column(BigInteger, default=0)
    total_one_day_shipping_purchase_count = Column(BigInteger, default=0)
    total_two_day_shipping_purchase_count = Column(BigInteger, default=0)

    # Derived funnel metrics
    click_through_rate = Column(Float, default=0)
    conversion_rate = Column(Float, default=0)
    cart_to_click_rate = Column(Float, default=0)
    purchase_to_cart_rate = Column(Float, default=0)
    funnel_completion_rate = Column(Float, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    entity = relationship("EntityPerformance", back_populates="query_records")

    __table_args__ = (
        UniqueConstraint("asin_performance_id", "search_query", name="uq_search_query_performance"),
    )
