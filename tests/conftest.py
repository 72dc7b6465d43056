"""
Pytest configuration and fixtures
"""

import os
from datetime import date
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from core.database import build_session_maker
from models import Base

# PostgreSQL integration suite runs only when this is set
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


# ============================================================================
# Mocked sessions
# ============================================================================

@pytest.fixture
def mock_session():
    """AsyncSession stand-in; configure ``execute`` per test"""
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def session_factory(mock_session):
    """Callable returning an async context manager that yields ``mock_session``"""
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = mock_session
    factory.return_value.__aexit__.return_value = False
    return factory


@pytest.fixture
def make_result():
    """Build a mocked SQLAlchemy result"""

    def _make(one=None, all_rows=None, scalar=None, rowcount=1, mappings=None, scalars=None):
        result = MagicMock()
        result.one.return_value = one
        result.all.return_value = all_rows or []
        result.scalar.return_value = scalar
        result.scalar_one.return_value = scalar
        result.rowcount = rowcount
        result.mappings.return_value.all.return_value = mappings or []
        result.scalars.return_value.all.return_value = scalars or []
        result.scalars.return_value.first.return_value = (scalars or [None])[0]
        return result

    return _make


# ============================================================================
# Warehouse rows
# ============================================================================

@pytest.fixture
def make_row():
    """One aggregated warehouse row as returned by the weekly query"""

    def _make(
        asin="B0TEST0001",
        query="wireless earbuds",
        period_start=date(2024, 1, 1),
        period_end=date(2024, 1, 7),
        impressions=1000,
        clicks=100,
        cart_adds=20,
        purchases=5,
        **overrides
    ):
        row = {
            "period_start": period_start,
            "period_end": period_end,
            "search_query": query,
            "asin": asin,
            "search_query_score": 1,
            "search_query_volume": 5000,
            "total_query_impression_count": impressions * 10,
            "asin_impression_count": impressions,
            "asin_impression_share": 0.1,
            "total_click_count": clicks * 10,
            "total_click_rate": 0.1,
            "asin_click_count": clicks,
            "asin_click_share": 0.1,
            "total_median_click_price": 24.99,
            "asin_median_click_price": 22.5,
            "total_same_day_shipping_click_count": 10,
            "total_one_day_shipping_click_count": 20,
            "total_two_day_shipping_click_count": 30,
            "total_cart_add_count": cart_adds * 10,
            "total_cart_add_rate": 0.2,
            "asin_cart_add_count": cart_adds,
            "asin_cart_add_share": 0.1,
            "total_purchase_count": purchases * 10,
            "total_purchase_rate": 0.05,
            "asin_purchase_count": purchases,
            "asin_purchase_share": 0.1,
            "query_total_impressions": impressions * 10,
            "query_total_clicks": clicks * 10,
            "query_total_cart_adds": cart_adds * 10,
            "query_total_purchases": purchases * 10,
            "min_impressions": impressions,
            "max_impressions": impressions,
            "avg_impressions": float(impressions),
            "stddev_impressions": None,
        }
        row.update(overrides)
        return row

    return _make


# ============================================================================
# PostgreSQL (integration)
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL is not set")

    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session_maker(test_engine):
    """Session factory bound to the test database"""
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(db_session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with db_session_maker() as session:
        yield session
        await session.rollback()
