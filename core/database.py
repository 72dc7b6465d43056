"""
Async engine and session factory for the operational store.

Pipeline components take a session factory (any callable returning an
``AsyncSession`` context manager) rather than a session, so each write
batch runs in its own short transaction.
"""

from typing import AsyncGenerator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from core.config import Settings, settings
import asyncio
import logging

logger = logging.getLogger(__name__)

# Store failures; connection errors can surface from the driver unwrapped
STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def build_engine(config: Settings = settings) -> AsyncEngine:
    return create_async_engine(
        config.DATABASE_URL,
        echo=config.ENVIRONMENT == "development",
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


engine = build_engine()
async_session_maker = build_session_maker(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One session per request; rolled back when the handler raises"""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
