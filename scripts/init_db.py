"""
Create the destination tables (ASIN performance, search query performance,
weekly/monthly/quarterly/yearly summaries) and the sync_run and
data_quality_check tables.

    python scripts/init_db.py [--drop-existing]
"""

import argparse
import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import build_engine
from core.logging import setup_logging
# Importing the package registers every model on Base.metadata
from models import Base

logger = logging.getLogger(__name__)


async def init_database(drop_existing: bool = False):
    engine = build_engine(settings)

    try:
        async with engine.begin() as conn:
            if drop_existing:
                logger.warning("Dropping existing sync tables")
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    parser = argparse.ArgumentParser(description="Create the sync pipeline tables")
    parser.add_argument("--drop-existing", action="store_true", help="Drop every table first")
    asyncio.run(init_database(parser.parse_args().drop_existing))
