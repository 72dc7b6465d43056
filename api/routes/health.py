"""
Health check endpoint with database and sync status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse
from schemas.sync import SyncRunInfo
from models.sync_run import SyncRun
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Whether the cron trigger is running
    - The most recent sync run
    """

    db_connected = False
    last_sync = None

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    if db_connected:
        try:
            result = await db.execute(
                select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(1)
            )
            run = result.scalars().first()
            if run is not None:
                last_sync = SyncRunInfo.model_validate(run)
        except Exception as e:
            logger.error(f"Failed to fetch last sync run: {str(e)}")

    scheduler = getattr(request.app.state, "scheduler", None)

    return HealthCheckResponse(
        status=HealthCheckResponse.determine_status(db_connected, last_sync),
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        scheduler_running=bool(scheduler and scheduler.scheduler.running),
        last_sync=last_sync
    )
