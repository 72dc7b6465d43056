"""
FastAPI dependencies
"""

from fastapi import HTTPException, Request
from core.database import get_session
from pipeline.scheduler import SyncScheduler


async def get_db():
    async for session in get_session():
        yield session


def get_scheduler(request: Request) -> SyncScheduler:
    """The app's sync scheduler; 503 when it could not be configured"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=503,
            detail=getattr(request.app.state, "scheduler_error", None) or "Sync scheduler unavailable"
        )
    return scheduler
