"""
Sync monitoring and manual trigger endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional
from api.dependencies import get_scheduler
from core.exceptions import SyncLogError
from models.base import PeriodType, SyncStatus
from pipeline.scheduler import SyncScheduler
from schemas.api import AlertsResponse, SyncHistoryResponse, SyncTriggerRequest
from schemas.sync import SyncJobResult, SyncMetrics, SyncStatusSnapshot
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"])


def _unavailable(e: SyncLogError) -> HTTPException:
    logger.error(f"Sync log unavailable: {e.message}", extra={"error_context": e.to_dict()})
    return HTTPException(status_code=503, detail=e.message)


@router.get("/status", response_model=SyncStatusSnapshot)
async def get_status(scheduler: SyncScheduler = Depends(get_scheduler)):
    """Running flag, current run id, last weekly run and next trigger time"""
    return await scheduler.get_sync_status()


@router.get("/metrics", response_model=SyncMetrics)
async def get_metrics(
    days: int = Query(7, ge=1, le=365, description="Window in days"),
    scheduler: SyncScheduler = Depends(get_scheduler)
):
    try:
        return await scheduler.get_sync_metrics(days)
    except SyncLogError as e:
        raise _unavailable(e)


@router.get("/history", response_model=SyncHistoryResponse)
async def get_history(
    limit: int = Query(20, ge=1, le=200, description="Number of runs to return"),
    sync_type: Optional[PeriodType] = Query(None, description="Filter by period type"),
    status: Optional[SyncStatus] = Query(None, description="Filter by run status"),
    scheduler: SyncScheduler = Depends(get_scheduler)
):
    try:
        runs = await scheduler.sync_logger.get_sync_history(limit, sync_type, status)
    except SyncLogError as e:
        raise _unavailable(e)

    return SyncHistoryResponse(runs=runs, count=len(runs))


@router.get("/alerts", response_model=AlertsResponse)
async def get_alerts(scheduler: SyncScheduler = Depends(get_scheduler)):
    try:
        return AlertsResponse(
            consecutive_failures=await scheduler.sync_logger.check_for_alerts(),
            long_running=await scheduler.sync_logger.check_for_long_running_sync(),
        )
    except SyncLogError as e:
        raise _unavailable(e)


@router.post("/trigger", response_model=SyncJobResult)
async def trigger_sync(
    request: Request,
    body: Optional[SyncTriggerRequest] = None,
    scheduler: SyncScheduler = Depends(get_scheduler)
):
    """
    Run a sync now.

    A request made while a sync is running returns success=false with
    an "already in progress" error.
    """
    body = body or SyncTriggerRequest()
    request_id = getattr(request.state, "request_id", None)

    logger.info(
        f"[{request_id}] POST /sync/trigger - force={body.force}, "
        f"window={body.start_date}..{body.end_date}"
    )

    if body.start_date and body.end_date and body.start_date > body.end_date:
        raise HTTPException(status_code=422, detail="start_date must not be after end_date")

    return await scheduler.trigger_manual_sync(
        force=body.force,
        start_date=body.start_date,
        end_date=body.end_date,
    )
