"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime
from schemas.sync import Alert, SyncRunInfo


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    scheduler_running: bool = False
    last_sync: Optional[SyncRunInfo] = None

    @staticmethod
    def determine_status(database_connected: bool, last_sync: Optional[SyncRunInfo]) -> str:
        """Unhealthy without a database, degraded when the last sync failed"""
        if not database_connected:
            return "unhealthy"
        if last_sync is not None and last_sync.status == "failed":
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "scheduler_running": True,
                "last_sync": {
                    "id": 42,
                    "sync_type": "weekly",
                    "status": "completed",
                    "started_at": "2024-01-15T02:00:00Z",
                    "completed_at": "2024-01-15T02:03:10Z",
                    "period_start": "2024-01-08",
                    "period_end": "2024-01-14",
                    "records_processed": 1250,
                    "duration_seconds": 190.0
                }
            }
        }


# ============================================================================
# Sync Schemas
# ============================================================================

class SyncTriggerRequest(BaseModel):
    """Manual sync request"""
    force: bool = Field(False, description="Sync even when no new data is detected")
    start_date: Optional[date] = Field(None, description="Inclusive window start")
    end_date: Optional[date] = Field(None, description="Inclusive window end")


class SyncHistoryResponse(BaseModel):
    runs: List[SyncRunInfo] = Field(default_factory=list)
    count: int = 0


class AlertsResponse(BaseModel):
    """Both alert evaluations; each carries alert=False when nothing is wrong"""
    consecutive_failures: Alert
    long_running: Alert

    @property
    def has_alerts(self) -> bool:
        return self.consecutive_failures.alert or self.long_running.alert


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Sync scheduler unavailable",
                "detail": "BIGQUERY_PROJECT_ID and BIGQUERY_DATASET are required",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
