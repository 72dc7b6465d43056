"""
Pydantic record types passed between the sync pipeline phases
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from models.base import PeriodType, SyncStatus, CheckType, CheckStatus
import enum


# ============================================================================
# Sync Run Lifecycle
# ============================================================================

class SyncRunCreate(BaseModel):
    """Entry used to open a sync run record"""
    sync_type: PeriodType = PeriodType.WEEKLY
    source_table: str
    target_table: str
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SyncCounts(BaseModel):
    """Final (or partial) record counts of a sync run"""
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_failed: int = 0


class SyncRunInfo(BaseModel):
    """Read view of a sync run"""
    id: int
    sync_type: PeriodType
    status: SyncStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None

    class Config:
        from_attributes = True
        use_enum_values = True


# ============================================================================
# Data Quality
# ============================================================================

class DataQualityCheckCreate(BaseModel):
    """One data quality check outcome, persisted against a sync run"""
    check_type: CheckType
    check_status: CheckStatus
    source_value: Optional[float] = None
    target_value: Optional[float] = None
    difference: Optional[float] = None
    difference_pct: Optional[float] = None
    table_name: Optional[str] = None
    column_name: Optional[str] = None
    check_query: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    """Structural validation outcome of a nested structure"""
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    entity_count: int = 0
    query_record_count: int = 0


# ============================================================================
# Write / Sync Results
# ============================================================================

class WriteResult(BaseModel):
    """
    Outcome of the batched write phases.

    errors holds one BatchWriteError.to_dict() per failed batch; a failed
    batch's rows are excluded from every success tally.
    """
    entities_written: int = 0
    query_records_written: int = 0
    summaries_written: int = 0
    rollups_written: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class SyncResult(BaseModel):
    """Structured result of one sync over a source window"""
    success: bool
    sync_run_id: Optional[int] = None
    period_type: PeriodType = PeriodType.WEEKLY
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_failed: int = 0
    entities: int = 0
    query_records: int = 0
    summaries: int = 0
    rollups: int = 0
    partial_success: bool = False
    dry_run: bool = False
    would_write: Optional[int] = None
    duration_seconds: Optional[float] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    quality_checks: List[DataQualityCheckCreate] = Field(default_factory=list)


class SyncJobResult(BaseModel):
    """Outcome of one scheduler job (including its retries)"""
    success: bool
    sync_run_id: Optional[int] = None
    records_processed: int = 0
    retry_count: int = 0
    error: Optional[str] = None
    triggered_by: str = "scheduled"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    skipped: bool = False
    partial_success: bool = False
    errors: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================================================
# Monitoring
# ============================================================================

class SyncStatusSnapshot(BaseModel):
    is_running: bool
    current_sync_id: Optional[int] = None
    last_sync: Optional[SyncRunInfo] = None
    next_scheduled_sync: Optional[datetime] = None


class SyncMetrics(BaseModel):
    """Aggregate view over the runs started inside a time window"""
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    average_duration_seconds: float = 0.0
    total_records_processed: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0


class AlertConfig(BaseModel):
    consecutive_failure_threshold: int = Field(2, ge=1)
    long_running_minutes: int = Field(15, ge=1)


class SuccessRate(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    rate: float = 0.0
    percentage: float = 0.0


class SyncDuration(BaseModel):
    seconds: int
    minutes: float
    formatted: str


class AlertSeverity(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"


class Alert(BaseModel):
    """Alert evaluation outcome; ``alert`` is False when nothing is wrong"""
    alert: bool
    reason: str
    severity: Optional[AlertSeverity] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    detected_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True
