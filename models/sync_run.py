from sqlalchemy import Column, BigInteger, String, Date, DateTime, Integer, Text, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, PeriodType, SyncStatus, enum_column_type


class SyncRun(Base):
    """
    Lifecycle record of one sync execution.

    Purpose:
    - Audit trail of every warehouse-to-store sync
    - Source for history, success-rate and alert queries
    - Anchor for data quality check records

    Lifecycle:
    - Inserted with status=started when the sync begins
    - Mutated exactly once to completed or failed (both terminal)
    - Deleted only by retention cleanup
    """
    __tablename__ = "sync_run"

    id = Column(BigInteger, primary_key=True, autoincrement=True)

    sync_type = Column(enum_column_type(PeriodType, "sync_type"), nullable=False, index=True)
    status = Column(
        enum_column_type(SyncStatus, "sync_status"),
        default=SyncStatus.STARTED,
        nullable=False,
        index=True,
    )

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    # Source / destination references
    source_table = Column(String(255), nullable=False)
    target_table = Column(String(255), nullable=False)
    period_start = Column(Date, nullable=True)
    period_end = Column(Date, nullable=True)

    # Statistics
    records_processed = Column(Integer, default=0, nullable=False)
    records_inserted = Column(Integer, default=0, nullable=False)
    records_updated = Column(Integer, default=0, nullable=False)
    records_failed = Column(Integer, default=0, nullable=False)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONB, nullable=True)

    # Flexible run metadata (triggered_by, dry_run, performance metrics)
    sync_metadata = Column("metadata", JSONB, nullable=True, default=dict)

    quality_checks = relationship(
        "DataQualityCheck",
        back_populates="sync_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_sync_run_status_started", "status", "started_at"),
    )

    @property
    def duration_seconds(self):
        if self.completed_at is None or self.started_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
