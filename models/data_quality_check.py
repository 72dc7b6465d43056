from sqlalchemy import Column, BigInteger, String, Float, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, CheckType, CheckStatus, enum_column_type


class DataQualityCheck(Base):
    """
    Immutable diagnostic record attached to exactly one sync run.

    A check never blocks or rolls back the sync. Warnings mark minor drift
    (share above 1, row count mismatch); failures mark warehouse integrity
    problems (funnel monotonicity violated).
    """
    __tablename__ = "data_quality_check"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    sync_run_id = Column(
        BigInteger,
        ForeignKey("sync_run.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    check_type = Column(enum_column_type(CheckType, "check_type"), nullable=False)
    check_status = Column(enum_column_type(CheckStatus, "check_status"), nullable=False, index=True)

    # Reconciliation values
    source_value = Column(Float, nullable=True)
    target_value = Column(Float, nullable=True)
    difference = Column(Float, nullable=True)
    difference_pct = Column(Float, nullable=True)

    # What was checked
    table_name = Column(String(255), nullable=True)
    column_name = Column(String(255), nullable=True)
    check_query = Column(Text, nullable=True)
    message = Column(Text, nullable=True)
    check_metadata = Column("metadata", JSONB, nullable=True, default=dict)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    sync_run = relationship("SyncRun", back_populates="quality_checks")

    __table_args__ = (
        Index("idx_dq_check_run_type", "sync_run_id", "check_type"),
    )
