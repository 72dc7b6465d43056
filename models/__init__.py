"""
SQLAlchemy ORM models for database tables.

This package defines the destination schema of the sync pipeline:

Models:
    base: Base declarative class and shared enums (PeriodType, SyncStatus, CheckType, CheckStatus)
    sync_run: Sync lifecycle record
    data_quality_check: Diagnostic check records attached to a sync run
    performance: ASIN performance windows and their per-query funnel records
    summary: Weekly, monthly, quarterly and yearly summary tables

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL-specific features like JSONB for flexible metadata storage.
    Every data table has a natural unique key so writes are upserts.

Usage:
    from models import SyncRun, DataQualityCheck, WeeklySummary
    from models.base import PeriodType, SyncStatus

Relationships:
    - SyncRun → DataQualityCheck (one-to-many, cascade delete)
    - EntityPerformance → QueryPerformance (one-to-many, cascade delete)
    - SyncRun → *Summary (provenance via sync_run_id)
"""

from models.base import Base, PeriodType, SyncStatus, CheckType, CheckStatus
from models.sync_run import SyncRun
from models.data_quality_check import DataQualityCheck
from models.performance import EntityPerformance, QueryPerformance
from models.summary import (
    WeeklySummary,
    MonthlySummary,
    QuarterlySummary,
    YearlySummary,
    SUMMARY_MODELS,
    SUMMARY_NATURAL_KEYS,
)

__all__ = [
    "Base",
    "PeriodType",
    "SyncStatus",
    "CheckType",
    "CheckStatus",
    "SyncRun",
    "DataQualityCheck",
    "EntityPerformance",
    "QueryPerformance",
    "WeeklySummary",
    "MonthlySummary",
    "QuarterlySummary",
    "YearlySummary",
    "SUMMARY_MODELS",
    "SUMMARY_NATURAL_KEYS",
]
