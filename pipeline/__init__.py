"""
Warehouse-to-store sync pipeline for search query performance data.

Modules:
    connection_pool: Bounded pool of BigQuery clients
    query_builder: Parametrized aggregation query per period type
    asin_filter: ASIN selection strategies (all, specific, top, representative)
    periods: Monday-start week and calendar bucket helpers
    quality_checker: Post-write and store-side data quality checks
    sync_logger: Sync run lifecycle, history, metrics and alerts
    runner: Single-window sync orchestrator
    scheduler: Cron trigger, retry loop and single-flight guard

Subpackages:
    extractors: Warehouse extractor
    transformers: Nested grouping, validation, derived metrics and rollups
    loaders: Batched natural-key upserts into PostgreSQL

Architecture:
    1. Extract - One aggregation query per window, run through the pool
    2. Group + Validate - Flat rows become per-ASIN windows; invalid
       structures abort before any write
    3. Write - Windows, query records, summaries and rollups, each batch
       in its own transaction; failed batches are returned as data
    4. Check - Data quality outcomes are attached to the sync run

Usage:
    from core.database import async_session_maker
    from pipeline.scheduler import create_sync_scheduler

    scheduler = create_sync_scheduler(async_session_maker)
    result = await scheduler.trigger_manual_sync(force=True)

    print(f"Processed {result.records_processed} records")
"""

from pipeline.connection_pool import WarehouseConnectionPool
from pipeline.extractors.bigquery_extractor import BigQueryExtractor
from pipeline.loaders.postgres_loader import PostgresLoader
from pipeline.quality_checker import DataQualityChecker
from pipeline.query_builder import AggregationQueryBuilder
from pipeline.runner import SyncRunner
from pipeline.scheduler import SyncScheduler
from pipeline.sync_logger import SyncLogger
from pipeline.transformers.nested_transformer import NestedDataTransformer
from pipeline.transformers.period_rollup import PeriodRollup

__all__ = [
    "AggregationQueryBuilder",
    "BigQueryExtractor",
    "DataQualityChecker",
    "NestedDataTransformer",
    "PeriodRollup",
    "PostgresLoader",
    "SyncLogger",
    "SyncRunner",
    "SyncScheduler",
    "WarehouseConnectionPool",
]
