# ============================================================================
# File: pipeline/runner.py
# Description: Sync orchestrator for one source window
# ============================================================================
"""
Sync Runner - Orchestrates extract, group, validate, write and check.

This module provides the single-window sync used by the scheduler and the
CLI:
- Structural validation happens before any write (fail fast)
- Batch write failures are returned as data (partial success)
- Data quality checks run after the write phases, whatever their outcome
- Sync log calls never decide the sync outcome (best effort)
"""

from datetime import date
from typing import Any, Callable, Optional
import logging
import time

from core.exceptions import LoadError, SyncException, SyncLogError
from models.base import PeriodType
from models.summary import SUMMARY_MODELS
from pipeline.asin_filter import AsinFilter
from pipeline.periods import aligned_window
from pipeline.quality_checker import DataQualityChecker
from pipeline.sync_logger import SyncLogger
from schemas.sync import SyncCounts, SyncResult, SyncRunCreate, WriteResult

logger = logging.getLogger(__name__)


class SyncRunner:
    """
    Sync orchestrator.

    Responsibilities:
    - Extract → Group → Validate → Write → Check
    - Own the sync run lifecycle when no run id is supplied
    - Report partial success when some batches failed
    """

    def __init__(
        self,
        extractor,
        transformer,
        sync_logger,
        quality_checker: Optional[DataQualityChecker] = None,
    ):
        self.extractor = extractor
        self.transformer = transformer
        self.sync_logger = sync_logger
        self.quality_checker = quality_checker or DataQualityChecker()

    async def sync_date_range(
        self,
        start_date: date,
        end_date: date,
        period_type: PeriodType = PeriodType.WEEKLY,
        asin_filter: Optional[AsinFilter] = None,
        dry_run: bool = False,
        sync_run_id: Optional[int] = None,
    ) -> SyncResult:
        """
        Sync one source window.

        Args:
            start_date / end_date: Inclusive source window, widened to whole
                periods of ``period_type``
            period_type: Aggregation granularity
            asin_filter: Warehouse-side ASIN selection (default: all)
            dry_run: Extract and validate only; report what would be written
            sync_run_id: Existing run to attach to. When given, the caller
                finalizes the run; otherwise this method creates and
                finalizes its own.

        Returns:
            SyncResult with counts, batch errors and quality checks

        Raises:
            ValidationError: Invalid nested structure, nothing written
            LoadError: Every write batch failed
            SyncException: Extraction or connection failures
        """
        period_type = PeriodType(period_type)
        owns_run = sync_run_id is None
        started = time.monotonic()

        requested = (start_date, end_date)
        start_date, end_date = aligned_window(period_type, start_date, end_date)
        if (start_date, end_date) != requested:
            logger.info(
                f"Widened {period_type.value} window {requested[0]}..{requested[1]} "
                f"to whole periods {start_date}..{end_date}"
            )

        if owns_run:
            sync_run_id = await self._best_effort(
                self.sync_logger.start_sync,
                SyncRunCreate(
                    sync_type=period_type,
                    source_table=self.extractor.source_table,
                    target_table=SUMMARY_MODELS[period_type].__tablename__,
                    period_start=start_date,
                    period_end=end_date,
                    metadata={
                        "dry_run": dry_run,
                        "asin_filter": asin_filter.describe() if asin_filter else {"strategy": "all"},
                    },
                ),
            )

        try:
            # --------------------------------------------------
            # PHASE 1: EXTRACTION
            # --------------------------------------------------
            rows = await self.extractor.fetch_rows(period_type, start_date, end_date, asin_filter)

            # --------------------------------------------------
            # PHASE 2: GROUP + VALIDATE (before any write)
            # --------------------------------------------------
            nested = self.transformer.group_rows(rows, period_type, start_date, end_date)
            self.transformer.ensure_valid(nested)

            result = SyncResult(
                success=True,
                sync_run_id=sync_run_id,
                period_type=period_type,
                start_date=start_date,
                end_date=end_date,
                entities=len(nested.entities),
                query_records=nested.total_query_records,
                dry_run=dry_run,
            )

            if dry_run:
                result.would_write = nested.total_query_records
                result.duration_seconds = round(time.monotonic() - started, 3)
                logger.info(f"Dry run: would write {result.would_write} query records")

                if owns_run and sync_run_id is not None:
                    await self._best_effort(
                        self.sync_logger.complete_sync,
                        sync_run_id,
                        SyncCounts(),
                        {"dry_run": True, "would_write": result.would_write},
                    )
                return result

            # --------------------------------------------------
            # PHASE 3: WRITE (A: windows, B: queries, C: summaries, D: rollups)
            # --------------------------------------------------
            if nested.entities:
                write_result = await self.transformer.transform_and_sync(nested, sync_run_id)
            else:
                logger.info("No rows in source window, nothing to write")
                write_result = WriteResult()

            nothing_written = (
                write_result.entities_written == 0
                and write_result.query_records_written == 0
                and write_result.summaries_written == 0
            )
            if write_result.has_errors and nothing_written:
                raise LoadError(
                    "Every write batch failed",
                    context={
                        "failed_batches": len(write_result.errors),
                        "summary": SyncLogger.summarize_errors(write_result.errors),
                    }
                )

            result.records_processed = write_result.query_records_written
            result.records_inserted = write_result.records_inserted
            result.records_updated = write_result.records_updated
            result.records_failed = write_result.records_failed
            result.summaries = write_result.summaries_written
            result.rollups = write_result.rollups_written
            result.errors = write_result.errors
            result.success = not write_result.has_errors
            result.partial_success = write_result.has_errors

            # --------------------------------------------------
            # PHASE 4: DATA QUALITY
            # --------------------------------------------------
            result.quality_checks = self.quality_checker.run_post_write_checks(nested, write_result)

            if sync_run_id is not None:
                await self._best_effort(
                    self.sync_logger.log_data_quality_checks, sync_run_id, result.quality_checks
                )
                if write_result.errors:
                    await self._best_effort(
                        self.sync_logger.log_record_errors, sync_run_id, write_result.errors
                    )

            # --------------------------------------------------
            # PHASE 5: FINALIZE
            # --------------------------------------------------
            result.duration_seconds = round(time.monotonic() - started, 3)

            if sync_run_id is not None:
                await self._best_effort(
                    self.sync_logger.log_performance_metrics,
                    sync_run_id,
                    {
                        "duration_seconds": result.duration_seconds,
                        "records_per_second": (
                            round(result.records_processed / result.duration_seconds, 2)
                            if result.duration_seconds else 0.0
                        ),
                    },
                )

            if owns_run and sync_run_id is not None:
                await self._best_effort(
                    self.sync_logger.complete_sync,
                    sync_run_id,
                    self.counts_of(result),
                    {"partial_success": result.partial_success},
                )

            logger.info(
                f"Sync {start_date}..{end_date} ({period_type.value}) "
                f"{'succeeded' if result.success else 'partially succeeded'}: "
                f"{result.records_processed} processed, {len(result.errors)} failed batches"
            )
            return result

        except SyncException as e:
            logger.error(
                f"Sync failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            if owns_run and sync_run_id is not None:
                await self._best_effort(self.sync_logger.fail_sync, sync_run_id, e)
            raise

        except Exception as e:
            logger.exception("Unexpected error in sync")
            if owns_run and sync_run_id is not None:
                await self._best_effort(self.sync_logger.fail_sync, sync_run_id, e)
            raise

    @staticmethod
    def counts_of(result: SyncResult) -> SyncCounts:
        return SyncCounts(
            records_processed=result.records_processed,
            records_inserted=result.records_inserted,
            records_updated=result.records_updated,
            records_failed=result.records_failed,
        )

    @staticmethod
    async def _best_effort(func: Callable, *args: Any) -> Any:
        """Run a sync log call; a failure is logged and never changes the sync outcome"""
        try:
            return await func(*args)
        except SyncLogError as e:
            logger.debug(
                f"Sync log call {getattr(func, '__name__', func)} failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            return None
        except Exception:
            logger.warning(
                f"Sync log call {getattr(func, '__name__', func)} failed unexpectedly",
                exc_info=True
            )
            return None
