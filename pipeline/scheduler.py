"""
Cron-driven sync scheduler with retry and a single-flight guard.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple
import asyncio
import enum
import logging
import threading

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.config import Settings, settings as default_settings
from core.exceptions import (
    ConcurrencyRejection,
    ConfigurationError,
    DatabaseError,
    NonRetryableError,
    SyncException,
    SyncLogError,
)
from models.base import PeriodType
from models.summary import SUMMARY_MODELS
from pipeline.asin_filter import AsinFilter
from pipeline.connection_pool import WarehouseClient, WarehouseConnectionPool
from pipeline.extractors.bigquery_extractor import BigQueryExtractor
from pipeline.loaders.postgres_loader import PostgresLoader
from pipeline.periods import aligned_window, last_completed_week_end
from pipeline.quality_checker import DataQualityChecker
from pipeline.query_builder import AggregationQueryBuilder
from pipeline.runner import SyncRunner
from pipeline.sync_logger import SyncLogger
from pipeline.transformers.nested_transformer import NestedDataTransformer
from schemas.sync import (
    AlertConfig,
    DataQualityCheckCreate,
    SyncCounts,
    SyncJobResult,
    SyncMetrics,
    SyncRunCreate,
    SyncStatusSnapshot,
)

logger = logging.getLogger(__name__)

JOB_ID = "sqp_sync_job"
ALREADY_RUNNING = "Sync already in progress"


def _utc_today() -> date:
    return datetime.utcnow().date()


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class SingleFlightGuard:
    """Two-state Idle/Running value changed only by compare-and-set"""

    def __init__(self):
        self._state = SchedulerState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    def try_begin(self) -> bool:
        with self._lock:
            if self._state == SchedulerState.RUNNING:
                return False
            self._state = SchedulerState.RUNNING
            return True

    def end(self) -> None:
        with self._lock:
            self._state = SchedulerState.IDLE


class SyncScheduler:
    """
    Drives periodic and manual syncs through one execution path.

    - The cron trigger calls ``run_scheduled_job`` which syncs only when
      ``check_for_new_data`` finds complete weeks beyond the stored data
    - ``execute_sync_job`` retries a failing attempt up to
      ``retry_attempts`` times with a fixed delay
    - At most one job runs at a time; a concurrent request is rejected
      immediately
    """

    def __init__(
        self,
        runner: SyncRunner,
        sync_logger: SyncLogger,
        loader: PostgresLoader,
        extractor: BigQueryExtractor,
        quality_checker: Optional[DataQualityChecker] = None,
        pool: Optional[WarehouseConnectionPool] = None,
        schedule: str = "0 2 * * *",
        retry_attempts: int = 3,
        retry_delay_ms: int = 2000,
        default_lookback_days: int = 90,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        today: Callable[[], date] = _utc_today,
    ):
        if retry_attempts < 1:
            raise ConfigurationError(
                "retry_attempts must be at least 1",
                context={"retry_attempts": retry_attempts}
            )
        try:
            self.trigger = CronTrigger.from_crontab(schedule, timezone="UTC")
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid cron schedule: {schedule!r}",
                context={"schedule": schedule},
                original_exception=e
            )

        self.runner = runner
        self.sync_logger = sync_logger
        self.loader = loader
        self.extractor = extractor
        self.quality_checker = quality_checker or DataQualityChecker()
        self.pool = pool
        self.schedule = schedule
        self.retry_attempts = retry_attempts
        self.retry_delay_ms = retry_delay_ms
        self.default_lookback_days = default_lookback_days
        self._sleep = sleep
        self._today = today

        self.guard = SingleFlightGuard()
        self.current_sync_id: Optional[int] = None
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    # ------------------------------------------------------------------
    # Pending work detection
    # ------------------------------------------------------------------

    async def check_for_new_data(self) -> bool:
        """
        True when the warehouse holds data beyond the last synced week.

        Errors are logged and reported as "no new data".
        """
        try:
            last_synced = await self.loader.get_latest_period_end()
            if last_synced is None:
                return True

            if last_completed_week_end(self._today()) <= last_synced:
                return False

            latest_source = await self.extractor.get_latest_source_date()
            return latest_source is not None and latest_source > last_synced

        except SyncException as e:
            logger.error(
                f"Error checking for new data: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            return False

    async def get_date_range_for_sync(self) -> Tuple[date, date]:
        """Day after the last synced period_end (or the lookback start) to the last completed week"""
        today = self._today()
        last_synced = await self.loader.get_latest_period_end()

        if last_synced is not None:
            start = last_synced + timedelta(days=1)
        else:
            start = today - timedelta(days=self.default_lookback_days)

        return start, last_completed_week_end(today)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_sync_job(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        triggered_by: str = "scheduled",
        period_type: PeriodType = PeriodType.WEEKLY,
        asin_filter: Optional[AsinFilter] = None,
    ) -> SyncJobResult:
        if not self.guard.try_begin():
            rejection = ConcurrencyRejection(
                ALREADY_RUNNING,
                context={"triggered_by": triggered_by, "current_sync_id": self.current_sync_id}
            )
            logger.warning(str(rejection), extra={"error_context": rejection.to_dict()})
            return SyncJobResult(success=False, error=rejection.message, triggered_by=triggered_by)

        try:
            if start_date is None or end_date is None:
                try:
                    default_start, default_end = await self.get_date_range_for_sync()
                except SyncException as e:
                    logger.error(
                        f"Could not compute the sync window: {e.message}",
                        extra={"error_context": e.to_dict()}
                    )
                    return SyncJobResult(success=False, error=e.message, triggered_by=triggered_by)
                start_date = start_date or default_start
                end_date = end_date or default_end

            period_type = PeriodType(period_type)
            start_date, end_date = aligned_window(period_type, start_date, end_date)
            run_id = await self._best_effort(
                self.sync_logger.start_sync,
                SyncRunCreate(
                    sync_type=period_type,
                    source_table=self.extractor.source_table,
                    target_table=SUMMARY_MODELS[period_type].__tablename__,
                    period_start=start_date,
                    period_end=end_date,
                    metadata={"triggered_by": triggered_by},
                ),
            )
            self.current_sync_id = run_id

            if start_date > end_date:
                logger.info(f"Nothing to sync: window {start_date}..{end_date} is empty")
                if run_id is not None:
                    await self._best_effort(
                        self.sync_logger.complete_sync,
                        run_id,
                        SyncCounts(),
                        {"message": "No new data to sync"},
                    )
                return SyncJobResult(
                    success=True,
                    sync_run_id=run_id,
                    triggered_by=triggered_by,
                    start_date=start_date,
                    end_date=end_date,
                    skipped=True,
                )

            result = None
            last_error: Optional[BaseException] = None
            retry_count = 0

            for attempt in range(1, self.retry_attempts + 1):
                try:
                    result = await self.runner.sync_date_range(
                        start_date,
                        end_date,
                        period_type=period_type,
                        asin_filter=asin_filter,
                        sync_run_id=run_id,
                    )
                    break
                except NonRetryableError as e:
                    logger.warning(f"Sync attempt {attempt} failed and will not be retried: {e.message}")
                    last_error = e
                    retry_count += 1
                    break
                except Exception as e:
                    last_error = e
                    retry_count += 1
                    logger.warning(
                        f"Sync attempt {attempt}/{self.retry_attempts} failed: {e}"
                    )
                    if attempt < self.retry_attempts:
                        await self._sleep(self.retry_delay_ms / 1000)

            if result is None:
                if run_id is not None:
                    await self._best_effort(self.sync_logger.fail_sync, run_id, last_error)

                message = last_error.message if isinstance(last_error, SyncException) else str(last_error)
                logger.error(f"Sync failed after {retry_count} attempts: {message}")
                return SyncJobResult(
                    success=False,
                    sync_run_id=run_id,
                    retry_count=retry_count,
                    error=message,
                    triggered_by=triggered_by,
                    start_date=start_date,
                    end_date=end_date,
                )

            if run_id is not None:
                await self._best_effort(
                    self.sync_logger.complete_sync,
                    run_id,
                    SyncRunner.counts_of(result),
                    {
                        "triggered_by": triggered_by,
                        "retry_count": retry_count,
                        "partial_success": result.partial_success,
                    },
                )
                await self.run_data_quality_checks(run_id, period_type, start_date, end_date)

            return SyncJobResult(
                success=True,
                sync_run_id=run_id,
                records_processed=result.records_processed,
                retry_count=retry_count,
                triggered_by=triggered_by,
                start_date=start_date,
                end_date=end_date,
                partial_success=result.partial_success,
                errors=result.errors,
            )

        finally:
            self.current_sync_id = None
            self.guard.end()

    async def run_data_quality_checks(
        self,
        run_id: int,
        period_type: PeriodType,
        start_date: date,
        end_date: date,
    ) -> List[DataQualityCheckCreate]:
        """Store-side checks over the synced window, attached to the run"""
        try:
            checks = await self.quality_checker.run_store_checks(
                self.loader.session_factory, period_type, start_date, end_date
            )
            await self.sync_logger.log_data_quality_checks(run_id, checks)
            return checks
        except DatabaseError as e:
            logger.warning(f"Data quality checks for run {run_id} failed: {e.message}")
            return []

    async def run_scheduled_job(self) -> Optional[SyncJobResult]:
        logger.info("Scheduler: checking for new data")
        if not await self.check_for_new_data():
            logger.info("Scheduler: no new data to sync")
            return None

        result = await self.execute_sync_job(triggered_by="scheduled")
        logger.info(
            f"Scheduler: sync finished success={result.success} "
            f"records={result.records_processed} retries={result.retry_count}"
        )
        return result

    async def trigger_manual_sync(
        self,
        force: bool = False,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> SyncJobResult:
        """
        Run a sync now through the same guarded path.

        Without ``force`` and without an explicit window, the sync is
        skipped when no new data is pending.
        """
        if not force and start_date is None and end_date is None:
            if self.guard.is_running:
                return SyncJobResult(success=False, error=ALREADY_RUNNING, triggered_by="manual")
            if not await self.check_for_new_data():
                return SyncJobResult(success=True, skipped=True, triggered_by="manual")

        return await self.execute_sync_job(
            start_date=start_date,
            end_date=end_date,
            triggered_by="manual",
        )

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def get_sync_status(self) -> SyncStatusSnapshot:
        history = await self._best_effort(
            self.sync_logger.get_sync_history, 1, PeriodType.WEEKLY
        )

        job = self.scheduler.get_job(JOB_ID) if self.scheduler.running else None

        return SyncStatusSnapshot(
            is_running=self.guard.is_running,
            current_sync_id=self.current_sync_id,
            last_sync=history[0] if history else None,
            next_scheduled_sync=job.next_run_time if job else None,
        )

    async def get_sync_metrics(self, days: int = 7) -> SyncMetrics:
        return await self.sync_logger.get_metrics(days)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_scheduled_job,
            trigger=self.trigger,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Sync scheduler started with schedule: {self.schedule}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped")

    async def cleanup(self) -> None:
        self.stop()
        if self.pool is not None:
            await self.pool.close()

    @staticmethod
    async def _best_effort(func: Callable, *args):
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


# ============================================================================
# Wiring
# ============================================================================

@dataclass
class SyncComponents:
    pool: WarehouseConnectionPool
    extractor: BigQueryExtractor
    loader: PostgresLoader
    transformer: NestedDataTransformer
    sync_logger: SyncLogger
    quality_checker: DataQualityChecker
    runner: SyncRunner


def build_sync_components(
    session_factory: Callable,
    config: Settings = default_settings,
    client_factory: Optional[Callable] = None,
) -> SyncComponents:
    """
    Wire the pipeline from settings.

    Raises:
        ConfigurationError: Missing warehouse project or dataset
    """
    if not config.BIGQUERY_PROJECT_ID or not config.BIGQUERY_DATASET:
        raise ConfigurationError(
            "BIGQUERY_PROJECT_ID and BIGQUERY_DATASET are required",
            context={"project_id": config.BIGQUERY_PROJECT_ID, "dataset": config.BIGQUERY_DATASET}
        )

    client_factory = client_factory or (
        lambda: WarehouseClient(config.BIGQUERY_PROJECT_ID, config.BIGQUERY_LOCATION)
    )
    pool = WarehouseConnectionPool(
        client_factory,
        max_clients=config.WAREHOUSE_MAX_CLIENTS,
        acquire_timeout=config.WAREHOUSE_ACQUIRE_TIMEOUT_SECONDS,
    )
    builder = AggregationQueryBuilder(
        config.BIGQUERY_PROJECT_ID, config.BIGQUERY_DATASET, config.BIGQUERY_TABLE
    )
    extractor = BigQueryExtractor(pool, builder)
    loader = PostgresLoader(session_factory, rollup_enabled=config.SYNC_ROLLUP_ENABLED)
    transformer = NestedDataTransformer(loader)
    sync_logger = SyncLogger(
        session_factory,
        AlertConfig(
            consecutive_failure_threshold=config.ALERT_CONSECUTIVE_FAILURES,
            long_running_minutes=config.ALERT_LONG_RUNNING_MINUTES,
        ),
    )
    quality_checker = DataQualityChecker()
    runner = SyncRunner(extractor, transformer, sync_logger, quality_checker)

    return SyncComponents(
        pool=pool,
        extractor=extractor,
        loader=loader,
        transformer=transformer,
        sync_logger=sync_logger,
        quality_checker=quality_checker,
        runner=runner,
    )


def create_sync_scheduler(
    session_factory: Callable,
    config: Settings = default_settings,
    client_factory: Optional[Callable] = None,
) -> SyncScheduler:
    components = build_sync_components(session_factory, config, client_factory)
    return SyncScheduler(
        runner=components.runner,
        sync_logger=components.sync_logger,
        loader=components.loader,
        extractor=components.extractor,
        quality_checker=components.quality_checker,
        pool=components.pool,
        schedule=config.SYNC_SCHEDULE,
        retry_attempts=config.SYNC_RETRY_ATTEMPTS,
        retry_delay_ms=config.SYNC_RETRY_DELAY_MS,
        default_lookback_days=config.SYNC_DEFAULT_LOOKBACK_DAYS,
    )
