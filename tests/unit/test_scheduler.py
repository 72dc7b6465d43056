"""
Unit tests for the sync scheduler: retry accounting, single-flight guard,
window computation and new-data detection
"""

import asyncio
import pytest
from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock

from core.config import Settings
from core.exceptions import (
    ConfigurationError,
    DatabaseError,
    LoadError,
    NonRetryableError,
    ValidationError,
    WarehouseConnectionError,
)
from models.base import PeriodType
from pipeline.scheduler import (
    JOB_ID,
    SchedulerState,
    SingleFlightGuard,
    SyncScheduler,
    create_sync_scheduler,
)
from pipeline.sync_logger import SyncLogger
from schemas.sync import SyncResult

# Wednesday; the last completed week is 2024-01-08..2024-01-14
TODAY = date(2024, 1, 17)
START = date(2024, 1, 8)
END = date(2024, 1, 14)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def components():
    runner = MagicMock()
    runner.sync_date_range = AsyncMock(return_value=SyncResult(success=True, records_processed=12))

    sync_logger = MagicMock()
    sync_logger.start_sync = AsyncMock(return_value=7)
    sync_logger.complete_sync = AsyncMock()
    sync_logger.fail_sync = AsyncMock()
    sync_logger.log_data_quality_checks = AsyncMock(return_value=2)
    sync_logger.get_sync_history = AsyncMock(return_value=[])
    sync_logger.get_metrics = AsyncMock()

    loader = MagicMock()
    loader.session_factory = MagicMock()
    loader.get_latest_period_end = AsyncMock(return_value=date(2024, 1, 7))

    extractor = MagicMock()
    extractor.source_table = "test-project.analytics.sqp"
    extractor.get_latest_source_date = AsyncMock(return_value=date(2024, 1, 14))

    quality_checker = MagicMock()
    quality_checker.run_store_checks = AsyncMock(return_value=[])

    return {
        "runner": runner,
        "sync_logger": sync_logger,
        "loader": loader,
        "extractor": extractor,
        "quality_checker": quality_checker,
    }


@pytest.fixture
def scheduler(components, sleep):
    return SyncScheduler(
        **components,
        retry_attempts=3,
        retry_delay_ms=2000,
        sleep=sleep,
        today=lambda: TODAY,
    )


class TestSingleFlightGuard:

    def test_compare_and_set(self):
        guard = SingleFlightGuard()

        assert guard.try_begin() is True
        assert guard.state == SchedulerState.RUNNING
        assert guard.try_begin() is False

        guard.end()
        assert guard.state == SchedulerState.IDLE
        assert guard.try_begin() is True


class TestConfiguration:

    def test_invalid_cron_is_rejected(self, components):
        with pytest.raises(ConfigurationError):
            SyncScheduler(**components, schedule="not a cron")

    def test_retry_attempts_must_be_positive(self, components):
        with pytest.raises(ConfigurationError):
            SyncScheduler(**components, retry_attempts=0)

    def test_missing_warehouse_settings_are_rejected(self):
        config = Settings(BIGQUERY_PROJECT_ID="", BIGQUERY_DATASET="")

        with pytest.raises(ConfigurationError):
            create_sync_scheduler(MagicMock(), config, client_factory=MagicMock)

    def test_create_from_settings(self):
        config = Settings(
            BIGQUERY_PROJECT_ID="test-project",
            BIGQUERY_DATASET="analytics",
            SYNC_SCHEDULE="30 3 * * 1",
            SYNC_RETRY_ATTEMPTS=5,
            ALERT_CONSECUTIVE_FAILURES=4,
        )

        scheduler = create_sync_scheduler(MagicMock(), config, client_factory=MagicMock)

        assert scheduler.retry_attempts == 5
        assert scheduler.schedule == "30 3 * * 1"
        assert scheduler.sync_logger.alert_config.consecutive_failure_threshold == 4
        assert scheduler.extractor.source_table == "test-project.analytics.seller-search_query_performance"
        assert scheduler.runner.transformer.loader is scheduler.loader


class TestRetry:

    @pytest.mark.asyncio
    async def test_success_on_third_attempt(self, scheduler, components, sleep):
        components["runner"].sync_date_range.side_effect = [
            WarehouseConnectionError("Warehouse call failed"),
            LoadError("Every write batch failed"),
            SyncResult(success=True, records_processed=12),
        ]

        result = await scheduler.execute_sync_job(START, END)

        assert result.success is True
        assert result.retry_count == 2
        assert result.records_processed == 12
        assert sleep.delays == [2.0, 2.0]
        metadata = components["sync_logger"].complete_sync.await_args.args[2]
        assert metadata["retry_count"] == 2

    @pytest.mark.asyncio
    async def test_all_attempts_fail(self, scheduler, components, sleep):
        components["runner"].sync_date_range.side_effect = WarehouseConnectionError("Warehouse call failed")

        result = await scheduler.execute_sync_job(START, END)

        assert result.success is False
        assert result.retry_count == 3
        assert result.error == "Warehouse call failed"
        assert components["runner"].sync_date_range.await_count == 3
        assert sleep.delays == [2.0, 2.0]
        components["sync_logger"].fail_sync.assert_awaited_once()
        components["sync_logger"].complete_sync.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        ValidationError("Nested data failed validation"),
        ConfigurationError("Invalid warehouse table"),
    ])
    async def test_non_retryable_errors_are_not_retried(self, scheduler, components, sleep, error):
        assert isinstance(error, NonRetryableError)
        components["runner"].sync_date_range.side_effect = error

        result = await scheduler.execute_sync_job(START, END)

        assert result.success is False
        assert result.retry_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_attempts_share_one_sync_run(self, scheduler, components):
        await scheduler.execute_sync_job(START, END)

        components["sync_logger"].start_sync.assert_awaited_once()
        assert components["runner"].sync_date_range.await_args.kwargs["sync_run_id"] == 7

    @pytest.mark.asyncio
    async def test_partial_success_is_reported(self, scheduler, components):
        components["runner"].sync_date_range.return_value = SyncResult(
            success=False, partial_success=True, records_processed=9,
            errors=[{"error_type": "BatchWriteError"}],
        )

        result = await scheduler.execute_sync_job(START, END)

        assert result.success is True
        assert result.partial_success is True
        assert result.errors == [{"error_type": "BatchWriteError"}]

    @pytest.mark.asyncio
    async def test_store_outage_does_not_abort_the_job(self, components, sleep, session_factory, mock_session):
        mock_session.execute.side_effect = ConnectionRefusedError(111, "Connect call failed")
        components["sync_logger"] = SyncLogger(session_factory)
        scheduler = SyncScheduler(**components, retry_attempts=3, retry_delay_ms=2000, sleep=sleep)

        result = await scheduler.execute_sync_job(START, END)

        assert result.success is True
        assert result.sync_run_id is None
        assert result.records_processed == 12
        assert scheduler.guard.is_running is False

    @pytest.mark.asyncio
    async def test_failing_fail_sync_still_returns_a_result(self, scheduler, components):
        components["runner"].sync_date_range.side_effect = WarehouseConnectionError("Warehouse call failed")
        components["sync_logger"].fail_sync.side_effect = RuntimeError("driver state lost")

        result = await scheduler.execute_sync_job(START, END)

        assert result.success is False
        assert result.retry_count == 3
        assert result.error == "Warehouse call failed"


class TestConcurrencyGuard:

    @pytest.mark.asyncio
    async def test_second_sync_is_rejected_while_running(self, scheduler, components):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_sync(*args, **kwargs):
            started.set()
            await release.wait()
            return SyncResult(success=True, records_processed=12)

        components["runner"].sync_date_range.side_effect = slow_sync

        first = asyncio.create_task(scheduler.execute_sync_job(START, END))
        await started.wait()

        second = await scheduler.execute_sync_job(START, END, triggered_by="manual")

        assert second.success is False
        assert second.error == "Sync already in progress"
        assert second.records_processed == 0
        assert (await scheduler.get_sync_status()).is_running is True

        release.set()
        result = await first

        assert result.success is True
        assert components["runner"].sync_date_range.await_count == 1
        assert scheduler.guard.state == SchedulerState.IDLE
        assert scheduler.current_sync_id is None

    @pytest.mark.asyncio
    async def test_guard_released_after_failure(self, scheduler, components):
        components["runner"].sync_date_range.side_effect = ValidationError("bad")

        await scheduler.execute_sync_job(START, END)

        assert scheduler.guard.state == SchedulerState.IDLE


class TestWindow:

    @pytest.mark.asyncio
    async def test_window_starts_after_last_synced_week(self, scheduler):
        assert await scheduler.get_date_range_for_sync() == (START, END)

    @pytest.mark.asyncio
    async def test_window_without_history_uses_lookback(self, scheduler, components):
        components["loader"].get_latest_period_end.return_value = None

        start, end = await scheduler.get_date_range_for_sync()

        assert start == TODAY - timedelta(days=90)
        assert end == END

    @pytest.mark.asyncio
    async def test_empty_window_is_skipped(self, scheduler, components):
        components["loader"].get_latest_period_end.return_value = END

        result = await scheduler.execute_sync_job()

        assert result.success is True
        assert result.skipped is True
        assert result.records_processed == 0
        components["runner"].sync_date_range.assert_not_awaited()
        counts, metadata = components["sync_logger"].complete_sync.await_args.args[1:]
        assert counts.records_processed == 0
        assert metadata == {"message": "No new data to sync"}

    @pytest.mark.asyncio
    async def test_window_failure_fails_the_job(self, scheduler, components):
        components["loader"].get_latest_period_end.side_effect = DatabaseError("Failed to read the latest synced week")

        result = await scheduler.execute_sync_job()

        assert result.success is False
        assert result.error == "Failed to read the latest synced week"
        assert scheduler.guard.state == SchedulerState.IDLE


class TestNewDataDetection:

    @pytest.mark.asyncio
    async def test_empty_store_has_new_data(self, scheduler, components):
        components["loader"].get_latest_period_end.return_value = None

        assert await scheduler.check_for_new_data() is True

    @pytest.mark.asyncio
    async def test_newer_source_data(self, scheduler):
        assert await scheduler.check_for_new_data() is True

    @pytest.mark.asyncio
    async def test_up_to_date_store_skips_warehouse(self, scheduler, components):
        components["loader"].get_latest_period_end.return_value = END

        assert await scheduler.check_for_new_data() is False
        components["extractor"].get_latest_source_date.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_newer_source_data(self, scheduler, components):
        components["extractor"].get_latest_source_date.return_value = date(2024, 1, 7)

        assert await scheduler.check_for_new_data() is False

    @pytest.mark.asyncio
    async def test_errors_mean_no_new_data(self, scheduler, components):
        components["extractor"].get_latest_source_date.side_effect = WarehouseConnectionError("down")

        assert await scheduler.check_for_new_data() is False


class TestTriggers:

    @pytest.mark.asyncio
    async def test_manual_sync_without_new_data_is_skipped(self, scheduler, components):
        components["extractor"].get_latest_source_date.return_value = date(2024, 1, 7)

        result = await scheduler.trigger_manual_sync()

        assert result.skipped is True
        assert result.triggered_by == "manual"
        components["runner"].sync_date_range.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_forced_manual_sync_runs(self, scheduler, components):
        components["extractor"].get_latest_source_date.return_value = date(2024, 1, 7)

        result = await scheduler.trigger_manual_sync(force=True)

        assert result.success is True
        assert result.triggered_by == "manual"
        assert (result.start_date, result.end_date) == (START, END)

    @pytest.mark.asyncio
    async def test_scheduled_job_runs_store_checks(self, scheduler, components):
        result = await scheduler.run_scheduled_job()

        assert result.success is True
        components["quality_checker"].run_store_checks.assert_awaited_once_with(
            components["loader"].session_factory, PeriodType.WEEKLY, START, END
        )
        components["sync_logger"].log_data_quality_checks.assert_awaited_once_with(7, [])

    @pytest.mark.asyncio
    async def test_store_check_failure_does_not_fail_the_job(self, scheduler, components):
        components["quality_checker"].run_store_checks.side_effect = DatabaseError("Failed to run store data quality checks")

        result = await scheduler.execute_sync_job(START, END)

        assert result.success is True


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_registers_cron_job(self, scheduler):
        scheduler.start()
        try:
            assert scheduler.scheduler.get_job(JOB_ID) is not None
            status = await scheduler.get_sync_status()
            assert status.next_scheduled_sync is not None
            assert status.is_running is False
        finally:
            scheduler.stop()

    @pytest.mark.asyncio
    async def test_cleanup_closes_pool(self, components):
        pool = MagicMock()
        pool.close = AsyncMock()
        scheduler = SyncScheduler(**components, pool=pool)

        await scheduler.cleanup()

        pool.close.assert_awaited_once()
