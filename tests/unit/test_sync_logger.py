"""
Unit tests for the sync run lifecycle, history views and alert logic
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from types import SimpleNamespace

from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import InvalidStateTransition, SyncLogError, WarehouseQueryError
from models.base import CheckStatus, CheckType, PeriodType, SyncStatus
from pipeline.sync_logger import SyncLogger
from schemas.sync import AlertConfig, DataQualityCheckCreate, SyncCounts, SyncRunCreate

NOW = datetime(2024, 1, 15, 12, 0, 0)


def run(id, status, started_minutes_ago=10, duration_seconds=None, records=0, error=None):
    started_at = NOW - timedelta(minutes=started_minutes_ago)
    return SimpleNamespace(
        id=id,
        status=status,
        started_at=started_at,
        completed_at=started_at + timedelta(seconds=duration_seconds) if duration_seconds is not None else None,
        records_processed=records,
        error_message=error,
    )


@pytest.fixture
def sync_logger(session_factory):
    return SyncLogger(session_factory, AlertConfig(consecutive_failure_threshold=2, long_running_minutes=15))


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_sync_returns_id(self, sync_logger, mock_session, make_result):
        mock_session.execute.return_value = make_result(scalar=42)

        run_id = await sync_logger.start_sync(
            SyncRunCreate(source_table="p.d.t", target_table="weekly_summary")
        )

        assert run_id == 42
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        SQLAlchemyError("connection refused"),
        ConnectionRefusedError(111, "Connect call failed"),
        asyncio.TimeoutError(),
    ])
    async def test_start_sync_wraps_store_errors(self, sync_logger, mock_session, error):
        mock_session.execute.side_effect = error

        with pytest.raises(SyncLogError):
            await sync_logger.start_sync(
                SyncRunCreate(source_table="p.d.t", target_table="weekly_summary")
            )

        mock_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_complete_sync(self, sync_logger, mock_session, make_result):
        mock_session.execute.return_value = make_result(rowcount=1)

        await sync_logger.complete_sync(42, SyncCounts(records_processed=10, records_inserted=10))

        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_terminal_run_cannot_transition_again(self, sync_logger, mock_session, make_result):
        mock_session.execute.return_value = make_result(rowcount=0)

        with pytest.raises(InvalidStateTransition):
            await sync_logger.complete_sync(42, SyncCounts())

        mock_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fail_sync_records_message(self, sync_logger, mock_session, make_result):
        mock_session.execute.return_value = make_result(rowcount=1)

        await sync_logger.fail_sync(42, WarehouseQueryError("Warehouse rejected the query"))

        stmt = mock_session.execute.await_args.args[0]
        params = stmt.compile().params
        assert params["error_message"] == "Warehouse rejected the query"
        assert params["error_details"]["error_type"] == "WarehouseQueryError"
        assert "stack" in params["error_details"]

    @pytest.mark.asyncio
    async def test_log_data_quality_checks(self, sync_logger, mock_session):
        checks = [
            DataQualityCheckCreate(check_type=CheckType.ROW_COUNT, check_status=CheckStatus.PASSED),
            DataQualityCheckCreate(check_type=CheckType.NULL_CHECK, check_status=CheckStatus.FAILED),
        ]

        assert await sync_logger.log_data_quality_checks(42, checks) == 2
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_checks_means_no_write(self, sync_logger, mock_session):
        assert await sync_logger.log_data_quality_checks(42, []) == 0
        mock_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_log_record_errors_appends(self, sync_logger, mock_session, make_result):
        mock_session.execute.side_effect = [
            make_result(scalar={"record_errors": [{"message": "old"}]}),
            make_result(),
        ]

        await sync_logger.log_record_errors(42, [{"message": "new"}])

        stmt = mock_session.execute.await_args_list[1].args[0]
        details = stmt.compile().params["error_details"]
        assert details["record_errors"] == [{"message": "old"}, {"message": "new"}]
        assert details["total_record_errors"] == 2


class TestReadViews:

    @pytest.mark.asyncio
    async def test_get_metrics(self, sync_logger, mock_session, make_result):
        mock_session.execute.return_value = make_result(scalars=[
            run(1, SyncStatus.COMPLETED, duration_seconds=60, records=100),
            run(2, SyncStatus.COMPLETED, duration_seconds=120, records=50),
            run(3, SyncStatus.FAILED, duration_seconds=5),
            run(4, SyncStatus.STARTED),
        ])

        metrics = await sync_logger.get_metrics(days=7)

        assert metrics.total_syncs == 4
        assert metrics.successful_syncs == 2
        assert metrics.failed_syncs == 1
        assert metrics.average_duration_seconds == 90
        assert metrics.total_records_processed == 150
        assert metrics.success_rate == 0.5
        assert metrics.error_rate == 0.25

    def test_metrics_of_no_runs(self):
        metrics = SyncLogger.compute_metrics([])

        assert metrics.total_syncs == 0
        assert metrics.success_rate == 0.0
        assert metrics.average_duration_seconds == 0.0

    def test_success_rate(self):
        rate = SyncLogger.compute_success_rate(["completed", "completed", "failed", "started"])

        assert (rate.total, rate.successful, rate.failed) == (4, 2, 1)
        assert rate.percentage == 50.0

    @pytest.mark.asyncio
    async def test_read_errors_are_wrapped(self, sync_logger, mock_session):
        mock_session.execute.side_effect = SQLAlchemyError("timeout")

        with pytest.raises(SyncLogError):
            await sync_logger.get_sync_history(limit=5, sync_type=PeriodType.WEEKLY)


class TestAlerts:

    def test_consecutive_failures_raise_critical_alert(self):
        recent = [
            run(3, SyncStatus.FAILED, error="boom"),
            run(2, SyncStatus.FAILED, error="timeout"),
            run(1, SyncStatus.COMPLETED),
        ]

        alert = SyncLogger.evaluate_consecutive_failures(recent, threshold=2)

        assert alert.alert is True
        assert alert.reason == "consecutive_failures"
        assert alert.severity == "critical"
        assert alert.details["sync_run_ids"] == [3, 2]
        assert alert.details["errors"] == ["boom", "timeout"]

    def test_one_success_clears_the_alert(self):
        recent = [run(3, SyncStatus.FAILED), run(2, SyncStatus.COMPLETED)]

        alert = SyncLogger.evaluate_consecutive_failures(recent, threshold=2)

        assert alert.alert is False
        assert alert.reason == "no_issues"

    def test_too_few_runs_for_alert(self):
        assert SyncLogger.evaluate_consecutive_failures([run(1, SyncStatus.FAILED)], threshold=2).alert is False

    def test_long_running_sync(self):
        alert = SyncLogger.evaluate_long_running(run(7, SyncStatus.STARTED, started_minutes_ago=20), NOW, 15)

        assert alert.alert is True
        assert alert.severity == "high"
        assert alert.details["sync_run_id"] == 7
        assert alert.details["duration_minutes"] == 20

    def test_normal_duration_and_no_running_sync(self):
        assert SyncLogger.evaluate_long_running(run(7, SyncStatus.STARTED, 5), NOW, 15).reason == "normal_duration"
        assert SyncLogger.evaluate_long_running(None, NOW, 15).reason == "no_running_sync"

    @pytest.mark.asyncio
    async def test_check_for_alerts_reads_recent_history(self, sync_logger, mock_session, make_result):
        mock_session.execute.return_value = make_result(scalars=[])

        alert = await sync_logger.check_for_alerts()

        assert alert.alert is False


class TestHelpers:

    def test_calculate_duration(self):
        duration = SyncLogger.calculate_duration(NOW, NOW + timedelta(seconds=125))

        assert duration.seconds == 125
        assert duration.minutes == pytest.approx(125 / 60)
        assert duration.formatted == "2m 5s"

    def test_summarize_errors(self):
        summary = SyncLogger.summarize_errors([
            {"error_type": "BatchWriteError"},
            {"error_type": "BatchWriteError"},
            {"error_type": "DatabaseError"},
        ])

        assert summary == {
            "total": 3,
            "by_type": {"BatchWriteError": 2, "DatabaseError": 1},
            "most_common": "BatchWriteError",
        }
