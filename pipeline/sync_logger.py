"""
Sync run lifecycle, quality check records, history views and alerts.

State machine of a SyncRun::

    started ──► completed
       └──────► failed

Both end states are terminal. The transition is a conditional UPDATE
(``WHERE status = 'started'``) so a terminal run can never be mutated
again; a second attempt raises InvalidStateTransition.

Store failures are wrapped in SyncLogError and propagated. Callers that
must not let logging decide the outcome of a sync wrap these calls
(see SyncRunner._best_effort).
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging
import traceback

from sqlalchemy import cast, delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import JSONB

from core.database import STORE_ERRORS
from core.exceptions import InvalidStateTransition, SyncException, SyncLogError
from models.base import PeriodType, SyncStatus
from models.data_quality_check import DataQualityCheck
from models.sync_run import SyncRun
from schemas.sync import (
    Alert,
    AlertConfig,
    AlertSeverity,
    DataQualityCheckCreate,
    SuccessRate,
    SyncCounts,
    SyncDuration,
    SyncMetrics,
    SyncRunCreate,
    SyncRunInfo,
)

logger = logging.getLogger(__name__)


class SyncLogger:
    def __init__(self, session_factory: Callable, alert_config: Optional[AlertConfig] = None):
        self.session_factory = session_factory
        self.alert_config = alert_config or AlertConfig()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_sync(self, entry: SyncRunCreate) -> int:
        """Create a run with status=started and return its id"""
        stmt = insert(SyncRun).values(
            sync_type=entry.sync_type,
            status=SyncStatus.STARTED,
            started_at=datetime.utcnow(),
            source_table=entry.source_table,
            target_table=entry.target_table,
            period_start=entry.period_start,
            period_end=entry.period_end,
            records_processed=0,
            records_inserted=0,
            records_updated=0,
            records_failed=0,
            sync_metadata=entry.metadata,
        ).returning(SyncRun.id)

        async with self.session_factory() as session:
            try:
                run_id = (await session.execute(stmt)).scalar_one()
                await session.commit()
            except STORE_ERRORS as e:
                await session.rollback()
                raise SyncLogError(
                    "Failed to create sync run",
                    context={"operation": "INSERT", "table_name": SyncRun.__tablename__},
                    original_exception=e
                )

        logger.info(f"Sync run {run_id} started ({PeriodType(entry.sync_type).value})")
        return run_id

    async def complete_sync(
        self,
        run_id: int,
        counts: SyncCounts,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        values: Dict[str, Any] = counts.model_dump()
        if metadata:
            values["sync_metadata"] = _merge_jsonb(SyncRun.sync_metadata, metadata)

        await self._finalize(run_id, SyncStatus.COMPLETED, values)
        logger.info(f"Sync run {run_id} completed: {counts.records_processed} records processed")

    async def fail_sync(
        self,
        run_id: int,
        error: BaseException,
        partial_counts: Optional[SyncCounts] = None,
    ) -> None:
        message = error.message if isinstance(error, SyncException) else str(error)
        details: Dict[str, Any] = {
            "error_type": type(error).__name__,
            "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
        }
        if isinstance(error, SyncException):
            details["context"] = _jsonable(error.context)
        if partial_counts is not None:
            details["partial"] = True

        values: Dict[str, Any] = {
            "error_message": message or type(error).__name__,
            "error_details": details,
        }
        if partial_counts is not None:
            values.update(partial_counts.model_dump())

        await self._finalize(run_id, SyncStatus.FAILED, values)
        logger.warning(f"Sync run {run_id} failed: {message}")

    async def _finalize(self, run_id: int, target_status: SyncStatus, values: Dict[str, Any]) -> None:
        stmt = (
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status == SyncStatus.STARTED)
            .values(status=target_status, completed_at=datetime.utcnow(), **values)
        )

        async with self.session_factory() as session:
            try:
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    await session.rollback()
                    raise InvalidStateTransition(
                        f"Sync run {run_id} is not in progress",
                        context={"sync_run_id": run_id, "target_status": target_status.value}
                    )
                await session.commit()
            except STORE_ERRORS as e:
                await session.rollback()
                raise SyncLogError(
                    f"Failed to mark sync run {run_id} as {target_status.value}",
                    context={"operation": "UPDATE", "table_name": SyncRun.__tablename__},
                    original_exception=e
                )

    # ------------------------------------------------------------------
    # Data quality records
    # ------------------------------------------------------------------

    async def log_data_quality_check(self, run_id: int, check: DataQualityCheckCreate) -> None:
        await self.log_data_quality_checks(run_id, [check])

    async def log_data_quality_checks(self, run_id: int, checks: List[DataQualityCheckCreate]) -> int:
        if not checks:
            return 0

        rows = []
        for check in checks:
            row = check.model_dump(exclude={"metadata"})
            row["sync_run_id"] = run_id
            row["check_metadata"] = _jsonable(check.metadata)
            rows.append(row)

        async with self.session_factory() as session:
            try:
                await session.execute(insert(DataQualityCheck).values(rows))
                await session.commit()
            except STORE_ERRORS as e:
                await session.rollback()
                raise SyncLogError(
                    "Failed to record data quality checks",
                    context={
                        "operation": "INSERT",
                        "table_name": DataQualityCheck.__tablename__,
                        "sync_run_id": run_id,
                    },
                    original_exception=e
                )

        return len(rows)

    # ------------------------------------------------------------------
    # Run annotations
    # ------------------------------------------------------------------

    async def log_record_errors(self, run_id: int, errors: List[Dict[str, Any]]) -> None:
        """Append errors to error_details.record_errors"""
        if not errors:
            return

        async with self.session_factory() as session:
            try:
                current = (await session.execute(
                    select(SyncRun.error_details).where(SyncRun.id == run_id)
                )).scalar() or {}

                record_errors = list(current.get("record_errors", [])) + _jsonable(errors)
                await session.execute(
                    update(SyncRun)
                    .where(SyncRun.id == run_id)
                    .values(error_details={
                        **current,
                        "record_errors": record_errors,
                        "total_record_errors": len(record_errors),
                    })
                )
                await session.commit()
            except STORE_ERRORS as e:
                await session.rollback()
                raise SyncLogError(
                    "Failed to record batch errors",
                    context={"operation": "UPDATE", "table_name": SyncRun.__tablename__, "sync_run_id": run_id},
                    original_exception=e
                )

    async def log_performance_metrics(self, run_id: int, metrics: Dict[str, Any]) -> None:
        stmt = (
            update(SyncRun)
            .where(SyncRun.id == run_id)
            .values(sync_metadata=_merge_jsonb(SyncRun.sync_metadata, {"performance": metrics}))
        )

        async with self.session_factory() as session:
            try:
                await session.execute(stmt)
                await session.commit()
            except STORE_ERRORS as e:
                await session.rollback()
                raise SyncLogError(
                    "Failed to record performance metrics",
                    context={"operation": "UPDATE", "table_name": SyncRun.__tablename__, "sync_run_id": run_id},
                    original_exception=e
                )

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    async def get_sync_run(self, run_id: int) -> Optional[SyncRunInfo]:
        runs = await self._fetch_runs(select(SyncRun).where(SyncRun.id == run_id))
        return _run_info(runs[0]) if runs else None

    async def get_sync_history(
        self,
        limit: int = 20,
        sync_type: Optional[PeriodType] = None,
        status: Optional[SyncStatus] = None,
    ) -> List[SyncRunInfo]:
        stmt = select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        if sync_type is not None:
            stmt = stmt.where(SyncRun.sync_type == PeriodType(sync_type))
        if status is not None:
            stmt = stmt.where(SyncRun.status == SyncStatus(status))
        if limit:
            stmt = stmt.limit(limit)

        return [_run_info(run) for run in await self._fetch_runs(stmt)]

    async def get_success_rate(
        self,
        days: Optional[int] = None,
        sync_type: Optional[PeriodType] = None,
    ) -> SuccessRate:
        stmt = select(SyncRun)
        if days:
            stmt = stmt.where(SyncRun.started_at >= datetime.utcnow() - timedelta(days=days))
        if sync_type is not None:
            stmt = stmt.where(SyncRun.sync_type == PeriodType(sync_type))

        runs = await self._fetch_runs(stmt)
        return self.compute_success_rate(run.status for run in runs)

    async def get_metrics(self, days: int = 7) -> SyncMetrics:
        since = datetime.utcnow() - timedelta(days=days)
        runs = await self._fetch_runs(
            select(SyncRun).where(SyncRun.started_at >= since).order_by(SyncRun.started_at.desc())
        )
        return self.compute_metrics(runs)

    async def _fetch_runs(self, stmt) -> List[SyncRun]:
        async with self.session_factory() as session:
            try:
                return list((await session.execute(stmt)).scalars().all())
            except STORE_ERRORS as e:
                raise SyncLogError(
                    "Failed to read sync runs",
                    context={"operation": "SELECT", "table_name": SyncRun.__tablename__},
                    original_exception=e
                )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def check_for_alerts(self) -> Alert:
        threshold = self.alert_config.consecutive_failure_threshold
        recent = await self.get_sync_history(limit=threshold)
        return self.evaluate_consecutive_failures(recent, threshold)

    async def check_for_long_running_sync(self, now: Optional[datetime] = None) -> Alert:
        stmt = (
            select(SyncRun)
            .where(SyncRun.status == SyncStatus.STARTED)
            .order_by(SyncRun.started_at.asc())
            .limit(1)
        )
        runs = await self._fetch_runs(stmt)
        return self.evaluate_long_running(
            runs[0] if runs else None,
            now or datetime.utcnow(),
            self.alert_config.long_running_minutes,
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup_old_logs(self, retention_days: int) -> int:
        """Delete runs started before the retention window; their checks cascade"""
        cutoff = datetime.utcnow() - timedelta(days=retention_days)

        async with self.session_factory() as session:
            try:
                await session.execute(
                    delete(DataQualityCheck).where(
                        DataQualityCheck.sync_run_id.in_(
                            select(SyncRun.id).where(SyncRun.started_at < cutoff)
                        )
                    )
                )
                deleted = (await session.execute(
                    delete(SyncRun).where(SyncRun.started_at < cutoff).returning(SyncRun.id)
                )).all()
                await session.commit()
            except STORE_ERRORS as e:
                await session.rollback()
                raise SyncLogError(
                    "Failed to clean up old sync runs",
                    context={"operation": "DELETE", "table_name": SyncRun.__tablename__},
                    original_exception=e
                )

        logger.info(f"Deleted {len(deleted)} sync runs older than {retention_days} days")
        return len(deleted)

    # ------------------------------------------------------------------
    # Pure helpers
    # ------------------------------------------------------------------

    @staticmethod
    def compute_success_rate(statuses: Iterable[SyncStatus]) -> SuccessRate:
        statuses = [SyncStatus(s) for s in statuses]
        total = len(statuses)
        successful = statuses.count(SyncStatus.COMPLETED)
        failed = statuses.count(SyncStatus.FAILED)
        rate = successful / total if total else 0.0
        return SuccessRate(
            total=total,
            successful=successful,
            failed=failed,
            rate=rate,
            percentage=rate * 100,
        )

    @classmethod
    def compute_metrics(cls, runs: List[Any]) -> SyncMetrics:
        successful = [r for r in runs if SyncStatus(r.status) == SyncStatus.COMPLETED]
        failed = [r for r in runs if SyncStatus(r.status) == SyncStatus.FAILED]

        durations = [
            cls.calculate_duration(r.started_at, r.completed_at).seconds
            for r in successful
            if r.started_at and r.completed_at
        ]
        total = len(runs)

        return SyncMetrics(
            total_syncs=total,
            successful_syncs=len(successful),
            failed_syncs=len(failed),
            average_duration_seconds=sum(durations) / len(durations) if durations else 0.0,
            total_records_processed=sum(r.records_processed or 0 for r in runs),
            success_rate=len(successful) / total if total else 0.0,
            error_rate=len(failed) / total if total else 0.0,
        )

    @staticmethod
    def evaluate_consecutive_failures(recent_runs: List[Any], threshold: int) -> Alert:
        """Critical alert when the ``threshold`` most recent runs all failed"""
        window = recent_runs[:threshold]
        failures = [r for r in window if SyncStatus(r.status) == SyncStatus.FAILED]

        if len(window) >= threshold and len(failures) == len(window):
            return Alert(
                alert=True,
                reason="consecutive_failures",
                severity=AlertSeverity.CRITICAL,
                details={
                    "count": len(failures),
                    "sync_run_ids": [r.id for r in failures],
                    "errors": [r.error_message for r in failures],
                },
            )
        return Alert(alert=False, reason="no_issues")

    @classmethod
    def evaluate_long_running(cls, run: Optional[Any], now: datetime, threshold_minutes: int) -> Alert:
        if run is None:
            return Alert(alert=False, reason="no_running_sync")

        duration = cls.calculate_duration(run.started_at, now)
        if duration.minutes > threshold_minutes:
            return Alert(
                alert=True,
                reason="long_running",
                severity=AlertSeverity.HIGH,
                details={
                    "sync_run_id": run.id,
                    "started_at": run.started_at.isoformat(),
                    "duration_minutes": round(duration.minutes, 2),
                    "threshold_minutes": threshold_minutes,
                },
            )
        return Alert(alert=False, reason="normal_duration")

    @staticmethod
    def calculate_duration(start: datetime, end: datetime) -> SyncDuration:
        seconds = int((end - start).total_seconds())
        minutes = seconds / 60
        return SyncDuration(
            seconds=seconds,
            minutes=minutes,
            formatted=f"{seconds // 60}m {seconds % 60}s",
        )

    @staticmethod
    def summarize_errors(errors: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Group error dictionaries (SyncException.to_dict()) by error_type"""
        by_type = Counter(e.get("error_type", "unknown") for e in errors)
        return {
            "total": sum(by_type.values()),
            "by_type": dict(by_type),
            "most_common": by_type.most_common(1)[0][0] if by_type else None,
        }


def _run_info(run: SyncRun) -> SyncRunInfo:
    info = SyncRunInfo.model_validate(run)
    info.duration_seconds = run.duration_seconds
    return info


def _merge_jsonb(column, values: Dict[str, Any]):
    """``COALESCE(column, '{}') || values`` for a JSONB column"""
    return func.coalesce(column, cast({}, JSONB)).op("||")(cast(_jsonable(values), JSONB))


def _jsonable(value: Any) -> Any:
    """Convert dates and enums so the value can be stored in a JSONB column"""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value
