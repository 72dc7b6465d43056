"""
Load nested performance data into PostgreSQL with upsert logic (idempotency)
"""

from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy import func, literal_column, select
from sqlalchemy.dialects.postgresql import insert

from core.database import STORE_ERRORS
from core.exceptions import BatchWriteError, DatabaseError
from models.base import PeriodType
from models.performance import EntityPerformance, QueryPerformance
from models.summary import SUMMARY_MODELS, SUMMARY_NATURAL_KEYS, WeeklySummary
from pipeline.periods import bucket_bounds, buckets_touched
from pipeline.transformers.period_rollup import COARSER_PERIODS, PeriodRollup
from schemas.sync import WriteResult
from schemas.warehouse import EntityData, NestedPerformanceData, SearchQueryData

logger = logging.getLogger(__name__)

# True when ON CONFLICT inserted the row, False when it updated an existing one
INSERTED_FLAG = literal_column("(xmax = 0)").label("inserted")

QUERY_BATCH_SIZE = 100
SUMMARY_BATCH_SIZE = 50

EntityKey = Tuple[date, date, str]


class PostgresLoader:
    """
    Write nested data in sequential, idempotent phases.

    - Phase A: one upsert per ASIN window (parent rows)
    - Phase B: query records in batches of 100
    - Phase C: period summaries in batches of 50, stamped with the sync run
    - Phase D: after a weekly sync, monthly/quarterly/yearly rollups

    Every batch runs in its own transaction. A failed batch is rolled back,
    recorded as a BatchWriteError and excluded from the success tallies;
    later batches and phases still run.
    """

    def __init__(
        self,
        session_factory: Callable,
        query_batch_size: int = QUERY_BATCH_SIZE,
        summary_batch_size: int = SUMMARY_BATCH_SIZE,
        rollup_enabled: bool = True,
    ):
        self.session_factory = session_factory
        self.query_batch_size = query_batch_size
        self.summary_batch_size = summary_batch_size
        self.rollup_enabled = rollup_enabled
        self.rollup = PeriodRollup()

    async def write(
        self,
        nested: NestedPerformanceData,
        sync_run_id: Optional[int] = None,
    ) -> WriteResult:
        result = WriteResult()
        synced_at = datetime.utcnow()

        # --------------------------------------------------
        # PHASE A: ASIN PERFORMANCE WINDOWS
        # --------------------------------------------------
        entity_ids = await self._write_entities(nested.entities, result)

        # --------------------------------------------------
        # PHASE B: SEARCH QUERY RECORDS
        # --------------------------------------------------
        await self._write_query_records(nested.entities, entity_ids, result)

        # --------------------------------------------------
        # PHASE C: PERIOD SUMMARIES
        # --------------------------------------------------
        summary_rows = [
            self._summary_row(entity, query, sync_run_id, synced_at)
            for entity in nested.entities
            for query in entity.search_query_data
        ]
        result.summaries_written = await self._upsert_batches(
            SUMMARY_MODELS[nested.period_type],
            SUMMARY_NATURAL_KEYS[nested.period_type],
            summary_rows,
            self.summary_batch_size,
            phase="summary",
            result=result,
        )

        # --------------------------------------------------
        # PHASE D: ROLLUP INTO COARSER PERIODS
        # --------------------------------------------------
        if self.rollup_enabled and nested.period_type == PeriodType.WEEKLY and summary_rows:
            for period_type in COARSER_PERIODS:
                result.rollups_written += await self.rollup_period(
                    period_type, nested.start_date, nested.end_date, sync_run_id, result
                )

        logger.info(
            f"Write complete: {result.entities_written} windows, "
            f"{result.query_records_written} query records "
            f"({result.records_inserted} inserted, {result.records_updated} updated), "
            f"{result.summaries_written} summaries, {result.rollups_written} rollups, "
            f"{len(result.errors)} failed batches"
        )
        return result

    async def _write_entities(
        self,
        entities: List[EntityData],
        result: WriteResult,
    ) -> Dict[EntityKey, int]:
        entity_ids: Dict[EntityKey, int] = {}

        for entity in entities:
            key = (entity.start_date, entity.end_date, entity.asin)
            stmt = insert(EntityPerformance).values(
                start_date=entity.start_date,
                end_date=entity.end_date,
                asin=entity.asin,
                updated_at=datetime.utcnow(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["start_date", "end_date", "asin"],
                set_={"updated_at": stmt.excluded.updated_at},
            ).returning(EntityPerformance.id, INSERTED_FLAG)

            async with self.session_factory() as session:
                try:
                    row = (await session.execute(stmt)).one()
                    await session.commit()
                except STORE_ERRORS as e:
                    await session.rollback()
                    self._record_error(
                        result,
                        "Failed to upsert ASIN performance window",
                        phase="entity_performance",
                        table_name=EntityPerformance.__tablename__,
                        batch=f"asin={entity.asin} {entity.start_date}..{entity.end_date}",
                        rows=1,
                        error=e,
                    )
                    continue

            entity_ids[key] = row.id
            result.entities_written += 1

        return entity_ids

    async def _write_query_records(
        self,
        entities: List[EntityData],
        entity_ids: Dict[EntityKey, int],
        result: WriteResult,
    ) -> None:
        rows: List[Dict[str, Any]] = []

        for entity in entities:
            key = (entity.start_date, entity.end_date, entity.asin)
            parent_id = entity_ids.get(key)

            if parent_id is None:
                # Children of a failed parent cannot be written
                skipped = len(entity.search_query_data)
                if skipped:
                    result.records_failed += skipped
                    self._record_error(
                        result,
                        "Skipped query records of a failed ASIN window",
                        phase="query_performance",
                        table_name=QueryPerformance.__tablename__,
                        batch=f"asin={entity.asin}",
                        rows=skipped,
                    )
                continue

            rows.extend(self._query_row(parent_id, query) for query in entity.search_query_data)

        for start in range(0, len(rows), self.query_batch_size):
            batch = rows[start:start + self.query_batch_size]
            stmt = insert(QueryPerformance).values(batch)
            stmt = stmt.on_conflict_do_update(
                index_elements=["asin_performance_id", "search_query"],
                set_=self._update_columns(stmt, batch[0], ["asin_performance_id", "search_query"]),
            ).returning(QueryPerformance.id, INSERTED_FLAG)

            async with self.session_factory() as session:
                try:
                    returned = (await session.execute(stmt)).all()
                    await session.commit()
                except STORE_ERRORS as e:
                    await session.rollback()
                    result.records_failed += len(batch)
                    self._record_error(
                        result,
                        "Failed to upsert search query batch",
                        phase="query_performance",
                        table_name=QueryPerformance.__tablename__,
                        batch=f"{start}-{start + len(batch)}",
                        rows=len(batch),
                        error=e,
                    )
                    continue

            inserted = sum(1 for row in returned if row.inserted)
            result.query_records_written += len(batch)
            result.records_inserted += inserted
            result.records_updated += len(batch) - inserted
            logger.debug(f"Query batch {start // self.query_batch_size + 1}: {len(batch)} rows")

    async def _upsert_batches(
        self,
        model,
        natural_key: List[str],
        rows: List[Dict[str, Any]],
        batch_size: int,
        phase: str,
        result: WriteResult,
    ) -> int:
        written = 0

        for start in range(0, len(rows), batch_size):
            batch = rows[start:start + batch_size]
            stmt = insert(model).values(batch)
            stmt = stmt.on_conflict_do_update(
                index_elements=natural_key,
                set_=self._update_columns(stmt, batch[0], natural_key),
            )

            async with self.session_factory() as session:
                try:
                    await session.execute(stmt)
                    await session.commit()
                except STORE_ERRORS as e:
                    await session.rollback()
                    self._record_error(
                        result,
                        f"Failed to upsert {model.__tablename__} batch",
                        phase=phase,
                        table_name=model.__tablename__,
                        batch=f"{start}-{start + len(batch)}",
                        rows=len(batch),
                        error=e,
                    )
                    continue

            written += len(batch)

        return written

    async def rollup_period(
        self,
        period_type: PeriodType,
        start_date: date,
        end_date: date,
        sync_run_id: Optional[int],
        result: WriteResult,
    ) -> int:
        """Re-derive every coarser bucket touched by [start_date, end_date] from weekly summaries"""
        buckets = buckets_touched(period_type, start_date, end_date)
        if not buckets:
            return 0

        bounds = [bucket_bounds(period_type, key) for key in buckets]
        window_start = min(start for start, _ in bounds)
        window_end = max(end for _, end in bounds)

        columns = [
            WeeklySummary.period_start,
            WeeklySummary.query,
            WeeklySummary.asin,
            WeeklySummary.total_impressions,
            WeeklySummary.total_clicks,
            WeeklySummary.total_cart_adds,
            WeeklySummary.total_purchases,
            WeeklySummary.query_total_impressions,
            WeeklySummary.query_total_clicks,
            WeeklySummary.query_total_cart_adds,
            WeeklySummary.query_total_purchases,
        ]
        stmt = (
            select(*columns)
            .where(WeeklySummary.period_start.between(window_start, window_end))
            .order_by(WeeklySummary.period_start, WeeklySummary.query, WeeklySummary.asin)
        )

        async with self.session_factory() as session:
            try:
                weekly_rows = (await session.execute(stmt)).mappings().all()
            except STORE_ERRORS as e:
                self._record_error(
                    result,
                    f"Failed to read weekly summaries for {period_type.value} rollup",
                    phase="rollup",
                    table_name=WeeklySummary.__tablename__,
                    batch=f"{window_start}..{window_end}",
                    rows=0,
                    error=e,
                )
                return 0

        records = self.rollup.rollup(weekly_rows, period_type, sync_run_id=sync_run_id)
        return await self._upsert_batches(
            SUMMARY_MODELS[period_type],
            SUMMARY_NATURAL_KEYS[period_type],
            records,
            self.summary_batch_size,
            phase="rollup",
            result=result,
        )

    async def get_latest_period_end(self) -> Optional[date]:
        """Latest period_end already present in the weekly summary table"""
        async with self.session_factory() as session:
            try:
                result = await session.execute(select(func.max(WeeklySummary.period_end)))
            except STORE_ERRORS as e:
                raise DatabaseError(
                    "Failed to read the latest synced week",
                    context={"operation": "SELECT", "table_name": WeeklySummary.__tablename__},
                    original_exception=e
                )
            return result.scalar()

    # ------------------------------------------------------------------
    # Row builders
    # ------------------------------------------------------------------

    @staticmethod
    def _update_columns(stmt, sample_row: Dict[str, Any], natural_key: List[str]) -> Dict[str, Any]:
        set_ = {
            column: stmt.excluded[column]
            for column in sample_row
            if column not in natural_key
        }
        set_["updated_at"] = func.now()
        return set_

    @staticmethod
    def _query_row(parent_id: int, query: SearchQueryData) -> Dict[str, Any]:
        row = {
            "asin_performance_id": parent_id,
            "search_query": query.search_query,
            "search_query_score": query.search_query_score,
            "search_query_volume": query.search_query_volume,
        }
        for funnel in (query.impression_data, query.click_data, query.cart_add_data, query.purchase_data):
            row.update(funnel.model_dump())
        if query.derived_metrics is not None:
            row.update(query.derived_metrics.model_dump())
        return row

    @staticmethod
    def _summary_row(
        entity: EntityData,
        query: SearchQueryData,
        sync_run_id: Optional[int],
        synced_at: datetime,
    ) -> Dict[str, Any]:
        impressions = query.impression_data.asin_impression_count
        clicks = query.click_data.asin_click_count
        cart_adds = query.cart_add_data.asin_cart_add_count
        purchases = query.purchase_data.asin_purchase_count
        derived = query.derived_metrics

        row = {
            "period_start": entity.start_date,
            "period_end": entity.end_date,
            "query": query.search_query,
            "asin": entity.asin,
            "total_impressions": impressions,
            "total_clicks": clicks,
            "total_cart_adds": cart_adds,
            "total_purchases": purchases,
            "query_total_impressions": query.query_totals.impressions,
            "query_total_clicks": query.query_totals.clicks,
            "query_total_cart_adds": query.query_totals.cart_adds,
            "query_total_purchases": query.query_totals.purchases,
            "avg_ctr": derived.click_through_rate if derived else 0.0,
            "avg_cvr": derived.conversion_rate if derived else 0.0,
            "purchases_per_impression": derived.funnel_completion_rate if derived else 0.0,
            "impression_share": query.impression_data.asin_impression_share,
            "click_share": query.click_data.asin_click_share,
            "cart_add_share": query.cart_add_data.asin_cart_add_share,
            "purchase_share": query.purchase_data.asin_purchase_share,
            **query.impression_stats.model_dump(),
            "sync_run_id": sync_run_id,
            "last_synced_at": synced_at,
        }

        if entity.period_type != PeriodType.WEEKLY:
            row["year"] = entity.year if entity.year is not None else entity.start_date.year
            row["active_weeks"] = query.active_weeks or 0
        if entity.period_type == PeriodType.MONTHLY:
            row["month"] = entity.month if entity.month is not None else entity.start_date.month
        if entity.period_type == PeriodType.QUARTERLY:
            row["quarter"] = entity.quarter if entity.quarter is not None else (entity.start_date.month - 1) // 3 + 1

        return row

    @staticmethod
    def _record_error(
        result: WriteResult,
        message: str,
        phase: str,
        table_name: str,
        batch: str,
        rows: int,
        error: Optional[Exception] = None,
    ) -> None:
        batch_error = BatchWriteError(
            message,
            context={
                "phase": phase,
                "table_name": table_name,
                "batch": batch,
                "rows": rows,
            },
            original_exception=error,
        )
        details = batch_error.to_dict()
        result.errors.append(details)
        logger.error(str(batch_error), extra={"error_context": details})
