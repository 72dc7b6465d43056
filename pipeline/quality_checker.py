"""
Post-write data quality checks.

Checks are diagnostic only: they never block or roll back a sync. Every
outcome becomes one DataQualityCheckCreate persisted against the run.
"""

from datetime import date
from typing import Callable, List
import logging

from sqlalchemy import func, or_, select

from core.database import STORE_ERRORS
from core.exceptions import DatabaseError
from models.base import CheckStatus, CheckType, PeriodType
from models.performance import QueryPerformance
from models.summary import SUMMARY_MODELS, SUMMARY_NATURAL_KEYS
from schemas.sync import DataQualityCheckCreate, WriteResult
from schemas.warehouse import NestedPerformanceData

logger = logging.getLogger(__name__)

SHARE_FIELDS = (
    ("impression_data", "asin_impression_share"),
    ("click_data", "asin_click_share"),
    ("cart_add_data", "asin_cart_add_share"),
    ("purchase_data", "asin_purchase_share"),
)


class DataQualityChecker:
    """Reconciliation and consistency checks over a written sync window"""

    # ------------------------------------------------------------------
    # In-memory checks (run by the sync runner after the write phases)
    # ------------------------------------------------------------------

    def run_post_write_checks(
        self,
        nested: NestedPerformanceData,
        write_result: WriteResult,
    ) -> List[DataQualityCheckCreate]:
        checks = [self.check_row_count(nested.total_query_records, write_result.query_records_written)]
        checks.extend(self.check_share_bounds(nested))
        checks.extend(self.check_funnel_consistency(nested))

        flagged = [c for c in checks if c.check_status != CheckStatus.PASSED]
        logger.info(f"Data quality: {len(checks)} checks, {len(flagged)} flagged")
        return checks

    def check_row_count(self, expected: int, actual: int) -> DataQualityCheckCreate:
        difference = expected - actual
        passed = difference == 0

        return DataQualityCheckCreate(
            check_type=CheckType.ROW_COUNT,
            check_status=CheckStatus.PASSED if passed else CheckStatus.WARNING,
            source_value=expected,
            target_value=actual,
            difference=difference,
            difference_pct=(difference / expected * 100) if expected else 0.0,
            table_name=QueryPerformance.__tablename__,
            message=(
                f"Row count matches: {actual}"
                if passed
                else f"Expected {expected} query records, wrote {actual}"
            ),
        )

    def check_share_bounds(self, nested: NestedPerformanceData) -> List[DataQualityCheckCreate]:
        """One warning per (ASIN, query) with any share outside [0, 1]"""
        checks = []

        for entity in nested.entities:
            for query in entity.search_query_data:
                offending = {}
                for funnel_field, share_field in SHARE_FIELDS:
                    funnel = getattr(query, funnel_field)
                    if funnel is None:
                        continue
                    share = getattr(funnel, share_field)
                    if share < 0 or share > 1:
                        offending[share_field] = share

                if offending:
                    checks.append(DataQualityCheckCreate(
                        check_type=CheckType.SUM_VALIDATION,
                        check_status=CheckStatus.WARNING,
                        table_name=QueryPerformance.__tablename__,
                        message=f"Share out of bounds for {entity.asin} / {query.search_query!r}",
                        metadata={
                            "rule": "share_bounds",
                            "asin": entity.asin,
                            "search_query": query.search_query,
                            "start_date": str(entity.start_date),
                            "shares": offending,
                        },
                    ))

        return checks

    def check_funnel_consistency(self, nested: NestedPerformanceData) -> List[DataQualityCheckCreate]:
        """One failure per (ASIN, query) where impressions >= clicks >= cart adds >= purchases breaks"""
        checks = []

        for entity in nested.entities:
            for query in entity.search_query_data:
                if None in (query.impression_data, query.click_data, query.cart_add_data, query.purchase_data):
                    continue

                counts = {
                    "impressions": query.impression_data.asin_impression_count,
                    "clicks": query.click_data.asin_click_count,
                    "cart_adds": query.cart_add_data.asin_cart_add_count,
                    "purchases": query.purchase_data.asin_purchase_count,
                }
                monotonic = (
                    counts["impressions"] >= counts["clicks"]
                    >= counts["cart_adds"] >= counts["purchases"]
                )

                if not monotonic:
                    checks.append(DataQualityCheckCreate(
                        check_type=CheckType.SUM_VALIDATION,
                        check_status=CheckStatus.FAILED,
                        table_name=QueryPerformance.__tablename__,
                        message=f"Funnel is not monotonic for {entity.asin} / {query.search_query!r}",
                        metadata={
                            "rule": "funnel_monotonicity",
                            "asin": entity.asin,
                            "search_query": query.search_query,
                            "start_date": str(entity.start_date),
                            "counts": counts,
                        },
                    ))

        return checks

    # ------------------------------------------------------------------
    # Store checks (run by the scheduler after a successful job)
    # ------------------------------------------------------------------

    async def run_store_checks(
        self,
        session_factory: Callable,
        period_type: PeriodType,
        start_date: date,
        end_date: date,
    ) -> List[DataQualityCheckCreate]:
        """
        Null and duplicate checks over the summary table of a window.

        Raises:
            DatabaseError: The summary table could not be queried
        """
        model = SUMMARY_MODELS[PeriodType(period_type)]
        natural_key = SUMMARY_NATURAL_KEYS[PeriodType(period_type)]
        in_window = model.period_start.between(start_date, end_date)

        null_stmt = select(func.count()).select_from(model).where(
            in_window,
            or_(
                model.query.is_(None),
                model.query == "",
                model.asin.is_(None),
                model.asin == "",
                model.period_start.is_(None),
            ),
        )

        key_columns = [getattr(model, column) for column in natural_key]
        duplicate_groups = (
            select(*key_columns)
            .where(in_window)
            .group_by(*key_columns)
            .having(func.count() > 1)
            .subquery()
        )
        duplicate_stmt = select(func.count()).select_from(duplicate_groups)

        try:
            async with session_factory() as session:
                null_count = (await session.execute(null_stmt)).scalar() or 0
                duplicate_count = (await session.execute(duplicate_stmt)).scalar() or 0
        except STORE_ERRORS as e:
            raise DatabaseError(
                "Failed to run store data quality checks",
                context={"operation": "SELECT", "table_name": model.__tablename__},
                original_exception=e
            )

        return [
            DataQualityCheckCreate(
                check_type=CheckType.NULL_CHECK,
                check_status=CheckStatus.PASSED if null_count == 0 else CheckStatus.FAILED,
                target_value=null_count,
                table_name=model.__tablename__,
                column_name="query,asin,period_start",
                message=f"{null_count} rows with missing required fields",
                metadata={
                    "null_count": null_count,
                    "checked_columns": ["query", "asin", "period_start"],
                    "start_date": str(start_date),
                    "end_date": str(end_date),
                },
            ),
            DataQualityCheckCreate(
                check_type=CheckType.DUPLICATE_CHECK,
                check_status=CheckStatus.PASSED if duplicate_count == 0 else CheckStatus.FAILED,
                target_value=duplicate_count,
                table_name=model.__tablename__,
                column_name=",".join(natural_key),
                message=f"{duplicate_count} duplicated natural keys",
                metadata={
                    "duplicate_groups": duplicate_count,
                    "start_date": str(start_date),
                    "end_date": str(end_date),
                },
            ),
        ]
