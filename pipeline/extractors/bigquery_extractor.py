"""
Warehouse extractor: runs aggregation statements through the client pool.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
import logging

from core.exceptions import ExtractionError, SyncException
from models.base import PeriodType
from pipeline.asin_filter import AsinFilter
from pipeline.connection_pool import WarehouseConnectionPool
from pipeline.query_builder import AggregationQueryBuilder

logger = logging.getLogger(__name__)


class BigQueryExtractor:
    """
    Extract aggregated search query performance rows from BigQuery.

    Every query runs inside ``pool.connection()`` so the client is released
    even when the job fails.
    """

    def __init__(self, pool: WarehouseConnectionPool, query_builder: AggregationQueryBuilder):
        self.pool = pool
        self.query_builder = query_builder

    @property
    def source_table(self) -> str:
        return self.query_builder.table_ref.strip("`")

    async def fetch_rows(
        self,
        period_type: PeriodType,
        start_date: date,
        end_date: date,
        asin_filter: Optional[AsinFilter] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch one aggregated row per (period, search query, ASIN).

        Raises:
            WarehouseQueryError / WarehouseConnectionError: from the client
            PoolExhaustedError / PoolClosedError: from the pool
            ExtractionError: Any other failure while extracting
        """
        query = self.query_builder.build(period_type, start_date, end_date, asin_filter)
        filter_info = asin_filter.describe() if asin_filter else {"strategy": "all"}

        logger.info(
            f"Extracting {PeriodType(period_type).value} rows for {start_date} to {end_date} "
            f"(filter: {filter_info['strategy']})"
        )

        try:
            async with self.pool.connection() as client:
                rows = await client.query(query.sql, query.parameters)
        except SyncException:
            raise
        except Exception as e:
            raise ExtractionError(
                "Unexpected error during extraction",
                context={
                    "period_type": PeriodType(period_type).value,
                    "start_date": str(start_date),
                    "end_date": str(end_date),
                },
                original_exception=e
            )

        logger.info(f"Extracted {len(rows)} rows")
        return rows

    async def get_latest_source_date(self) -> Optional[date]:
        """Most recent ``Date`` present in the source table, or None when empty"""
        query = self.query_builder.build_latest_date_query()

        async with self.pool.connection() as client:
            rows = await client.query(query.sql, query.parameters)

        if not rows:
            return None

        latest = rows[0].get("latest_date")
        if isinstance(latest, datetime):
            return latest.date()
        return latest
