"""
Roll weekly summaries up into monthly, quarterly and yearly summaries.

Totals are summed, active_weeks counts distinct weeks, and every rate and
share is recomputed from the summed numerator and denominator. Rates are
never averaged across weeks.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import logging
import statistics

from models.base import PeriodType
from pipeline.periods import bucket_bounds, bucket_key
from pipeline.transformers.nested_transformer import safe_divide

logger = logging.getLogger(__name__)

COARSER_PERIODS = (PeriodType.MONTHLY, PeriodType.QUARTERLY, PeriodType.YEARLY)

SUMMED_FIELDS = (
    "total_impressions",
    "total_clicks",
    "total_cart_adds",
    "total_purchases",
    "query_total_impressions",
    "query_total_clicks",
    "query_total_cart_adds",
    "query_total_purchases",
)


class PeriodRollup:
    """Pure aggregation of weekly summary rows into coarser buckets"""

    def rollup(
        self,
        weekly_rows: Iterable[Mapping[str, Any]],
        period_type: PeriodType,
        sync_run_id: Optional[int] = None,
        synced_at: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        period_type = PeriodType(period_type)
        if period_type not in COARSER_PERIODS:
            raise ValueError(f"Cannot roll weekly data up into {period_type.value}")

        synced_at = synced_at or datetime.utcnow()
        groups: "OrderedDict[Tuple, Dict[str, Any]]" = OrderedDict()

        for row in weekly_rows:
            key_fields = bucket_key(period_type, row["period_start"])
            group_key = (tuple(sorted(key_fields.items())), row["query"], row["asin"])

            group = groups.get(group_key)
            if group is None:
                group = {
                    "bucket": key_fields,
                    "query": row["query"],
                    "asin": row["asin"],
                    "weeks": set(),
                    "weekly_impressions": [],
                    **{field: 0 for field in SUMMED_FIELDS},
                }
                groups[group_key] = group

            for field in SUMMED_FIELDS:
                group[field] += row.get(field) or 0
            group["weeks"].add(row["period_start"])
            group["weekly_impressions"].append(row.get("total_impressions") or 0)

        records = [
            self._build_record(period_type, group, sync_run_id, synced_at)
            for group in groups.values()
        ]

        logger.info(f"Rolled weekly summaries into {len(records)} {period_type.value} rows")
        return records

    def _build_record(
        self,
        period_type: PeriodType,
        group: Dict[str, Any],
        sync_run_id: Optional[int],
        synced_at: datetime,
    ) -> Dict[str, Any]:
        period_start, period_end = bucket_bounds(period_type, group["bucket"])
        weekly = group["weekly_impressions"]
        active_weeks = len(group["weeks"])

        record = {
            **group["bucket"],
            "period_start": period_start,
            "period_end": period_end,
            "query": group["query"],
            "asin": group["asin"],
            "active_weeks": active_weeks,
            **{field: group[field] for field in SUMMED_FIELDS},
            "avg_ctr": safe_divide(group["total_clicks"], group["total_impressions"]),
            "avg_cvr": safe_divide(group["total_purchases"], group["total_clicks"]),
            "purchases_per_impression": safe_divide(group["total_purchases"], group["total_impressions"]),
            "impression_share": safe_divide(group["total_impressions"], group["query_total_impressions"]),
            "click_share": safe_divide(group["total_clicks"], group["query_total_clicks"]),
            "cart_add_share": safe_divide(group["total_cart_adds"], group["query_total_cart_adds"]),
            "purchase_share": safe_divide(group["total_purchases"], group["query_total_purchases"]),
            "min_impressions": min(weekly) if weekly else None,
            "max_impressions": max(weekly) if weekly else None,
            "avg_impressions": safe_divide(group["total_impressions"], active_weeks),
            "stddev_impressions": statistics.stdev(weekly) if len(weekly) > 1 else None,
            "sync_run_id": sync_run_id,
            "last_synced_at": synced_at,
        }
        return record
