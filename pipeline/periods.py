"""
Calendar helpers for Monday-start weeks and month/quarter/year buckets
"""

from datetime import date, timedelta
from typing import Dict, List, Tuple
import calendar

from models.base import PeriodType


def week_start(day: date) -> date:
    """Monday of the week containing ``day``"""
    return day - timedelta(days=day.weekday())


def week_bounds(day: date) -> Tuple[date, date]:
    start = week_start(day)
    return start, start + timedelta(days=6)


def last_completed_week_end(today: date) -> date:
    """Sunday closing the most recent fully elapsed Monday-start week"""
    return week_start(today) - timedelta(days=1)


def quarter_of(day: date) -> int:
    return (day.month - 1) // 3 + 1


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def quarter_bounds(year: int, quarter: int) -> Tuple[date, date]:
    first_month = (quarter - 1) * 3 + 1
    start, _ = month_bounds(year, first_month)
    _, end = month_bounds(year, first_month + 2)
    return start, end


def year_bounds(year: int) -> Tuple[date, date]:
    return date(year, 1, 1), date(year, 12, 31)


def bucket_key(period_type: PeriodType, day: date) -> Dict[str, int]:
    """
    Bucket identifying the coarser period a day belongs to.

    Weekly summaries are bucketed by their period_start, so a week that
    straddles a month boundary belongs to the month it starts in.
    """
    if period_type == PeriodType.MONTHLY:
        return {"year": day.year, "month": day.month}
    if period_type == PeriodType.QUARTERLY:
        return {"year": day.year, "quarter": quarter_of(day)}
    if period_type == PeriodType.YEARLY:
        return {"year": day.year}
    raise ValueError(f"No bucket for period type {period_type}")


def bucket_bounds(period_type: PeriodType, key: Dict[str, int]) -> Tuple[date, date]:
    if period_type == PeriodType.MONTHLY:
        return month_bounds(key["year"], key["month"])
    if period_type == PeriodType.QUARTERLY:
        return quarter_bounds(key["year"], key["quarter"])
    if period_type == PeriodType.YEARLY:
        return year_bounds(key["year"])
    raise ValueError(f"No bucket for period type {period_type}")


def buckets_touched(period_type: PeriodType, start: date, end: date) -> List[Dict[str, int]]:
    """Distinct buckets of every Monday-start week starting in [week_start(start), end]"""
    buckets = []
    current = week_start(start)
    while current <= end:
        key = bucket_key(period_type, current)
        if key not in buckets:
            buckets.append(key)
        current += timedelta(days=7)
    return buckets


def first_monday_from(day: date) -> date:
    return day + timedelta(days=(7 - day.weekday()) % 7)


def aligned_window(period_type: PeriodType, start: date, end: date) -> Tuple[date, date]:
    """
    Widen [start, end] to whole periods so a sync never writes partial totals.

    Weekly windows cover whole Monday-start weeks. Coarser windows cover
    every week that starts inside the first and last bucket touched, the
    same weeks a rollup of weekly summaries would use.
    """
    period_type = PeriodType(period_type)
    if start > end:
        return start, end
    if period_type == PeriodType.WEEKLY:
        return week_start(start), week_start(end) + timedelta(days=6)

    buckets = buckets_touched(period_type, start, end)
    first_bucket_start, _ = bucket_bounds(period_type, buckets[0])
    _, last_bucket_end = bucket_bounds(period_type, buckets[-1])
    return first_monday_from(first_bucket_start), week_start(last_bucket_end) + timedelta(days=6)
