"""
Operational CLI for the sync pipeline

    python scripts/run_sync.py run --start-date 2024-01-01 --end-date 2024-01-28
    python scripts/run_sync.py run --asins B0TEST0001 B0TEST0002 --dry-run
    python scripts/run_sync.py run --period monthly --filter top --count 25
    python scripts/run_sync.py status
    python scripts/run_sync.py metrics --days 30
    python scripts/run_sync.py alerts
    python scripts/run_sync.py cleanup --retention-days 90

Exit code 0 on success, 1 on failure.
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import date
from typing import List, Optional

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import ConfigurationError, SyncException
from core.logging import setup_logging
from models.base import PeriodType
from pipeline.asin_filter import FILTER_CHOICES, build_asin_filter
from schemas.sync import SyncResult

logger = logging.getLogger(__name__)

MAX_PRINTED_ERRORS = 5


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="run_sync",
        description="Sync search query performance data from BigQuery into PostgreSQL"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Sync one source window")
    run.add_argument("--start-date", type=parse_date, help="Inclusive start (YYYY-MM-DD)")
    run.add_argument("--end-date", type=parse_date, help="Inclusive end (YYYY-MM-DD)")
    run.add_argument("--asins", nargs="+", metavar="ASIN", help="Only sync these ASINs")
    run.add_argument(
        "--period",
        choices=[p.value for p in PeriodType],
        default=PeriodType.WEEKLY.value,
        help="Aggregation granularity (default: weekly)"
    )
    run.add_argument("--filter", choices=list(FILTER_CHOICES), default="all", help="ASIN selection strategy")
    run.add_argument("--count", type=int, help="Number of ASINs for --filter top")
    run.add_argument("--dry-run", action="store_true", help="Extract and validate only")
    run.add_argument("--force", action="store_true", help="Sync even when no new data is detected")

    commands.add_parser("status", help="Show scheduler and last sync status")

    metrics = commands.add_parser("metrics", help="Show sync metrics")
    metrics.add_argument("--days", type=int, default=7, help="Window in days (default: 7)")

    commands.add_parser("alerts", help="Evaluate failure and long-running alerts")

    cleanup = commands.add_parser("cleanup", help="Delete old sync runs")
    cleanup.add_argument(
        "--retention-days",
        type=int,
        default=settings.SYNC_LOG_RETENTION_DAYS,
        help=f"Keep runs newer than this (default: {settings.SYNC_LOG_RETENTION_DAYS})"
    )

    return parser


def print_sync_result(result: SyncResult) -> None:
    print("=" * 60)
    print(f"Sync {'succeeded' if result.success else 'FAILED'}"
          f"{' (partial)' if result.partial_success else ''}")
    print(f"  Run ID:            {result.sync_run_id}")
    print(f"  Window:            {result.start_date} .. {result.end_date} ({PeriodType(result.period_type).value})")

    if result.dry_run:
        print(f"  Would write:       {result.would_write} query records")
    else:
        print(f"  Records processed: {result.records_processed}")
        print(f"  Inserted/updated:  {result.records_inserted}/{result.records_updated}")
        print(f"  Records failed:    {result.records_failed}")
        print(f"  Summaries/rollups: {result.summaries}/{result.rollups}")

    if result.duration_seconds is not None:
        print(f"  Duration:          {result.duration_seconds}s")

    print_errors([e.get("message", str(e)) for e in result.errors])
    print("=" * 60)


def print_errors(messages: List[str]) -> None:
    if not messages:
        return
    print(f"  Errors ({len(messages)}):")
    for message in messages[:MAX_PRINTED_ERRORS]:
        print(f"    - {message}")
    if len(messages) > MAX_PRINTED_ERRORS:
        print(f"    ... and {len(messages) - MAX_PRINTED_ERRORS} more")


async def _run(args, scheduler) -> int:
    start_date, end_date = args.start_date, args.end_date

    if start_date is None and end_date is None and not args.force:
        if not await scheduler.check_for_new_data():
            print("No new data to sync")
            return 0

    if start_date is None or end_date is None:
        default_start, default_end = await scheduler.get_date_range_for_sync()
        start_date = start_date or default_start
        end_date = end_date or default_end

    if start_date > end_date:
        print(f"Nothing to sync: window {start_date} .. {end_date} is empty")
        return 0

    asin_filter = build_asin_filter(args.filter, args.asins, args.count)

    result = await scheduler.runner.sync_date_range(
        start_date,
        end_date,
        period_type=PeriodType(args.period),
        asin_filter=asin_filter,
        dry_run=args.dry_run,
    )
    print_sync_result(result)
    return 0 if result.success else 1


async def _run_async(args, scheduler=None) -> int:
    owns_scheduler = scheduler is None

    try:
        if owns_scheduler:
            from core.database import async_session_maker
            from pipeline.scheduler import create_sync_scheduler
            scheduler = create_sync_scheduler(async_session_maker, settings)

        if args.command == "run":
            return await _run(args, scheduler)

        if args.command == "status":
            print((await scheduler.get_sync_status()).model_dump_json(indent=2))
            return 0

        if args.command == "metrics":
            print((await scheduler.get_sync_metrics(args.days)).model_dump_json(indent=2))
            return 0

        if args.command == "alerts":
            alerts = [
                await scheduler.sync_logger.check_for_alerts(),
                await scheduler.sync_logger.check_for_long_running_sync(),
            ]
            for alert in alerts:
                print(alert.model_dump_json(indent=2))
            return 1 if any(alert.alert for alert in alerts) else 0

        if args.command == "cleanup":
            deleted = await scheduler.sync_logger.cleanup_old_logs(args.retention_days)
            print(f"Deleted {deleted} sync runs older than {args.retention_days} days")
            return 0

        raise ConfigurationError(f"Unknown command: {args.command}")

    except SyncException as e:
        logger.error(f"{args.command} failed: {e.message}", extra={"error_context": e.to_dict()})
        print(f"Error: {e.message}")
        print_errors([str(e.original_exception)] if e.original_exception else [])
        return 1

    finally:
        if owns_scheduler and scheduler is not None:
            from core.database import engine
            await scheduler.cleanup()
            await engine.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)
    return asyncio.run(_run_async(args))


if __name__ == "__main__":
    sys.exit(main())
