"""
Retention pruning for stored metrics and collection history.

Meant to be run from cron or a systemd timer:

    python -m devicewatch.cleanup --days 365
    python -m devicewatch.cleanup --days 30 --dry-run
"""

import argparse
import logging
import sys
import time

from devicewatch import history, store
from devicewatch.config import (
    MAX_RETENTION_DAYS,
    MIN_RETENTION_DAYS,
    configure_logging,
    settings,
)
from devicewatch.database import get_session, init_database
from devicewatch.models import CollectionHistory, MetricsSample

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete old metrics and collection history")
    parser.add_argument(
        "--days",
        type=int,
        default=settings.metrics_retention_days,
        help=f"Delete metric samples older than this many days (default: {settings.metrics_retention_days})",
    )
    parser.add_argument(
        "--history-days",
        type=int,
        default=settings.history_retention_days,
        help=f"Delete collection history older than this many days (default: {settings.history_retention_days})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show how many rows would be deleted without deleting them",
    )
    return parser


def run_cleanup(days: int, history_days: int, dry_run: bool = False) -> dict:
    now = int(time.time())
    metrics_cutoff = now - days * 86400
    history_cutoff = now - history_days * 86400

    with get_session() as db:
        if dry_run:
            return {
                "metrics": db.query(MetricsSample).filter(MetricsSample.timestamp < metrics_cutoff).count(),
                "history": db.query(CollectionHistory).filter(CollectionHistory.timestamp < history_cutoff).count(),
            }
        return {
            "metrics": store.delete_older_than(db, metrics_cutoff),
            "history": history.delete_older_than(db, history_days),
        }


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    if not MIN_RETENTION_DAYS <= args.days <= MAX_RETENTION_DAYS:
        print(
            f"--days must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS}",
            file=sys.stderr,
        )
        return 2
    if args.history_days < 1:
        print("--history-days must be at least 1", file=sys.stderr)
        return 2

    init_database()
    counts = run_cleanup(args.days, args.history_days, args.dry_run)

    verb = "Would delete" if args.dry_run else "Deleted"
    print(f"{verb} {counts['metrics']} metric samples older than {args.days} days")
    print(f"{verb} {counts['history']} history entries older than {args.history_days} days")
    return 0


if __name__ == "__main__":
    sys.exit(main())
