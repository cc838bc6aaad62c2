"""
Collection history: one row per collection attempt.

Used for diagnostics (why did a device stop reporting?) and for the
success-rate figures on the dashboard. Rows are only ever appended or
pruned by age.
"""

import time
from typing import List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from devicewatch.models import CollectionHistory
from devicewatch.schemas import CollectionStats

TRIGGER_SOURCES = ("scheduler", "manual", "ui")


def record(
    db: Session,
    device_id: int,
    success: bool,
    collection_time_ms: int,
    triggered_by: str,
    error_message: Optional[str] = None,
) -> CollectionHistory:
    if triggered_by not in TRIGGER_SOURCES:
        raise ValueError(f"Unknown trigger source: {triggered_by}")

    entry = CollectionHistory(
        device_id=device_id,
        success=success,
        error_message=error_message or None,
        collection_time_ms=int(collection_time_ms),
        triggered_by=triggered_by,
        timestamp=int(time.time()),
    )
    db.add(entry)
    db.flush()
    return entry


def get_for_device(db: Session, device_id: int, limit: int = 100) -> List[CollectionHistory]:
    return (
        db.query(CollectionHistory)
        .filter(CollectionHistory.device_id == device_id)
        .order_by(CollectionHistory.timestamp.desc(), CollectionHistory.id.desc())
        .limit(limit)
        .all()
    )


def _stats_query(db: Session, since: int):
    return db.query(
        func.count(CollectionHistory.id),
        func.sum(case((CollectionHistory.success.is_(True), 1), else_=0)),
        func.sum(case((CollectionHistory.success.is_(False), 1), else_=0)),
        func.avg(CollectionHistory.collection_time_ms),
    ).filter(CollectionHistory.timestamp >= since)


def _to_stats(row, with_avg: bool) -> CollectionStats:
    total, successes, failures, avg_time = row
    total = total or 0
    successes = successes or 0
    return CollectionStats(
        total_attempts=total,
        success_count=successes,
        failure_count=failures or 0,
        success_rate=(successes / total) * 100 if total > 0 else 0.0,
        avg_collection_time_ms=round(avg_time or 0) if with_avg else None,
    )


def get_stats(db: Session, device_id: int, hours: int = 24) -> CollectionStats:
    """Attempts, outcomes and mean duration for one device over the last `hours`."""
    since = int(time.time()) - hours * 3600
    row = _stats_query(db, since).filter(CollectionHistory.device_id == device_id).one()
    return _to_stats(row, with_avg=True)


def get_all_stats(db: Session, hours: int = 24) -> CollectionStats:
    since = int(time.time()) - hours * 3600
    return _to_stats(_stats_query(db, since).one(), with_avg=False)


def delete_older_than(db: Session, days: int = 30) -> int:
    cutoff = int(time.time()) - days * 24 * 3600
    return (
        db.query(CollectionHistory)
        .filter(CollectionHistory.timestamp < cutoff)
        .delete(synchronize_session=False)
    )
