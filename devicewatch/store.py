"""
Sample store and time-series aggregation.

All functions take an open SQLAlchemy session; callers own the transaction.

Resolution tiers used by `get_adaptive_range` (span = end - start):

- span <= 48h       -> raw rows, ascending by timestamp
- 48h < span <= 30d -> hourly buckets (means)
- span > 30d        -> daily buckets (means, maxima, integrated energy)

Energy is integrated with the trapezoidal rule over consecutive power
samples: sum of ((p1 + p2) / 2) * ((t2 - t1) / 3600) Wh, reported in kWh.
"""

import logging
from itertools import groupby
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from devicewatch.models import MetricsSample
from devicewatch.schemas import (
    AdaptiveRange,
    CollectionResult,
    DailyAggregate,
    EnergyConsumption,
    HourlyAggregate,
    MetricsSampleOut,
    PowerStats,
)

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 24 * HOUR

RAW_MAX_SPAN = 48 * HOUR
HOURLY_MAX_SPAN = 30 * DAY


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def sample_from_result(device_id: int, result: CollectionResult) -> MetricsSample:
    """Flatten a successful CollectionResult into a MetricsSample row."""
    metrics = result.metrics
    gpu = metrics.gpu
    network = metrics.network
    power = metrics.power

    return MetricsSample(
        device_id=device_id,
        timestamp=result.timestamp,
        cpu_percent=metrics.cpu,
        ram_used_gb=metrics.ram.used,
        ram_total_gb=metrics.ram.total,
        ram_percent=metrics.ram.percent,
        gpu_percent=gpu.usage if gpu else None,
        gpu_memory_used_mb=gpu.memory_used if gpu else None,
        gpu_memory_total_mb=gpu.memory_total if gpu else None,
        network_rx_mbps=network.rx_mbps if network else None,
        network_tx_mbps=network.tx_mbps if network else None,
        power_consumption_w=power.watts if power else None,
        power_estimated=power.estimated if power else False,
    )


def insert_sample(db: Session, sample: MetricsSample) -> MetricsSample:
    db.add(sample)
    db.flush()
    return sample


def delete_older_than(db: Session, cutoff_timestamp: int) -> int:
    """Hard-delete samples with timestamp < cutoff. Returns the row count."""
    deleted = (
        db.query(MetricsSample)
        .filter(MetricsSample.timestamp < cutoff_timestamp)
        .delete(synchronize_session=False)
    )
    logger.info("Deleted %d metric samples older than %d", deleted, cutoff_timestamp)
    return deleted


# ---------------------------------------------------------------------------
# Raw reads
# ---------------------------------------------------------------------------

def get_latest(db: Session, device_id: int) -> Optional[MetricsSample]:
    return (
        db.query(MetricsSample)
        .filter(MetricsSample.device_id == device_id)
        .order_by(MetricsSample.timestamp.desc(), MetricsSample.id.desc())
        .first()
    )


def get_range_raw(db: Session, device_id: int, start: int, end: int) -> List[MetricsSample]:
    return (
        db.query(MetricsSample)
        .filter(
            MetricsSample.device_id == device_id,
            MetricsSample.timestamp >= start,
            MetricsSample.timestamp <= end,
        )
        .order_by(MetricsSample.timestamp.asc(), MetricsSample.id.asc())
        .all()
    )


# ---------------------------------------------------------------------------
# Energy
# ---------------------------------------------------------------------------

def integrate_energy_kwh(points: Sequence[Tuple[int, float]]) -> float:
    """
    Trapezoidal integration of (timestamp, watts) pairs, ascending by time.

    Fewer than two points integrate to zero.
    """
    watt_hours = 0.0
    for (t1, p1), (t2, p2) in zip(points, points[1:]):
        watt_hours += ((p1 + p2) / 2) * ((t2 - t1) / HOUR)
    return watt_hours / 1000


def _power_points(db: Session, device_id: int, start: int, end: int) -> List[Tuple[int, float]]:
    rows = (
        db.query(MetricsSample.timestamp, MetricsSample.power_consumption_w)
        .filter(
            MetricsSample.device_id == device_id,
            MetricsSample.timestamp >= start,
            MetricsSample.timestamp <= end,
            MetricsSample.power_consumption_w.isnot(None),
        )
        .order_by(MetricsSample.timestamp.asc(), MetricsSample.id.asc())
        .all()
    )
    return [(ts, watts) for ts, watts in rows]


def get_energy_consumption(db: Session, device_id: int, start: int, end: int) -> EnergyConsumption:
    points = _power_points(db, device_id, start, end)
    return EnergyConsumption(
        energy_kwh=integrate_energy_kwh(points),
        sample_count=len(points),
    )


def get_power_stats(db: Session, device_id: int, start: int, end: int) -> PowerStats:
    avg_w, max_w, min_w, count = (
        db.query(
            func.avg(MetricsSample.power_consumption_w),
            func.max(MetricsSample.power_consumption_w),
            func.min(MetricsSample.power_consumption_w),
            func.count(MetricsSample.power_consumption_w),
        )
        .filter(
            MetricsSample.device_id == device_id,
            MetricsSample.timestamp >= start,
            MetricsSample.timestamp <= end,
            MetricsSample.power_consumption_w.isnot(None),
        )
        .one()
    )
    return PowerStats(
        avg_power_w=avg_w,
        max_power_w=max_w,
        min_power_w=min_w,
        sample_count=count or 0,
    )


# ---------------------------------------------------------------------------
# Bucketed reads
# ---------------------------------------------------------------------------

def _bucket(seconds: int):
    # Floor to the bucket start
    return MetricsSample.timestamp - (MetricsSample.timestamp % seconds)


# (column, output suffix) for every numeric MetricsSample field
AGGREGATE_FIELDS = (
    ("cpu_percent", "cpu_percent"),
    ("ram_used_gb", "ram_used_gb"),
    ("ram_total_gb", "ram_total_gb"),
    ("ram_percent", "ram_percent"),
    ("gpu_percent", "gpu_percent"),
    ("gpu_memory_used_mb", "gpu_memory_used_mb"),
    ("gpu_memory_total_mb", "gpu_memory_total_mb"),
    ("network_rx_mbps", "network_rx_mbps"),
    ("network_tx_mbps", "network_tx_mbps"),
    ("power_consumption_w", "power_w"),
)


def _bucket_rows(db: Session, device_id: int, start: int, end: int, seconds: int, with_max: bool):
    bucket = _bucket(seconds).label("bucket")
    columns = [bucket, func.count(MetricsSample.id).label("sample_count")]
    for column, suffix in AGGREGATE_FIELDS:
        attr = getattr(MetricsSample, column)
        columns.append(func.avg(attr).label(f"avg_{suffix}"))
        if with_max:
            columns.append(func.max(attr).label(f"max_{suffix}"))

    rows = (
        db.query(*columns)
        .filter(
            MetricsSample.device_id == device_id,
            MetricsSample.timestamp >= start,
            MetricsSample.timestamp <= end,
        )
        .group_by(bucket)
        .order_by(bucket)
        .all()
    )
    buckets = []
    for row in rows:
        values = row._asdict()
        values["timestamp"] = values.pop("bucket")
        buckets.append(values)
    return buckets


def get_hourly_aggregates(db: Session, device_id: int, start: int, end: int) -> List[HourlyAggregate]:
    """Mean of every numeric field per hour bucket, ascending."""
    rows = _bucket_rows(db, device_id, start, end, HOUR, with_max=False)
    return [HourlyAggregate(**row) for row in rows]


def _daily_energy(points: Iterable[Tuple[int, float]]) -> dict:
    """Integrate energy separately inside each UTC day."""
    energy = {}
    for day, day_points in groupby(points, key=lambda p: p[0] - p[0] % DAY):
        energy[day] = integrate_energy_kwh(list(day_points))
    return energy


def get_daily_aggregates(db: Session, device_id: int, start: int, end: int) -> List[DailyAggregate]:
    """
    Mean and max per field for each UTC day, plus that day's energy.

    Energy comes from one ordered power query over the whole window, split by
    day, rather than one extra range query per day. A day with fewer than two
    power samples reports 0.0 kWh.
    """
    rows = _bucket_rows(db, device_id, start, end, DAY, with_max=True)
    energy_by_day = _daily_energy(_power_points(db, device_id, start, end))

    return [
        DailyAggregate(**row, energy_kwh=energy_by_day.get(row["timestamp"], 0.0))
        for row in rows
    ]


def resolution_for_span(span: int) -> str:
    if span <= RAW_MAX_SPAN:
        return "raw"
    if span <= HOURLY_MAX_SPAN:
        return "hourly"
    return "daily"


def get_adaptive_range(db: Session, device_id: int, start: int, end: int) -> AdaptiveRange:
    """Pick raw / hourly / daily resolution from the requested span."""
    resolution = resolution_for_span(end - start)

    if resolution == "raw":
        points = [
            MetricsSampleOut.model_validate(s)
            for s in get_range_raw(db, device_id, start, end)
        ]
    elif resolution == "hourly":
        points = get_hourly_aggregates(db, device_id, start, end)
    else:
        points = get_daily_aggregates(db, device_id, start, end)

    return AdaptiveRange(resolution=resolution, start=start, end=end, points=points)
