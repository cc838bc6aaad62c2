"""
FastAPI application exposing scheduler control and stored metrics.

Endpoints
---------
- GET   /health                              -> Simple liveness check
- GET   /scheduler                           -> Scheduler config + state
- POST  /scheduler                           -> start / stop / run-now
- PATCH /scheduler                           -> Partial config update
- POST  /metrics/collect                     -> Collect one device now
- POST  /metrics/cleanup                     -> Retention pruning
- GET   /metrics/{device_id}/latest          -> Most recent sample
- GET   /metrics/{device_id}/energy          -> kWh + power stats for a period
- GET   /metrics/{device_id}                 -> Adaptive-resolution history
- GET   /collection-history/{device_id}      -> Attempts + success rate
- GET   /db-maintenance                      -> Maintenance service status
- POST  /db-maintenance                      -> Manual checkpoint / optimize
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy.orm import Session

from devicewatch import history, store
from devicewatch.config import MAX_RETENTION_DAYS, MIN_RETENTION_DAYS, settings
from devicewatch.database import get_db, init_database
from devicewatch.devices import get_device
from devicewatch.maintenance import maintenance_service
from devicewatch.scheduler import (
    DeviceTarget,
    MetricsScheduler,
    get_scheduler,
    start_scheduler,
    stop_scheduler,
)
from devicewatch.schemas import (
    AdaptiveRange,
    CollectionHistoryOut,
    CollectRequest,
    MaintenanceRequest,
    MetricsSampleOut,
    SchedulerAction,
    SchedulerConfigUpdate,
)
from devicewatch.ssh_client import collect_metrics

logger = logging.getLogger(__name__)

DURATIONS = {
    "1h": 3600,
    "6h": 6 * 3600,
    "24h": 24 * 3600,
    "7d": 7 * 86400,
    "30d": 30 * 86400,
    "90d": 90 * 86400,
    "365d": 365 * 86400,
}

ENERGY_PERIODS = {
    "day": (24 * 3600, "Last 24 hours"),
    "month": (30 * 86400, "Last 30 days"),
    "year": (365 * 86400, "Last 365 days"),
}

# Fire-and-forget run-now tasks; kept referenced until they finish.
_background_tasks = set()


# ---------------------------------------------------------------------------
# Lifespan: database bootstrap and background services
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database()

    start_scheduler()

    if settings.maintenance_enabled:
        maintenance_service.start(
            settings.checkpoint_interval_hours,
            settings.optimize_interval_hours,
        )

    yield

    await stop_scheduler()
    await maintenance_service.aclose()


app = FastAPI(
    title="Device Metrics API",
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def require_scheduler() -> MetricsScheduler:
    scheduler = get_scheduler()
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialized")
    return scheduler


def require_device(db: Session, device_id: int):
    device = get_device(db, device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


def scheduler_payload(scheduler: MetricsScheduler) -> dict:
    return {
        "config": scheduler.get_config().model_dump(),
        "state": scheduler.get_state().model_dump(mode="json"),
    }


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
def health() -> dict:
    """Simple liveness endpoint used for health checks."""
    return {"status": "ok"}


@app.get("/scheduler")
def get_scheduler_status() -> dict:
    return scheduler_payload(require_scheduler())


@app.post("/scheduler")
async def control_scheduler(body: SchedulerAction) -> dict:
    """
    Control the scheduler.

    `run-now` does not wait for the cycle: it is started in the background and
    the current state is returned immediately.
    """
    scheduler = require_scheduler()

    if body.action == "start":
        scheduler.start()
        message = "Scheduler started"
    elif body.action == "stop":
        scheduler.stop()
        message = "Scheduler stopped"
    else:
        task = asyncio.create_task(scheduler.run_now())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        message = "Collection cycle triggered"

    return {"message": message, **scheduler_payload(scheduler)}


@app.patch("/scheduler")
async def update_scheduler(body: SchedulerConfigUpdate) -> dict:
    scheduler = require_scheduler()
    scheduler.update_config(**body.model_dump(exclude_none=True))
    return {"message": "Scheduler configuration updated", **scheduler_payload(scheduler)}


def _save_manual_collection(db: Session, device_id: int, result, elapsed_ms: int) -> None:
    if result.success and result.metrics is not None:
        store.insert_sample(db, store.sample_from_result(device_id, result))
        history.record(db, device_id, True, elapsed_ms, "manual")
    else:
        history.record(db, device_id, False, elapsed_ms, "manual", error_message=result.error)
    db.commit()


@app.post("/metrics/collect")
async def collect_device(body: CollectRequest, db: Session = Depends(get_db)) -> dict:
    """Collect one device on demand, store the sample and log the attempt."""
    device = await asyncio.to_thread(require_device, db, body.device_id)
    target = DeviceTarget.from_device(device)

    started = time.monotonic()
    result = await collect_metrics(target)
    elapsed_ms = int((time.monotonic() - started) * 1000)

    await asyncio.to_thread(_save_manual_collection, db, target.id, result, elapsed_ms)

    if not result.success or result.metrics is None:
        raise HTTPException(
            status_code=502,
            detail=f"Failed to collect metrics: {result.error or 'Unknown error'}",
        )

    return {
        "device_id": target.id,
        "metrics": result.metrics.model_dump(),
        "timestamp": result.timestamp,
        "collected_at": datetime.utcfromtimestamp(result.timestamp).isoformat() + "Z",
    }


@app.post("/metrics/cleanup")
def cleanup_metrics(
    days: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    retention_days = days if days is not None else settings.metrics_retention_days
    if not MIN_RETENTION_DAYS <= retention_days <= MAX_RETENTION_DAYS:
        raise HTTPException(
            status_code=400,
            detail=f"Retention days must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS}",
        )

    cutoff = int(time.time()) - retention_days * 86400
    deleted = store.delete_older_than(db, cutoff)
    history_deleted = history.delete_older_than(db, settings.history_retention_days)
    db.commit()

    return {
        "deleted": deleted,
        "history_deleted": history_deleted,
        "retention_days": retention_days,
        "cleaned_at": datetime.utcnow().isoformat() + "Z",
    }


@app.get("/metrics/{device_id}/latest")
def get_latest_metrics(device_id: int, db: Session = Depends(get_db)) -> dict:
    require_device(db, device_id)
    latest = store.get_latest(db, device_id)
    if latest is None:
        return {
            "device_id": device_id,
            "metrics": None,
            "message": "No metrics available for this device yet",
        }
    return {
        "device_id": device_id,
        "metrics": MetricsSampleOut.model_validate(latest).model_dump(),
        "timestamp": latest.timestamp,
    }


@app.get("/metrics/{device_id}/energy")
def get_energy(
    device_id: int,
    period: str = Query(default="day"),
    db: Session = Depends(get_db),
) -> dict:
    """
    Energy consumption (kWh, trapezoidal integration) and power statistics
    for the last day, month or year.
    """
    if period not in ENERGY_PERIODS:
        raise HTTPException(status_code=400, detail='Invalid period. Use "day", "month", or "year"')
    require_device(db, device_id)

    span, label = ENERGY_PERIODS[period]
    end = int(time.time())
    start = end - span

    energy = store.get_energy_consumption(db, device_id, start, end)
    power = store.get_power_stats(db, device_id, start, end)

    return {
        "device_id": device_id,
        "period": period,
        "period_label": label,
        "start_timestamp": start,
        "end_timestamp": end,
        "energy_consumption": {
            "kwh": round(energy.energy_kwh, 4),
            "data_points": energy.sample_count,
        },
        "power_stats": power.model_dump(),
    }


@app.get("/metrics/{device_id}", response_model=AdaptiveRange)
def get_metrics_history(
    device_id: int,
    duration: Optional[str] = Query(default=None),
    start: Optional[int] = Query(default=None),
    end: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
):
    """
    Historical metrics at a resolution picked from the span:
    raw up to 48h, hourly up to 30 days, daily beyond.

    Either pass `duration` (1h, 6h, 24h, 7d, 30d, 90d, 365d) or explicit
    `start`/`end` unix timestamps. Defaults to the last 24h.
    """
    now = int(time.time())
    if start is not None or end is not None:
        end = end if end is not None else now
        if start is None or start > end:
            raise HTTPException(status_code=400, detail="start must be given and not after end")
    else:
        duration = duration or "24h"
        if duration not in DURATIONS:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid duration. Use one of: {', '.join(DURATIONS)}",
            )
        end = now
        start = now - DURATIONS[duration]

    require_device(db, device_id)
    return store.get_adaptive_range(db, device_id, start, end)


@app.get("/collection-history/{device_id}")
def get_collection_history(
    device_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    hours: int = Query(default=24, ge=1),
    db: Session = Depends(get_db),
) -> dict:
    require_device(db, device_id)
    entries = history.get_for_device(db, device_id, limit)
    return {
        "device_id": device_id,
        "entries": [CollectionHistoryOut.model_validate(e).model_dump() for e in entries],
        "stats": history.get_stats(db, device_id, hours).model_dump(),
    }


@app.get("/db-maintenance")
def get_maintenance_status() -> dict:
    return {
        "background_service": {
            "running": maintenance_service.is_active(),
            "checkpoint_interval_hours": maintenance_service.checkpoint_interval_hours,
            "optimize_interval_hours": maintenance_service.optimize_interval_hours,
        },
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }


@app.post("/db-maintenance")
def run_maintenance(body: MaintenanceRequest) -> dict:
    if body.operation == "checkpoint":
        result = maintenance_service.trigger_checkpoint()
        if result is None:
            raise HTTPException(status_code=500, detail="WAL checkpoint failed")
        return {"success": True, "operation": "checkpoint", **result.model_dump()}

    if not maintenance_service.trigger_optimize():
        raise HTTPException(status_code=500, detail="Database optimization failed")
    return {"success": True, "operation": "optimize"}
