"""
Background metrics collection scheduler.

One asyncio task per running scheduler sleeps for `interval_ms`, runs a
collection cycle, and goes back to sleep; the next sleep starts only after the
cycle finished, so cycles never overlap. `run_now()` runs a cycle in the
caller's task. A single in-flight flag guards the cycle body: a trigger that
arrives while a cycle is running is dropped, not queued.

A cycle:

1. list eligible devices (address + SSH credentials)
2. probe liveness of all of them in parallel (errors mean offline)
3. collect from online devices in batches of `max_concurrent`, waiting for a
   whole batch before starting the next
4. per device: store the sample and a success history row, or a failure
   history row; no retry until the next cycle
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from devicewatch import history, liveness, notifications
from devicewatch.config import settings
from devicewatch.database import SessionLocal, get_session
from devicewatch.devices import list_eligible
from devicewatch.schemas import CollectionResult, SchedulerConfig, SchedulerState
from devicewatch.ssh_client import collect_metrics
from devicewatch.store import insert_sample, sample_from_result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceTarget:
    """Detached copy of the registry fields a collection needs."""

    id: int
    name: str
    ip_address: str
    ssh_username: str
    ssh_password: str

    @classmethod
    def from_device(cls, device) -> "DeviceTarget":
        return cls(
            id=device.id,
            name=device.name,
            ip_address=device.ip_address,
            ssh_username=device.ssh_username,
            ssh_password=device.ssh_password,
        )


class MetricsScheduler:
    """
    Owns the scheduler config and state for the lifetime of the process.

    Collaborators (session factory, collector, liveness probe, threshold
    notifier) are injectable so the cycle can run against fakes.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        session_factory=None,
        collector: Callable[..., Awaitable[CollectionResult]] = None,
        probe: Callable[[str], Awaitable[bool]] = None,
        notifier: Callable = None,
    ):
        self._config = config
        self._state = SchedulerState()
        self._session_factory = session_factory or SessionLocal
        self._collect = collector or collect_metrics
        self._probe = probe or liveness.check
        self._notify = notifier or notifications.evaluate_power_thresholds

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._is_collecting = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Arm the periodic loop. Must be called with a running event loop."""
        if self._state.is_running:
            logger.info("Scheduler already running")
            return

        if not self._config.enabled:
            logger.info("Scheduler disabled in config")
            return

        logger.info("Starting scheduler with interval %ss", self._config.interval_ms / 1000)
        self._state.is_running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run_loop(self._stop_event))

    def stop(self) -> None:
        """
        Prevent further cycles. Idempotent.

        A cycle already in progress is not interrupted; its loop exits once the
        cycle settles.
        """
        if not self._state.is_running:
            logger.info("Scheduler already stopped")
            return

        logger.info("Stopping scheduler")
        if self._stop_event is not None:
            self._stop_event.set()
        self._stop_event = None
        self._task = None
        self._state.is_running = False
        self._state.next_run = None

    async def aclose(self) -> None:
        """Stop and wait for the loop task to wind down."""
        task = self._task
        self.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            interval = self._config.interval_ms / 1000
            self._state.next_run = datetime.utcnow() + timedelta(seconds=interval)
            logger.debug("Next run scheduled for %s", self._state.next_run.isoformat())

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            await self.collect_from_all_devices()

    async def run_now(self) -> bool:
        """
        Run one cycle immediately.

        Returns False (and does nothing) if a cycle is already in flight.
        """
        if self._is_collecting:
            logger.info("Collection already in progress")
            return False

        logger.info("Manual collection triggered")
        await self.collect_from_all_devices(triggered_by="manual")
        return True

    # ------------------------------------------------------------------
    # Config / state
    # ------------------------------------------------------------------

    def update_config(self, **changes) -> SchedulerConfig:
        """Merge a partial config; restarts the loop if it was running."""
        unknown = set(changes) - set(SchedulerConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown scheduler config keys: {sorted(unknown)}")

        was_running = self._state.is_running
        if was_running:
            self.stop()

        updates = {k: v for k, v in changes.items() if v is not None}
        self._config = SchedulerConfig.model_validate({**self._config.model_dump(), **updates})

        if was_running and self._config.enabled:
            self.start()

        logger.info("Scheduler config updated: %s", self._config.model_dump())
        return self.get_config()

    def get_state(self) -> SchedulerState:
        return self._state.model_copy(deep=True)

    def get_config(self) -> SchedulerConfig:
        return self._config.model_copy()

    @property
    def is_collecting(self) -> bool:
        return self._is_collecting

    # ------------------------------------------------------------------
    # Collection cycle
    # ------------------------------------------------------------------

    async def collect_from_all_devices(self, triggered_by: str = "scheduler") -> None:
        if self._is_collecting:
            logger.info("Collection already in progress, skipping")
            return

        self._is_collecting = True
        self._state.last_run = datetime.utcnow()
        self._state.total_collections += 1

        try:
            devices = await asyncio.to_thread(self._load_targets)

            logger.info("Collecting from %d devices", len(devices))
            if not devices:
                logger.info("No devices configured for collection")
                return

            online = await self._online_devices(devices)
            logger.info("%d/%d devices online", len(online), len(devices))
            if not online:
                logger.info("No online devices to collect from")
                return

            batch_size = self._config.max_concurrent
            cycle_success = 0
            for index in range(0, len(online), batch_size):
                batch = online[index:index + batch_size]
                self._state.current_devices = [d.id for d in batch]

                results = await asyncio.gather(
                    *(self._collect_device(device, triggered_by) for device in batch),
                    return_exceptions=True,
                )
                batch_success = sum(1 for r in results if r is True)
                cycle_success += batch_success
                logger.info(
                    "Batch %d: %d/%d successful",
                    index // batch_size + 1,
                    batch_success,
                    len(batch),
                )

            logger.info(
                "Collection cycle complete: %d/%d devices collected "
                "(totals: %d success, %d failures)",
                cycle_success,
                len(online),
                self._state.success_count,
                self._state.failure_count,
            )
        except Exception:
            logger.exception("Collection cycle error")
        finally:
            self._state.current_devices = []
            self._is_collecting = False

    async def _online_devices(self, devices: List[DeviceTarget]) -> List[DeviceTarget]:
        checks = await asyncio.gather(
            *(self._probe(device.ip_address) for device in devices),
            return_exceptions=True,
        )
        online = []
        for device, status in zip(devices, checks):
            if isinstance(status, BaseException):
                logger.warning("Status check failed for %s: %s", device.name, status)
                continue
            if status:
                online.append(device)
        return online

    async def _collect_device(self, device: DeviceTarget, triggered_by: str) -> bool:
        """Collect, persist and record one device. Returns True on success."""
        logger.info("Collecting metrics from %s...", device.name)
        started = time.monotonic()
        try:
            result = await self._collect(device)
        except Exception as exc:
            result = CollectionResult(
                success=False,
                error=str(exc) or exc.__class__.__name__,
                timestamp=int(time.time()),
            )
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if not (result.success and result.metrics):
            await self._record_failure(device, elapsed_ms, result.error or "Unknown error", triggered_by)
            return False

        try:
            await asyncio.to_thread(self._store_success, device, result, elapsed_ms, triggered_by)
        except Exception as exc:
            logger.error("Failed to store metrics for %s", device.name, exc_info=True)
            await self._record_failure(device, elapsed_ms, f"Failed to store metrics: {exc}", triggered_by)
            return False

        await self._check_power_threshold(device, result)
        self._state.success_count += 1
        logger.info("%s collected successfully (%dms)", device.name, elapsed_ms)
        return True

    # Blocking session work; only ever called through asyncio.to_thread.

    def _load_targets(self) -> List[DeviceTarget]:
        with get_session(self._session_factory) as db:
            return [DeviceTarget.from_device(d) for d in list_eligible(db)]

    def _store_success(self, device: DeviceTarget, result: CollectionResult, elapsed_ms: int, triggered_by: str) -> None:
        with get_session(self._session_factory) as db:
            insert_sample(db, sample_from_result(device.id, result))
            history.record(db, device.id, True, elapsed_ms, triggered_by)

    def _store_failure(self, device: DeviceTarget, elapsed_ms: int, error: str, triggered_by: str) -> None:
        with get_session(self._session_factory) as db:
            history.record(
                db,
                device.id,
                False,
                elapsed_ms,
                triggered_by,
                error_message=error,
            )

    def _notify_power(self, device: DeviceTarget, watts: float) -> None:
        with get_session(self._session_factory) as db:
            self._notify(db, device, watts)

    async def _record_failure(self, device: DeviceTarget, elapsed_ms: int, error: str, triggered_by: str) -> None:
        self._state.failure_count += 1
        logger.warning("%s collection failed: %s", device.name, error)
        try:
            await asyncio.to_thread(self._store_failure, device, elapsed_ms, error, triggered_by)
        except Exception:
            logger.error("Could not record collection failure for %s", device.name, exc_info=True)

    async def _check_power_threshold(self, device: DeviceTarget, result: CollectionResult) -> None:
        power = result.metrics.power
        if power is None or power.watts is None:
            return
        try:
            await asyncio.to_thread(self._notify_power, device, power.watts)
        except Exception:
            # Alerts are best-effort; the collection itself already succeeded.
            logger.warning("Notification check failed for %s", device.name, exc_info=True)


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_scheduler: Optional[MetricsScheduler] = None


def init_scheduler(**kwargs) -> MetricsScheduler:
    """Create the process-wide scheduler from settings (once)."""
    global _scheduler
    if _scheduler is not None:
        return _scheduler

    config = SchedulerConfig(
        enabled=settings.enable_background_metrics,
        interval_ms=settings.background_metrics_interval,
        max_concurrent=settings.background_metrics_concurrent,
    )
    _scheduler = MetricsScheduler(config, **kwargs)
    logger.info("Scheduler initialized with config: %s", config.model_dump())
    return _scheduler


def get_scheduler() -> Optional[MetricsScheduler]:
    return _scheduler


def start_scheduler() -> MetricsScheduler:
    scheduler = init_scheduler()
    scheduler.start()
    return scheduler


async def stop_scheduler() -> None:
    if _scheduler is not None:
        await _scheduler.aclose()


def reset_scheduler() -> None:
    """Drop the process-wide instance (tests and app restarts)."""
    global _scheduler
    _scheduler = None
