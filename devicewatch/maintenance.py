"""
Background database maintenance.

Two independent periodic tasks keep the SQLite store healthy:

- WAL checkpoint (default every 6h): cheap, bounds write-ahead-log growth
- optimization (default every 24h): ANALYZE + PRAGMA optimize to refresh
  query-planner statistics

VACUUM is never run here: it needs an exclusive lock and would stall the
scheduler and API readers for the duration.

Every failure is logged and swallowed; the next tick simply tries again.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from devicewatch.database import engine as default_engine
from devicewatch.schemas import CheckpointResult

logger = logging.getLogger(__name__)

WAL_FRAME_WARNING = 10_000


def checkpoint_wal(bind: Engine) -> CheckpointResult:
    """Run a passive WAL checkpoint and report frame counts."""
    if bind.dialect.name != "sqlite":
        return CheckpointResult(frames_in_wal=0, frames_checkpointed=0)

    with bind.connect() as conn:
        busy, log_frames, checkpointed = conn.exec_driver_sql(
            "PRAGMA wal_checkpoint(PASSIVE)"
        ).one()
    return CheckpointResult(
        busy=bool(busy),
        frames_in_wal=log_frames,
        frames_checkpointed=checkpointed,
    )


def optimize_db(bind: Engine) -> None:
    """Refresh planner statistics. Does not reclaim space."""
    with bind.connect() as conn:
        conn.exec_driver_sql("ANALYZE")
        if bind.dialect.name == "sqlite":
            conn.exec_driver_sql("PRAGMA optimize")
        conn.commit()


class MaintenanceService:
    """Manages the checkpoint and optimize timers."""

    def __init__(self, bind: Engine = None):
        self._engine = bind or default_engine
        self._checkpoint_task: Optional[asyncio.Task] = None
        self._optimize_task: Optional[asyncio.Task] = None
        self._running = False
        self.checkpoint_interval_hours: Optional[float] = None
        self.optimize_interval_hours: Optional[float] = None

    def start(self, checkpoint_interval_hours: float = 6, optimize_interval_hours: float = 24) -> None:
        """
        Checkpoint once right away, then arm both timers.

        Args:
            checkpoint_interval_hours: Hours between WAL checkpoints (default: 6)
            optimize_interval_hours: Hours between optimizations (default: 24)
        """
        if self._running:
            logger.info("Maintenance service already running")
            return

        logger.info(
            "Starting maintenance service (checkpoint every %sh, optimize every %sh)",
            checkpoint_interval_hours,
            optimize_interval_hours,
        )
        self.checkpoint_interval_hours = checkpoint_interval_hours
        self.optimize_interval_hours = optimize_interval_hours

        loop = asyncio.get_running_loop()
        self._checkpoint_task = loop.create_task(
            self._periodic(
                "checkpoint",
                self.perform_checkpoint,
                checkpoint_interval_hours * 3600,
                immediate=True,
            )
        )
        self._optimize_task = loop.create_task(
            self._periodic("optimize", self.perform_optimization, optimize_interval_hours * 3600)
        )
        self._running = True
        logger.info("Maintenance service started")

    def stop(self) -> None:
        if not self._running:
            return

        logger.info("Stopping maintenance service")
        for task in (self._checkpoint_task, self._optimize_task):
            if task is not None:
                task.cancel()
        self._running = False

    async def aclose(self) -> None:
        tasks = [t for t in (self._checkpoint_task, self._optimize_task) if t is not None]
        self.stop()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._checkpoint_task = None
        self._optimize_task = None
        logger.info("Maintenance service stopped")

    def is_active(self) -> bool:
        return self._running

    async def _periodic(
        self, name: str, operation: Callable, interval_seconds: float, immediate: bool = False
    ) -> None:
        try:
            if immediate:
                await asyncio.to_thread(operation)
            while True:
                await asyncio.sleep(interval_seconds)
                await asyncio.to_thread(operation)
        except asyncio.CancelledError:
            logger.debug("Periodic %s task cancelled", name)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def perform_checkpoint(self) -> Optional[CheckpointResult]:
        try:
            started = time.monotonic()
            result = checkpoint_wal(self._engine)
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                "Checkpoint completed in %dms - frames checkpointed: %d, WAL frames: %d",
                duration_ms,
                result.frames_checkpointed,
                result.frames_in_wal,
            )
            if result.frames_in_wal > WAL_FRAME_WARNING:
                logger.warning(
                    "WAL file has %d frames (>%d) - consider more frequent checkpoints",
                    result.frames_in_wal,
                    WAL_FRAME_WARNING,
                )
            return result
        except Exception:
            logger.error("Checkpoint failed", exc_info=True)
            return None

    def perform_optimization(self) -> bool:
        try:
            started = time.monotonic()
            optimize_db(self._engine)
            logger.info("Optimization completed in %dms", int((time.monotonic() - started) * 1000))
            return True
        except Exception:
            logger.error("Optimization failed", exc_info=True)
            return False

    def trigger_checkpoint(self) -> Optional[CheckpointResult]:
        logger.info("Manual checkpoint triggered")
        return self.perform_checkpoint()

    def trigger_optimize(self) -> bool:
        logger.info("Manual optimization triggered")
        return self.perform_optimization()


# Global instance for app integration
maintenance_service = MaintenanceService()
