"""
Headless collector process.

This module:
- creates the database tables if needed
- runs the metrics scheduler (regardless of ENABLE_BACKGROUND_METRICS)
- runs the database maintenance timers
- exits cleanly on SIGINT / SIGTERM

Run it as:

    python -m devicewatch.collector
"""

import asyncio
import logging
import signal

from devicewatch.config import configure_logging, settings
from devicewatch.database import init_database
from devicewatch.maintenance import maintenance_service
from devicewatch.scheduler import init_scheduler

logger = logging.getLogger(__name__)


async def run() -> None:
    init_database()

    scheduler = init_scheduler()
    scheduler.update_config(enabled=True)

    logger.info("Starting metrics collector loop...")
    logger.info("Config: %s", scheduler.get_config().model_dump())

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still
            # raises KeyboardInterrupt out of asyncio.run.
            pass

    scheduler.start()
    if settings.maintenance_enabled:
        maintenance_service.start(
            settings.checkpoint_interval_hours,
            settings.optimize_interval_hours,
        )

    # First cycle right away instead of waiting a full interval.
    await scheduler.run_now()

    await stop.wait()
    logger.info("Shutting down gracefully...")
    await scheduler.aclose()
    await maintenance_service.aclose()


def main() -> None:
    configure_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
