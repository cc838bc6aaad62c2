"""Tests for WAL checkpointing, optimization and the maintenance timers."""

import asyncio
import logging

from devicewatch import maintenance
from devicewatch.database import engine
from devicewatch.maintenance import MaintenanceService, checkpoint_wal
from devicewatch.schemas import CheckpointResult


def test_checkpoint_on_wal_database(make_device):
    make_device()

    result = checkpoint_wal(engine)

    assert result.busy is False
    assert result.frames_checkpointed <= result.frames_in_wal


def test_perform_checkpoint_returns_counts():
    result = MaintenanceService(engine).perform_checkpoint()
    assert isinstance(result, CheckpointResult)


def test_failed_checkpoint_is_logged_and_swallowed(monkeypatch, caplog):
    def broken(bind):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(maintenance, "checkpoint_wal", broken)

    with caplog.at_level(logging.ERROR, logger="devicewatch.maintenance"):
        assert MaintenanceService(engine).trigger_checkpoint() is None

    assert "Checkpoint failed" in caplog.text


def test_large_wal_logs_warning(monkeypatch, caplog):
    monkeypatch.setattr(
        maintenance,
        "checkpoint_wal",
        lambda bind: CheckpointResult(frames_in_wal=12_000, frames_checkpointed=12_000),
    )

    with caplog.at_level(logging.WARNING, logger="devicewatch.maintenance"):
        MaintenanceService(engine).perform_checkpoint()

    assert "12000 frames" in caplog.text


def test_optimize():
    assert MaintenanceService(engine).trigger_optimize() is True


def test_failed_optimize_returns_false(monkeypatch):
    def broken(bind):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(maintenance, "optimize_db", broken)

    assert MaintenanceService(engine).perform_optimization() is False


def test_start_and_close():
    calls = []

    async def scenario():
        service = MaintenanceService(engine)
        service.perform_checkpoint = lambda: calls.append("checkpoint")
        service.start(checkpoint_interval_hours=1, optimize_interval_hours=2)
        assert calls == []  # first checkpoint runs in the background task
        service.start()  # already running
        active = service.is_active()
        while not calls:
            await asyncio.sleep(0.01)
        await service.aclose()
        return service, active

    service, active = asyncio.run(scenario())

    assert active is True
    assert service.is_active() is False
    assert service.checkpoint_interval_hours == 1
    assert service.optimize_interval_hours == 2
    # Only the immediate checkpoint; the intervals never elapsed
    assert calls == ["checkpoint"]


def test_periodic_task_runs_operation():
    calls = []

    async def scenario():
        service = MaintenanceService(engine)
        task = asyncio.create_task(service._periodic("tick", lambda: calls.append(1), 0.01))
        while len(calls) < 3:
            await asyncio.sleep(0.01)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return task

    task = asyncio.run(scenario())

    assert len(calls) >= 3
    assert task.done()
