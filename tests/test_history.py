"""Tests for the collection history log."""

import time

import pytest

from devicewatch import history
from devicewatch.models import CollectionHistory


def test_record_and_list_newest_first(make_device, db):
    device = make_device()
    history.record(db, device.id, True, 120, "scheduler")
    history.record(db, device.id, False, 80, "manual", error_message="Connection refused")
    db.commit()

    entries = history.get_for_device(db, device.id)

    assert [e.success for e in entries] == [False, True]
    assert entries[0].error_message == "Connection refused"
    assert entries[0].triggered_by == "manual"


def test_limit(make_device, db):
    device = make_device()
    for _ in range(5):
        history.record(db, device.id, True, 10, "ui")
    db.commit()

    assert len(history.get_for_device(db, device.id, limit=3)) == 3


def test_unknown_trigger_is_rejected(make_device, db):
    device = make_device()
    with pytest.raises(ValueError):
        history.record(db, device.id, True, 10, "cron")


def test_empty_error_message_stored_as_null(make_device, db):
    device = make_device()
    entry = history.record(db, device.id, False, 10, "scheduler", error_message="")
    assert entry.error_message is None


class TestStats:
    def test_success_rate_and_mean_time(self, make_device, db):
        device = make_device()
        history.record(db, device.id, True, 100, "scheduler")
        history.record(db, device.id, True, 200, "scheduler")
        history.record(db, device.id, True, 300, "scheduler")
        history.record(db, device.id, False, 400, "scheduler", error_message="timeout")
        db.commit()

        stats = history.get_stats(db, device.id)

        assert stats.total_attempts == 4
        assert stats.success_count == 3
        assert stats.failure_count == 1
        assert stats.success_rate == pytest.approx(75.0)
        assert stats.avg_collection_time_ms == 250

    def test_no_attempts_is_zero_rate(self, make_device, db):
        device = make_device()
        stats = history.get_stats(db, device.id)
        assert stats.total_attempts == 0
        assert stats.success_rate == 0.0

    def test_window_excludes_old_rows(self, make_device, db):
        device = make_device()
        db.add(
            CollectionHistory(
                device_id=device.id,
                success=False,
                collection_time_ms=10,
                triggered_by="scheduler",
                timestamp=int(time.time()) - 48 * 3600,
            )
        )
        history.record(db, device.id, True, 10, "scheduler")
        db.commit()

        assert history.get_stats(db, device.id, hours=24).total_attempts == 1
        assert history.get_stats(db, device.id, hours=72).total_attempts == 2

    def test_all_devices(self, make_device, db):
        first = make_device("a")
        second = make_device("b")
        history.record(db, first.id, True, 10, "scheduler")
        history.record(db, second.id, False, 10, "scheduler")
        db.commit()

        stats = history.get_all_stats(db)

        assert stats.total_attempts == 2
        assert stats.success_rate == pytest.approx(50.0)
        assert stats.avg_collection_time_ms is None


def test_delete_older_than(make_device, db):
    device = make_device()
    db.add(
        CollectionHistory(
            device_id=device.id,
            success=True,
            collection_time_ms=10,
            triggered_by="scheduler",
            timestamp=int(time.time()) - 31 * 86400,
        )
    )
    history.record(db, device.id, True, 10, "scheduler")
    db.commit()

    deleted = history.delete_older_than(db, days=30)
    db.commit()

    assert deleted == 1
    assert db.query(CollectionHistory).count() == 1
