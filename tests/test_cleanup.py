import time

from devicewatch import cleanup
from devicewatch.models import MetricsSample


def test_dry_run_counts_without_deleting(make_device, add_sample, db, capsys):
    device = make_device()
    add_sample(device.id, int(time.time()) - 40 * 86400)
    add_sample(device.id, int(time.time()))

    assert cleanup.main(["--days", "30", "--dry-run"]) == 0

    assert "Would delete 1 metric samples" in capsys.readouterr().out
    assert db.query(MetricsSample).count() == 2


def test_deletes_old_rows(make_device, add_sample, db):
    device = make_device()
    add_sample(device.id, int(time.time()) - 40 * 86400)
    add_sample(device.id, int(time.time()))

    counts = cleanup.run_cleanup(days=30, history_days=30)

    assert counts == {"metrics": 1, "history": 0}
    assert db.query(MetricsSample).count() == 1


def test_invalid_days(capsys):
    assert cleanup.main(["--days", "0"]) == 2
    assert "--days must be between" in capsys.readouterr().err
