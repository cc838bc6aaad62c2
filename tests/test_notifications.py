from datetime import datetime, timedelta

from devicewatch import notifications
from devicewatch.models import Notification, UserPreferences


def test_below_threshold_creates_nothing(make_device, db):
    device = make_device()
    assert notifications.check_power_threshold(db, 1, device.id, device.name, 150.0, 150.0) is None
    assert db.query(Notification).count() == 0


def test_above_threshold_creates_warning(make_device, db):
    device = make_device("gaming-rig")

    created = notifications.check_power_threshold(db, 1, device.id, device.name, 310.4, 250.0)
    db.commit()

    assert created.severity == "warning"
    assert created.type == notifications.POWER_THRESHOLD
    assert created.title == "High Power Usage: gaming-rig"
    assert "310.4W" in created.message


def test_repeat_alert_within_an_hour_is_suppressed(make_device, db):
    device = make_device()
    notifications.check_power_threshold(db, 1, device.id, device.name, 300.0, 200.0)
    db.commit()

    assert notifications.check_power_threshold(db, 1, device.id, device.name, 320.0, 200.0) is None
    assert db.query(Notification).count() == 1


def test_alert_after_window_expires(make_device, db):
    device = make_device()
    old = notifications.check_power_threshold(db, 1, device.id, device.name, 300.0, 200.0)
    old.created_at = datetime.utcnow() - timedelta(hours=2)
    db.commit()

    assert notifications.check_power_threshold(db, 1, device.id, device.name, 300.0, 200.0) is not None


def test_evaluate_only_users_with_thresholds(make_device, db):
    device = make_device()
    db.add_all(
        [
            UserPreferences(user_id=1, power_threshold_watts=100.0),
            UserPreferences(user_id=2, power_threshold_watts=None),
            UserPreferences(user_id=3, power_threshold_watts=100.0, enable_notifications=False),
            UserPreferences(user_id=4, power_threshold_watts=500.0),
        ]
    )
    db.commit()

    created = notifications.evaluate_power_thresholds(db, device, 200.0)

    assert [n.user_id for n in created] == [1]


def test_evaluate_without_reading(make_device, db):
    assert notifications.evaluate_power_thresholds(db, make_device(), None) == []
