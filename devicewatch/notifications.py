"""
In-app notifications raised by the metrics pipeline.

Only the power-threshold alert is produced here; repeated alerts for the
same user and device are suppressed for an hour.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from devicewatch.models import Notification, UserPreferences

logger = logging.getLogger(__name__)

POWER_THRESHOLD = "power_threshold"
DEDUP_WINDOW = timedelta(hours=1)


def create(
    db: Session,
    user_id: int,
    type: str,
    title: str,
    message: str,
    severity: str = "info",
    device_id: Optional[int] = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        device_id=device_id,
        type=type,
        title=title,
        message=message,
        severity=severity,
    )
    db.add(notification)
    db.flush()
    return notification


def check_power_threshold(
    db: Session,
    user_id: int,
    device_id: int,
    device_name: str,
    current_watts: float,
    threshold_watts: float,
) -> Optional[Notification]:
    """Create a warning if `current_watts` exceeds the threshold, at most hourly."""
    if current_watts <= threshold_watts:
        return None

    recent = (
        db.query(Notification.id)
        .filter(
            Notification.user_id == user_id,
            Notification.device_id == device_id,
            Notification.type == POWER_THRESHOLD,
            Notification.created_at > datetime.utcnow() - DEDUP_WINDOW,
        )
        .first()
    )
    if recent is not None:
        return None

    return create(
        db,
        user_id=user_id,
        device_id=device_id,
        type=POWER_THRESHOLD,
        title=f"High Power Usage: {device_name}",
        message=(
            f"Power consumption ({current_watts:.1f}W) exceeded "
            f"threshold ({threshold_watts:.1f}W)"
        ),
        severity="warning",
    )


def evaluate_power_thresholds(db: Session, device, current_watts: Optional[float]) -> List[Notification]:
    """Check `current_watts` against every user who has a threshold configured."""
    if current_watts is None:
        return []

    created = []
    prefs = (
        db.query(UserPreferences)
        .filter(
            UserPreferences.enable_notifications.is_(True),
            UserPreferences.power_threshold_watts.isnot(None),
        )
        .all()
    )
    for pref in prefs:
        notification = check_power_threshold(
            db,
            pref.user_id,
            device.id,
            device.name,
            current_watts,
            pref.power_threshold_watts,
        )
        if notification is not None:
            logger.info(
                "Power threshold alert for %s: %.1fW > %.1fW (user %s)",
                device.name,
                current_watts,
                pref.power_threshold_watts,
                pref.user_id,
            )
            created.append(notification)
    return created
