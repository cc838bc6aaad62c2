"""Read-only access to the device registry."""

from typing import List, Optional

from sqlalchemy.orm import Session

from devicewatch.models import Device


def get_device(db: Session, device_id: int) -> Optional[Device]:
    return db.get(Device, device_id)


def list_eligible(db: Session) -> List[Device]:
    """Devices with an IP address and both SSH credential fields set."""
    return (
        db.query(Device)
        .filter(
            Device.ip_address.isnot(None),
            Device.ip_address != "",
            Device.ssh_username.isnot(None),
            Device.ssh_username != "",
            Device.ssh_password.isnot(None),
            Device.ssh_password != "",
        )
        .order_by(Device.name.asc())
        .all()
    )
