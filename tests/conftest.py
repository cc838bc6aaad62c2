"""
Shared pytest fixtures.

The database URL is pointed at a throwaway SQLite file before any
`devicewatch` module is imported, so the module-level engine and
SessionLocal used by the scheduler and API hit the test database.
"""

import os
import tempfile
from itertools import count
from pathlib import Path

_TEST_DIR = Path(tempfile.mkdtemp(prefix="devicewatch-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR / 'test.db'}"
os.environ["ENABLE_BACKGROUND_METRICS"] = "false"
os.environ["MAINTENANCE_ENABLED"] = "false"

import pytest  # noqa: E402

from devicewatch import models  # noqa: E402,F401
from devicewatch.database import Base, SessionLocal, engine  # noqa: E402
from devicewatch.models import Device, MetricsSample  # noqa: E402
from devicewatch.scheduler import reset_scheduler  # noqa: E402


@pytest.fixture(autouse=True)
def clean_database():
    """Fresh tables for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_scheduler()
    yield
    reset_scheduler()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_device(db):
    """
    Create a committed Device row.

    Usage:
        device = make_device("office-pc")
        locked = make_device("no-creds", ssh_password=None)
    """
    macs = count(1)

    def _make(name="pc", ip_address="192.168.1.10", ssh_username="admin", ssh_password="secret"):
        device = Device(
            name=name,
            mac_address=f"AA:BB:CC:DD:EE:{next(macs):02X}",
            ip_address=ip_address,
            ssh_username=ssh_username,
            ssh_password=ssh_password,
        )
        db.add(device)
        db.commit()
        db.refresh(device)
        return device

    return _make


@pytest.fixture
def add_sample(db):
    """Insert a MetricsSample with the given fields and commit."""

    def _add(device_id, timestamp, **fields):
        sample = MetricsSample(device_id=device_id, timestamp=timestamp, **fields)
        db.add(sample)
        db.commit()
        return sample

    return _add
