"""
SQLAlchemy ORM models.

Tables:

- Device:            registry row; the metrics core only reads it
- MetricsSample:     one row per (device, collection) snapshot
- CollectionHistory: outcome of every collection attempt
- UserPreferences:   per-user notification settings
- Notification:      in-app alerts (power threshold, ...)

Timestamps on samples and history are unix seconds, which keeps the hourly
and daily bucketing plain integer arithmetic.
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from devicewatch.database import Base


class Device(Base):
    """
    A managed PC.

    A device is eligible for metric collection only when it has an IP address
    and both SSH credential fields.
    """

    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(128), nullable=False)
    mac_address = Column(String(17), nullable=False, unique=True)
    ip_address = Column(String(64), nullable=True)

    ssh_username = Column(String(128), nullable=True)
    ssh_password = Column(String(256), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class MetricsSample(Base):
    """
    One utilisation snapshot for a device.

    Every numeric field is nullable: a metric that could not be read is stored
    as NULL rather than failing the whole sample. There is no uniqueness on
    (device_id, timestamp).
    """

    __tablename__ = "metrics"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(
        Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False
    )

    # Unix seconds when the collector started reading
    timestamp = Column(Integer, nullable=False, index=True)

    cpu_percent = Column(Float, nullable=True)

    ram_used_gb = Column(Float, nullable=True)
    ram_total_gb = Column(Float, nullable=True)
    ram_percent = Column(Float, nullable=True)

    gpu_percent = Column(Float, nullable=True)
    gpu_memory_used_mb = Column(Float, nullable=True)
    gpu_memory_total_mb = Column(Float, nullable=True)

    network_rx_mbps = Column(Float, nullable=True)
    network_tx_mbps = Column(Float, nullable=True)

    power_consumption_w = Column(Float, nullable=True)
    power_estimated = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_metrics_device_time", "device_id", "timestamp"),
    )


class CollectionHistory(Base):
    """Append-only record of one collection attempt."""

    __tablename__ = "collection_history"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(
        Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False
    )
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    collection_time_ms = Column(Integer, nullable=False)
    triggered_by = Column(String(16), nullable=False)  # scheduler / manual / ui
    timestamp = Column(Integer, nullable=False, index=True)

    __table_args__ = (
        Index("idx_collection_history_device_time", "device_id", "timestamp"),
    )


class UserPreferences(Base):
    __tablename__ = "user_preferences"

    user_id = Column(Integer, primary_key=True)
    enable_notifications = Column(Boolean, nullable=False, default=True)
    power_threshold_watts = Column(Float, nullable=True)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False)
    device_id = Column(
        Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=True
    )
    type = Column(String(32), nullable=False)  # power_threshold, ...
    title = Column(String(256), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String(16), nullable=False, default="info")
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "read", "created_at"),
    )
