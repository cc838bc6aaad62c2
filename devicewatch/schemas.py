"""
Pydantic models ("schemas") shared by the collector, scheduler and API.

We keep these separate from the ORM models so the API layer
does not expose SQLAlchemy internals.
"""

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from devicewatch.config import (
    MAX_CONCURRENT,
    MAX_INTERVAL_MS,
    MIN_CONCURRENT,
    MIN_INTERVAL_MS,
)


# ---------------------------------------------------------------------------
# Collector output
# ---------------------------------------------------------------------------

class RamReading(BaseModel):
    used: Optional[float] = None
    total: Optional[float] = None
    percent: Optional[float] = None


class GpuReading(BaseModel):
    usage: Optional[float] = None
    memory_used: Optional[float] = None
    memory_total: Optional[float] = None


class NetworkReading(BaseModel):
    rx_mbps: Optional[float] = None
    tx_mbps: Optional[float] = None


class PowerReading(BaseModel):
    watts: Optional[float] = None
    estimated: bool = False


class MetricsData(BaseModel):
    """
    Everything one collection pass read from a device.

    `gpu`, `network` and `power` are None when that reading is unavailable;
    `ram` is always present but its fields may be None.
    """

    cpu: Optional[float] = None
    ram: RamReading = Field(default_factory=RamReading)
    gpu: Optional[GpuReading] = None
    network: Optional[NetworkReading] = None
    power: Optional[PowerReading] = None


class CollectionResult(BaseModel):
    success: bool
    metrics: Optional[MetricsData] = None
    error: Optional[str] = None
    timestamp: int


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class SchedulerConfig(BaseModel):
    enabled: bool
    interval_ms: int
    max_concurrent: int


class SchedulerConfigUpdate(BaseModel):
    """Partial config accepted by `PATCH /scheduler`."""

    enabled: Optional[bool] = None
    interval_ms: Optional[int] = Field(default=None, ge=MIN_INTERVAL_MS, le=MAX_INTERVAL_MS)
    max_concurrent: Optional[int] = Field(default=None, ge=MIN_CONCURRENT, le=MAX_CONCURRENT)


class SchedulerState(BaseModel):
    is_running: bool = False
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    total_collections: int = 0
    success_count: int = 0
    failure_count: int = 0
    current_devices: List[int] = Field(default_factory=list)


class SchedulerAction(BaseModel):
    action: Literal["start", "stop", "run-now"]


# ---------------------------------------------------------------------------
# Store output
# ---------------------------------------------------------------------------

class MetricsSampleOut(BaseModel):
    """
    Full view of a MetricsSample row for API responses.
    """

    id: int
    device_id: int
    timestamp: int
    cpu_percent: Optional[float] = None
    ram_used_gb: Optional[float] = None
    ram_total_gb: Optional[float] = None
    ram_percent: Optional[float] = None
    gpu_percent: Optional[float] = None
    gpu_memory_used_mb: Optional[float] = None
    gpu_memory_total_mb: Optional[float] = None
    network_rx_mbps: Optional[float] = None
    network_tx_mbps: Optional[float] = None
    power_consumption_w: Optional[float] = None
    power_estimated: bool = False

    model_config = ConfigDict(from_attributes=True)


class HourlyAggregate(BaseModel):
    """Per-hour means; `timestamp` is the hour start (unix seconds)."""

    timestamp: int
    sample_count: int
    avg_cpu_percent: Optional[float] = None
    avg_ram_used_gb: Optional[float] = None
    avg_ram_total_gb: Optional[float] = None
    avg_ram_percent: Optional[float] = None
    avg_gpu_percent: Optional[float] = None
    avg_gpu_memory_used_mb: Optional[float] = None
    avg_gpu_memory_total_mb: Optional[float] = None
    avg_network_rx_mbps: Optional[float] = None
    avg_network_tx_mbps: Optional[float] = None
    avg_power_w: Optional[float] = None


class DailyAggregate(BaseModel):
    """Per-day means and maxima plus the day's integrated energy."""

    timestamp: int
    sample_count: int
    avg_cpu_percent: Optional[float] = None
    max_cpu_percent: Optional[float] = None
    avg_ram_used_gb: Optional[float] = None
    max_ram_used_gb: Optional[float] = None
    avg_ram_total_gb: Optional[float] = None
    max_ram_total_gb: Optional[float] = None
    avg_ram_percent: Optional[float] = None
    max_ram_percent: Optional[float] = None
    avg_gpu_percent: Optional[float] = None
    max_gpu_percent: Optional[float] = None
    avg_gpu_memory_used_mb: Optional[float] = None
    max_gpu_memory_used_mb: Optional[float] = None
    avg_gpu_memory_total_mb: Optional[float] = None
    max_gpu_memory_total_mb: Optional[float] = None
    avg_network_rx_mbps: Optional[float] = None
    max_network_rx_mbps: Optional[float] = None
    avg_network_tx_mbps: Optional[float] = None
    max_network_tx_mbps: Optional[float] = None
    avg_power_w: Optional[float] = None
    max_power_w: Optional[float] = None
    energy_kwh: float = 0.0


class AdaptiveRange(BaseModel):
    resolution: Literal["raw", "hourly", "daily"]
    start: int
    end: int
    points: List[Union[MetricsSampleOut, HourlyAggregate, DailyAggregate]]


class EnergyConsumption(BaseModel):
    energy_kwh: float
    sample_count: int


class PowerStats(BaseModel):
    avg_power_w: Optional[float] = None
    max_power_w: Optional[float] = None
    min_power_w: Optional[float] = None
    sample_count: int = 0


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

class CollectionHistoryOut(BaseModel):
    id: int
    device_id: int
    success: bool
    error_message: Optional[str] = None
    collection_time_ms: int
    triggered_by: str
    timestamp: int

    model_config = ConfigDict(from_attributes=True)


class CollectionStats(BaseModel):
    total_attempts: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    avg_collection_time_ms: Optional[int] = None


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

class CheckpointResult(BaseModel):
    busy: bool = False
    frames_in_wal: int
    frames_checkpointed: int


class MaintenanceRequest(BaseModel):
    operation: Literal["checkpoint", "optimize"]


class CollectRequest(BaseModel):
    device_id: int
