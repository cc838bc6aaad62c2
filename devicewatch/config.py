"""
Configuration for the device metrics service.

We use pydantic-settings (Pydantic v2) to load settings from:
- environment variables
- a local `.env` file in the project root

Bounds on the collection interval, concurrency and retention are validated
here, at load time, so the scheduler and store can trust what they receive.
"""

import logging
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


MIN_INTERVAL_MS = 60_000       # 1 minute
MAX_INTERVAL_MS = 3_600_000    # 1 hour
MIN_CONCURRENT = 1
MAX_CONCURRENT = 10
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 3650


class Settings(BaseSettings):
    """
    Application-wide settings.

    Environment variables (with defaults):

    - DATABASE_URL:                  SQLAlchemy URL (default: sqlite file data/devices.db)
    - ENABLE_BACKGROUND_METRICS:     run the collection scheduler (default: false)
    - BACKGROUND_METRICS_INTERVAL:   cycle interval in ms (default: 300000)
    - BACKGROUND_METRICS_CONCURRENT: devices collected at once (default: 3)
    - MAINTENANCE_ENABLED:           run WAL checkpoint / ANALYZE timers (default: true)
    - CHECKPOINT_INTERVAL_HOURS:     hours between checkpoints (default: 6)
    - OPTIMIZE_INTERVAL_HOURS:       hours between optimizations (default: 24)
    - METRICS_RETENTION_DAYS:        default age for metric pruning (default: 365)
    - HISTORY_RETENTION_DAYS:        default age for history pruning (default: 30)
    - SSH_CONNECT_TIMEOUT_SECONDS:   SSH handshake timeout (default: 10)
    - SSH_COMMAND_TIMEOUT_SECONDS:   per-metric command timeout (default: 5)
    - SSH_KNOWN_HOSTS:               known_hosts path; unset disables host key checks
    - LIVENESS_PORTS:                comma-separated TCP ports probed (default: "445,3389")
    - LIVENESS_TIMEOUT_SECONDS:      per-port connect timeout (default: 2)
    - POWER_ESTIMATION_ENABLED:      estimate watts from utilisation (default: true)
    - POWER_IDLE_WATTS / POWER_CPU_WATTS / POWER_GPU_WATTS: estimation model
    - LOG_LEVEL:                     root log level (default: INFO)
    """

    database_url: str = "sqlite:///./data/devices.db"

    enable_background_metrics: bool = False
    background_metrics_interval: int = 300_000
    background_metrics_concurrent: int = 3

    maintenance_enabled: bool = True
    checkpoint_interval_hours: float = 6
    optimize_interval_hours: float = 24

    metrics_retention_days: int = 365
    history_retention_days: int = 30

    ssh_connect_timeout_seconds: float = 10.0
    ssh_command_timeout_seconds: float = 5.0
    ssh_known_hosts: Optional[str] = None

    # Will be populated from LIVENESS_PORTS env; parsed below.
    liveness_ports: Annotated[List[int], NoDecode] = Field(
        default_factory=lambda: [445, 3389]
    )
    liveness_timeout_seconds: float = 2.0

    power_estimation_enabled: bool = True
    power_idle_watts: float = 30.0
    power_cpu_watts: float = 65.0
    power_gpu_watts: float = 150.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("background_metrics_interval")
    @classmethod
    def check_interval(cls, v: int) -> int:
        if not MIN_INTERVAL_MS <= v <= MAX_INTERVAL_MS:
            raise ValueError(
                f"interval must be between {MIN_INTERVAL_MS}ms and {MAX_INTERVAL_MS}ms"
            )
        return v

    @field_validator("background_metrics_concurrent")
    @classmethod
    def check_concurrent(cls, v: int) -> int:
        if not MIN_CONCURRENT <= v <= MAX_CONCURRENT:
            raise ValueError(
                f"max concurrent must be between {MIN_CONCURRENT} and {MAX_CONCURRENT}"
            )
        return v

    @field_validator("metrics_retention_days")
    @classmethod
    def check_retention(cls, v: int) -> int:
        if not MIN_RETENTION_DAYS <= v <= MAX_RETENTION_DAYS:
            raise ValueError(
                f"retention days must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS}"
            )
        return v

    @field_validator("checkpoint_interval_hours", "optimize_interval_hours")
    @classmethod
    def check_positive_hours(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("maintenance intervals must be positive")
        return v

    @field_validator("liveness_ports", mode="before")
    @classmethod
    def parse_ports(cls, v):
        """
        Allow LIVENESS_PORTS to be specified as:

        - "445"          -> [445]
        - "445,3389"     -> [445, 3389]
        - 22             -> [22]
        - [445, 3389]    -> [445, 3389]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, int):
            return [v]
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            return [int(p) for p in parts]
        return v


def configure_logging(level: Optional[str] = None) -> None:
    """Set up root logging for the process entry points."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


# Single global settings object
settings = Settings()
