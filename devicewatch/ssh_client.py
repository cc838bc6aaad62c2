"""
Remote metrics collector.

Opens one SSH session per device (asyncssh, password auth) and runs four
PowerShell one-liners in parallel:

1. CPU     -> single float percentage
2. RAM     -> "usedGB,totalGB,percent"
3. GPU     -> "usage,memUsedMB,memTotalMB" via nvidia-smi, or "N/A"
4. Network -> "receivedBytes,sentBytes" (cumulative counters)

Each command is time-boxed on its own and fails on its own: a missing GPU
leaves `gpu=None` but still returns a successful result with CPU/RAM filled
in. Only a failed connection or authentication fails the whole collection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import asyncssh

from devicewatch.config import settings
from devicewatch.schemas import (
    CollectionResult,
    GpuReading,
    MetricsData,
    NetworkReading,
    PowerReading,
    RamReading,
)

logger = logging.getLogger(__name__)


class CollectorError(Exception):
    """Base class for collection failures."""


class ConnectionFailed(CollectorError):
    """SSH handshake or authentication failed."""


class CommandTimeout(CollectorError):
    """A metric command did not finish in time."""


class CommandFailed(CollectorError):
    """A metric command exited non-zero."""


GPU_NOT_AVAILABLE = "N/A"


# ---------------------------------------------------------------------------
# PowerShell commands
# ---------------------------------------------------------------------------

POWERSHELL_COMMANDS: Dict[str, str] = {
    "cpu": "(Get-Counter '\\Processor(_Total)\\% Processor Time').CounterSamples.CookedValue",
    "ram": (
        "$os = Get-CimInstance Win32_OperatingSystem; "
        "$totalGB = [math]::Round($os.TotalVisibleMemorySize/1MB, 2); "
        "$freeGB = [math]::Round($os.FreePhysicalMemory/1MB, 2); "
        "$usedGB = [math]::Round($totalGB - $freeGB, 2); "
        "$usedPercent = [math]::Round((1 - $os.FreePhysicalMemory/$os.TotalVisibleMemorySize) * 100, 2); "
        "Write-Output \"$usedGB,$totalGB,$usedPercent\""
    ),
    "gpu": (
        "try { "
        "$result = nvidia-smi --query-gpu=utilization.gpu,memory.used,memory.total "
        "--format=csv,noheader,nounits 2>&1; "
        "if ($LASTEXITCODE -eq 0) { Write-Output $result } else { Write-Output \"N/A\" } "
        "} catch { Write-Output \"N/A\" }"
    ),
    "network": (
        "Get-NetAdapterStatistics | "
        "Where-Object {$_.Name -notlike '*Loopback*' -and $_.Name -notlike '*Bluetooth*'} | "
        "Select-Object -First 1 | "
        "ForEach-Object { Write-Output \"$($_.ReceivedBytes),$($_.SentBytes)\" }"
    ),
}


def wrap_powershell(command: str) -> str:
    escaped = command.replace('"', '\\"')
    return f'powershell -NoProfile -Command "{escaped}"'


# ---------------------------------------------------------------------------
# Output parsers
# ---------------------------------------------------------------------------

def _to_float(value: str) -> Optional[float]:
    try:
        return float(value.strip())
    except (TypeError, ValueError):
        return None


def parse_cpu_output(output: str) -> Optional[float]:
    value = _to_float(output)
    return None if value is None else round(value, 2)


def parse_ram_output(output: str) -> RamReading:
    """
    Parse "usedGB,totalGB,percent".

    Any part that is not a number invalidates the whole triple.
    """
    parts = [_to_float(p) for p in output.split(",")]
    if len(parts) != 3 or any(p is None for p in parts):
        return RamReading()
    used, total, percent = parts
    return RamReading(used=round(used, 2), total=round(total, 2), percent=round(percent, 2))


def parse_gpu_output(output: str) -> Optional[GpuReading]:
    """
    Parse "usage,memoryUsed,memoryTotal" from nvidia-smi.

    Returns None for the "N/A" sentinel, empty output or garbage. Only the first
    GPU line is used on multi-GPU hosts.
    """
    output = output.strip()
    if not output or output == GPU_NOT_AVAILABLE:
        return None

    first_line = output.splitlines()[0]
    parts = [_to_float(p) for p in first_line.split(",")]
    if len(parts) != 3 or any(p is None for p in parts):
        return None

    usage, mem_used, mem_total = parts
    return GpuReading(
        usage=round(usage, 2),
        memory_used=float(round(mem_used)),
        memory_total=float(round(mem_total)),
    )


def parse_network_output(output: str) -> Optional[Tuple[int, int]]:
    """Parse "receivedBytes,sentBytes" into integer counters."""
    parts = output.strip().split(",")
    if len(parts) != 2:
        return None
    try:
        return int(parts[0].strip()), int(parts[1].strip())
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Network rates
# ---------------------------------------------------------------------------

@dataclass
class _CounterSnapshot:
    rx_bytes: int
    tx_bytes: int
    timestamp: float


class NetworkRateTracker:
    """
    Turns cumulative adapter byte counters into Mbps.

    Keeps the previous reading per device in memory. The first reading for a
    device, a non-increasing clock or a counter that went backwards (adapter
    reset, reboot) produce no rate.
    """

    def __init__(self):
        self._last: Dict[int, _CounterSnapshot] = {}

    def update(self, device_id: int, rx_bytes: int, tx_bytes: int, timestamp: float) -> NetworkReading:
        previous = self._last.get(device_id)
        self._last[device_id] = _CounterSnapshot(rx_bytes, tx_bytes, timestamp)

        if previous is None:
            return NetworkReading()

        elapsed = timestamp - previous.timestamp
        delta_rx = rx_bytes - previous.rx_bytes
        delta_tx = tx_bytes - previous.tx_bytes
        if elapsed <= 0 or delta_rx < 0 or delta_tx < 0:
            return NetworkReading()

        return NetworkReading(
            rx_mbps=round(delta_rx * 8 / elapsed / 1_000_000, 2),
            tx_mbps=round(delta_tx * 8 / elapsed / 1_000_000, 2),
        )


network_tracker = NetworkRateTracker()


# ---------------------------------------------------------------------------
# Power estimation
# ---------------------------------------------------------------------------

def estimate_power(cpu_percent: Optional[float], gpu: Optional[GpuReading]) -> Optional[PowerReading]:
    """
    Linear utilisation model: idle + cpu% * cpu_watts + gpu% * gpu_watts.

    The reading is always flagged as estimated.
    """
    if not settings.power_estimation_enabled or cpu_percent is None:
        return None

    watts = settings.power_idle_watts + (cpu_percent / 100.0) * settings.power_cpu_watts
    if gpu is not None and gpu.usage is not None:
        watts += (gpu.usage / 100.0) * settings.power_gpu_watts

    return PowerReading(watts=round(watts, 1), estimated=True)


# ---------------------------------------------------------------------------
# SSH session
# ---------------------------------------------------------------------------

async def run_command(conn, command: str, timeout: float) -> str:
    """
    Run one PowerShell command and return trimmed stdout.

    Raises CommandTimeout or CommandFailed; both are scoped to this metric.
    """
    try:
        result = await asyncio.wait_for(
            conn.run(wrap_powershell(command), check=False),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        raise CommandTimeout(f"Command timed out after {timeout}s") from exc

    stdout = (result.stdout or "").strip()
    if result.exit_status != 0:
        stderr = (result.stderr or "").strip()
        raise CommandFailed(f"Command failed: {stderr or stdout}")
    return stdout


async def _open_connection(host: str, username: str, password: str):
    try:
        return await asyncssh.connect(
            host,
            username=username,
            password=password,
            known_hosts=settings.ssh_known_hosts,
            connect_timeout=settings.ssh_connect_timeout_seconds,
        )
    except (OSError, asyncssh.Error, asyncio.TimeoutError) as exc:
        raise ConnectionFailed(str(exc) or exc.__class__.__name__) from exc


def _settled(result, metric: str, device_name: str):
    """Return the command output, or None if the command raised."""
    if isinstance(result, BaseException):
        logger.debug("%s metric unavailable on %s: %s", metric, device_name, result)
        return None
    return result


async def collect_metrics(device, tracker: NetworkRateTracker = None) -> CollectionResult:
    """
    Collect one MetricsData snapshot from `device`.

    Never raises for device-level problems: a missing address or credentials,
    or an SSH connection failure, come back as `success=False` with an error
    message. The SSH session is always closed before returning.
    """
    timestamp = int(time.time())
    tracker = tracker or network_tracker

    if not (device.ip_address and device.ssh_username and device.ssh_password):
        return CollectionResult(
            success=False,
            error="Device missing IP address or SSH credentials",
            timestamp=timestamp,
        )

    try:
        conn = await _open_connection(device.ip_address, device.ssh_username, device.ssh_password)
    except ConnectionFailed as exc:
        return CollectionResult(success=False, error=str(exc), timestamp=timestamp)

    try:
        timeout = settings.ssh_command_timeout_seconds
        cpu_out, ram_out, gpu_out, net_out = await asyncio.gather(
            run_command(conn, POWERSHELL_COMMANDS["cpu"], timeout),
            run_command(conn, POWERSHELL_COMMANDS["ram"], timeout),
            run_command(conn, POWERSHELL_COMMANDS["gpu"], timeout),
            run_command(conn, POWERSHELL_COMMANDS["network"], timeout),
            return_exceptions=True,
        )
    finally:
        conn.close()
        await conn.wait_closed()

    cpu_out = _settled(cpu_out, "cpu", device.name)
    ram_out = _settled(ram_out, "ram", device.name)
    gpu_out = _settled(gpu_out, "gpu", device.name)
    net_out = _settled(net_out, "network", device.name)

    cpu = parse_cpu_output(cpu_out) if cpu_out is not None else None
    ram = parse_ram_output(ram_out) if ram_out is not None else RamReading()
    gpu = parse_gpu_output(gpu_out) if gpu_out is not None else None

    network = None
    counters = parse_network_output(net_out) if net_out is not None else None
    if counters is not None:
        network = tracker.update(device.id, counters[0], counters[1], time.time())

    return CollectionResult(
        success=True,
        metrics=MetricsData(
            cpu=cpu,
            ram=ram,
            gpu=gpu,
            network=network,
            power=estimate_power(cpu, gpu),
        ),
        timestamp=timestamp,
    )
