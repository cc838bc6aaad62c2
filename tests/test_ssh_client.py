"""Tests for the remote collector: parsers, rate tracking and the SSH session."""

import asyncio
from types import SimpleNamespace

import pytest

from devicewatch import ssh_client
from devicewatch.config import settings
from devicewatch.ssh_client import NetworkRateTracker


def make_target(**overrides):
    fields = dict(id=1, name="office-pc", ip_address="10.0.0.5", ssh_username="admin", ssh_password="pw")
    fields.update(overrides)
    return SimpleNamespace(**fields)


class FakeConnection:
    """
    Stands in for an asyncssh connection.

    `responses` maps a metric name to (exit_status, stdout) or to an
    exception/coroutine factory used instead of a result.
    """

    MARKERS = {
        "cpu": "Processor(_Total)",
        "ram": "Win32_OperatingSystem",
        "gpu": "nvidia-smi",
        "network": "Get-NetAdapterStatistics",
    }

    def __init__(self, responses):
        self.responses = responses
        self.closed = False
        self.commands = []

    async def run(self, command, check=False):
        self.commands.append(command)
        metric = next(name for name, marker in self.MARKERS.items() if marker in command)
        response = self.responses[metric]
        if callable(response):
            return await response()
        exit_status, stdout = response
        return SimpleNamespace(exit_status=exit_status, stdout=stdout, stderr="boom" if exit_status else "")

    def close(self):
        self.closed = True

    async def wait_closed(self):
        return None


HEALTHY = {
    "cpu": (0, "23.4567\n"),
    "ram": (0, "7.5,15.9,47.17"),
    "gpu": (0, "35, 1024, 8192"),
    "network": (0, "1000000,500000"),
}


@pytest.fixture
def fake_ssh(monkeypatch):
    """Patch asyncssh.connect; returns a holder with the last connection."""
    holder = SimpleNamespace(conn=None, calls=0, responses=dict(HEALTHY), error=None)

    async def fake_connect(host, **kwargs):
        holder.calls += 1
        holder.kwargs = kwargs
        if holder.error is not None:
            raise holder.error
        holder.conn = FakeConnection(holder.responses)
        return holder.conn

    monkeypatch.setattr(ssh_client.asyncssh, "connect", fake_connect)
    return holder


class TestParsers:
    def test_cpu(self):
        assert ssh_client.parse_cpu_output("12.3456") == 12.35
        assert ssh_client.parse_cpu_output("not a number") is None

    def test_ram_triple(self):
        ram = ssh_client.parse_ram_output("4.5, 16, 28.125")
        assert (ram.used, ram.total, ram.percent) == (4.5, 16.0, 28.12)

    @pytest.mark.parametrize("output", ["4.5,abc,28", "4.5,16", "", "1,2,3,4"])
    def test_ram_invalid_field_nulls_whole_triple(self, output):
        ram = ssh_client.parse_ram_output(output)
        assert (ram.used, ram.total, ram.percent) == (None, None, None)

    @pytest.mark.parametrize("output", ["N/A", "", "  ", "garbage"])
    def test_gpu_not_applicable(self, output):
        assert ssh_client.parse_gpu_output(output) is None

    def test_gpu_triple(self):
        gpu = ssh_client.parse_gpu_output("45, 2047.6, 8192\n12, 100, 4096")
        assert gpu.usage == 45.0
        assert gpu.memory_used == 2048.0
        assert gpu.memory_total == 8192.0

    def test_network_counters(self):
        assert ssh_client.parse_network_output("123,456") == (123, 456)
        assert ssh_client.parse_network_output("123") is None
        assert ssh_client.parse_network_output("a,b") is None


class TestNetworkRateTracker:
    def test_first_reading_has_no_rate(self):
        reading = NetworkRateTracker().update(1, 1000, 1000, 100.0)
        assert reading.rx_mbps is None and reading.tx_mbps is None

    def test_rate_from_delta(self):
        tracker = NetworkRateTracker()
        tracker.update(1, 0, 0, 100.0)
        reading = tracker.update(1, 12_500_000, 1_250_000, 110.0)
        # 12.5 MB in 10s = 10 Mbps
        assert reading.rx_mbps == 10.0
        assert reading.tx_mbps == 1.0

    def test_counter_reset_has_no_rate(self):
        tracker = NetworkRateTracker()
        tracker.update(1, 5000, 5000, 100.0)
        reading = tracker.update(1, 10, 10, 110.0)
        assert reading.rx_mbps is None

    def test_devices_are_tracked_separately(self):
        tracker = NetworkRateTracker()
        tracker.update(1, 0, 0, 100.0)
        assert tracker.update(2, 1000, 1000, 110.0).rx_mbps is None


class TestPowerEstimate:
    def test_cpu_and_gpu_terms(self, monkeypatch):
        monkeypatch.setattr(settings, "power_idle_watts", 30.0)
        monkeypatch.setattr(settings, "power_cpu_watts", 60.0)
        monkeypatch.setattr(settings, "power_gpu_watts", 100.0)

        power = ssh_client.estimate_power(50.0, ssh_client.GpuReading(usage=10.0))

        assert power.watts == 70.0
        assert power.estimated is True

    def test_no_cpu_reading_means_no_power(self):
        assert ssh_client.estimate_power(None, None) is None

    def test_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "power_estimation_enabled", False)
        assert ssh_client.estimate_power(50.0, None) is None


class TestCollectMetrics:
    def test_success_populates_all_metrics(self, fake_ssh):
        result = asyncio.run(ssh_client.collect_metrics(make_target(), tracker=NetworkRateTracker()))

        assert result.success is True
        assert result.error is None
        assert result.metrics.cpu == 23.46
        assert result.metrics.ram.percent == 47.17
        assert result.metrics.gpu.memory_total == 8192.0
        # First network reading: counters seen but no rate yet
        assert result.metrics.network.rx_mbps is None
        assert result.metrics.power.estimated is True
        assert fake_ssh.conn.closed is True
        assert len(fake_ssh.conn.commands) == 4
        assert all(cmd.startswith("powershell") for cmd in fake_ssh.conn.commands)

    def test_gpu_failure_does_not_fail_collection(self, fake_ssh):
        fake_ssh.responses["gpu"] = (1, "")

        result = asyncio.run(ssh_client.collect_metrics(make_target(), tracker=NetworkRateTracker()))

        assert result.success is True
        assert result.metrics.gpu is None
        assert result.metrics.cpu == 23.46
        assert result.metrics.ram.used == 7.5

    def test_gpu_sentinel_maps_to_none(self, fake_ssh):
        fake_ssh.responses["gpu"] = (0, "N/A")

        result = asyncio.run(ssh_client.collect_metrics(make_target(), tracker=NetworkRateTracker()))

        assert result.success is True
        assert result.metrics.gpu is None

    def test_slow_command_times_out_alone(self, fake_ssh, monkeypatch):
        monkeypatch.setattr(settings, "ssh_command_timeout_seconds", 0.05)

        async def hang():
            await asyncio.sleep(5)

        fake_ssh.responses["cpu"] = hang

        result = asyncio.run(ssh_client.collect_metrics(make_target(), tracker=NetworkRateTracker()))

        assert result.success is True
        assert result.metrics.cpu is None
        assert result.metrics.power is None
        assert result.metrics.ram.total == 15.9

    def test_connection_failure_fails_whole_collection(self, fake_ssh):
        fake_ssh.error = OSError("Connection refused")

        result = asyncio.run(ssh_client.collect_metrics(make_target()))

        assert result.success is False
        assert "Connection refused" in result.error
        assert result.metrics is None

    @pytest.mark.parametrize("missing", ["ip_address", "ssh_username", "ssh_password"])
    def test_missing_credentials_fail_fast(self, fake_ssh, missing):
        result = asyncio.run(ssh_client.collect_metrics(make_target(**{missing: None})))

        assert result.success is False
        assert result.error == "Device missing IP address or SSH credentials"
        assert fake_ssh.calls == 0

    def test_connect_uses_configured_timeout(self, fake_ssh):
        asyncio.run(ssh_client.collect_metrics(make_target(), tracker=NetworkRateTracker()))

        assert fake_ssh.kwargs["connect_timeout"] == settings.ssh_connect_timeout_seconds
        assert fake_ssh.kwargs["username"] == "admin"
