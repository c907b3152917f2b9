"""
Host Agent - Metric Source Tests

psutil calls are patched so results do not depend on the test machine.
"""

import socket
from collections import namedtuple
from unittest.mock import patch

import psutil
import pytest

from hostagent.telemetry.sources import PsutilSources, format_address, protocol_name

Addr = namedtuple("Addr", "ip port")
SConn = namedtuple("SConn", "fd family type laddr raddr status pid")
SNic = namedtuple("SNic", "family address netmask broadcast ptp")
SNetIO = namedtuple("SNetIO", "bytes_sent bytes_recv")
STemp = namedtuple("STemp", "label current high critical")


class TestProtocolName:
    """Test socket type mapping."""

    def test_known_types(self):
        assert protocol_name(socket.AF_INET, socket.SOCK_STREAM) == "tcp"
        assert protocol_name(socket.AF_INET6, socket.SOCK_DGRAM) == "udp"

    def test_unix_family(self):
        assert protocol_name(socket.AF_UNIX, socket.SOCK_STREAM) == "unix"

    def test_other_types(self):
        assert protocol_name(socket.AF_INET, socket.SOCK_RAW) == "unknown"


class TestFormatAddress:
    """Test socket address rendering."""

    def test_values(self):
        assert format_address(Addr("10.0.0.1", 22)) == "10.0.0.1:22"
        assert format_address(()) == ""
        assert format_address("/run/docker.sock") == "/run/docker.sock"


class TestConnections:
    """Test the connections adapter."""

    def test_entries_without_status_dropped(self):
        conns = [
            SConn(3, socket.AF_INET, socket.SOCK_STREAM, Addr("10.0.0.1", 22), Addr("10.0.0.2", 5000),
                  psutil.CONN_ESTABLISHED, 10),
            SConn(4, socket.AF_INET, socket.SOCK_DGRAM, Addr("0.0.0.0", 53), (), psutil.CONN_NONE, 11),
            SConn(5, socket.AF_INET, socket.SOCK_STREAM, Addr("0.0.0.0", 80), (), "", None),
            SConn(6, socket.AF_INET, socket.SOCK_STREAM, Addr("0.0.0.0", 443), (), psutil.CONN_LISTEN, None),
        ]
        with patch("hostagent.telemetry.sources.psutil.net_connections", return_value=conns):
            result = PsutilSources().connections()

        assert [c.status for c in result] == ["ESTABLISHED", "LISTEN"]
        assert result[0].protocol == "tcp"
        assert result[0].remote_addr == "10.0.0.2:5000"
        assert result[0].pid == 10
        assert result[1].pid is None


class TestInterfaces:
    """Test the interface adapter."""

    def test_counters_matched_by_name(self):
        addrs = {
            "eth0": [SNic(socket.AF_INET, "192.168.1.10", "255.255.255.0", None, None)],
            "wg0": [SNic(socket.AF_INET, "10.8.0.2", "255.255.255.0", None, None)],
        }
        counters = {"eth0": SNetIO(bytes_sent=100, bytes_recv=300)}

        with patch("hostagent.telemetry.sources.psutil.net_if_addrs", return_value=addrs), \
                patch("hostagent.telemetry.sources.psutil.net_io_counters", return_value=counters):
            result = {iface.name: iface for iface in PsutilSources().interfaces()}

        assert result["eth0"].bytes_sent == 100
        assert result["eth0"].ip_addresses == ["192.168.1.10"]
        assert result["wg0"].bytes_sent == 0
        assert result["wg0"].bytes_recv == 0


class TestTemperature:
    """Test the temperature adapter."""

    def test_first_sensor_reading(self):
        temps = {"cpu_thermal": [STemp("", 51.5, None, None), STemp("", 60.0, None, None)]}
        with patch("hostagent.telemetry.sources.psutil.sensors_temperatures", return_value=temps, create=True):
            assert PsutilSources().temperature() == 51.5

    def test_no_sensors(self):
        with patch("hostagent.telemetry.sources.psutil.sensors_temperatures", return_value={}, create=True):
            assert PsutilSources().temperature() is None


class TestFileStat:
    """Test the file stat adapter."""

    def test_existing_file(self, tmp_path):
        path = tmp_path / "hosts"
        path.write_text("127.0.0.1 localhost\n")

        record = PsutilSources().file_stat(str(path))

        assert record.path == str(path)
        assert record.size == 20
        assert record.mod_time > 0

    def test_missing_file_is_absent(self, tmp_path):
        assert PsutilSources().file_stat(str(tmp_path / "missing")) is None


class TestHostInfo:
    """Test the host identity adapter against the real machine."""

    def test_identity_populated(self):
        info = PsutilSources().host_info()

        assert info.hostname
        assert info.cpu_count >= 1
        assert info.uptime >= 0
        assert all(not ip.startswith("127.") for ip in info.ip_addresses)

    @pytest.mark.parametrize("method", ["cpu_percent", "memory_percent", "disk_percent"])
    def test_gauges_in_range(self, method):
        value = getattr(PsutilSources(), method)()

        assert 0 <= value <= 100
