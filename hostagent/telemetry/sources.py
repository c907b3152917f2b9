"""
Host Agent - Metric Sources

Thin adapters over psutil and the platform module. Each method queries one
facility and either returns a best-effort value or raises; callers decide how
a failure is recorded.
"""

import os
import platform
import socket
import time
from typing import Dict, Iterator, List, Optional

import psutil

from .models import Connection, FileInfo, NetworkInterface, SystemInfo

_PROTOCOLS = {
    socket.SOCK_STREAM: "tcp",
    socket.SOCK_DGRAM: "udp",
}

_AF_UNIX = getattr(socket, "AF_UNIX", None)


def protocol_name(family, sock_type) -> str:
    """Map a socket family/type pair to tcp, udp, unix or unknown."""
    if _AF_UNIX is not None and family == _AF_UNIX:
        return "unix"
    return _PROTOCOLS.get(sock_type, "unknown")


def format_address(addr) -> str:
    """Render a psutil address tuple (or unix path) as a socket string."""
    if not addr:
        return ""
    if isinstance(addr, str):
        return addr
    return f"{addr.ip}:{addr.port}" if hasattr(addr, "ip") else ":".join(str(a) for a in addr)


class PsutilSources:
    """Metrics facility backed by psutil."""

    def __init__(self, root_path: str = "/"):
        self._root_path = root_path

    def host_info(self) -> SystemInfo:
        uname = platform.uname()
        return SystemInfo(
            hostname=socket.gethostname() or "unknown",
            os=uname.system,
            platform=platform.platform(),
            kernel_version=uname.release,
            uptime=max(0, int(time.time() - psutil.boot_time())),
            ip_addresses=self._ipv4_addresses(),
            cpu_count=psutil.cpu_count(logical=True) or 0,
            runtime_version=f"{platform.python_implementation()} {platform.python_version()}",
        )

    def _ipv4_addresses(self) -> List[str]:
        addresses = []
        for addrs in psutil.net_if_addrs().values():
            for addr in addrs:
                if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                    addresses.append(addr.address)
        return addresses

    def cpu_percent(self) -> float:
        return psutil.cpu_percent(interval=None)

    def memory_percent(self) -> float:
        return psutil.virtual_memory().percent

    def disk_percent(self) -> float:
        return psutil.disk_usage(self._root_path).percent

    def temperature(self) -> Optional[float]:
        """First reading of the first sensor, or None when there is none."""
        if not hasattr(psutil, "sensors_temperatures"):
            return None
        temps = psutil.sensors_temperatures()
        for readings in temps.values():
            if readings:
                return readings[0].current
        return None

    def interfaces(self) -> List[NetworkInterface]:
        addrs = psutil.net_if_addrs()
        counters: Dict = psutil.net_io_counters(pernic=True)
        link_family = getattr(psutil, "AF_LINK", None)

        result = []
        for name, entries in addrs.items():
            ips = [a.address for a in entries if a.family == socket.AF_INET]
            mac = next((a.address for a in entries if a.family == link_family), None)
            io = counters.get(name)
            result.append(NetworkInterface(
                name=name,
                ip_addresses=ips,
                bytes_sent=io.bytes_sent if io else 0,
                bytes_recv=io.bytes_recv if io else 0,
                mac=mac or None,
            ))
        return result

    def connections(self) -> List[Connection]:
        result = []
        for conn in psutil.net_connections(kind="all"):
            if not conn.status or conn.status == psutil.CONN_NONE:
                continue
            result.append(Connection(
                protocol=protocol_name(conn.family, conn.type),
                local_addr=format_address(conn.laddr),
                remote_addr=format_address(conn.raddr),
                status=conn.status,
                pid=conn.pid,
            ))
        return result

    def processes(self) -> Iterator[psutil.Process]:
        return psutil.process_iter()

    def file_stat(self, path: str) -> Optional[FileInfo]:
        try:
            st = os.stat(path)
        except OSError:
            return None
        return FileInfo(path=path, size=st.st_size, mod_time=st.st_mtime)
