"""
Host Agent - Report Formatter

Pure functions that render a SystemTelemetry as text: the full console
report, the event trail block and the one-line summary.
"""

from datetime import datetime
from typing import List

from .models import SystemTelemetry

_UNITS = ["B", "KB", "MB", "GB", "TB", "PB", "EB"]

NAME_WIDTH = 20
EVENT_TOP_PROCESSES = 5
REPORT_MAX_CONNECTIONS = 20


def format_bytes(num_bytes) -> str:
    """Human readable size with binary steps, e.g. 1536 -> '1.5 KB'."""
    value = float(num_bytes)
    if value < 1024:
        return f"{int(value)} B"
    unit = 0
    while value >= 1024 and unit < len(_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.1f} {_UNITS[unit]}"


def format_duration(seconds) -> str:
    """Render seconds as 'DDd HHh MMm SSs'."""
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{days:02d}d {hours:02d}h {minutes:02d}m {secs:02d}s"


def format_timestamp(ts: float) -> str:
    try:
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, ValueError, OSError):
        # Outside the platform's time_t range, or NaN
        return str(ts)


def _truncate(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    return text[:width - 3] + "..."


def _temperature(snapshot: SystemTelemetry) -> str:
    temp = snapshot.hardware.temperature
    return f"{temp:.1f}°C" if temp is not None else "n/a"


def format_report(snapshot: SystemTelemetry) -> str:
    """Full multi-section report for the primary output."""
    info = snapshot.system_info
    hw = snapshot.hardware
    net = snapshot.network

    lines: List[str] = []
    rule = "=" * 100

    lines.append(rule)
    lines.append(f"SYSTEM TELEMETRY  {info.hostname}  @ {format_timestamp(snapshot.timestamp)}")
    lines.append(rule)

    lines.append("[System]")
    lines.append(f"  OS:        {info.os} ({info.platform})")
    lines.append(f"  Kernel:    {info.kernel_version}")
    lines.append(f"  Uptime:    {format_duration(info.uptime)}")
    lines.append(f"  CPUs:      {info.cpu_count}")
    lines.append(f"  Runtime:   {info.runtime_version}")
    lines.append(f"  Addresses: {', '.join(info.ip_addresses) or '-'}")
    lines.append("")

    lines.append("[Hardware]")
    lines.append(f"  CPU:    {hw.cpu_usage:6.2f}%")
    lines.append(f"  Memory: {hw.memory_usage:6.2f}%")
    lines.append(f"  Disk:   {hw.disk_usage:6.2f}%")
    lines.append(f"  Temp:   {_temperature(snapshot)}")
    lines.append("")

    lines.append("[Network]")
    lines.append(
        f"  Total sent: {format_bytes(net.total_bytes_sent)}"
        f"  Total received: {format_bytes(net.total_bytes_recv)}"
    )
    for iface in net.interfaces:
        lines.append(
            f"  {iface.name:<16} {','.join(iface.ip_addresses) or '-':<32}"
            f" tx {format_bytes(iface.bytes_sent):>10}  rx {format_bytes(iface.bytes_recv):>10}"
        )
    lines.append(f"  Connections: {len(net.connections)}")
    if net.connections:
        lines.append(f"  {'PROTO':<6} {'LOCAL':<28} {'REMOTE':<28} {'STATUS':<13} PID")
        for conn in net.connections[:REPORT_MAX_CONNECTIONS]:
            pid = str(conn.pid) if conn.pid is not None else "-"
            lines.append(
                f"  {conn.protocol:<6} {conn.local_addr:<28} {conn.remote_addr or '-':<28}"
                f" {conn.status:<13} {pid}"
            )
        hidden = len(net.connections) - REPORT_MAX_CONNECTIONS
        if hidden > 0:
            lines.append(f"  ... {hidden} more")
    lines.append("")

    lines.append(f"[Processes] top {len(snapshot.processes)} by CPU")
    lines.append(
        f"  {'PID':>7} {'NAME':<{NAME_WIDTH}} {'CPU%':>6} {'MEM%':>6} {'RSS':>10}"
        f" {'THR':>4} {'I/O':<24} STATUS"
    )
    for proc in snapshot.processes:
        io = f"R:{format_bytes(proc.io_read_bytes)} W:{format_bytes(proc.io_write_bytes)}"
        lines.append(
            f"  {proc.pid:>7} {_truncate(proc.name, NAME_WIDTH):<{NAME_WIDTH}}"
            f" {proc.cpu_percent:6.1f} {proc.memory_percent:6.1f}"
            f" {format_bytes(proc.memory_rss):>10} {proc.num_threads:>4} {io:<24} {proc.status}"
        )
    lines.append("")

    lines.append("[Critical Files]")
    if not snapshot.critical_files:
        lines.append("  (none)")
    for record in snapshot.critical_files:
        lines.append(
            f"  {record.path}  {format_bytes(record.size)}  modified {format_timestamp(record.mod_time)}"
        )
    lines.append(rule)

    return "\n".join(lines) + "\n"


def format_event_block(snapshot: SystemTelemetry) -> str:
    """Multi-line event trail entry."""
    info = snapshot.system_info
    hw = snapshot.hardware
    net = snapshot.network

    lines = [
        f"--- telemetry {format_timestamp(snapshot.timestamp)} host={info.hostname}",
        f"os: {info.os} {info.kernel_version} ({info.platform})",
        f"uptime: {format_duration(info.uptime)}",
        f"cpu: {hw.cpu_usage:.2f}%  mem: {hw.memory_usage:.2f}%  disk: {hw.disk_usage:.2f}%"
        f"  temp: {_temperature(snapshot)}",
        f"net: sent {format_bytes(net.total_bytes_sent)}  recv {format_bytes(net.total_bytes_recv)}",
        "top processes:",
    ]
    for proc in snapshot.processes[:EVENT_TOP_PROCESSES]:
        lines.append(
            f"  {proc.pid:>7} {_truncate(proc.name, NAME_WIDTH):<{NAME_WIDTH}}"
            f" cpu {proc.cpu_percent:.1f}%  mem {proc.memory_percent:.1f}%"
        )
    return "\n".join(lines) + "\n"


def format_summary_line(snapshot: SystemTelemetry) -> str:
    hw = snapshot.hardware
    return (
        f"{format_timestamp(snapshot.timestamp)} {snapshot.system_info.hostname}"
        f" cpu={hw.cpu_usage:.1f}% mem={hw.memory_usage:.1f}% disk={hw.disk_usage:.1f}%"
        f" procs={len(snapshot.processes)} files={len(snapshot.critical_files)}"
    )
