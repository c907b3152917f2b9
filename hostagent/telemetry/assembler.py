"""
Host Agent - Snapshot Assembler

Builds one SystemTelemetry per collection cycle from independently fallible
metric sources. A failing source leaves its fields at their zero/absent value
and is logged; the snapshot is still produced.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import psutil
from pydantic import ValidationError
import structlog

from .models import (
    FileInfo,
    HardwareInfo,
    NetworkInfo,
    ProcessInfo,
    SystemInfo,
    SystemTelemetry,
)

logger = structlog.get_logger(__name__)

DEFAULT_MAX_PROCESSES = 50


def effective_max_processes(value: int) -> int:
    return value if value > 0 else DEFAULT_MAX_PROCESSES


def rank_processes(samples: Sequence[Tuple[Any, float]], limit: int) -> List[Tuple[Any, float]]:
    """Order (handle, cpu_percent) pairs by CPU descending and keep `limit`.

    The sort is stable, so equal readings keep enumeration order.
    """
    ranked = sorted(samples, key=lambda item: item[1], reverse=True)
    return ranked[:effective_max_processes(limit)]


def _non_negative(value):
    return value if value and value > 0 else 0


class _SnapshotBuilder:
    """Mutable accumulator that becomes a frozen SystemTelemetry."""

    def __init__(self):
        self.system_info = SystemInfo()
        self.hardware: Dict[str, Any] = {}
        self.interfaces: List = []
        self.connections: List = []
        self.processes: List[ProcessInfo] = []
        self.critical_files: List[FileInfo] = []

    def build(self) -> SystemTelemetry:
        return SystemTelemetry(
            timestamp=time.time(),
            system_info=self.system_info,
            hardware=HardwareInfo(**self.hardware),
            network=NetworkInfo(interfaces=self.interfaces, connections=self.connections),
            processes=self.processes,
            critical_files=self.critical_files,
        )


class SnapshotAssembler:
    """Collects a SystemTelemetry snapshot from a metrics facility."""

    def __init__(
        self,
        sources,
        max_processes: int = DEFAULT_MAX_PROCESSES,
        critical_files: Optional[Sequence[str]] = None,
        cpu_sample_window: float = 0.1,
        include_open_files: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._sources = sources
        self._max_processes = effective_max_processes(max_processes)
        self._critical_files = list(critical_files or [])
        self._cpu_sample_window = cpu_sample_window
        self._include_open_files = include_open_files
        self._sleep = sleep

        # pid -> handle, kept between cycles so cpu_percent has a baseline
        self._handles: Dict[int, Any] = {}

    @property
    def max_processes(self) -> int:
        return self._max_processes

    def collect(self) -> SystemTelemetry:
        """Assemble one snapshot. Never raises for a source failure."""
        builder = _SnapshotBuilder()

        info = self._query("host_info", self._sources.host_info)
        if info is not None:
            builder.system_info = info

        for field, source in (
            ("cpu_usage", "cpu_percent"),
            ("memory_usage", "memory_percent"),
            ("disk_usage", "disk_percent"),
        ):
            value = self._query(source, getattr(self._sources, source))
            builder.hardware[field] = _non_negative(value)

        temperature = self._query("temperature", self._sources.temperature)
        if temperature is not None:
            builder.hardware["temperature"] = temperature

        builder.interfaces = self._query("interfaces", self._sources.interfaces) or []
        builder.connections = self._query("connections", self._sources.connections) or []

        try:
            builder.processes = self._collect_processes()
        except Exception as e:
            logger.error("Metric source failed", source="processes", error=str(e))

        for path in self._critical_files:
            record = self._query("file_stat", self._sources.file_stat, path)
            if record is not None:
                builder.critical_files.append(record)
            else:
                logger.debug("Critical file not present", path=path)

        return builder.build()

    def _query(self, source: str, fn: Callable, *args):
        try:
            return fn(*args)
        except Exception as e:
            logger.error("Metric source failed", source=source, error=str(e))
            return None

    def _refresh_handles(self) -> Tuple[List[Any], List[Any]]:
        """Enumerate live processes, reusing cached handles for known pids."""
        current: Dict[int, Any] = {}
        fresh = []
        for proc in self._sources.processes():
            cached = self._handles.get(proc.pid)
            if cached is not None and cached == proc:
                current[proc.pid] = cached
            else:
                current[proc.pid] = proc
                fresh.append(proc)
        self._handles = current
        return list(current.values()), fresh

    def _collect_processes(self) -> List[ProcessInfo]:
        handles, fresh = self._refresh_handles()

        # A first cpu_percent() call only sets the baseline
        for proc in fresh:
            try:
                proc.cpu_percent(None)
            except Exception:
                continue
        if fresh and self._cpu_sample_window > 0:
            self._sleep(self._cpu_sample_window)

        samples = []
        for proc in handles:
            try:
                samples.append((proc, _non_negative(proc.cpu_percent(None))))
            except psutil.ZombieProcess:
                samples.append((proc, 0.0))
            except psutil.NoSuchProcess:
                self._handles.pop(proc.pid, None)
            except Exception as e:
                logger.debug("CPU sample failed", pid=proc.pid, error=str(e))
                samples.append((proc, 0.0))

        records = []
        for proc, cpu in rank_processes(samples, self._max_processes):
            record = self._process_record(proc, cpu)
            if record is not None:
                records.append(record)
        return records

    def _process_record(self, proc, cpu: float) -> Optional[ProcessInfo]:
        """Read every field independently; None if the process has exited."""
        fields: Dict[str, Any] = {"pid": proc.pid, "cpu_percent": cpu}

        def read(name: str, fn: Callable, convert: Callable = lambda v: v):
            try:
                return convert(fn())
            except psutil.ZombieProcess as e:
                # Zombies stay in the process table; only this field is lost
                logger.debug("Process field unavailable", pid=proc.pid, field=name, error=str(e))
            except psutil.NoSuchProcess:
                raise
            except Exception as e:
                logger.debug("Process field unavailable", pid=proc.pid, field=name, error=str(e))
            return None

        try:
            for name, fn, convert in (
                ("name", proc.name, lambda v: v),
                ("cmdline", proc.cmdline, lambda parts: " ".join(parts or [])),
                ("memory_percent", proc.memory_percent, _non_negative),
                ("status", proc.status, _join_status),
                ("create_time", proc.create_time, _non_negative),
                ("num_threads", proc.num_threads, _non_negative),
            ):
                value = read(name, fn, convert)
                if value is not None:
                    fields[name] = value

            if hasattr(proc, "num_fds"):
                num_fds = read("num_fds", proc.num_fds, _non_negative)
                if num_fds is not None:
                    fields["num_fds"] = num_fds

            mem = read("memory_info", proc.memory_info)
            if mem is not None:
                fields["memory_rss"] = _non_negative(mem.rss)
                fields["memory_vms"] = _non_negative(mem.vms)

            if hasattr(proc, "io_counters"):
                io = read("io_counters", proc.io_counters)
                if io is not None:
                    fields["io_read_bytes"] = _non_negative(io.read_bytes)
                    fields["io_write_bytes"] = _non_negative(io.write_bytes)

            if self._include_open_files:
                open_files = read("open_files", proc.open_files, lambda files: [f.path for f in files])
                if open_files is not None:
                    fields["open_files"] = open_files
        except psutil.NoSuchProcess:
            logger.debug("Process exited during sampling", pid=proc.pid)
            self._handles.pop(proc.pid, None)
            return None

        try:
            return ProcessInfo(**fields)
        except ValidationError as e:
            logger.warning("Skipping malformed process record", pid=proc.pid, error=str(e))
            return None


def _join_status(status) -> str:
    if isinstance(status, (list, tuple, set)):
        return ",".join(str(s) for s in status)
    return str(status or "")
