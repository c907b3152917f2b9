"""
Host Agent - Telemetry Data Model

One SystemTelemetry value is assembled per collection cycle, published as a
single JSON document and decoded again on the subscriber side.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field
from pydantic.alias_generators import to_camel


class SnapshotDecodeError(ValueError):
    """Raised when a payload cannot be decoded into a SystemTelemetry."""


class _TelemetryModel(BaseModel):
    """Frozen base with camelCase wire names."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class SystemInfo(_TelemetryModel):
    """Host identity."""
    hostname: str = "unknown"
    os: str = ""
    platform: str = ""
    kernel_version: str = ""
    uptime: int = Field(default=0, ge=0)
    ip_addresses: List[str] = Field(default_factory=list)
    cpu_count: int = Field(default=0, ge=0)
    runtime_version: str = ""


class HardwareInfo(_TelemetryModel):
    """Scalar gauges. Temperature is omitted when no sensor was readable."""
    cpu_usage: float = Field(default=0.0, ge=0)
    memory_usage: float = Field(default=0.0, ge=0)
    disk_usage: float = Field(default=0.0, ge=0)
    temperature: Optional[float] = None


class NetworkInterface(_TelemetryModel):
    name: str
    ip_addresses: List[str] = Field(default_factory=list)
    bytes_sent: int = Field(default=0, ge=0)
    bytes_recv: int = Field(default=0, ge=0)
    mac: Optional[str] = None


class Connection(_TelemetryModel):
    protocol: str
    local_addr: str = ""
    remote_addr: str = ""
    status: str
    pid: Optional[int] = None


class NetworkInfo(_TelemetryModel):
    """Per-interface stats plus totals derived from them."""
    interfaces: List[NetworkInterface] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)

    @computed_field(alias="totalBytesSent")
    @property
    def total_bytes_sent(self) -> int:
        return sum(iface.bytes_sent for iface in self.interfaces)

    @computed_field(alias="totalBytesRecv")
    @property
    def total_bytes_recv(self) -> int:
        return sum(iface.bytes_recv for iface in self.interfaces)


class ProcessInfo(_TelemetryModel):
    pid: int = Field(ge=0)
    name: str = ""
    cmdline: str = ""
    cpu_percent: float = Field(default=0.0, ge=0)
    memory_percent: float = Field(default=0.0, ge=0)
    memory_rss: int = Field(default=0, ge=0)
    memory_vms: int = Field(default=0, ge=0)
    status: str = ""
    create_time: float = Field(default=0.0, ge=0)
    num_threads: int = Field(default=0, ge=0)
    num_fds: Optional[int] = Field(default=None, ge=0)
    io_read_bytes: int = Field(default=0, ge=0)
    io_write_bytes: int = Field(default=0, ge=0)
    open_files: Optional[List[str]] = None


class FileInfo(_TelemetryModel):
    path: str
    size: int = Field(default=0, ge=0)
    mod_time: float = 0.0


class SystemTelemetry(_TelemetryModel):
    """A point-in-time snapshot of one host."""
    timestamp: float
    system_info: SystemInfo = Field(default_factory=SystemInfo)
    hardware: HardwareInfo = Field(default_factory=HardwareInfo)
    network: NetworkInfo = Field(default_factory=NetworkInfo)
    processes: List[ProcessInfo] = Field(default_factory=list)
    critical_files: List[FileInfo] = Field(default_factory=list)


def encode_snapshot(snapshot: SystemTelemetry) -> bytes:
    """Serialize a snapshot to UTF-8 JSON. Absent optional fields are omitted."""
    return snapshot.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def decode_snapshot(payload: bytes) -> SystemTelemetry:
    """Parse and validate a JSON payload.

    Raises:
        SnapshotDecodeError: if the payload is not valid UTF-8 JSON or does
            not describe a SystemTelemetry value.
    """
    try:
        return SystemTelemetry.model_validate_json(payload)
    except ValidationError as e:
        raise SnapshotDecodeError(
            f"Invalid telemetry payload: {e.error_count()} validation error(s)"
        ) from e
