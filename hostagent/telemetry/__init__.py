"""
Host Agent - Telemetry Package

Snapshot model, metric sources, assembly and formatting.
"""

from .assembler import SnapshotAssembler
from .models import SystemTelemetry, decode_snapshot, encode_snapshot
from .sources import PsutilSources

__all__ = [
    "SnapshotAssembler",
    "SystemTelemetry",
    "PsutilSources",
    "encode_snapshot",
    "decode_snapshot",
]
