"""
Host Agent - Event Trail

Append-only text record of received snapshots: one multi-line block and one
summary line per snapshot.
"""

import threading
from pathlib import Path
from typing import Optional, TextIO

import structlog

from ..telemetry.formatter import format_event_block, format_summary_line
from ..telemetry.models import SystemTelemetry

logger = structlog.get_logger(__name__)


class EventTrail:
    """Writes event entries to a file, one writer at a time."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._file: Optional[TextIO] = None
        self._lock = threading.Lock()

    def open(self) -> None:
        """Open the trail for appending. OSError propagates to the caller."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a", encoding="utf-8")
        logger.info("Event trail opened", path=str(self.path))

    def close(self) -> None:
        with self._lock:
            if self._file:
                self._file.flush()
                self._file.close()
                self._file = None

    def append(self, snapshot: SystemTelemetry) -> None:
        block = format_event_block(snapshot)
        summary = format_summary_line(snapshot)
        with self._lock:
            if self._file is None:
                raise OSError(f"Event trail {self.path} is not open")
            self._file.write(block)
            self._file.write(f"SUMMARY {summary}\n")
            self._file.flush()

    def __enter__(self) -> "EventTrail":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
