"""
Host Agent - Telemetry Subscriber

Receives snapshots from the transport, appends them to the event trail and
renders the report. Messages are handled one at a time in delivery order.
"""

import asyncio
import sys
from typing import Optional, TextIO

import structlog

from ..eventlog.trail import EventTrail
from ..telemetry.formatter import format_report
from ..telemetry.models import SnapshotDecodeError, SystemTelemetry, decode_snapshot
from .transport import Transport, TransportConnectError, TransportError

logger = structlog.get_logger(__name__)

_STOP = object()


class TelemetrySubscriber:
    """Consumes telemetry messages from one topic."""

    def __init__(
        self,
        transport: Transport,
        event_trail: EventTrail,
        topic: str,
        client_id: str,
        qos: int = 1,
        output: Optional[TextIO] = None,
        disconnect_grace: float = 5.0,
    ):
        self._transport = transport
        self._event_trail = event_trail
        self._topic = topic
        self._client_id = client_id
        self._qos = max(1, qos)
        self._output = output or sys.stdout
        self._disconnect_grace = disconnect_grace

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._connected = False
        self._received = 0
        self._rejected = 0

    @property
    def received(self) -> int:
        return self._received

    @property
    def rejected(self) -> int:
        return self._rejected

    async def connect(self) -> None:
        """Connect and subscribe. TransportConnectError propagates."""
        self._loop = asyncio.get_running_loop()
        await asyncio.to_thread(self._transport.connect, self._client_id)
        self._connected = True
        try:
            await asyncio.to_thread(self._transport.subscribe, self._topic, self._qos, self._on_payload)
        except TransportError as e:
            await self.disconnect()
            raise TransportConnectError(f"Cannot subscribe to {self._topic}: {e}") from e
        logger.info("Subscriber connected", client_id=self._client_id, topic=self._topic)

    def _on_payload(self, payload: bytes) -> None:
        """Transport callback; may run on the transport's own thread."""
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, payload)

    async def run(self) -> None:
        """Handle queued messages until stop() is called, then disconnect."""
        logger.info("Subscriber started", topic=self._topic)
        try:
            while True:
                payload = await self._queue.get()
                if payload is _STOP:
                    break
                try:
                    self.handle_payload(payload)
                except Exception as e:
                    self._rejected += 1
                    logger.exception("Message handling failed", stage="handle", topic=self._topic, error=str(e))
        finally:
            await self.disconnect()

    def handle_payload(self, payload: bytes) -> Optional[SystemTelemetry]:
        """Decode one message and record it. Bad payloads are logged and dropped."""
        try:
            snapshot = decode_snapshot(payload)
        except SnapshotDecodeError as e:
            self._rejected += 1
            logger.error("Discarding undecodable message", stage="decode", topic=self._topic, error=str(e))
            return None

        try:
            self._event_trail.append(snapshot)
        except OSError as e:
            logger.error("Event trail write failed", stage="event_log", error=str(e))

        self._output.write(format_report(snapshot))
        self._output.flush()
        self._received += 1
        return snapshot

    def stop(self) -> None:
        self._queue.put_nowait(_STOP)

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        try:
            await asyncio.to_thread(self._transport.disconnect, self._disconnect_grace)
        except Exception as e:
            logger.error("Subscriber disconnect failed", error=str(e))
        logger.info("Subscriber stopped", received=self._received, rejected=self._rejected)
