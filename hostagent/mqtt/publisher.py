"""
Host Agent - Telemetry Publisher

Collects a snapshot on a fixed interval and publishes it with QoS 1. A failed
cycle is logged and the next tick proceeds on schedule.
"""

import asyncio
import time
from enum import Enum

import structlog

from ..telemetry.assembler import SnapshotAssembler
from ..telemetry.models import encode_snapshot
from .transport import Transport, TransportError

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL = 10


class PublisherState(str, Enum):
    """Publisher lifecycle state."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    IDLE = "idle"
    COLLECTING = "collecting"
    PUBLISHING = "publishing"
    DISCONNECTED = "disconnected"


class TelemetryPublisher:
    """Periodic collect/serialize/publish loop."""

    def __init__(
        self,
        transport: Transport,
        assembler: SnapshotAssembler,
        topic: str,
        client_id: str,
        interval: float = DEFAULT_INTERVAL,
        qos: int = 1,
        disconnect_grace: float = 5.0,
    ):
        self._transport = transport
        self._assembler = assembler
        self._topic = topic
        self._client_id = client_id
        self._interval = interval if interval > 0 else DEFAULT_INTERVAL
        self._qos = max(1, qos)
        self._disconnect_grace = disconnect_grace

        self._state = PublisherState.DISCONNECTED
        self._stop_event = asyncio.Event()
        self._cycles = 0
        self._failures = 0

    @property
    def state(self) -> PublisherState:
        return self._state

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def failures(self) -> int:
        return self._failures

    async def connect(self) -> None:
        """Open the transport connection. TransportConnectError propagates."""
        self._state = PublisherState.CONNECTING
        try:
            await asyncio.to_thread(self._transport.connect, self._client_id)
        except TransportError:
            self._state = PublisherState.DISCONNECTED
            raise
        self._state = PublisherState.CONNECTED
        logger.info("Publisher connected", client_id=self._client_id, topic=self._topic)

    async def run(self) -> None:
        """Tick until stop() is called, then disconnect."""
        loop = asyncio.get_running_loop()
        logger.info("Publisher started", interval=self._interval)

        try:
            while not self._stop_event.is_set():
                started = loop.time()
                try:
                    await self.run_cycle()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._failures += 1
                    logger.exception("Publish cycle error", error=str(e))

                self._state = PublisherState.IDLE
                delay = max(0.0, self._interval - (loop.time() - started))
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self._disconnect()

    async def run_cycle(self) -> bool:
        """Collect, encode and publish one snapshot. Returns True on success."""
        started = time.monotonic()

        self._state = PublisherState.COLLECTING
        snapshot = await asyncio.to_thread(self._assembler.collect)

        self._state = PublisherState.PUBLISHING
        self._cycles += 1
        try:
            payload = encode_snapshot(snapshot)
        except (ValueError, TypeError) as e:
            self._failures += 1
            logger.error("Snapshot serialization failed", stage="encode", error=str(e))
            return False

        try:
            await asyncio.to_thread(self._transport.publish, self._topic, payload, self._qos)
        except TransportError as e:
            self._failures += 1
            logger.error("Publish failed", stage="publish", topic=self._topic, error=str(e))
            return False

        logger.info(
            "Telemetry published",
            topic=self._topic,
            bytes=len(payload),
            processes=len(snapshot.processes),
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return True

    def stop(self) -> None:
        """Stop issuing new cycles."""
        self._stop_event.set()

    async def _disconnect(self) -> None:
        if self._state == PublisherState.DISCONNECTED:
            return
        try:
            await asyncio.to_thread(self._transport.disconnect, self._disconnect_grace)
        except Exception as e:
            logger.error("Publisher disconnect failed", error=str(e))
        self._state = PublisherState.DISCONNECTED
        logger.info("Publisher stopped", cycles=self._cycles, failures=self._failures)
