"""
Host Agent - Subscriber and Event Trail Tests
"""

import asyncio
import io
import threading

import pytest
from structlog.testing import capture_logs

from hostagent.eventlog.trail import EventTrail
from hostagent.mqtt.subscriber import TelemetrySubscriber
from hostagent.mqtt.transport import TransportConnectError
from hostagent.telemetry.models import SystemTelemetry, encode_snapshot
from tests.fakes import FakeTransport

TOPIC = "telemetry/system"


@pytest.fixture
def trail(tmp_path):
    trail = EventTrail(str(tmp_path / "logs" / "events.log"))
    trail.open()
    yield trail
    trail.close()


def make_subscriber(transport, trail, output=None):
    return TelemetrySubscriber(
        transport=transport,
        event_trail=trail,
        topic=TOPIC,
        client_id="testhost-subscriber",
        output=output or io.StringIO(),
    )


class FailingOnceOutput(io.StringIO):
    """Output stream whose first write fails."""

    def __init__(self):
        super().__init__()
        self.failed = False

    def write(self, text):
        if not self.failed:
            self.failed = True
            raise ValueError("output unavailable")
        return super().write(text)


async def wait_for_count(subscriber, received):
    for _ in range(100):
        if subscriber.received >= received:
            return
        await asyncio.sleep(0.01)


class TestEventTrail:
    """Test event trail appends."""

    def test_append_writes_block_and_summary(self, trail, snapshot):
        """Test one append adds a block and a SUMMARY line."""
        trail.append(snapshot)
        trail.append(snapshot)

        text = trail.path.read_text()

        assert text.count("--- telemetry") == 2
        assert text.count("SUMMARY ") == 2
        assert "host=testhost" in text
        assert "uptime: 01d 01h 01m 01s" in text

    def test_append_requires_open(self, tmp_path, snapshot):
        """Test appending to a closed trail raises OSError."""
        trail = EventTrail(str(tmp_path / "events.log"))

        with pytest.raises(OSError):
            trail.append(snapshot)

    def test_concurrent_appends_do_not_interleave(self, trail, snapshot):
        """Test appends from several threads keep blocks whole."""
        threads = [threading.Thread(target=trail.append, args=(snapshot,)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        lines = trail.path.read_text().splitlines()
        headers = [i for i, line in enumerate(lines) if line.startswith("--- telemetry")]

        assert len(headers) == 8
        for index in headers:
            assert lines[index + 1].startswith("os: ")


class TestHandlePayload:
    """Test message decoding and recording."""

    def test_valid_payload_recorded(self, trail, snapshot):
        """Test a good payload reaches the trail and the output."""
        output = io.StringIO()
        subscriber = make_subscriber(FakeTransport(), trail, output)

        result = subscriber.handle_payload(encode_snapshot(snapshot))

        assert result == snapshot
        assert subscriber.received == 1
        assert "[Processes]" in output.getvalue()
        assert "SUMMARY" in trail.path.read_text()

    def test_bad_payload_discarded(self, trail, snapshot):
        """Test an undecodable payload is logged and later messages still work."""
        subscriber = make_subscriber(FakeTransport(), trail)

        with capture_logs() as logs:
            assert subscriber.handle_payload(b"{broken") is None

        assert subscriber.rejected == 1
        assert trail.path.read_text() == ""
        assert any(log["event"] == "Discarding undecodable message" for log in logs)

        assert subscriber.handle_payload(encode_snapshot(snapshot)) is not None
        assert subscriber.received == 1

    def test_duplicates_are_recorded_twice(self, trail):
        """Test duplicate deliveries are not filtered."""
        subscriber = make_subscriber(FakeTransport(), trail)
        payload = encode_snapshot(SystemTelemetry(timestamp=1700000000.0))

        subscriber.handle_payload(payload)
        subscriber.handle_payload(payload)

        assert trail.path.read_text().count("SUMMARY") == 2


class TestSubscriberLoop:
    """Test the subscriber run loop."""

    @pytest.mark.asyncio
    async def test_messages_handled_in_order(self, trail):
        """Test messages delivered from the transport thread are handled in order."""
        transport = FakeTransport()
        subscriber = make_subscriber(transport, trail)
        await subscriber.connect()

        assert transport.client_id == "testhost-subscriber"
        assert TOPIC in transport.handlers

        task = asyncio.create_task(subscriber.run())

        def deliver():
            transport.deliver(TOPIC, b"garbage")
            for ts in (1700000001.0, 1700000002.0, 1700000003.0):
                transport.deliver(TOPIC, encode_snapshot(SystemTelemetry(timestamp=ts)))

        thread = threading.Thread(target=deliver)
        thread.start()
        thread.join()

        for _ in range(100):
            if subscriber.received == 3:
                break
            await asyncio.sleep(0.01)

        subscriber.stop()
        await asyncio.wait_for(task, timeout=2)

        assert subscriber.received == 3
        assert subscriber.rejected == 1
        assert transport.disconnected_with == 5.0

        text = trail.path.read_text()
        assert text.index(":21 host=") < text.index(":22 host=") < text.index(":23 host=")

    @pytest.mark.asyncio
    async def test_connect_failure_propagates(self, trail):
        """Test a failed connection raises TransportConnectError."""
        subscriber = make_subscriber(FakeTransport(fail_connect=True), trail)

        with pytest.raises(TransportConnectError):
            await subscriber.connect()

    @pytest.mark.asyncio
    async def test_subscribe_failure_is_fatal(self, trail):
        """Test a refused subscription is reported as a connection failure."""
        transport = FakeTransport(fail_subscribe=True)
        subscriber = make_subscriber(transport, trail)

        with pytest.raises(TransportConnectError):
            await subscriber.connect()

        assert transport.disconnected_with == 5.0

    @pytest.mark.asyncio
    async def test_out_of_range_timestamp_does_not_stop_loop(self, trail):
        """Test a decodable snapshot with an extreme timestamp is recorded and later messages follow."""
        transport = FakeTransport()
        subscriber = make_subscriber(transport, trail)
        await subscriber.connect()
        task = asyncio.create_task(subscriber.run())

        transport.deliver(TOPIC, b'{"timestamp": 1e20}')
        transport.deliver(TOPIC, encode_snapshot(SystemTelemetry(timestamp=1700000001.0)))
        await wait_for_count(subscriber, 2)

        assert not task.done()
        subscriber.stop()
        await asyncio.wait_for(task, timeout=2)

        assert subscriber.received == 2
        text = trail.path.read_text()
        assert "--- telemetry 1e+20 host=" in text
        assert ":21 host=" in text

    @pytest.mark.asyncio
    async def test_handling_failure_does_not_stop_loop(self, trail):
        """Test an error while rendering one message is logged and the next message is handled."""
        transport = FakeTransport()
        output = FailingOnceOutput()
        subscriber = make_subscriber(transport, trail, output)
        await subscriber.connect()
        task = asyncio.create_task(subscriber.run())

        with capture_logs() as logs:
            for ts in (1700000001.0, 1700000002.0):
                transport.deliver(TOPIC, encode_snapshot(SystemTelemetry(timestamp=ts)))
            await wait_for_count(subscriber, 1)

            assert not task.done()
            subscriber.stop()
            await asyncio.wait_for(task, timeout=2)

        assert subscriber.received == 1
        assert subscriber.rejected == 1
        assert "[Processes]" in output.getvalue()
        assert any(log["event"] == "Message handling failed" for log in logs)
