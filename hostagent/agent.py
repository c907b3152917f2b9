"""
Host Agent - Main Application

Runs the telemetry publisher and subscriber side by side:
- Publisher: samples the host every interval and publishes a snapshot
- Subscriber: renders received snapshots and appends the event trail

Usage:
    hostagent [--config CONFIG_PATH] [--role both|publisher|subscriber]
"""

import argparse
import asyncio
import signal
import socket
import sys
from typing import List, Optional

import structlog

from .config import ConfigError, Settings, load_settings
from .eventlog import EventTrail
from .logging_config import configure_logging, flush_logging
from .mqtt import MQTTTransport, TelemetryPublisher, TelemetrySubscriber, TransportConnectError
from .telemetry import PsutilSources, SnapshotAssembler

logger = structlog.get_logger(__name__)

ROLES = ("both", "publisher", "subscriber")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2


def client_identity(role: str) -> str:
    """MQTT client id derived from the hostname."""
    return f"{socket.gethostname() or 'unknown'}-{role}"


class HostAgent:
    """Wires the publisher and subscriber from settings and runs them."""

    def __init__(
        self,
        settings: Settings,
        role: str = "both",
        publisher: Optional[TelemetryPublisher] = None,
        subscriber: Optional[TelemetrySubscriber] = None,
        event_trail: Optional[EventTrail] = None,
    ):
        self.settings = settings
        self.role = role
        self.event_trail = event_trail
        self.publisher = publisher
        self.subscriber = subscriber
        self._shutdown_event = asyncio.Event()

        if self.publisher is None and role in ("both", "publisher"):
            self.publisher = self._build_publisher()
        if self.subscriber is None and role in ("both", "subscriber"):
            if self.event_trail is None:
                self.event_trail = EventTrail(settings.logging.event_log)
            self.subscriber = self._build_subscriber()

    def _transport(self, clean_session: bool) -> MQTTTransport:
        cfg = self.settings.mqtt
        return MQTTTransport(
            host=cfg.host,
            port=cfg.port,
            keepalive=cfg.keepalive,
            connect_timeout=cfg.connect_timeout,
            publish_timeout=cfg.publish_timeout,
            username=cfg.username,
            password=cfg.resolve_password(),
            clean_session=clean_session,
        )

    def _build_publisher(self) -> TelemetryPublisher:
        telemetry = self.settings.telemetry
        assembler = SnapshotAssembler(
            PsutilSources(),
            max_processes=telemetry.max_processes,
            critical_files=telemetry.critical_files,
            cpu_sample_window=telemetry.cpu_sample_window,
            include_open_files=telemetry.include_open_files,
        )
        return TelemetryPublisher(
            transport=self._transport(clean_session=True),
            assembler=assembler,
            topic=self.settings.mqtt.topic,
            client_id=client_identity("publisher"),
            interval=telemetry.interval,
            qos=self.settings.mqtt.qos,
            disconnect_grace=self.settings.mqtt.disconnect_grace,
        )

    def _build_subscriber(self) -> TelemetrySubscriber:
        # Persistent session so QoS 1 messages queued during a reconnect are delivered
        return TelemetrySubscriber(
            transport=self._transport(clean_session=False),
            event_trail=self.event_trail,
            topic=self.settings.mqtt.topic,
            client_id=client_identity("subscriber"),
            qos=self.settings.mqtt.qos,
            disconnect_grace=self.settings.mqtt.disconnect_grace,
        )

    async def start(self) -> None:
        """Connect both sides, run until shutdown, then join both loops.

        Raises:
            TransportConnectError: if either initial connection fails.
        """
        logger.info("Starting host agent", role=self.role, topic=self.settings.mqtt.topic)

        if self.subscriber:
            await self.subscriber.connect()
        if self.publisher:
            try:
                await self.publisher.connect()
            except TransportConnectError:
                if self.subscriber:
                    await self.subscriber.disconnect()
                raise

        tasks: List[asyncio.Task] = []
        if self.subscriber:
            tasks.append(asyncio.create_task(self.subscriber.run(), name="subscriber"))
        if self.publisher:
            tasks.append(asyncio.create_task(self.publisher.run(), name="publisher"))

        logger.info("Host agent started")
        await self._shutdown_event.wait()

        if self.publisher:
            self.publisher.stop()
        if self.subscriber:
            self.subscriber.stop()

        grace = self.settings.mqtt.disconnect_grace + self.settings.mqtt.publish_timeout
        done, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            logger.warning("Loop did not stop within grace period", loop=task.get_name())
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                logger.error("Loop exited with error", loop=task.get_name(), error=str(result))

        logger.info("Host agent stopped")

    def stop(self) -> None:
        """Request shutdown of both loops."""
        self._shutdown_event.set()

    def handle_signal(self, signum: int) -> None:
        logger.info("Received signal", signal=signum)
        self.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Host telemetry agent")
    parser.add_argument(
        "--config", "-c",
        default="config.yaml",
        help="Path to configuration file"
    )
    parser.add_argument(
        "--role",
        choices=ROLES,
        default="both",
        help="Run the publisher, the subscriber or both"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the configured log level"
    )
    return parser


async def run_agent(agent: HostAgent) -> int:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, agent.handle_signal, signum)
        except (NotImplementedError, RuntimeError):
            signal.signal(signum, lambda s, f: loop.call_soon_threadsafe(agent.handle_signal, s))

    try:
        await agent.start()
    except TransportConnectError as e:
        logger.critical("Transport connection failed", error=str(e))
        return EXIT_FATAL
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"hostagent: {e}", file=sys.stderr)
        return EXIT_USAGE

    level = args.log_level or settings.logging.level
    try:
        configure_logging(level, settings.logging.system_log)
    except OSError as e:
        print(f"hostagent: cannot open system log {settings.logging.system_log}: {e}", file=sys.stderr)
        return EXIT_FATAL

    agent = HostAgent(settings, role=args.role)
    if agent.event_trail is not None:
        try:
            agent.event_trail.open()
        except OSError as e:
            logger.critical("Cannot open event log", path=settings.logging.event_log, error=str(e))
            flush_logging()
            return EXIT_FATAL

    try:
        return asyncio.run(run_agent(agent))
    finally:
        if agent.event_trail is not None:
            agent.event_trail.close()
        flush_logging()


def cli() -> None:
    sys.exit(main())
