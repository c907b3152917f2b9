"""
Host Agent - MQTT Transport

Publish/subscribe transport used by the telemetry loops. MQTTTransport wraps a
paho-mqtt client running its network loop in a background thread.
"""

import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import paho.mqtt.client as mqtt
import structlog

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[bytes], None]


class TransportError(Exception):
    """A publish or subscribe request was not accepted."""


class TransportConnectError(TransportError):
    """The initial broker connection could not be established."""


class Transport(ABC):
    """Interface the publisher and subscriber depend on."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    def connect(self, client_id: str) -> None:
        """Open the connection; raise TransportConnectError on failure."""
        pass

    @abstractmethod
    def publish(self, topic: str, payload: bytes, qos: int = 1) -> None:
        """Publish and wait for the broker acknowledgement."""
        pass

    @abstractmethod
    def subscribe(self, topic: str, qos: int, handler: MessageHandler) -> None:
        pass

    @abstractmethod
    def disconnect(self, grace: float = 5.0) -> None:
        pass


class MQTTTransport(Transport):
    """paho-mqtt backed transport."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        keepalive: int = 60,
        connect_timeout: float = 10.0,
        publish_timeout: float = 5.0,
        username: Optional[str] = None,
        password: Optional[str] = None,
        clean_session: bool = True,
    ):
        self._host = host
        self._port = port
        self._keepalive = keepalive
        self._connect_timeout = connect_timeout
        self._publish_timeout = publish_timeout
        self._username = username
        self._password = password
        self._clean_session = clean_session

        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._connack = threading.Event()
        self._connack_reason: Optional[str] = None
        self._handlers: Dict[str, MessageHandler] = {}
        self._subscriptions: Dict[str, int] = {}
        self._inflight: Dict[int, mqtt.MQTTMessageInfo] = {}
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self, client_id: str) -> None:
        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            clean_session=self._clean_session,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        if self._username:
            self._client.username_pw_set(self._username, self._password)

        self._connack.clear()
        try:
            self._client.connect(self._host, self._port, keepalive=self._keepalive)
        except (OSError, ValueError) as e:
            self._client = None
            raise TransportConnectError(
                f"Cannot reach MQTT broker {self._host}:{self._port}: {e}"
            ) from e

        self._client.loop_start()

        if not self._connack.wait(self._connect_timeout):
            self._teardown()
            raise TransportConnectError(
                f"No CONNACK from {self._host}:{self._port} within {self._connect_timeout}s"
            )
        if not self._connected:
            reason = self._connack_reason
            self._teardown()
            raise TransportConnectError(f"MQTT broker refused connection: {reason}")

        logger.info("MQTT connected", host=self._host, port=self._port, client_id=client_id)

    def publish(self, topic: str, payload: bytes, qos: int = 1) -> None:
        if not self._client or not self._connected:
            raise TransportError("MQTT not connected")

        info = self._client.publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Publish failed: {mqtt.error_string(info.rc)}")

        with self._lock:
            self._inflight[info.mid] = info
        try:
            info.wait_for_publish(timeout=self._publish_timeout)
        except (ValueError, RuntimeError) as e:
            raise TransportError(f"Publish failed: {e}") from e
        finally:
            with self._lock:
                self._inflight.pop(info.mid, None)

        if not info.is_published():
            raise TransportError(f"Publish not acknowledged within {self._publish_timeout}s")

    def subscribe(self, topic: str, qos: int, handler: MessageHandler) -> None:
        if not self._client or not self._connected:
            raise TransportError("MQTT not connected")

        self._handlers[topic] = handler
        self._subscriptions[topic] = qos
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"Subscribe failed: {mqtt.error_string(result)}")
        logger.debug("Subscribed to topic", topic=topic, qos=qos)

    def disconnect(self, grace: float = 5.0) -> None:
        """Give in-flight publishes up to `grace` seconds, then disconnect."""
        if not self._client:
            return

        with self._lock:
            pending = list(self._inflight.values())
        for info in pending:
            try:
                info.wait_for_publish(timeout=grace)
            except (ValueError, RuntimeError):
                continue

        self._client.disconnect()
        self._teardown()
        logger.info("MQTT disconnected", host=self._host)

    def _teardown(self) -> None:
        if self._client:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        self._connack_reason = str(reason_code)
        if not reason_code.is_failure:
            self._connected = True
            # Restore subscriptions after a reconnect
            for topic, qos in self._subscriptions.items():
                client.subscribe(topic, qos=qos)
        else:
            logger.error("MQTT connection failed", reason=str(reason_code))
        self._connack.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        self._connected = False
        if reason_code.is_failure:
            logger.warning("MQTT disconnected unexpectedly", reason=str(reason_code))
        else:
            logger.info("MQTT disconnected")

    def _on_message(self, client, userdata, msg):
        handler = self._handlers.get(msg.topic)
        if handler is None:
            for topic, candidate in self._handlers.items():
                if mqtt.topic_matches_sub(topic, msg.topic):
                    handler = candidate
                    break
        if handler is None:
            logger.debug("Message on unhandled topic", topic=msg.topic)
            return

        try:
            handler(msg.payload)
        except Exception as e:
            logger.exception("Error handling MQTT message", topic=msg.topic, error=str(e))
