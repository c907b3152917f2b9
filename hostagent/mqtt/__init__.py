"""
Host Agent - MQTT Package

Transport plus the publisher and subscriber loops.
"""

from .publisher import TelemetryPublisher
from .subscriber import TelemetrySubscriber
from .transport import MQTTTransport, Transport, TransportConnectError, TransportError

__all__ = [
    "TelemetryPublisher",
    "TelemetrySubscriber",
    "MQTTTransport",
    "Transport",
    "TransportError",
    "TransportConnectError",
]
