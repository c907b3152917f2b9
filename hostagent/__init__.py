"""
Host Agent

Samples host telemetry, publishes it over MQTT and renders received
snapshots as reports and an event trail.
"""

__version__ = "1.0.0"
