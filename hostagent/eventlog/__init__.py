"""
Host Agent - Event Log Package

Append-only event trail of received snapshots.
"""

from .trail import EventTrail

__all__ = ["EventTrail"]
