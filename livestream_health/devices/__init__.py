"""Device enumeration and capability probing."""

from __future__ import annotations

from livestream_health.devices.prober import CapabilityProber, parse_capabilities
from livestream_health.devices.registry import DeviceRegistry


__all__ = [
    "CapabilityProber",
    "DeviceRegistry",
    "parse_capabilities",
]
