"""Capture backends for stream sessions."""

from __future__ import annotations

from livestream_health.capture.core import (
    CaptureBackend,
    CaptureHandle,
    constraints_kind,
)
from livestream_health.capture.opencv import OpenCVCaptureBackend, OpenCVStatsSource
from livestream_health.capture.simulated import (
    SimulatedCaptureBackend,
    SimulatedDevice,
)


__all__ = [
    "CaptureBackend",
    "CaptureHandle",
    "OpenCVCaptureBackend",
    "OpenCVStatsSource",
    "SimulatedCaptureBackend",
    "SimulatedDevice",
    "constraints_kind",
]
