"""Live stream capture negotiation and health monitoring."""

from .capture import SimulatedCaptureBackend
from .config import HealthThresholds, MonitorConfig
from .devices import CapabilityProber, DeviceRegistry
from .monitoring import HealthMonitor, HealthSampler, classify
from .negotiation import QUALITY_PRESETS, ConstraintNegotiator
from .session import StreamSessionController
from .types import (
    AlertSeverity,
    ConnectionQuality,
    DeviceKind,
    QualityTier,
    SessionStatus,
    StreamHealthAlert,
    StreamHealthStats,
)

__all__ = [
    "AlertSeverity",
    "CapabilityProber",
    "ConnectionQuality",
    "ConstraintNegotiator",
    "DeviceKind",
    "DeviceRegistry",
    "HealthMonitor",
    "HealthSampler",
    "HealthThresholds",
    "MonitorConfig",
    "QUALITY_PRESETS",
    "QualityTier",
    "SessionStatus",
    "SimulatedCaptureBackend",
    "StreamHealthAlert",
    "StreamHealthStats",
    "StreamSessionController",
    "classify",
]
