"""Shared data structures for capture negotiation and stream health monitoring."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields, is_dataclass, replace
from enum import Enum
from typing import Any


class DeviceKind(Enum):
    """Capture device kinds."""

    AUDIO = "audio"
    VIDEO = "video"


@dataclass(frozen=True)
class CaptureDevice:
    """An enumerated capture device."""

    id: str
    kind: DeviceKind
    label: str
    group_id: str = ""


@dataclass(frozen=True)
class Range:
    """Closed numeric range advertised by a device, optionally stepped."""

    min: float
    max: float
    step: float | None = None

    def contains(self, value: float) -> bool:
        """Return True if value lies inside the range."""
        return self.min <= value <= self.max

    def clamp(self, value: float) -> float:
        """Clamp value into the range, snapping to the step grid when present."""
        clamped = min(max(value, self.min), self.max)
        if self.step:
            steps = round((clamped - self.min) / self.step)
            clamped = self.min + steps * self.step
            # Snapping may push past max when max is off-grid.
            while clamped > self.max:
                clamped -= self.step
        return clamped

    def clamp_int(self, value: float) -> int:
        """Clamp to the range and return an int that still lies inside it."""
        result = int(round(self.clamp(value)))
        low = math.ceil(self.min)
        high = math.floor(self.max)
        return min(max(result, low), high)


@dataclass(frozen=True)
class DeviceCapabilities:
    """Constraint ranges and feature support reported by one device.

    Absent ranges and empty mode tuples mean "unsupported".
    """

    device_id: str
    width: Range | None = None
    height: Range | None = None
    frame_rate: Range | None = None
    zoom: Range | None = None
    brightness: Range | None = None
    contrast: Range | None = None
    saturation: Range | None = None
    sample_rate: Range | None = None
    channel_count: Range | None = None
    focus_modes: tuple[str, ...] = ()
    exposure_modes: tuple[str, ...] = ()
    white_balance_modes: tuple[str, ...] = ()
    facing_modes: tuple[str, ...] = ()
    supports_torch: bool = False
    supports_echo_cancellation: bool = False
    supports_noise_suppression: bool = False
    supports_auto_gain_control: bool = False

    @property
    def supports_focus_mode(self) -> bool:
        return bool(self.focus_modes)

    @property
    def supports_exposure_mode(self) -> bool:
        return bool(self.exposure_modes)

    @property
    def supports_white_balance(self) -> bool:
        return bool(self.white_balance_modes)

    @property
    def supports_zoom(self) -> bool:
        return self.zoom is not None


class _Bundle:
    """Merge helper shared by the constraint bundles."""

    def merged(self, overrides: Any | None) -> Any:
        """Return a copy where every non-None field of overrides wins."""
        if overrides is None:
            return self
        changes = {
            f.name: getattr(overrides, f.name)
            for f in fields(overrides)
            if getattr(overrides, f.name) is not None
        }
        return replace(self, **changes)


@dataclass(frozen=True)
class AudioConstraints(_Bundle):
    """Requested or negotiated audio capture parameters."""

    device_id: str | None = None
    echo_cancellation: bool | None = None
    noise_suppression: bool | None = None
    auto_gain_control: bool | None = None
    sample_rate: int | None = None
    channel_count: int | None = None
    bitrate: int | None = None


@dataclass(frozen=True)
class VideoConstraints(_Bundle):
    """Requested or negotiated video capture parameters."""

    device_id: str | None = None
    width: int | None = None
    height: int | None = None
    frame_rate: float | None = None
    bitrate: int | None = None
    facing_mode: str | None = None
    focus_mode: str | None = None
    exposure_mode: str | None = None
    white_balance_mode: str | None = None
    zoom: float | None = None
    brightness: float | None = None
    contrast: float | None = None
    saturation: float | None = None
    torch: bool | None = None


class QualityTier(Enum):
    """Named quality levels, ordered from lowest to highest."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ULTRA = "ultra"

    @property
    def rank(self) -> int:
        return list(QualityTier).index(self)


@dataclass(frozen=True)
class QualityPreset:
    """A tier's constraint bundle plus the floor a device must reach for it."""

    tier: QualityTier
    name: str
    audio: AudioConstraints
    video: VideoConstraints
    min_width: int
    min_height: int
    min_frame_rate: float


@dataclass(frozen=True)
class NegotiationNote:
    """Diagnostic record of a field the negotiator clamped or dropped."""

    kind: DeviceKind
    field: str
    requested: Any
    effective: Any
    reason: str


class SessionStatus(Enum):
    """Lifecycle states of a stream session."""

    IDLE = "idle"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


@dataclass
class StreamSession:
    """One logical live stream."""

    id: str
    status: SessionStatus = SessionStatus.IDLE
    started_at: float | None = None


@dataclass(frozen=True)
class VideoMetrics:
    """Outbound video statistics."""

    width: int = 0
    height: int = 0
    frame_rate: float = 0.0
    bitrate: float = 0.0
    codec: str = ""
    dropped_frames: int = 0
    total_frames: int = 0

    @property
    def dropped_frame_percent(self) -> float:
        if self.total_frames <= 0:
            return 0.0
        return self.dropped_frames / self.total_frames * 100.0


@dataclass(frozen=True)
class AudioMetrics:
    """Outbound audio statistics."""

    bitrate: float = 0.0
    sample_rate: int = 0
    codec: str = ""


@dataclass(frozen=True)
class NetworkMetrics:
    """Transport statistics; packet loss in percent, times in milliseconds."""

    available_bandwidth: float = 0.0
    packet_loss: float = 0.0
    round_trip_time: float = 0.0
    jitter: float = 0.0


@dataclass(frozen=True)
class RawStreamStats:
    """Unnormalised statistics as reported by a stats source."""

    current_viewers: int = 0
    max_viewers: int = 0
    is_live: bool = True
    video: VideoMetrics = field(default_factory=VideoMetrics)
    audio: AudioMetrics = field(default_factory=AudioMetrics)
    network: NetworkMetrics = field(default_factory=NetworkMetrics)
    warnings: tuple[str, ...] = ()


class ConnectionQuality(Enum):
    """Connection quality tiers, best first."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"

    @property
    def rank(self) -> int:
        """0 for poor up to 3 for excellent."""
        return list(ConnectionQuality)[::-1].index(self)


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and tuples into plain JSON values."""
    if is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


@dataclass(frozen=True)
class StreamHealthStats:
    """One health sample for an active session."""

    session_id: str
    timestamp: float
    current_viewers: int = 0
    peak_viewers: int = 0
    duration: float = 0.0
    is_live: bool = True
    video: VideoMetrics = field(default_factory=VideoMetrics)
    audio: AudioMetrics = field(default_factory=AudioMetrics)
    network: NetworkMetrics = field(default_factory=NetworkMetrics)
    connection_quality: ConnectionQuality | None = None
    encoder_cpu: float = 0.0
    warnings: tuple[str, ...] = ()
    stale: bool = False
    error_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready representation."""
        data = to_jsonable(asdict(self))
        data["video"]["dropped_frame_percent"] = self.video.dropped_frame_percent
        return data


class AlertSeverity(Enum):
    """Alert severities, least severe first."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(AlertSeverity).index(self)


class AlertType(Enum):
    """What condition an alert is about."""

    PACKET_LOSS = "packet_loss"
    DROPPED_FRAMES = "dropped_frames"
    LATENCY = "latency"
    BITRATE = "bitrate"
    FRAMERATE = "framerate"
    DISCONNECTED = "disconnected"
    STATS = "stats"
    BACKEND = "backend"
    QUALITY = "quality"


@dataclass(frozen=True)
class AlertMetric:
    """The measurement that crossed a threshold."""

    name: str
    current: float
    threshold: float


@dataclass(frozen=True)
class StreamHealthAlert:
    """A severity-tagged notification raised by the classifier."""

    id: str
    severity: AlertSeverity
    type: AlertType
    message: str
    timestamp: float
    metric: AlertMetric | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready representation."""
        return to_jsonable(asdict(self))
