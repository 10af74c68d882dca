"""Threshold and monitor configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any

from livestream_health.errors import ConfigError
from livestream_health.types import ConnectionQuality


ENV_PREFIX = "LIVESTREAM_HEALTH_"

# Connection quality tiers. Packet loss in percent, round-trip time in ms.
EXCELLENT_MAX_PACKET_LOSS = 1.0
EXCELLENT_MAX_RTT_MS = 100.0
GOOD_MAX_PACKET_LOSS = 2.0
GOOD_MAX_RTT_MS = 200.0
FAIR_MAX_PACKET_LOSS = 5.0
FAIR_MAX_RTT_MS = 400.0

# Alert thresholds.
PACKET_LOSS_WARNING = 2.0
PACKET_LOSS_CRITICAL = 5.0
DROPPED_FRAME_WARNING_PERCENT = 2.0
RTT_INFO_MS = 300.0
MIN_VIDEO_BITRATE = 500_000.0
MIN_FRAME_RATE = 20.0
# Tiers below this raise a quality alert; None turns the alert off.
MIN_CONNECTION_QUALITY = ConnectionQuality.FAIR


@dataclass(frozen=True)
class HealthThresholds:
    """Classifier thresholds; defaults are the module constants."""

    excellent_max_packet_loss: float = EXCELLENT_MAX_PACKET_LOSS
    excellent_max_rtt_ms: float = EXCELLENT_MAX_RTT_MS
    good_max_packet_loss: float = GOOD_MAX_PACKET_LOSS
    good_max_rtt_ms: float = GOOD_MAX_RTT_MS
    fair_max_packet_loss: float = FAIR_MAX_PACKET_LOSS
    fair_max_rtt_ms: float = FAIR_MAX_RTT_MS
    packet_loss_warning: float = PACKET_LOSS_WARNING
    packet_loss_critical: float = PACKET_LOSS_CRITICAL
    dropped_frame_warning_percent: float = DROPPED_FRAME_WARNING_PERCENT
    rtt_info_ms: float = RTT_INFO_MS
    min_video_bitrate: float = MIN_VIDEO_BITRATE
    min_frame_rate: float = MIN_FRAME_RATE
    min_connection_quality: ConnectionQuality | None = MIN_CONNECTION_QUALITY

    def with_overrides(self, **overrides: Any) -> HealthThresholds:
        """Return a copy with selected thresholds replaced."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            message = f"Unknown threshold(s): {', '.join(unknown)}"
            raise ConfigError(message)
        return replace(self, **overrides)


DEFAULT_THRESHOLDS = HealthThresholds()


@dataclass
class MonitorConfig:
    """Health monitor settings."""

    interval_ms: int = 5000
    stats_timeout_ms: int = 2000
    max_alerts: int = 100
    downgrade_after: int = 3
    auto_downgrade: bool = True
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)

    def __post_init__(self) -> None:
        if self.interval_ms <= 0:
            message = f"interval_ms must be positive, got {self.interval_ms}"
            raise ConfigError(message)
        if self.stats_timeout_ms <= 0:
            message = f"stats_timeout_ms must be positive, got {self.stats_timeout_ms}"
            raise ConfigError(message)
        if self.max_alerts <= 0:
            message = f"max_alerts must be positive, got {self.max_alerts}"
            raise ConfigError(message)
        if self.downgrade_after <= 0:
            message = f"downgrade_after must be positive, got {self.downgrade_after}"
            raise ConfigError(message)

    @classmethod
    def from_env(cls, **defaults: object) -> MonitorConfig:
        """Build a config from LIVESTREAM_HEALTH_* variables over the defaults."""
        values: dict[str, object] = dict(defaults)
        for name in ("interval_ms", "stats_timeout_ms", "max_alerts", "downgrade_after"):
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            try:
                values[name] = int(raw)
            except ValueError as exc:
                message = f"{ENV_PREFIX}{name.upper()} must be an integer, got {raw!r}"
                raise ConfigError(message) from exc

        raw_flag = os.getenv(ENV_PREFIX + "AUTO_DOWNGRADE")
        if raw_flag is not None:
            values["auto_downgrade"] = _parse_flag(raw_flag)

        raw_quality = os.getenv(ENV_PREFIX + "MIN_CONNECTION_QUALITY")
        if raw_quality is not None:
            thresholds = values.get("thresholds", DEFAULT_THRESHOLDS)
            values["thresholds"] = thresholds.with_overrides(  # type: ignore[union-attr]
                min_connection_quality=_parse_quality(raw_quality)
            )

        return cls(**values)  # type: ignore[arg-type]


def _parse_quality(raw: str) -> ConnectionQuality | None:
    value = raw.strip().lower()
    if value in {"", "none", "off"}:
        return None
    try:
        return ConnectionQuality(value)
    except ValueError as exc:
        message = f"{ENV_PREFIX}MIN_CONNECTION_QUALITY must be a quality tier, got {raw!r}"
        raise ConfigError(message) from exc


def _parse_flag(raw: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    message = f"{ENV_PREFIX}AUTO_DOWNGRADE must be a boolean, got {raw!r}"
    raise ConfigError(message)
