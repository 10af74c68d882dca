"""Connection quality classification and edge-triggered alerting.

Everything here is a pure function of the current sample, the previous
sample and the thresholds. A condition raises an alert only on the tick it
first appears or when its severity rises; a condition that clears and comes
back alerts again.
"""

from __future__ import annotations

from dataclasses import dataclass

from livestream_health.config import DEFAULT_THRESHOLDS, HealthThresholds
from livestream_health.types import (
    AlertMetric,
    AlertSeverity,
    AlertType,
    ConnectionQuality,
    StreamHealthAlert,
    StreamHealthStats,
)


@dataclass(frozen=True)
class _Condition:
    severity: AlertSeverity
    type: AlertType
    message: str
    metric: AlertMetric | None = None


def connection_quality(
    sample: StreamHealthStats,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> ConnectionQuality:
    """Map packet loss, RTT and dropped frames onto a quality tier."""
    loss = sample.network.packet_loss
    rtt = sample.network.round_trip_time
    dropped = sample.video.dropped_frame_percent

    if (
        loss < thresholds.excellent_max_packet_loss
        and rtt < thresholds.excellent_max_rtt_ms
        and dropped <= thresholds.dropped_frame_warning_percent
    ):
        return ConnectionQuality.EXCELLENT
    if loss < thresholds.good_max_packet_loss and rtt < thresholds.good_max_rtt_ms:
        return ConnectionQuality.GOOD
    if loss < thresholds.fair_max_packet_loss and rtt < thresholds.fair_max_rtt_ms:
        return ConnectionQuality.FAIR
    return ConnectionQuality.POOR


def _conditions(
    sample: StreamHealthStats, thresholds: HealthThresholds
) -> dict[str, _Condition]:
    """Every alert-worthy condition present in one sample, keyed by identity."""
    found: dict[str, _Condition] = {}
    if not sample.is_live:
        return found

    loss = sample.network.packet_loss
    if loss > thresholds.packet_loss_critical:
        found["packet_loss"] = _Condition(
            AlertSeverity.CRITICAL,
            AlertType.PACKET_LOSS,
            f"Critical packet loss: {loss:.1f}%",
            AlertMetric("Packet Loss", loss, thresholds.packet_loss_critical),
        )
    elif loss > thresholds.packet_loss_warning:
        found["packet_loss"] = _Condition(
            AlertSeverity.WARNING,
            AlertType.PACKET_LOSS,
            f"High packet loss: {loss:.1f}%",
            AlertMetric("Packet Loss", loss, thresholds.packet_loss_warning),
        )

    dropped = sample.video.dropped_frame_percent
    if dropped > thresholds.dropped_frame_warning_percent:
        found["dropped_frames"] = _Condition(
            AlertSeverity.WARNING,
            AlertType.DROPPED_FRAMES,
            f"Dropping frames: {dropped:.1f}% of frames lost",
            AlertMetric("Dropped Frames", dropped, thresholds.dropped_frame_warning_percent),
        )

    rtt = sample.network.round_trip_time
    if rtt > thresholds.rtt_info_ms:
        found["latency"] = _Condition(
            AlertSeverity.INFO,
            AlertType.LATENCY,
            f"High latency: {rtt:.0f} ms round trip",
            AlertMetric("Round Trip Time", rtt, thresholds.rtt_info_ms),
        )

    # Zero means the source does not report the metric.
    bitrate = sample.video.bitrate
    if 0 < bitrate < thresholds.min_video_bitrate:
        found["bitrate"] = _Condition(
            AlertSeverity.WARNING,
            AlertType.BITRATE,
            f"Video bitrate is low: {bitrate / 1000:.0f} kbps",
            AlertMetric("Video Bitrate", bitrate, thresholds.min_video_bitrate),
        )

    frame_rate = sample.video.frame_rate
    if 0 < frame_rate < thresholds.min_frame_rate:
        found["framerate"] = _Condition(
            AlertSeverity.WARNING,
            AlertType.FRAMERATE,
            f"Frame rate is low: {frame_rate:.1f} fps",
            AlertMetric("Frame Rate", frame_rate, thresholds.min_frame_rate),
        )

    if sample.stale:
        found["stats"] = _Condition(
            AlertSeverity.WARNING,
            AlertType.STATS,
            "Health statistics unavailable; showing last known values",
        )

    for warning in sample.warnings:
        found[f"backend:{warning}"] = _Condition(
            AlertSeverity.INFO, AlertType.BACKEND, warning
        )

    quality = _quality_condition(sample, thresholds)
    # Skipped when a metric alert already carries the same or worse news.
    if quality is not None and all(
        condition.severity.rank < quality.severity.rank for condition in found.values()
    ):
        found["quality"] = quality
    return found


def _quality_condition(
    sample: StreamHealthStats, thresholds: HealthThresholds
) -> _Condition | None:
    minimum = thresholds.min_connection_quality
    if minimum is None:
        return None
    tier = connection_quality(sample, thresholds)
    if tier.rank >= minimum.rank:
        return None
    severity = (
        AlertSeverity.CRITICAL if tier is ConnectionQuality.POOR else AlertSeverity.WARNING
    )
    return _Condition(severity, AlertType.QUALITY, f"Connection quality is {tier.value}")


def _alert(
    sample: StreamHealthStats, key: str, condition: _Condition
) -> StreamHealthAlert:
    stamp = int(sample.timestamp * 1000)
    return StreamHealthAlert(
        id=f"{sample.session_id}-{key}-{stamp}",
        severity=condition.severity,
        type=condition.type,
        message=condition.message,
        timestamp=sample.timestamp,
        metric=condition.metric,
    )


def classify(
    sample: StreamHealthStats,
    previous: StreamHealthStats | None = None,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> tuple[ConnectionQuality, list[StreamHealthAlert]]:
    """Return the sample's quality tier and the alerts new on this tick."""
    tier = connection_quality(sample, thresholds)
    current = _conditions(sample, thresholds)
    before = _conditions(previous, thresholds) if previous is not None else {}

    alerts = []
    for key, condition in current.items():
        prior = before.get(key)
        if prior is not None and prior.severity.rank >= condition.severity.rank:
            continue
        alerts.append(_alert(sample, key, condition))

    if previous is not None and previous.is_live and not sample.is_live:
        alerts.append(
            _alert(
                sample,
                "disconnected",
                _Condition(
                    AlertSeverity.CRITICAL,
                    AlertType.DISCONNECTED,
                    "Stream disconnected",
                ),
            )
        )
    return tier, alerts
