"""Static quality preset ladder."""

from __future__ import annotations

from livestream_health.types import (
    AudioConstraints,
    QualityPreset,
    QualityTier,
    VideoConstraints,
)


def _audio(sample_rate: int, channel_count: int, bitrate: int) -> AudioConstraints:
    return AudioConstraints(
        echo_cancellation=True,
        noise_suppression=True,
        auto_gain_control=True,
        sample_rate=sample_rate,
        channel_count=channel_count,
        bitrate=bitrate,
    )


def _video(width: int, height: int, frame_rate: float, bitrate: int) -> VideoConstraints:
    return VideoConstraints(
        width=width,
        height=height,
        frame_rate=frame_rate,
        bitrate=bitrate,
        facing_mode="user",
    )


QUALITY_PRESETS: dict[QualityTier, QualityPreset] = {
    QualityTier.LOW: QualityPreset(
        tier=QualityTier.LOW,
        name="Low (360p)",
        audio=_audio(22050, 1, 64_000),
        video=_video(640, 360, 24, 800_000),
        min_width=320,
        min_height=180,
        min_frame_rate=15,
    ),
    QualityTier.MEDIUM: QualityPreset(
        tier=QualityTier.MEDIUM,
        name="Medium (720p)",
        audio=_audio(44100, 2, 128_000),
        video=_video(1280, 720, 30, 2_500_000),
        min_width=854,
        min_height=480,
        min_frame_rate=24,
    ),
    QualityTier.HIGH: QualityPreset(
        tier=QualityTier.HIGH,
        name="High (1080p)",
        audio=_audio(48000, 2, 192_000),
        video=_video(1920, 1080, 30, 5_000_000),
        min_width=1280,
        min_height=720,
        min_frame_rate=24,
    ),
    QualityTier.ULTRA: QualityPreset(
        tier=QualityTier.ULTRA,
        name="Ultra (1080p60)",
        audio=_audio(48000, 2, 256_000),
        video=_video(1920, 1080, 60, 8_000_000),
        min_width=1920,
        min_height=1080,
        min_frame_rate=48,
    ),
}


def tier_order() -> list[QualityTier]:
    """Tiers from lowest to highest."""
    return sorted(QUALITY_PRESETS, key=lambda tier: tier.rank)


def preset(tier: QualityTier) -> QualityPreset:
    return QUALITY_PRESETS[tier]


def presets_for(tier: QualityTier) -> tuple[AudioConstraints, VideoConstraints]:
    """Return the (audio, video) bundle for a tier."""
    entry = QUALITY_PRESETS[tier]
    return entry.audio, entry.video


def lower_tier(tier: QualityTier) -> QualityTier | None:
    """The tier one step below, or None at the bottom of the ladder."""
    order = tier_order()
    index = order.index(tier)
    return order[index - 1] if index > 0 else None


def higher_tier(tier: QualityTier) -> QualityTier | None:
    """The tier one step above, or None at the top of the ladder."""
    order = tier_order()
    index = order.index(tier)
    return order[index + 1] if index + 1 < len(order) else None


def _video_key(entry: QualityPreset) -> tuple[int, int, float, int]:
    video = entry.video
    return (video.width, video.height, video.frame_rate, video.bitrate)


def check_presets(presets: dict[QualityTier, QualityPreset]) -> None:
    """Raise ValueError if the ladder is not monotonic or a floor is inconsistent."""
    ordered = [presets[tier] for tier in sorted(presets, key=lambda tier: tier.rank)]
    for lower, upper in zip(ordered, ordered[1:]):
        if any(a > b for a, b in zip(_video_key(lower), _video_key(upper))):
            message = f"Preset {upper.tier.value} is below {lower.tier.value}"
            raise ValueError(message)
    for entry in ordered:
        video = entry.video
        if (
            entry.min_width > video.width
            or entry.min_height > video.height
            or entry.min_frame_rate > video.frame_rate
        ):
            message = f"Preset {entry.tier.value} floor exceeds its own constraints"
            raise ValueError(message)


check_presets(QUALITY_PRESETS)
