"""Reconcile requested constraint bundles with device capabilities."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Any

from loguru import logger

from livestream_health.errors import NoViableConstraints
from livestream_health.negotiation.presets import QUALITY_PRESETS, check_presets
from livestream_health.types import (
    AudioConstraints,
    DeviceKind,
    NegotiationNote,
    QualityTier,
    VideoConstraints,
)


if TYPE_CHECKING:
    from livestream_health.types import DeviceCapabilities, QualityPreset, Range


# Kept as requested when the device advertises no range for them.
_CORE_VIDEO_RANGES = ("width", "height", "frame_rate")
# Dropped when the device advertises no range for them.
_EXTENDED_VIDEO_RANGES = ("zoom", "brightness", "contrast", "saturation")
_VIDEO_MODES = {
    "facing_mode": "facing_modes",
    "focus_mode": "focus_modes",
    "exposure_mode": "exposure_modes",
    "white_balance_mode": "white_balance_modes",
}
_VIDEO_FLAGS = {"torch": "supports_torch"}

_CORE_AUDIO_RANGES = ("sample_rate", "channel_count")
_AUDIO_FLAGS = {
    "echo_cancellation": "supports_echo_cancellation",
    "noise_suppression": "supports_noise_suppression",
    "auto_gain_control": "supports_auto_gain_control",
}

_INT_FIELDS = {"width", "height", "sample_rate", "channel_count"}

NegotiatedPair = tuple[AudioConstraints | None, VideoConstraints | None]


class ConstraintNegotiator:
    """Clamp requests to device capabilities and walk the quality ladder."""

    def __init__(self, presets: dict[QualityTier, QualityPreset] | None = None) -> None:
        self.presets = presets or QUALITY_PRESETS
        check_presets(self.presets)
        self._order = sorted(self.presets, key=lambda tier: tier.rank)

    @property
    def lowest_tier(self) -> QualityTier:
        return self._order[0]

    def lower_tier(self, tier: QualityTier) -> QualityTier | None:
        index = self._order.index(tier)
        return self._order[index - 1] if index > 0 else None

    def negotiate(
        self,
        audio: AudioConstraints | None,
        video: VideoConstraints | None,
        video_caps: DeviceCapabilities | None = None,
        audio_caps: DeviceCapabilities | None = None,
        diagnostics: list[NegotiationNote] | None = None,
    ) -> NegotiatedPair:
        """Return the device-valid version of the requested bundles.

        Numeric fields are clamped into the advertised ranges, unsupported
        modes and flags are dropped. Capabilities of None pass a bundle
        through unchanged.
        """
        notes = diagnostics if diagnostics is not None else []
        if not self.is_viable(self.lowest_tier, video_caps):
            message = (
                f"Camera {video_caps.device_id} cannot reach the "
                f"{self.lowest_tier.value} tier floor"
            )
            raise NoViableConstraints(message)

        effective_video = (
            self._negotiate_video(video, video_caps, notes)
            if video is not None and video_caps is not None
            else video
        )
        effective_audio = (
            self._negotiate_audio(audio, audio_caps, notes)
            if audio is not None and audio_caps is not None
            else audio
        )
        for note in notes:
            logger.debug(
                "{} {} {}: {!r} -> {!r}",
                note.kind.value,
                note.field,
                note.reason,
                note.requested,
                note.effective,
            )
        return effective_audio, effective_video

    def is_viable(
        self, tier: QualityTier, video_caps: DeviceCapabilities | None
    ) -> bool:
        """Return True if the camera can reach the tier's floor."""
        if video_caps is None:
            return True
        floor = self.presets[tier]
        checks = (
            (video_caps.width, floor.min_width),
            (video_caps.height, floor.min_height),
            (video_caps.frame_rate, floor.min_frame_rate),
        )
        return all(rng is None or rng.max >= minimum for rng, minimum in checks)

    def negotiate_tier(
        self,
        tier: QualityTier,
        video_caps: DeviceCapabilities | None = None,
        audio_caps: DeviceCapabilities | None = None,
        audio_overrides: AudioConstraints | None = None,
        video_overrides: VideoConstraints | None = None,
        diagnostics: list[NegotiationNote] | None = None,
    ) -> tuple[QualityTier, AudioConstraints | None, VideoConstraints | None]:
        """Pick the highest viable tier at or below the requested one."""
        candidate: QualityTier | None = tier
        while candidate is not None:
            if self.is_viable(candidate, video_caps):
                if candidate is not tier:
                    logger.info(
                        "Quality {} not reachable on this camera, using {}",
                        tier.value,
                        candidate.value,
                    )
                return self._negotiate_preset(
                    candidate,
                    video_caps,
                    audio_caps,
                    audio_overrides,
                    video_overrides,
                    diagnostics,
                )
            candidate = self.lower_tier(candidate)

        message = f"No quality tier is viable on camera {video_caps.device_id}"
        raise NoViableConstraints(message)

    def downgrade(
        self,
        current: QualityTier,
        video_caps: DeviceCapabilities | None = None,
        audio_caps: DeviceCapabilities | None = None,
        audio_overrides: AudioConstraints | None = None,
        video_overrides: VideoConstraints | None = None,
        diagnostics: list[NegotiationNote] | None = None,
    ) -> tuple[QualityTier, AudioConstraints | None, VideoConstraints | None] | None:
        """Step exactly one tier down; None when already at the lowest tier."""
        target = self.lower_tier(current)
        if target is None:
            logger.info("Already at the lowest quality tier ({})", current.value)
            return None
        if not self.is_viable(target, video_caps):
            message = f"Quality {target.value} is not viable on this camera"
            raise NoViableConstraints(message)
        logger.info("Downgrading quality {} -> {}", current.value, target.value)
        return self._negotiate_preset(
            target,
            video_caps,
            audio_caps,
            audio_overrides,
            video_overrides,
            diagnostics,
        )

    def _negotiate_preset(
        self,
        tier: QualityTier,
        video_caps: DeviceCapabilities | None,
        audio_caps: DeviceCapabilities | None,
        audio_overrides: AudioConstraints | None,
        video_overrides: VideoConstraints | None,
        diagnostics: list[NegotiationNote] | None,
    ) -> tuple[QualityTier, AudioConstraints | None, VideoConstraints | None]:
        entry = self.presets[tier]
        audio, video = self.negotiate(
            entry.audio.merged(audio_overrides),
            entry.video.merged(video_overrides),
            video_caps,
            audio_caps,
            diagnostics,
        )
        return tier, audio, video

    def _negotiate_video(
        self,
        video: VideoConstraints,
        caps: DeviceCapabilities,
        notes: list[NegotiationNote],
    ) -> VideoConstraints:
        changes: dict[str, Any] = {}
        for name in _CORE_VIDEO_RANGES:
            self._clamp_field(DeviceKind.VIDEO, video, caps, name, changes, notes, drop=False)
        for name in _EXTENDED_VIDEO_RANGES:
            self._clamp_field(DeviceKind.VIDEO, video, caps, name, changes, notes, drop=True)
        for name, modes_attr in _VIDEO_MODES.items():
            requested = getattr(video, name)
            if requested is not None and requested not in getattr(caps, modes_attr):
                self._drop(DeviceKind.VIDEO, name, requested, changes, notes)
        for name, flag_attr in _VIDEO_FLAGS.items():
            requested = getattr(video, name)
            if requested is not None and not getattr(caps, flag_attr):
                self._drop(DeviceKind.VIDEO, name, requested, changes, notes)
        return replace(video, **changes) if changes else video

    def _negotiate_audio(
        self,
        audio: AudioConstraints,
        caps: DeviceCapabilities,
        notes: list[NegotiationNote],
    ) -> AudioConstraints:
        changes: dict[str, Any] = {}
        for name in _CORE_AUDIO_RANGES:
            self._clamp_field(DeviceKind.AUDIO, audio, caps, name, changes, notes, drop=False)
        for name, flag_attr in _AUDIO_FLAGS.items():
            requested = getattr(audio, name)
            if requested is not None and not getattr(caps, flag_attr):
                self._drop(DeviceKind.AUDIO, name, requested, changes, notes)
        return replace(audio, **changes) if changes else audio

    @staticmethod
    def _clamp_field(
        kind: DeviceKind,
        bundle: AudioConstraints | VideoConstraints,
        caps: DeviceCapabilities,
        name: str,
        changes: dict[str, Any],
        notes: list[NegotiationNote],
        *,
        drop: bool,
    ) -> None:
        requested = getattr(bundle, name)
        if requested is None:
            return
        rng: Range | None = getattr(caps, name)
        if rng is None:
            if drop:
                ConstraintNegotiator._drop(kind, name, requested, changes, notes)
            return
        effective = rng.clamp_int(requested) if name in _INT_FIELDS else rng.clamp(requested)
        if effective != requested:
            changes[name] = effective
            notes.append(NegotiationNote(kind, name, requested, effective, "clamped"))

    @staticmethod
    def _drop(
        kind: DeviceKind,
        name: str,
        requested: Any,
        changes: dict[str, Any],
        notes: list[NegotiationNote],
    ) -> None:
        changes[name] = None
        notes.append(NegotiationNote(kind, name, requested, None, "unsupported"))
