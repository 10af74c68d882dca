"""Capability probing for capture devices."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger

from livestream_health.errors import PermissionDenied
from livestream_health.types import (
    AudioConstraints,
    DeviceCapabilities,
    DeviceKind,
    Range,
    VideoConstraints,
)


if TYPE_CHECKING:
    from livestream_health.capture.core import CaptureBackend, CaptureHandle


_RANGE_KEYS = {
    "width": "width",
    "height": "height",
    "frameRate": "frame_rate",
    "zoom": "zoom",
    "brightness": "brightness",
    "contrast": "contrast",
    "saturation": "saturation",
    "sampleRate": "sample_rate",
    "channelCount": "channel_count",
}

_MODE_KEYS = {
    "focusMode": "focus_modes",
    "exposureMode": "exposure_modes",
    "whiteBalanceMode": "white_balance_modes",
    "facingMode": "facing_modes",
}

_FLAG_KEYS = {
    "torch": "supports_torch",
    "echoCancellation": "supports_echo_cancellation",
    "noiseSuppression": "supports_noise_suppression",
    "autoGainControl": "supports_auto_gain_control",
}


def _parse_range(value: Any) -> Range | None:
    if isinstance(value, dict):
        low, high = value.get("min"), value.get("max")
        if low is None or high is None or high < low:
            return None
        return Range(float(low), float(high), value.get("step") or None)
    if isinstance(value, (list, tuple)) and value:
        numbers = [float(item) for item in value if isinstance(item, (int, float))]
        if numbers:
            return Range(min(numbers), max(numbers))
    return None


def _parse_flag(value: Any) -> bool:
    # Browsers report supported booleans as the list of settable values.
    if isinstance(value, (list, tuple)):
        return True in value
    return bool(value)


def parse_capabilities(device_id: str, raw: dict[str, Any] | None) -> DeviceCapabilities:
    """Convert a raw capability mapping into DeviceCapabilities."""
    values: dict[str, Any] = {}
    for key, value in (raw or {}).items():
        if key in _RANGE_KEYS:
            values[_RANGE_KEYS[key]] = _parse_range(value)
        elif key in _MODE_KEYS:
            modes = value if isinstance(value, (list, tuple)) else [value]
            values[_MODE_KEYS[key]] = tuple(str(mode) for mode in modes if mode)
        elif key in _FLAG_KEYS:
            values[_FLAG_KEYS[key]] = _parse_flag(value)
    return DeviceCapabilities(device_id=device_id, **values)


class CapabilityProber:
    """Query a device's supported constraint ranges."""

    def __init__(self, backend: CaptureBackend) -> None:
        self.backend = backend

    async def probe(
        self,
        device_id: str,
        kind: DeviceKind = DeviceKind.VIDEO,
        handle: CaptureHandle | None = None,
    ) -> DeviceCapabilities | None:
        """Return the device's capabilities, or None when unavailable.

        When the backend needs an open stream and no handle for this device is
        supplied, a temporary handle is acquired and always released.
        """
        owned: CaptureHandle | None = None
        if handle is not None and handle.device_id != device_id:
            handle = None
        try:
            if handle is None and self.backend.capabilities_need_handle:
                constraints = (
                    VideoConstraints(device_id=device_id)
                    if kind is DeviceKind.VIDEO
                    else AudioConstraints(device_id=device_id)
                )
                owned = await self.backend.acquire(constraints)
                handle = owned
            raw = await self.backend.get_capabilities(device_id, handle)
        except PermissionDenied:
            raise
        except Exception as exc:
            logger.warning("Capabilities unavailable for {}: {}", device_id, exc)
            return None
        finally:
            if owned is not None:
                self.backend.release(owned)

        if raw is None:
            return None
        capabilities = parse_capabilities(device_id, raw)
        logger.debug("Probed {}: {}", device_id, capabilities)
        return capabilities
