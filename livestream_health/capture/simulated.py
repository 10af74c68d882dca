"""In-memory capture backend for tests, demos and headless hosts."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any

from loguru import logger

from livestream_health.capture.core import (
    CaptureHandle,
    Constraints,
    constraints_kind,
    next_handle_id,
)
from livestream_health.errors import DeviceAcquisitionFailed, PermissionDenied
from livestream_health.types import CaptureDevice, DeviceKind


DEFAULT_CAMERA_CAPABILITIES: dict[str, Any] = {
    "width": {"min": 160, "max": 1920, "step": 1},
    "height": {"min": 120, "max": 1080, "step": 1},
    "frameRate": {"min": 1, "max": 60},
    "zoom": {"min": 1, "max": 4, "step": 0.1},
    "focusMode": ["continuous", "manual"],
    "exposureMode": ["continuous", "manual"],
    "whiteBalanceMode": ["continuous"],
    "facingMode": ["user"],
    "torch": [True, False],
}

DEFAULT_MICROPHONE_CAPABILITIES: dict[str, Any] = {
    "sampleRate": {"min": 8000, "max": 48000},
    "channelCount": {"min": 1, "max": 2},
    "echoCancellation": [True, False],
    "noiseSuppression": [True, False],
    "autoGainControl": [True, False],
}


@dataclass
class SimulatedDevice:
    """A fake device plus failure injection knobs."""

    device: CaptureDevice
    capabilities: dict[str, Any] | None = None
    fail_acquire: int = 0
    deny_permission: bool = False
    fail_apply: bool = False
    capabilities_error: Exception | None = None


class SimulatedCaptureBackend:
    """Capture backend that keeps devices and handles in memory.

    Records every acquire/release as ``(action, device_id)`` in ``events`` so
    callers can check ordering.
    """

    name = "simulated"

    def __init__(
        self,
        devices: list[SimulatedDevice] | None = None,
        *,
        capabilities_need_handle: bool = False,
        deny_enumeration: bool = False,
        latency_s: float = 0.0,
    ) -> None:
        self.capabilities_need_handle = capabilities_need_handle
        self.deny_enumeration = deny_enumeration
        self.latency_s = latency_s
        self._devices: dict[str, SimulatedDevice] = {}
        self.active: dict[str, CaptureHandle] = {}
        self.events: list[tuple[str, str]] = []
        for device in devices or []:
            self.add_device(device)

    @classmethod
    def with_defaults(cls, **kwargs: Any) -> SimulatedCaptureBackend:
        """Backend with a front camera, a back camera and one microphone."""
        return cls(
            [
                SimulatedDevice(
                    CaptureDevice("cam-back", DeviceKind.VIDEO, "Back Camera", "g1"),
                    dict(DEFAULT_CAMERA_CAPABILITIES, facingMode=["environment"]),
                ),
                SimulatedDevice(
                    CaptureDevice("cam-front", DeviceKind.VIDEO, "Front Camera", "g1"),
                    dict(DEFAULT_CAMERA_CAPABILITIES),
                ),
                SimulatedDevice(
                    CaptureDevice("mic-0", DeviceKind.AUDIO, "Built-in Microphone", "g1"),
                    dict(DEFAULT_MICROPHONE_CAPABILITIES),
                ),
            ],
            **kwargs,
        )

    def add_device(self, device: SimulatedDevice) -> None:
        self._devices[device.device.id] = device

    def remove_device(self, device_id: str) -> None:
        self._devices.pop(device_id, None)

    def device(self, device_id: str) -> SimulatedDevice:
        return self._devices[device_id]

    async def _pause(self) -> None:
        await asyncio.sleep(self.latency_s)

    async def enumerate_devices(self) -> list[CaptureDevice]:
        await self._pause()
        if self.deny_enumeration:
            message = "Device enumeration denied"
            raise PermissionDenied(message)
        return [entry.device for entry in self._devices.values()]

    async def acquire(self, constraints: Constraints) -> CaptureHandle:
        await self._pause()
        device_id = constraints.device_id
        entry = self._devices.get(device_id) if device_id else None
        if entry is None:
            message = f"Device not found: {device_id}"
            raise DeviceAcquisitionFailed(message)
        if entry.deny_permission:
            message = f"Permission denied for {entry.device.label}"
            raise PermissionDenied(message)
        if entry.fail_acquire > 0:
            entry.fail_acquire -= 1
            message = f"Could not start {entry.device.label}"
            raise DeviceAcquisitionFailed(message)
        if device_id in self.active:
            message = f"{entry.device.label} is already in use"
            raise DeviceAcquisitionFailed(message)

        handle = CaptureHandle(
            id=next_handle_id(),
            device_id=device_id,
            kind=constraints_kind(constraints),
            constraints=constraints,
        )
        self.active[device_id] = handle
        self.events.append(("acquire", device_id))
        logger.debug("Simulated acquire {} (handle {})", device_id, handle.id)
        return handle

    async def apply_constraints(
        self, handle: CaptureHandle, constraints: Constraints
    ) -> CaptureHandle:
        await self._pause()
        entry = self._devices.get(handle.device_id)
        if handle.released or entry is None:
            message = f"Handle {handle.id} is not live"
            raise DeviceAcquisitionFailed(message)
        if entry.fail_apply:
            message = f"{entry.device.label} rejected the new constraints"
            raise DeviceAcquisitionFailed(message)
        handle.constraints = replace(constraints, device_id=handle.device_id)
        self.events.append(("apply", handle.device_id))
        return handle

    def release(self, handle: CaptureHandle) -> None:
        if handle.released:
            return
        handle.released = True
        if self.active.get(handle.device_id) is handle:
            del self.active[handle.device_id]
        self.events.append(("release", handle.device_id))
        logger.debug("Simulated release {} (handle {})", handle.device_id, handle.id)

    async def get_capabilities(
        self,
        device_id: str,
        handle: CaptureHandle | None = None,
    ) -> dict[str, Any] | None:
        await self._pause()
        entry = self._devices.get(device_id)
        if entry is None:
            return None
        if self.capabilities_need_handle and (
            handle is None or handle.released or handle.device_id != device_id
        ):
            message = f"Capabilities of {device_id} need an open handle"
            raise DeviceAcquisitionFailed(message)
        if entry.capabilities_error is not None:
            raise entry.capabilities_error
        return entry.capabilities
