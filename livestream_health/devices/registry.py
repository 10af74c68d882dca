"""Cached, labelled view of the available capture devices."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

from loguru import logger

from livestream_health.errors import UnknownDevice
from livestream_health.types import CaptureDevice, DeviceKind


if TYPE_CHECKING:
    from livestream_health.capture.core import CaptureBackend, CaptureHandle
    from livestream_health.devices.prober import CapabilityProber
    from livestream_health.types import DeviceCapabilities


FRONT_CAMERA_HINTS = ("front", "user")

_FALLBACK_LABELS = {DeviceKind.VIDEO: "Camera", DeviceKind.AUDIO: "Microphone"}


class DeviceRegistry:
    """Enumerate devices and remember the selection for each kind."""

    def __init__(self, backend: CaptureBackend, prober: CapabilityProber) -> None:
        self.backend = backend
        self.prober = prober
        self._devices: dict[str, CaptureDevice] = {}
        self._selected: dict[DeviceKind, str] = {}
        self._capabilities: dict[str, DeviceCapabilities | None] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def refresh(self) -> list[CaptureDevice]:
        """Re-enumerate devices, matching existing entries by id only.

        Enumeration failures leave an empty list; callers treat that as
        "no usable hardware".
        """
        try:
            enumerated = await self.backend.enumerate_devices()
        except Exception as exc:
            logger.warning("Device enumeration failed: {}", exc)
            enumerated = []

        previous = self._devices
        devices: dict[str, CaptureDevice] = {}
        counters = dict.fromkeys(DeviceKind, 0)
        for device in enumerated:
            counters[device.kind] += 1
            if not device.label:
                label = f"{_FALLBACK_LABELS[device.kind]} {counters[device.kind]}"
                device = replace(device, label=label)
            known = previous.get(device.id)
            devices[device.id] = known if known == device else device

        added = devices.keys() - previous.keys()
        removed = previous.keys() - devices.keys()
        if added or removed:
            logger.info(
                "Devices changed: +{} -{}", sorted(added), sorted(removed)
            )

        self._devices = devices
        self._capabilities.clear()
        for kind in DeviceKind:
            current = self._selected.get(kind)
            if current not in devices:
                default = self.default_device(kind)
                if default is None:
                    self._selected.pop(kind, None)
                else:
                    self._selected[kind] = default.id
        self._loaded = True
        return list(devices.values())

    def list_devices(self, kind: DeviceKind) -> list[CaptureDevice]:
        """Return cached devices of one kind in enumeration order."""
        return [device for device in self._devices.values() if device.kind is kind]

    def get(self, device_id: str) -> CaptureDevice | None:
        return self._devices.get(device_id)

    def default_device(self, kind: DeviceKind) -> CaptureDevice | None:
        """Prefer a front/user-facing camera, otherwise the first device."""
        devices = self.list_devices(kind)
        if not devices:
            return None
        if kind is DeviceKind.VIDEO:
            for device in devices:
                label = device.label.lower()
                if any(hint in label for hint in FRONT_CAMERA_HINTS):
                    return device
        return devices[0]

    def selected(self, kind: DeviceKind) -> CaptureDevice | None:
        device_id = self._selected.get(kind)
        return self._devices.get(device_id) if device_id else None

    def select(self, kind: DeviceKind, device_id: str) -> CaptureDevice:
        device = self._devices.get(device_id)
        if device is None or device.kind is not kind:
            raise UnknownDevice(device_id)
        self._selected[kind] = device_id
        return device

    def next_device(
        self, kind: DeviceKind, current_id: str | None
    ) -> CaptureDevice | None:
        """Return the device after current_id, wrapping around."""
        devices = self.list_devices(kind)
        if not devices:
            return None
        ids = [device.id for device in devices]
        if current_id not in ids:
            return devices[0]
        return devices[(ids.index(current_id) + 1) % len(devices)]

    async def capabilities(
        self,
        device_id: str,
        handle: CaptureHandle | None = None,
    ) -> DeviceCapabilities | None:
        """Probe a device once per enumeration."""
        if device_id in self._capabilities:
            return self._capabilities[device_id]
        device = self._devices.get(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        capabilities = await self.prober.probe(device_id, device.kind, handle)
        self._capabilities[device_id] = capabilities
        return capabilities
