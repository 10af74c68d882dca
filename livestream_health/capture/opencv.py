"""OpenCV capture backend for locally attached cameras."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import replace
from typing import Any

import cv2
from loguru import logger

from livestream_health.capture.core import (
    CaptureHandle,
    Constraints,
    constraints_kind,
    next_handle_id,
)
from livestream_health.errors import DeviceAcquisitionFailed, StatsUnavailable
from livestream_health.types import (
    CaptureDevice,
    DeviceKind,
    RawStreamStats,
    VideoConstraints,
    VideoMetrics,
)


# Requested when probing so the driver reports its maximum mode.
_PROBE_WIDTH = 7680
_PROBE_HEIGHT = 4320

_ADJUSTABLE_PROPS = {
    "brightness": cv2.CAP_PROP_BRIGHTNESS,
    "contrast": cv2.CAP_PROP_CONTRAST,
    "saturation": cv2.CAP_PROP_SATURATION,
}


class OpenCVCaptureBackend:
    """Camera access through cv2.VideoCapture.

    OpenCV exposes no microphones and reports only current property values,
    so capability ranges are best-effort and need an open handle.
    """

    name = "opencv"
    capabilities_need_handle = True

    def __init__(self, max_devices: int = 4) -> None:
        self.max_devices = max_devices

    async def enumerate_devices(self) -> list[CaptureDevice]:
        indices = await asyncio.to_thread(self._scan_indices)
        return [
            CaptureDevice(
                id=str(index),
                kind=DeviceKind.VIDEO,
                label=f"Camera {index}",
            )
            for index in indices
        ]

    def _scan_indices(self) -> list[int]:
        found = []
        for index in range(self.max_devices):
            cap = cv2.VideoCapture(index)
            try:
                if cap.isOpened():
                    found.append(index)
            finally:
                cap.release()
        logger.debug("OpenCV found camera indices: {}", found)
        return found

    async def acquire(self, constraints: Constraints) -> CaptureHandle:
        if constraints_kind(constraints) is not DeviceKind.VIDEO:
            message = "OpenCV backend cannot capture audio"
            raise DeviceAcquisitionFailed(message)
        if constraints.device_id is None:
            message = "No camera selected"
            raise DeviceAcquisitionFailed(message)
        return await asyncio.to_thread(self._open, constraints)

    def _open(self, constraints: VideoConstraints) -> CaptureHandle:
        logger.info("Opening camera {} with OpenCV...", constraints.device_id)
        cap = cv2.VideoCapture(int(constraints.device_id))
        if not cap.isOpened():
            cap.release()
            message = f"Cannot open camera {constraints.device_id} with OpenCV"
            raise DeviceAcquisitionFailed(message)

        self._configure(cap, constraints)
        actual = self._read_back(cap, constraints)
        logger.success(
            "Camera opened: {}x{} @ {:.1f} FPS",
            actual.width,
            actual.height,
            actual.frame_rate or 0.0,
        )
        return CaptureHandle(
            id=next_handle_id(),
            device_id=constraints.device_id,
            kind=DeviceKind.VIDEO,
            constraints=actual,
            resource=cap,
        )

    @staticmethod
    def _configure(cap: cv2.VideoCapture, constraints: VideoConstraints) -> None:
        if constraints.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        if constraints.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        if constraints.frame_rate:
            cap.set(cv2.CAP_PROP_FPS, constraints.frame_rate)
        for field_name, prop in _ADJUSTABLE_PROPS.items():
            value = getattr(constraints, field_name)
            if value is not None:
                cap.set(prop, value)
        with suppress(Exception):
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

    @staticmethod
    def _read_back(
        cap: cv2.VideoCapture, constraints: VideoConstraints
    ) -> VideoConstraints:
        return replace(
            constraints,
            width=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            height=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            frame_rate=float(cap.get(cv2.CAP_PROP_FPS)) or constraints.frame_rate,
        )

    async def apply_constraints(
        self, handle: CaptureHandle, constraints: Constraints
    ) -> CaptureHandle:
        def _apply() -> VideoConstraints:
            with handle.lock:
                cap = handle.resource
                if handle.released or cap is None or not cap.isOpened():
                    message = f"Camera handle {handle.id} is not open"
                    raise DeviceAcquisitionFailed(message)
                self._configure(cap, constraints)
                return self._read_back(cap, constraints)

        handle.constraints = replace(
            await asyncio.to_thread(_apply), device_id=handle.device_id
        )
        return handle

    def release(self, handle: CaptureHandle) -> None:
        # Waits for a grab or probe running in a worker thread to finish.
        with handle.lock:
            if handle.released:
                return
            handle.released = True
            if handle.resource is not None:
                handle.resource.release()
                handle.resource = None
        logger.debug("Released camera {}", handle.device_id)

    async def get_capabilities(
        self,
        device_id: str,
        handle: CaptureHandle | None = None,
    ) -> dict[str, Any] | None:
        if handle is None or handle.released or handle.resource is None:
            message = f"Capabilities of camera {device_id} need an open handle"
            raise DeviceAcquisitionFailed(message)
        return await asyncio.to_thread(self._probe, handle)

    @classmethod
    def _probe(cls, handle: CaptureHandle) -> dict[str, Any]:
        with handle.lock:
            if handle.released or handle.resource is None:
                message = f"Camera handle {handle.id} was released"
                raise DeviceAcquisitionFailed(message)
            return cls._probe_open(handle.resource, handle.constraints)

    @staticmethod
    def _probe_open(cap: cv2.VideoCapture, current: VideoConstraints) -> dict[str, Any]:
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, _PROBE_WIDTH)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, _PROBE_HEIGHT)
        max_width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        max_height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        max_fps = float(cap.get(cv2.CAP_PROP_FPS))

        # Restore the mode the handle was opened with.
        if current.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, current.width)
        if current.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, current.height)

        raw: dict[str, Any] = {}
        if max_width > 0 and max_height > 0:
            raw["width"] = {"min": 1, "max": max_width}
            raw["height"] = {"min": 1, "max": max_height}
        if max_fps > 0:
            raw["frameRate"] = {"min": 1, "max": max_fps}
        for field_name, prop in _ADJUSTABLE_PROPS.items():
            # Drivers report -1 (or 0 with no backing control) when unsupported.
            if cap.get(prop) > 0:
                raw[field_name] = {"min": 0, "max": 255}
        return raw


class OpenCVStatsSource:
    """Local capture statistics for an OpenCV handle.

    There is no transport behind a bare camera, so network metrics and viewer
    counts stay zero; frames are grabbed once per read to track drops.
    """

    def __init__(self, codec: str = "raw") -> None:
        self.codec = codec
        self._grabbed: dict[int, int] = {}
        self._failed: dict[int, int] = {}

    async def read(self, handle: CaptureHandle | None) -> RawStreamStats:
        if handle is None or handle.released or handle.resource is None:
            message = "No open camera handle"
            raise StatsUnavailable(message)
        return await asyncio.to_thread(self._read, handle)

    def _read(self, handle: CaptureHandle) -> RawStreamStats:
        with handle.lock:
            if handle.released or handle.resource is None:
                message = f"Camera handle {handle.id} was released"
                raise StatsUnavailable(message)
            return self._read_open(handle)

    def _read_open(self, handle: CaptureHandle) -> RawStreamStats:
        cap = handle.resource
        if not cap.isOpened():
            return RawStreamStats(is_live=False)

        if cap.grab():
            self._grabbed[handle.id] = self._grabbed.get(handle.id, 0) + 1
        else:
            self._failed[handle.id] = self._failed.get(handle.id, 0) + 1

        failed = self._failed.get(handle.id, 0)
        total = self._grabbed.get(handle.id, 0) + failed
        return RawStreamStats(
            is_live=True,
            video=VideoMetrics(
                width=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
                height=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
                frame_rate=float(cap.get(cv2.CAP_PROP_FPS)),
                codec=self.codec,
                dropped_frames=failed,
                total_frames=total,
            ),
        )
