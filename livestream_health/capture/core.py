"""Capture backend abstraction shared by all platforms."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, Union

from livestream_health.types import AudioConstraints, DeviceKind, VideoConstraints


if TYPE_CHECKING:
    from livestream_health.types import CaptureDevice


Constraints = Union[AudioConstraints, VideoConstraints]

_handle_ids = itertools.count(1)


def next_handle_id() -> int:
    """Return a process-unique capture handle id."""
    return next(_handle_ids)


def constraints_kind(constraints: Constraints) -> DeviceKind:
    """Return the device kind a constraint bundle targets."""
    if isinstance(constraints, AudioConstraints):
        return DeviceKind.AUDIO
    return DeviceKind.VIDEO


@dataclass
class CaptureHandle:
    """An owned, live capture session on a single device.

    Exactly one owner holds a handle at a time; ownership moves with it on
    every device switch. Backends that touch ``resource`` from worker
    threads hold ``lock`` while doing so, and ``release`` takes it too.
    """

    id: int
    device_id: str
    kind: DeviceKind
    constraints: Constraints
    resource: Any = None
    released: bool = False
    lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )


class CaptureBackend(Protocol):
    """Device capture API consumed by the registry, prober and session."""

    name: str
    capabilities_need_handle: bool

    async def enumerate_devices(self) -> list[CaptureDevice]:
        """Return every available audio and video input device."""
        ...

    async def acquire(self, constraints: Constraints) -> CaptureHandle:
        """Open a capture handle on constraints.device_id."""
        ...

    async def apply_constraints(
        self, handle: CaptureHandle, constraints: Constraints
    ) -> CaptureHandle:
        """Change the constraints of an open handle in place."""
        ...

    def release(self, handle: CaptureHandle) -> None:
        """Close a handle; releasing twice is harmless."""
        ...

    async def get_capabilities(
        self,
        device_id: str,
        handle: CaptureHandle | None = None,
    ) -> dict[str, Any] | None:
        """Return the raw capability mapping of a device."""
        ...
