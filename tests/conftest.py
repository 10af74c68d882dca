"""Shared fixtures for the stream health tests."""

import asyncio

import pytest

from livestream_health.capture.simulated import (
    DEFAULT_CAMERA_CAPABILITIES,
    SimulatedCaptureBackend,
    SimulatedDevice,
)
from livestream_health.config import MonitorConfig
from livestream_health.devices.prober import CapabilityProber
from livestream_health.devices.registry import DeviceRegistry
from livestream_health.monitoring.monitor import HealthMonitor
from livestream_health.monitoring.sampler import HealthSampler
from livestream_health.monitoring.sources import ScriptedStatsSource, healthy_stats
from livestream_health.session import StreamSessionController
from livestream_health.types import CaptureDevice, DeviceKind


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, timeout: float = 1.0, step: float = 0.005) -> bool:
    """Poll predicate until it holds or timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(step)
    return True


def camera(device_id: str, label: str, **caps) -> SimulatedDevice:
    """A simulated camera with default capabilities overridden by caps."""
    return SimulatedDevice(
        CaptureDevice(device_id, DeviceKind.VIDEO, label),
        dict(DEFAULT_CAMERA_CAPABILITIES, **caps),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return SimulatedCaptureBackend.with_defaults()


@pytest.fixture
def registry(backend):
    return DeviceRegistry(backend, CapabilityProber(backend))


@pytest.fixture
def controller(backend, registry, clock):
    return StreamSessionController("stream-1", backend, registry, clock=clock)


@pytest.fixture
def source():
    return ScriptedStatsSource([healthy_stats()])


@pytest.fixture
def sampler(source, clock):
    return HealthSampler(source, timeout_s=0.5, clock=clock)


@pytest.fixture
def monitor(sampler):
    return HealthMonitor(sampler, MonitorConfig(interval_ms=1000))


@pytest.fixture
def until():
    return wait_until


@pytest.fixture
def make_camera():
    return camera
