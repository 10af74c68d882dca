"""Unit tests for the session lifecycle controller."""

import asyncio
from unittest.mock import Mock

import pytest

from livestream_health.capture.simulated import SimulatedCaptureBackend
from livestream_health.devices.prober import CapabilityProber
from livestream_health.devices.registry import DeviceRegistry
from livestream_health.errors import (
    DeviceAcquisitionFailed,
    NoViableConstraints,
    PermissionDenied,
    SessionAlreadyTerminal,
)
from livestream_health.session import StreamSessionController
from livestream_health.types import (
    DeviceKind,
    QualityTier,
    SessionStatus,
    VideoConstraints,
)


def make_controller(backend, **kwargs):
    registry = DeviceRegistry(backend, CapabilityProber(backend))
    return StreamSessionController("s", backend, registry, **kwargs)


class TestStart:
    """Tests for starting a session."""

    @pytest.mark.asyncio
    async def test_start_goes_active(self, controller, backend, clock):
        """Test a successful start acquires camera and microphone."""
        assert controller.status is SessionStatus.IDLE
        assert await controller.start() is True
        assert controller.status is SessionStatus.ACTIVE
        assert controller.session.started_at == clock.now
        assert controller.tier is QualityTier.HIGH
        assert controller.video_handle.device_id == "cam-front"
        assert controller.audio_handle.device_id == "mic-0"
        audio, video = controller.constraints
        assert (video.width, video.height, video.frame_rate) == (1920, 1080, 30)
        assert audio.sample_rate == 48000
        assert set(backend.active) == {"cam-front", "mic-0"}

    @pytest.mark.asyncio
    async def test_start_notifies_listeners(self, controller):
        """Test listeners see the idle -> active transition."""
        listener = Mock()
        controller.add_state_listener(listener)
        await controller.start()
        listener.assert_called_once_with(
            controller.session, SessionStatus.IDLE, SessionStatus.ACTIVE
        )

    @pytest.mark.asyncio
    async def test_start_falls_back_to_viable_tier(self, make_camera):
        """Test a VGA camera starts at the low tier."""
        backend = SimulatedCaptureBackend(
            [
                make_camera(
                    "cam",
                    "Webcam",
                    width={"min": 160, "max": 640},
                    height={"min": 120, "max": 480},
                    frameRate={"min": 1, "max": 30},
                )
            ]
        )
        controller = make_controller(backend)
        await controller.start(QualityTier.ULTRA)
        assert controller.tier is QualityTier.LOW
        assert controller.audio_handle is None

    @pytest.mark.asyncio
    async def test_start_without_camera(self):
        """Test no camera means no viable constraints and a dead session."""
        controller = make_controller(SimulatedCaptureBackend())
        with pytest.raises(NoViableConstraints):
            await controller.start()
        assert controller.status is SessionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_start_camera_below_floor(self, make_camera):
        """Test a camera below every tier floor is rejected."""
        backend = SimulatedCaptureBackend(
            [make_camera("cam", "Tiny", width={"min": 80, "max": 160}, height={"min": 60, "max": 120})]
        )
        controller = make_controller(backend)
        with pytest.raises(NoViableConstraints):
            await controller.start()
        assert controller.status is SessionStatus.DISCONNECTED
        assert backend.active == {}

    @pytest.mark.asyncio
    async def test_start_permission_denied(self, controller, backend):
        """Test permission denial ends the session and propagates."""
        backend.device("cam-front").deny_permission = True
        with pytest.raises(PermissionDenied):
            await controller.start()
        assert controller.status is SessionStatus.DISCONNECTED
        assert isinstance(controller.last_error, PermissionDenied)

    @pytest.mark.asyncio
    async def test_start_retries_transient_failure(self, controller, backend):
        """Test one transient failure is retried with the same device."""
        backend.device("cam-front").fail_acquire = 1
        await controller.start()
        assert controller.status is SessionStatus.ACTIVE
        assert controller.video_handle.device_id == "cam-front"

    @pytest.mark.asyncio
    async def test_start_retries_exhausted(self, controller, backend):
        """Test exhausted retries raise and release what was acquired."""
        backend.device("mic-0").fail_acquire = 5
        with pytest.raises(DeviceAcquisitionFailed):
            await controller.start()
        assert controller.status is SessionStatus.DISCONNECTED
        assert backend.active == {}

    @pytest.mark.asyncio
    async def test_start_on_disconnected_is_noop(self, controller, backend):
        """Test a terminal session cannot be restarted."""
        controller.stop()
        assert await controller.start() is False
        assert backend.events == []

    @pytest.mark.asyncio
    async def test_start_twice(self, controller, backend):
        """Test starting an active session acquires nothing new."""
        await controller.start()
        events = list(backend.events)
        assert await controller.start() is True
        assert backend.events == events

    @pytest.mark.asyncio
    async def test_overlapping_starts(self, controller, backend):
        """Test a second start racing the first leaves the session active."""
        backend.latency_s = 0.01
        results = await asyncio.gather(controller.start(), controller.start())
        assert results == [True, True]
        assert controller.status is SessionStatus.ACTIVE
        assert controller.disconnect_reason is None
        assert backend.active.keys() == {"cam-front", "mic-0"}


class TestSwitchDevice:
    """Tests for switching devices mid-session."""

    @pytest.mark.asyncio
    async def test_switch_acquires_before_release(self, controller, backend):
        """Test the new camera is acquired before the old one is released."""
        await controller.start()
        backend.events.clear()
        device = await controller.switch_device(DeviceKind.VIDEO)
        assert device.id == "cam-back"
        assert backend.events == [("acquire", "cam-back"), ("release", "cam-front")]
        assert controller.video_handle.device_id == "cam-back"
        assert controller.audio_handle.device_id == "mic-0"
        assert controller.registry.selected(DeviceKind.VIDEO).id == "cam-back"

    @pytest.mark.asyncio
    async def test_switch_drops_unsupported_facing_mode(self, controller):
        """Test the back camera does not get the user facing mode."""
        await controller.start()
        await controller.switch_device(DeviceKind.VIDEO, "cam-back")
        _, video = controller.constraints
        assert video.facing_mode is None
        assert video.device_id == "cam-back"

    @pytest.mark.asyncio
    async def test_failed_switch_keeps_old_device(self, controller, backend):
        """Test a failing target leaves the session on the old camera."""
        await controller.start()
        constraints_before = controller.constraints
        handle_before = controller.video_handle
        backend.device("cam-back").fail_acquire = 10
        with pytest.raises(DeviceAcquisitionFailed):
            await controller.switch_device(DeviceKind.VIDEO, "cam-back")
        assert controller.status is SessionStatus.ACTIVE
        assert controller.video_handle is handle_before
        assert not handle_before.released
        assert controller.constraints == constraints_before
        assert controller.registry.selected(DeviceKind.VIDEO).id == "cam-front"

    @pytest.mark.asyncio
    async def test_switch_same_device(self, controller, backend):
        """Test switching to the current camera does nothing."""
        await controller.start()
        backend.events.clear()
        await controller.switch_device(DeviceKind.VIDEO, "cam-front")
        assert backend.events == []

    @pytest.mark.asyncio
    async def test_switch_when_idle_only_selects(self, controller, backend):
        """Test an idle switch records the selection without acquiring."""
        await controller.registry.refresh()
        await controller.switch_device(DeviceKind.VIDEO, "cam-back")
        assert backend.events == []
        await controller.start()
        assert controller.video_handle.device_id == "cam-back"

    @pytest.mark.asyncio
    async def test_switch_when_disconnected(self, controller):
        """Test switching on a terminal session raises."""
        await controller.start()
        controller.stop()
        with pytest.raises(SessionAlreadyTerminal):
            await controller.switch_device(DeviceKind.VIDEO)


class TestQuality:
    """Tests for quality changes on a live session."""

    @pytest.mark.asyncio
    async def test_apply_preset_in_place(self, controller, backend):
        """Test a new tier is applied to the held handles."""
        await controller.start()
        handle = controller.video_handle
        tier = await controller.apply_quality_preset(QualityTier.MEDIUM)
        assert tier is QualityTier.MEDIUM
        assert controller.video_handle is handle
        _, video = controller.constraints
        assert (video.width, video.height) == (1280, 720)
        assert ("acquire", "cam-back") not in backend.events

    @pytest.mark.asyncio
    async def test_apply_preset_with_overrides(self, controller):
        """Test overrides ride along with the preset."""
        await controller.start()
        await controller.apply_quality_preset(
            QualityTier.LOW, video_overrides=VideoConstraints(zoom=2.0)
        )
        _, video = controller.constraints
        assert video.zoom == pytest.approx(2.0)
        assert video.width == 640

    @pytest.mark.asyncio
    async def test_apply_preset_rejected(self, controller, backend):
        """Test rejected constraints keep the previous ones."""
        await controller.start()
        before = controller.constraints
        backend.device("mic-0").fail_apply = True
        with pytest.raises(DeviceAcquisitionFailed):
            await controller.apply_quality_preset(QualityTier.LOW)
        assert controller.constraints == before
        assert controller.tier is QualityTier.HIGH

    @pytest.mark.asyncio
    async def test_apply_preset_idle(self, controller, backend):
        """Test an idle session records the tier for the next start."""
        await controller.apply_quality_preset(QualityTier.MEDIUM)
        assert backend.events == []
        await controller.start()
        assert controller.tier is QualityTier.MEDIUM

    @pytest.mark.asyncio
    async def test_downgrade_one_step(self, controller):
        """Test downgrade walks down one tier at a time."""
        await controller.start(QualityTier.HIGH)
        assert await controller.downgrade() is QualityTier.MEDIUM
        assert await controller.downgrade() is QualityTier.LOW
        assert await controller.downgrade() is None
        assert controller.tier is QualityTier.LOW

    @pytest.mark.asyncio
    async def test_downgrade_idle(self, controller):
        """Test downgrade on an idle session is a no-op."""
        assert await controller.downgrade() is None


class TestTermination:
    """Tests for stop and disconnect."""

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, controller, backend):
        """Test stop releases both handles and ends the session."""
        await controller.start()
        controller.stop()
        assert controller.status is SessionStatus.DISCONNECTED
        assert backend.active == {}
        assert controller.video_handle is None
        assert controller.disconnect_reason == "stopped"

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, controller):
        """Test listeners hear about the terminal transition once."""
        listener = Mock()
        await controller.start()
        controller.add_state_listener(listener)
        controller.stop()
        controller.stop()
        controller.disconnect("again")
        listener.assert_called_once()
        assert controller.disconnect_reason == "stopped"

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_transition(self, controller):
        """Test a failing listener does not stop later listeners."""
        seen = []
        controller.add_state_listener(Mock(side_effect=RuntimeError("boom")))
        controller.add_state_listener(lambda session, old, new: seen.append(new))
        await controller.start()
        assert seen == [SessionStatus.ACTIVE]

    @pytest.mark.asyncio
    async def test_lost_camera_disconnects(self, controller, backend):
        """Test losing the camera mid-session ends it."""
        await controller.start()
        backend.remove_device("cam-front")
        await controller.refresh_devices()
        assert controller.status is SessionStatus.DISCONNECTED
        assert "cam-front" in controller.disconnect_reason

    @pytest.mark.asyncio
    async def test_lost_microphone_continues(self, controller, backend):
        """Test losing the microphone keeps the video running."""
        await controller.start()
        backend.remove_device("mic-0")
        await controller.refresh_devices()
        assert controller.status is SessionStatus.ACTIVE
        assert controller.audio_handle is None
        assert "mic-0" not in backend.active
