"""Lifecycle of one stream session: idle -> active -> disconnected."""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import TYPE_CHECKING

from loguru import logger

from livestream_health.errors import (
    DeviceAcquisitionFailed,
    NoViableConstraints,
    PermissionDenied,
    SessionAlreadyTerminal,
    UnknownDevice,
)
from livestream_health.logging import session_context
from livestream_health.negotiation.negotiator import ConstraintNegotiator
from livestream_health.types import (
    AudioConstraints,
    DeviceKind,
    QualityTier,
    SessionStatus,
    StreamSession,
    VideoConstraints,
)


if TYPE_CHECKING:
    from collections.abc import Callable

    from livestream_health.capture.core import CaptureBackend, CaptureHandle, Constraints
    from livestream_health.devices.registry import DeviceRegistry
    from livestream_health.types import CaptureDevice, NegotiationNote

    StateListener = Callable[[StreamSession, SessionStatus, SessionStatus], None]


class StreamSessionController:
    """Own the capture handles and state machine of a single stream.

    ``disconnected`` is terminal; a new stream needs a new controller.
    """

    def __init__(
        self,
        stream_id: str,
        backend: CaptureBackend,
        registry: DeviceRegistry,
        negotiator: ConstraintNegotiator | None = None,
        *,
        acquire_retries: int = 1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session = StreamSession(id=stream_id)
        self.backend = backend
        self.registry = registry
        self.negotiator = negotiator or ConstraintNegotiator()
        self.acquire_retries = acquire_retries
        self._clock = clock
        self._handles: dict[DeviceKind, CaptureHandle] = {}
        self._tier = QualityTier.HIGH
        self._audio_overrides: AudioConstraints | None = None
        self._video_overrides: VideoConstraints | None = None
        self._listeners: list[StateListener] = []
        self._lock = asyncio.Lock()
        self.diagnostics: list[NegotiationNote] = []
        self.last_error: Exception | None = None
        self.disconnect_reason: str | None = None

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def tier(self) -> QualityTier:
        return self._tier

    @property
    def video_handle(self) -> CaptureHandle | None:
        return self._handles.get(DeviceKind.VIDEO)

    @property
    def audio_handle(self) -> CaptureHandle | None:
        return self._handles.get(DeviceKind.AUDIO)

    @property
    def constraints(self) -> tuple[AudioConstraints | None, VideoConstraints | None]:
        """The (audio, video) constraints currently in effect."""
        audio = self.audio_handle.constraints if self.audio_handle else None
        video = self.video_handle.constraints if self.video_handle else None
        return audio, video

    def add_state_listener(self, listener: StateListener) -> None:
        """Call listener(session, old, new) synchronously on every transition."""
        self._listeners.append(listener)

    async def start(
        self,
        tier: QualityTier | None = None,
        audio_overrides: AudioConstraints | None = None,
        video_overrides: VideoConstraints | None = None,
    ) -> bool:
        """Acquire media and go active.

        Permission, constraint and acquisition failures end the session and
        are re-raised. Returns False when the session is already terminal.
        """
        with session_context(self.session_id):
            return await self._start(tier, audio_overrides, video_overrides)

    async def _start(
        self,
        tier: QualityTier | None,
        audio_overrides: AudioConstraints | None,
        video_overrides: VideoConstraints | None,
    ) -> bool:
        async with self._lock:
            # Overlapping calls wait here and see the first call's outcome.
            if self.status is SessionStatus.DISCONNECTED:
                logger.warning("Session {} already ended; start ignored", self.session_id)
                return False
            if self.status is SessionStatus.ACTIVE:
                return True

            if tier is not None:
                self._tier = tier
            if audio_overrides is not None:
                self._audio_overrides = audio_overrides
            if video_overrides is not None:
                self._video_overrides = video_overrides

            try:
                handles, tier_in_effect = await self._acquire_initial()
            except (PermissionDenied, NoViableConstraints, DeviceAcquisitionFailed) as exc:
                self.last_error = exc
                logger.error("Session {} failed to start: {}", self.session_id, exc)
                self._teardown(str(exc))
                raise

            if self.status is not SessionStatus.IDLE:
                for handle in handles.values():
                    self.backend.release(handle)
                logger.warning("Session {} stopped while starting", self.session_id)
                return False

            self._handles = handles
            self._tier = tier_in_effect
            self.session.started_at = self._clock()
            self._transition(SessionStatus.ACTIVE)
        return True

    async def _acquire_initial(self) -> tuple[dict[DeviceKind, CaptureHandle], QualityTier]:
        await self.registry.refresh()
        camera = self.registry.selected(DeviceKind.VIDEO)
        if camera is None:
            message = "No camera available"
            raise NoViableConstraints(message)
        microphone = self.registry.selected(DeviceKind.AUDIO)
        if microphone is None:
            logger.warning("No microphone available; streaming video only")

        video_caps = await self.registry.capabilities(camera.id)
        audio_caps = (
            await self.registry.capabilities(microphone.id) if microphone else None
        )
        self.diagnostics = []
        tier, audio, video = self.negotiator.negotiate_tier(
            self._tier,
            video_caps,
            audio_caps,
            self._audio_overrides,
            self._video_overrides,
            self.diagnostics,
        )

        handles: dict[DeviceKind, CaptureHandle] = {}
        handles[DeviceKind.VIDEO] = await self._acquire(
            replace(video, device_id=camera.id)
        )
        if microphone is not None and audio is not None:
            try:
                handles[DeviceKind.AUDIO] = await self._acquire(
                    replace(audio, device_id=microphone.id)
                )
            except BaseException:
                self.backend.release(handles[DeviceKind.VIDEO])
                raise
        logger.success(
            "Session {} acquired {} at {} quality",
            self.session_id,
            ", ".join(handle.device_id for handle in handles.values()),
            tier.value,
        )
        return handles, tier

    async def _acquire(self, constraints: Constraints) -> CaptureHandle:
        """Acquire with retries on transient failures."""
        attempts = self.acquire_retries + 1
        last_error: DeviceAcquisitionFailed | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.backend.acquire(constraints)
            except DeviceAcquisitionFailed as exc:
                last_error = exc
                logger.warning(
                    "Acquiring {} failed (attempt {}/{}): {}",
                    constraints.device_id,
                    attempt,
                    attempts,
                    exc,
                )
        raise last_error  # type: ignore[misc]

    async def switch_device(
        self, kind: DeviceKind, device_id: str | None = None
    ) -> CaptureDevice:
        """Move capture to another device, acquiring before releasing.

        With no device_id the next device of that kind is used. If the new
        device fails, the session stays on the old one and the error is
        re-raised.
        """
        if self.status is SessionStatus.DISCONNECTED:
            message = f"Session {self.session_id} already ended"
            raise SessionAlreadyTerminal(message)
        if not self.registry.loaded:
            await self.registry.refresh()

        async with self._lock:
            current = self._handles.get(kind)
            if device_id is None:
                selected = self.registry.selected(kind)
                current_id = current.device_id if current else (selected.id if selected else None)
                target = self.registry.next_device(kind, current_id)
            else:
                target = self.registry.get(device_id)
            if target is None or target.kind is not kind:
                raise UnknownDevice(device_id or kind.value)

            if self.status is SessionStatus.IDLE:
                return self.registry.select(kind, target.id)
            if current is not None and current.device_id == target.id:
                return target

            try:
                new_handle, tier = await self._acquire_replacement(kind, target)
            except Exception as exc:
                self.last_error = exc
                logger.warning(
                    "Switch to {} failed, staying on {}: {}",
                    target.label,
                    current.device_id if current else "no device",
                    exc,
                )
                raise

            if self.status is not SessionStatus.ACTIVE:
                self.backend.release(new_handle)
                message = f"Session {self.session_id} ended during device switch"
                raise SessionAlreadyTerminal(message)

            self._handles[kind] = new_handle
            self._tier = tier
            self.registry.select(kind, target.id)
            if current is not None:
                self.backend.release(current)
            logger.info("Session {} switched {} to {}", self.session_id, kind.value, target.label)
            return target

    async def _acquire_replacement(
        self, kind: DeviceKind, target: CaptureDevice
    ) -> tuple[CaptureHandle, QualityTier]:
        caps = await self.registry.capabilities(target.id)
        if kind is DeviceKind.VIDEO:
            tier, _, video = self.negotiator.negotiate_tier(
                self._tier, caps, None, None, self._video_overrides
            )
            constraints: Constraints = replace(video, device_id=target.id)
        else:
            tier = self._tier
            requested = self.negotiator.presets[tier].audio.merged(self._audio_overrides)
            audio, _ = self.negotiator.negotiate(requested, None, None, caps)
            constraints = replace(audio, device_id=target.id)
        return await self._acquire(constraints), tier

    async def apply_quality_preset(
        self,
        tier: QualityTier,
        audio_overrides: AudioConstraints | None = None,
        video_overrides: VideoConstraints | None = None,
    ) -> QualityTier:
        """Switch to a quality tier, in place on the devices already held."""
        if self.status is SessionStatus.DISCONNECTED:
            message = f"Session {self.session_id} already ended"
            raise SessionAlreadyTerminal(message)
        if audio_overrides is not None:
            self._audio_overrides = audio_overrides
        if video_overrides is not None:
            self._video_overrides = video_overrides
        if self.status is SessionStatus.IDLE:
            self._tier = tier
            return tier

        async with self._lock:
            video_caps, audio_caps = await self._current_capabilities()
            self.diagnostics = []
            tier_in_effect, audio, video = self.negotiator.negotiate_tier(
                tier,
                video_caps,
                audio_caps,
                self._audio_overrides,
                self._video_overrides,
                self.diagnostics,
            )
            await self._apply(tier_in_effect, audio, video)
            return tier_in_effect

    async def downgrade(self) -> QualityTier | None:
        """Step one quality tier down; None if not active or already lowest."""
        if self.status is not SessionStatus.ACTIVE:
            return None
        async with self._lock:
            video_caps, audio_caps = await self._current_capabilities()
            self.diagnostics = []
            result = self.negotiator.downgrade(
                self._tier,
                video_caps,
                audio_caps,
                self._audio_overrides,
                self._video_overrides,
                self.diagnostics,
            )
            if result is None:
                return None
            tier, audio, video = result
            await self._apply(tier, audio, video)
            return tier

    async def _current_capabilities(self) -> tuple:
        video_handle = self.video_handle
        audio_handle = self.audio_handle
        video_caps = (
            await self.registry.capabilities(video_handle.device_id, video_handle)
            if video_handle
            else None
        )
        audio_caps = (
            await self.registry.capabilities(audio_handle.device_id, audio_handle)
            if audio_handle
            else None
        )
        return video_caps, audio_caps

    async def _apply(
        self,
        tier: QualityTier,
        audio: AudioConstraints | None,
        video: VideoConstraints | None,
    ) -> None:
        """Apply bundles to the held handles, rolling back on failure."""
        planned = [
            (handle, replace(bundle, device_id=handle.device_id))
            for handle, bundle in (
                (self.video_handle, video),
                (self.audio_handle, audio),
            )
            if handle is not None and bundle is not None
        ]
        applied: list[tuple[CaptureHandle, Constraints]] = []
        try:
            for handle, bundle in planned:
                previous = handle.constraints
                await self.backend.apply_constraints(handle, bundle)
                applied.append((handle, previous))
        except Exception as exc:
            self.last_error = exc
            logger.warning(
                "Could not apply {} quality, keeping {}: {}",
                tier.value,
                self._tier.value,
                exc,
            )
            for handle, previous in reversed(applied):
                try:
                    await self.backend.apply_constraints(handle, previous)
                except Exception as rollback_exc:
                    logger.error("Rollback on {} failed: {}", handle.device_id, rollback_exc)
            raise

        if self.status is not SessionStatus.ACTIVE:
            return
        self._tier = tier
        logger.info("Session {} now at {} quality", self.session_id, tier.value)

    async def refresh_devices(self) -> None:
        """Re-enumerate and react to devices that disappeared mid-session."""
        await self.registry.refresh()
        if self.status is not SessionStatus.ACTIVE:
            return
        video_handle = self.video_handle
        if video_handle and self.registry.get(video_handle.device_id) is None:
            self.disconnect(f"Camera {video_handle.device_id} was lost")
            return
        audio_handle = self.audio_handle
        if audio_handle and self.registry.get(audio_handle.device_id) is None:
            logger.warning("Microphone {} was lost; continuing without audio", audio_handle.device_id)
            self.backend.release(self._handles.pop(DeviceKind.AUDIO))

    def stop(self) -> None:
        """End the session explicitly. Idempotent."""
        self._teardown("stopped")

    def disconnect(self, reason: str) -> None:
        """End the session because the device or the stream was lost."""
        self._teardown(reason)

    def _teardown(self, reason: str) -> None:
        if self.status is SessionStatus.DISCONNECTED:
            logger.debug("Session {} already disconnected", self.session_id)
            return
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            try:
                self.backend.release(handle)
            except Exception as exc:
                logger.error("Releasing {} failed: {}", handle.device_id, exc)
        self.disconnect_reason = reason
        self._transition(SessionStatus.DISCONNECTED)

    def _transition(self, new_status: SessionStatus) -> None:
        old_status = self.session.status
        self.session.status = new_status
        logger.info(
            "Session {}: {} -> {}{}",
            self.session_id,
            old_status.value,
            new_status.value,
            f" ({self.disconnect_reason})"
            if new_status is SessionStatus.DISCONNECTED
            else "",
        )
        for listener in list(self._listeners):
            try:
                listener(self.session, old_status, new_status)
            except Exception:
                logger.exception("Session state listener failed")
