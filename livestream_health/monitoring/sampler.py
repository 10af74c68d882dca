"""Pull one health sample per tick from a stats source."""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Protocol

import psutil
from loguru import logger

from livestream_health.errors import SessionNotActive
from livestream_health.types import (
    AudioMetrics,
    NetworkMetrics,
    SessionStatus,
    StreamHealthStats,
    VideoMetrics,
)


if TYPE_CHECKING:
    from collections.abc import Callable

    from livestream_health.capture.core import CaptureHandle
    from livestream_health.types import RawStreamStats, StreamSession


class StatsSource(Protocol):
    """Anything that reports raw statistics for an active capture handle."""

    async def read(self, handle: CaptureHandle | None) -> RawStreamStats:
        """Return the latest raw statistics."""
        ...


def _normalise_video(video: VideoMetrics) -> VideoMetrics:
    total = max(0, int(video.total_frames))
    dropped = min(max(0, int(video.dropped_frames)), total)
    return replace(
        video,
        width=max(0, int(video.width)),
        height=max(0, int(video.height)),
        frame_rate=max(0.0, float(video.frame_rate)),
        bitrate=max(0.0, float(video.bitrate)),
        dropped_frames=dropped,
        total_frames=total,
    )


def _normalise_audio(audio: AudioMetrics) -> AudioMetrics:
    return replace(
        audio,
        bitrate=max(0.0, float(audio.bitrate)),
        sample_rate=max(0, int(audio.sample_rate)),
    )


def _normalise_network(network: NetworkMetrics) -> NetworkMetrics:
    return NetworkMetrics(
        available_bandwidth=max(0.0, float(network.available_bandwidth)),
        packet_loss=min(max(0.0, float(network.packet_loss)), 100.0),
        round_trip_time=max(0.0, float(network.round_trip_time)),
        jitter=max(0.0, float(network.jitter)),
    )


class HealthSampler:
    """Turn raw source statistics into normalised StreamHealthStats.

    A failing or slow source never propagates: the previous sample's numbers
    are reused with a fresh duration and the result is marked stale.
    """

    def __init__(
        self,
        source: StatsSource,
        timeout_s: float = 2.0,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.source = source
        self.timeout_s = timeout_s
        self._clock = clock
        self._previous: dict[str, StreamHealthStats] = {}
        self._errors: dict[str, int] = {}
        self._process = psutil.Process()
        self._process.cpu_percent()

    def previous(self, session_id: str) -> StreamHealthStats | None:
        return self._previous.get(session_id)

    def forget(self, session_id: str) -> None:
        """Drop per-session memory once a session is over."""
        self._previous.pop(session_id, None)
        self._errors.pop(session_id, None)

    async def sample(
        self, session: StreamSession, handle: CaptureHandle | None = None
    ) -> StreamHealthStats:
        """Return the current health sample for an active session."""
        if session.status is not SessionStatus.ACTIVE:
            message = f"Session {session.id} is {session.status.value}"
            raise SessionNotActive(message)

        now = self._clock()
        duration = max(0.0, now - (session.started_at or now))
        previous = self._previous.get(session.id)

        try:
            raw = await asyncio.wait_for(self.source.read(handle), self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Stats source timed out after {:.1f}s for {}", self.timeout_s, session.id
            )
            stats = self._stale(session.id, now, duration, previous)
        except Exception as exc:
            logger.warning("Stats unavailable for {}: {}", session.id, exc)
            stats = self._stale(session.id, now, duration, previous)
        else:
            stats = self._from_raw(session.id, now, duration, raw, previous)

        self._previous[session.id] = stats
        return stats

    def _from_raw(
        self,
        session_id: str,
        now: float,
        duration: float,
        raw: RawStreamStats,
        previous: StreamHealthStats | None,
    ) -> StreamHealthStats:
        current_viewers = max(0, int(raw.current_viewers))
        peak_viewers = max(
            current_viewers,
            max(0, int(raw.max_viewers)),
            previous.peak_viewers if previous else 0,
        )
        return StreamHealthStats(
            session_id=session_id,
            timestamp=now,
            current_viewers=current_viewers,
            peak_viewers=peak_viewers,
            duration=duration,
            is_live=bool(raw.is_live),
            video=_normalise_video(raw.video),
            audio=_normalise_audio(raw.audio),
            network=_normalise_network(raw.network),
            encoder_cpu=self._encoder_cpu(),
            warnings=tuple(raw.warnings),
            error_count=self._errors.get(session_id, 0),
        )

    def _stale(
        self,
        session_id: str,
        now: float,
        duration: float,
        previous: StreamHealthStats | None,
    ) -> StreamHealthStats:
        errors = self._errors.get(session_id, 0) + 1
        self._errors[session_id] = errors
        if previous is None:
            return StreamHealthStats(
                session_id=session_id,
                timestamp=now,
                duration=duration,
                is_live=True,
                stale=True,
                error_count=errors,
            )
        return replace(
            previous,
            timestamp=now,
            duration=duration,
            is_live=True,
            connection_quality=None,
            stale=True,
            error_count=errors,
        )

    def _encoder_cpu(self) -> float:
        try:
            return float(self._process.cpu_percent())
        except psutil.Error:
            return 0.0
