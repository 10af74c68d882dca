"""Stats sources that do not need a real transport."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import TYPE_CHECKING

import numpy as np
from loguru import logger

from livestream_health.types import (
    AudioMetrics,
    NetworkMetrics,
    RawStreamStats,
    VideoMetrics,
)


if TYPE_CHECKING:
    from collections.abc import Iterable

    from livestream_health.capture.core import CaptureHandle


class ScriptedStatsSource:
    """Replay a fixed sequence of samples, repeating the last one.

    Entries may be exceptions, which are raised instead of returned, so a
    failing backend can be scripted too.
    """

    def __init__(
        self,
        samples: Iterable[RawStreamStats | BaseException],
        *,
        delay_s: float = 0.0,
    ) -> None:
        self._samples = list(samples)
        if not self._samples:
            message = "ScriptedStatsSource needs at least one sample"
            raise ValueError(message)
        self.delay_s = delay_s
        self.reads = 0

    def push(self, sample: RawStreamStats | BaseException) -> None:
        """Append a sample to the end of the script."""
        self._samples.append(sample)

    async def read(self, handle: CaptureHandle | None) -> RawStreamStats:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        index = min(self.reads, len(self._samples) - 1)
        self.reads += 1
        sample = self._samples[index]
        if isinstance(sample, BaseException):
            raise sample
        return sample


class SyntheticStatsSource:
    """Random-walk network conditions around a healthy baseline.

    Useful for demos: packet loss and RTT drift, occasionally spiking,
    and frames accumulate at the handle's frame rate.
    """

    def __init__(
        self,
        seed: int | None = None,
        *,
        spike_probability: float = 0.05,
        interval_s: float = 1.0,
    ) -> None:
        self._rng = np.random.default_rng(seed)
        self.spike_probability = spike_probability
        self.interval_s = interval_s
        self._packet_loss = 0.5
        self._rtt = 60.0
        self._viewers = 0
        self._peak = 0
        self._frames = 0
        self._dropped = 0

    async def read(self, handle: CaptureHandle | None) -> RawStreamStats:
        video_constraints = handle.constraints if handle is not None else None
        width = getattr(video_constraints, "width", None) or 1280
        height = getattr(video_constraints, "height", None) or 720
        frame_rate = float(getattr(video_constraints, "frame_rate", None) or 30.0)
        target_bitrate = float(getattr(video_constraints, "bitrate", None) or 2_500_000)

        self._packet_loss = float(
            np.clip(self._packet_loss + self._rng.normal(0.0, 0.4), 0.0, 15.0)
        )
        self._rtt = float(np.clip(self._rtt + self._rng.normal(0.0, 15.0), 10.0, 800.0))
        if self._rng.random() < self.spike_probability:
            self._packet_loss = float(self._rng.uniform(3.0, 10.0))
            self._rtt = float(self._rng.uniform(250.0, 600.0))
            logger.debug("Synthetic network spike: {:.1f}% loss", self._packet_loss)

        self._viewers = max(0, self._viewers + int(self._rng.integers(-2, 4)))
        self._peak = max(self._peak, self._viewers)

        new_frames = int(frame_rate * self.interval_s)
        dropped_ratio = min(1.0, self._packet_loss / 100.0)
        self._frames += new_frames
        self._dropped += int(self._rng.binomial(new_frames, dropped_ratio))

        bitrate = target_bitrate * (1.0 - dropped_ratio)
        return RawStreamStats(
            current_viewers=self._viewers,
            max_viewers=self._peak,
            is_live=True,
            video=VideoMetrics(
                width=width,
                height=height,
                frame_rate=frame_rate * (1.0 - dropped_ratio),
                bitrate=bitrate,
                codec="h264",
                dropped_frames=self._dropped,
                total_frames=self._frames,
            ),
            audio=AudioMetrics(bitrate=128_000, sample_rate=48_000, codec="opus"),
            network=NetworkMetrics(
                available_bandwidth=bitrate * 1.5,
                packet_loss=self._packet_loss,
                round_trip_time=self._rtt,
                jitter=abs(float(self._rng.normal(0.0, 5.0))),
            ),
        )


def healthy_stats(**changes: object) -> RawStreamStats:
    """A clean 720p30 sample; keyword arguments replace top-level fields."""
    base = RawStreamStats(
        current_viewers=10,
        max_viewers=10,
        is_live=True,
        video=VideoMetrics(
            width=1280,
            height=720,
            frame_rate=30.0,
            bitrate=2_500_000,
            codec="h264",
            dropped_frames=0,
            total_frames=900,
        ),
        audio=AudioMetrics(bitrate=128_000, sample_rate=48_000, codec="opus"),
        network=NetworkMetrics(
            available_bandwidth=5_000_000,
            packet_loss=0.5,
            round_trip_time=50.0,
        ),
    )
    return replace(base, **changes)
