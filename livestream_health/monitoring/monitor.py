"""Drive periodic health sampling for stream sessions."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from loguru import logger

from livestream_health.config import MonitorConfig
from livestream_health.errors import ConfigError, SessionNotActive, UnknownSession
from livestream_health.logging import session_context
from livestream_health.monitoring.classifier import classify
from livestream_health.types import (
    AlertType,
    ConnectionQuality,
    SessionStatus,
)


if TYPE_CHECKING:
    from collections.abc import Callable

    from livestream_health.monitoring.sampler import HealthSampler
    from livestream_health.session import StreamSessionController
    from livestream_health.types import (
        StreamHealthAlert,
        StreamHealthStats,
        StreamSession,
    )

    StatsObserver = Callable[[str, StreamHealthStats], None]
    AlertObserver = Callable[[str, StreamHealthAlert], None]


@dataclass
class _SessionRecord:
    controller: StreamSessionController
    alerts: deque
    latest: StreamHealthStats | None = None
    poor_streak: int = 0
    task: asyncio.Task | None = None
    interval_s: float = 0.0
    # Cancelled timers and downgrades that have not finished yet.
    pending: set = field(default_factory=set)


class HealthMonitor:
    """One sampling timer per active session, fanning results out to observers.

    Timers are tied to the controllers' state machines: the transition to
    ``disconnected`` cancels the session's timer even if nobody calls
    :meth:`stop_monitoring`. The latest sample and the alert history survive
    the stop so they can still be read afterwards.
    """

    def __init__(
        self, sampler: HealthSampler, config: MonitorConfig | None = None
    ) -> None:
        self.sampler = sampler
        self.config = config or MonitorConfig()
        self._records: dict[str, _SessionRecord] = {}
        self._stats_observers: list[StatsObserver] = []
        self._alert_observers: list[AlertObserver] = []

    def attach(self, controller: StreamSessionController) -> None:
        """Register a controller so its session can be monitored."""
        session_id = controller.session_id
        if session_id in self._records:
            logger.debug("Session {} already attached", session_id)
            return
        self._records[session_id] = _SessionRecord(
            controller=controller,
            alerts=deque(maxlen=self.config.max_alerts),
        )
        controller.add_state_listener(self._on_state_change)

    def controller(self, session_id: str) -> StreamSessionController:
        return self._record(session_id).controller

    @property
    def session_ids(self) -> list[str]:
        return list(self._records)

    def on_stats_update(self, callback: StatsObserver) -> None:
        self._stats_observers.append(callback)

    def on_alert(self, callback: AlertObserver) -> None:
        self._alert_observers.append(callback)

    def start_monitoring(self, session_id: str, interval_ms: int | None = None) -> bool:
        """Start the repeating sampler for a session.

        Returns True when a timer is running for the session afterwards.
        Must be called from within the event loop.
        """
        record = self._record(session_id)
        if record.controller.status is not SessionStatus.ACTIVE:
            logger.warning(
                "Not monitoring {}: session is {}",
                session_id,
                record.controller.status.value,
            )
            return False
        if record.task is not None and not record.task.done():
            logger.debug("Session {} is already monitored", session_id)
            return True

        interval_ms = interval_ms if interval_ms is not None else self.config.interval_ms
        if interval_ms <= 0:
            message = f"interval_ms must be positive, got {interval_ms}"
            raise ConfigError(message)

        record.interval_s = interval_ms / 1000.0
        # The task copies the current context, so its records carry the session.
        with session_context(session_id):
            record.task = asyncio.get_running_loop().create_task(
                self._run(session_id, record), name=f"health-monitor-{session_id}"
            )
        logger.info("Monitoring {} every {} ms", session_id, interval_ms)
        return True

    def stop_monitoring(self, session_id: str) -> None:
        """Cancel the session's timer. Unknown or stopped sessions are ignored."""
        record = self._records.get(session_id)
        if record is None or record.task is None:
            return
        task, record.task = record.task, None
        # A tick that ends its own session must not cancel itself mid-delivery.
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
            record.pending.add(task)
            task.add_done_callback(record.pending.discard)
        logger.info("Stopped monitoring {}", session_id)

    def stop_all(self) -> None:
        for session_id in list(self._records):
            self.stop_monitoring(session_id)
        for record in self._records.values():
            for task in list(record.pending):
                task.cancel()

    async def aclose(self) -> None:
        """Stop every timer and wait for the cancelled tasks to finish."""
        tasks = [
            task
            for record in self._records.values()
            for task in (record.task, *record.pending)
            if task is not None
        ]
        self.stop_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def is_monitoring(self, session_id: str) -> bool:
        record = self._records.get(session_id)
        return record is not None and record.task is not None and not record.task.done()

    def get_current_stats(self, session_id: str) -> StreamHealthStats | None:
        record = self._records.get(session_id)
        return record.latest if record else None

    def get_alerts(self, session_id: str, limit: int = 10) -> list[StreamHealthAlert]:
        """Most recent alerts first."""
        record = self._records.get(session_id)
        if record is None or limit <= 0:
            return []
        return list(reversed(record.alerts))[:limit]

    def clear_alerts(self, session_id: str) -> None:
        record = self._records.get(session_id)
        if record is not None:
            record.alerts.clear()

    def set_thresholds(self, **fields: Any) -> None:
        self.config = replace(
            self.config, thresholds=self.config.thresholds.with_overrides(**fields)
        )
        logger.info("Health thresholds updated: {}", fields)

    async def tick(self, session_id: str) -> StreamHealthStats | None:
        """Take, classify and publish one sample.

        Returns None when the session is not active by the time the sample
        would have been produced.
        """
        record = self._record(session_id)
        controller = record.controller
        if controller.status is not SessionStatus.ACTIVE:
            return None
        try:
            stats = await self.sampler.sample(controller.session, controller.video_handle)
        except SessionNotActive:
            return None
        if controller.status is not SessionStatus.ACTIVE:
            logger.debug("Session {} ended while sampling; sample dropped", session_id)
            return None

        previous = record.latest
        quality, alerts = classify(stats, previous, self.config.thresholds)
        if not stats.stale:
            stats = replace(stats, connection_quality=quality)
        record.latest = stats
        record.alerts.extend(alerts)

        self._notify(self._stats_observers, session_id, stats)
        for alert in alerts:
            log = logger.warning if alert.severity.rank > 0 else logger.info
            log("[{}] {}: {}", session_id, alert.severity.value, alert.message)
            self._notify(self._alert_observers, session_id, alert)

        if any(alert.type is AlertType.DISCONNECTED for alert in alerts):
            controller.disconnect("Stream disconnected")
            return stats

        self._track_quality(record, stats)
        return stats

    def _track_quality(self, record: _SessionRecord, stats: StreamHealthStats) -> None:
        if stats.stale:
            return
        if stats.connection_quality is not ConnectionQuality.POOR:
            record.poor_streak = 0
            return
        record.poor_streak += 1
        if not self.config.auto_downgrade:
            return
        if record.poor_streak < self.config.downgrade_after:
            return
        record.poor_streak = 0
        logger.warning(
            "Connection poor for {} samples on {}; lowering quality",
            self.config.downgrade_after,
            stats.session_id,
        )
        task = asyncio.get_running_loop().create_task(self._downgrade(record.controller))
        record.pending.add(task)
        task.add_done_callback(record.pending.discard)

    async def _downgrade(self, controller: StreamSessionController) -> None:
        try:
            tier = await controller.downgrade()
        except Exception as exc:
            logger.warning("Automatic downgrade of {} failed: {}", controller.session_id, exc)
            return
        if tier is None:
            logger.info("Session {} cannot go any lower", controller.session_id)

    async def _run(self, session_id: str, record: _SessionRecord) -> None:
        loop = asyncio.get_running_loop()
        interval = record.interval_s
        deadline = loop.time()
        current = asyncio.current_task()
        while record.task is current:
            try:
                await self.tick(session_id)
            except Exception:
                logger.exception("Health tick for {} failed", session_id)
            if record.task is not current:
                break

            deadline += interval
            now = loop.time()
            if deadline <= now:
                missed = int((now - deadline) // interval) + 1
                deadline += missed * interval
                logger.debug("Tick for {} overran; skipped {} slot(s)", session_id, missed)
            await asyncio.sleep(deadline - now)

    def _on_state_change(
        self, session: StreamSession, old: SessionStatus, new: SessionStatus
    ) -> None:
        if new is SessionStatus.DISCONNECTED:
            self.stop_monitoring(session.id)
            self.sampler.forget(session.id)

    def _record(self, session_id: str) -> _SessionRecord:
        try:
            return self._records[session_id]
        except KeyError:
            raise UnknownSession(session_id) from None

    @staticmethod
    def _notify(observers: list, session_id: str, payload: object) -> None:
        for observer in list(observers):
            try:
                observer(session_id, payload)
            except Exception:
                logger.exception("Health observer {!r} failed", observer)
