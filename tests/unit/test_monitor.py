"""Unit tests for the health monitor orchestrator."""

import asyncio
from unittest.mock import Mock

import pytest

from livestream_health.config import MonitorConfig
from livestream_health.errors import ConfigError, UnknownSession
from livestream_health.monitoring.monitor import HealthMonitor
from livestream_health.monitoring.sampler import HealthSampler
from livestream_health.monitoring.sources import ScriptedStatsSource, healthy_stats
from livestream_health.types import (
    AlertSeverity,
    AlertType,
    ConnectionQuality,
    NetworkMetrics,
    QualityTier,
    SessionStatus,
)


def lossy(loss: float, rtt: float = 50.0):
    return healthy_stats(network=NetworkMetrics(packet_loss=loss, round_trip_time=rtt))


def build(source, clock, **config):
    sampler = HealthSampler(source, timeout_s=0.5, clock=clock)
    return HealthMonitor(sampler, MonitorConfig(**config))


class SlowSource:
    """Stats source that records how many reads overlap."""

    def __init__(self, delay_s: float):
        self.delay_s = delay_s
        self.in_flight = 0
        self.max_in_flight = 0
        self.reads = 0

    async def read(self, handle):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay_s)
            self.reads += 1
            return healthy_stats()
        finally:
            self.in_flight -= 1


class TestTick:
    """Tests for a single sampling step."""

    @pytest.mark.asyncio
    async def test_tick_publishes_stats(self, monitor, controller):
        """Test a tick stores the classified sample and notifies observers."""
        await controller.start()
        monitor.attach(controller)
        observer = Mock()
        monitor.on_stats_update(observer)
        stats = await monitor.tick("stream-1")
        assert stats.connection_quality is ConnectionQuality.EXCELLENT
        assert monitor.get_current_stats("stream-1") is stats
        observer.assert_called_once_with("stream-1", stats)

    @pytest.mark.asyncio
    async def test_tick_only_while_active(self, monitor, controller, source):
        """Test no sample is taken for an idle or ended session."""
        monitor.attach(controller)
        assert await monitor.tick("stream-1") is None
        await controller.start()
        controller.stop()
        assert await monitor.tick("stream-1") is None
        assert source.reads == 0

    @pytest.mark.asyncio
    async def test_tick_unknown_session(self, monitor):
        """Test ticking an unknown session raises."""
        with pytest.raises(UnknownSession):
            await monitor.tick("nope")

    @pytest.mark.asyncio
    async def test_poor_stream_alerts(self, controller, clock):
        """Test 6% loss at 350 ms gives one critical alert and poor quality."""
        monitor = build(ScriptedStatsSource([lossy(6.0, 350)]), clock, auto_downgrade=False)
        await controller.start()
        monitor.attach(controller)
        alerts = []
        monitor.on_alert(lambda session_id, alert: alerts.append(alert))
        stats = await monitor.tick("stream-1")
        assert stats.connection_quality is ConnectionQuality.POOR
        assert [a.severity for a in alerts].count(AlertSeverity.CRITICAL) == 1

    @pytest.mark.asyncio
    async def test_alerts_are_edge_triggered(self, controller, clock):
        """Test a persisting condition is reported once."""
        source = ScriptedStatsSource([lossy(3.0), lossy(3.0), lossy(3.0), lossy(7.0)])
        monitor = build(source, clock, auto_downgrade=False)
        await controller.start()
        monitor.attach(controller)
        for _ in range(3):
            clock.advance(1)
            await monitor.tick("stream-1")
        assert len(monitor.get_alerts("stream-1")) == 1
        clock.advance(1)
        await monitor.tick("stream-1")
        newest = monitor.get_alerts("stream-1")[0]
        assert newest.severity is AlertSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_alert_history_bounded(self, controller, clock):
        """Test the history keeps only the most recent alerts, newest first."""
        samples = [lossy(3.0) if i % 2 else healthy_stats() for i in range(12)]
        monitor = build(ScriptedStatsSource(samples), clock, max_alerts=3, auto_downgrade=False)
        await controller.start()
        monitor.attach(controller)
        for _ in samples:
            clock.advance(1)
            await monitor.tick("stream-1")
        alerts = monitor.get_alerts("stream-1", limit=10)
        assert len(alerts) == 3
        assert alerts[0].timestamp > alerts[1].timestamp > alerts[2].timestamp
        assert len(monitor.get_alerts("stream-1", limit=1)) == 1
        monitor.clear_alerts("stream-1")
        assert monitor.get_alerts("stream-1") == []

    @pytest.mark.asyncio
    async def test_observer_order_and_isolation(self, monitor, controller):
        """Test observers run in order and a failing one does not stop delivery."""
        calls = []
        monitor.on_stats_update(lambda session_id, stats: calls.append("first"))
        monitor.on_stats_update(Mock(side_effect=RuntimeError("observer broke")))
        monitor.on_stats_update(lambda session_id, stats: calls.append("third"))
        await controller.start()
        monitor.attach(controller)
        await monitor.tick("stream-1")
        assert calls == ["first", "third"]

    @pytest.mark.asyncio
    async def test_set_thresholds(self, monitor):
        """Test thresholds can be changed and unknown names are rejected."""
        monitor.set_thresholds(packet_loss_warning=1.0)
        assert monitor.config.thresholds.packet_loss_warning == 1.0
        with pytest.raises(ConfigError):
            monitor.set_thresholds(no_such_threshold=1.0)


class TestTimer:
    """Tests for the monitoring timer."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monitor, controller, source, until):
        """Test the first tick runs immediately and stop is idempotent."""
        await controller.start()
        monitor.attach(controller)
        assert monitor.start_monitoring("stream-1", interval_ms=10_000)
        assert monitor.is_monitoring("stream-1")
        assert await until(lambda: source.reads == 1)
        monitor.stop_monitoring("stream-1")
        monitor.stop_monitoring("stream-1")
        monitor.stop_monitoring("unknown")
        assert not monitor.is_monitoring("stream-1")
        await monitor.aclose()

    @pytest.mark.asyncio
    async def test_duplicate_start_keeps_one_timer(self, monitor, controller, source, until):
        """Test starting twice does not create a second timer."""
        await controller.start()
        monitor.attach(controller)
        monitor.start_monitoring("stream-1", interval_ms=10_000)
        monitor.start_monitoring("stream-1", interval_ms=10_000)
        await until(lambda: source.reads >= 1)
        await asyncio.sleep(0.02)
        assert source.reads == 1
        await monitor.aclose()

    @pytest.mark.asyncio
    async def test_start_requires_active_session(self, monitor, controller):
        """Test idle sessions get no timer and unknown ids raise."""
        monitor.attach(controller)
        assert monitor.start_monitoring("stream-1") is False
        assert not monitor.is_monitoring("stream-1")
        with pytest.raises(UnknownSession):
            monitor.start_monitoring("nope")

    @pytest.mark.asyncio
    async def test_invalid_interval(self, monitor, controller):
        """Test a non-positive interval is rejected."""
        await controller.start()
        monitor.attach(controller)
        with pytest.raises(ConfigError):
            monitor.start_monitoring("stream-1", interval_ms=0)

    @pytest.mark.asyncio
    async def test_timer_repeats(self, monitor, controller, source, until):
        """Test the timer keeps sampling at the interval."""
        await controller.start()
        monitor.attach(controller)
        monitor.start_monitoring("stream-1", interval_ms=10)
        assert await until(lambda: source.reads >= 3)
        await monitor.aclose()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_timer(self, monitor, controller, until):
        """Test the session's end cancels the timer without stop_monitoring."""
        await controller.start()
        monitor.attach(controller)
        monitor.start_monitoring("stream-1", interval_ms=10)
        await until(lambda: monitor.get_current_stats("stream-1") is not None)
        controller.disconnect("camera unplugged")
        assert not monitor.is_monitoring("stream-1")
        assert monitor.get_current_stats("stream-1") is not None
        await monitor.aclose()

    @pytest.mark.asyncio
    async def test_slow_source_skips_instead_of_stacking(self, controller, clock):
        """Test overrunning ticks never overlap."""
        source = SlowSource(delay_s=0.03)
        monitor = build(source, clock)
        await controller.start()
        monitor.attach(controller)
        monitor.start_monitoring("stream-1", interval_ms=5)
        await asyncio.sleep(0.2)
        await monitor.aclose()
        assert source.max_in_flight == 1
        assert 1 <= source.reads <= 8

    @pytest.mark.asyncio
    async def test_stream_going_down(self, controller, clock, until):
        """Test is_live dropping raises one critical alert and ends the session."""
        source = ScriptedStatsSource([healthy_stats(), healthy_stats(is_live=False)])
        monitor = build(source, clock)
        await controller.start()
        monitor.attach(controller)
        alerts = []
        monitor.on_alert(lambda session_id, alert: alerts.append(alert))
        monitor.start_monitoring("stream-1", interval_ms=10)
        assert await until(lambda: controller.status is SessionStatus.DISCONNECTED)
        assert not monitor.is_monitoring("stream-1")
        disconnected = [a for a in alerts if a.type is AlertType.DISCONNECTED]
        assert len(disconnected) == 1
        assert disconnected[0].severity is AlertSeverity.CRITICAL
        assert controller.disconnect_reason == "Stream disconnected"
        await asyncio.sleep(0.05)
        assert source.reads == 2
        await monitor.aclose()


class TestAutoDowngrade:
    """Tests for lowering quality on a persistently poor connection."""

    @pytest.mark.asyncio
    async def test_downgrade_after_poor_streak(self, controller, clock, until):
        """Test three poor samples step the tier down once."""
        monitor = build(ScriptedStatsSource([lossy(8.0)]), clock, downgrade_after=3)
        await controller.start(QualityTier.HIGH)
        monitor.attach(controller)
        for _ in range(2):
            await monitor.tick("stream-1")
        await asyncio.sleep(0.01)
        assert controller.tier is QualityTier.HIGH
        await monitor.tick("stream-1")
        assert await until(lambda: controller.tier is QualityTier.MEDIUM)
        await monitor.aclose()

    @pytest.mark.asyncio
    async def test_streak_resets_on_recovery(self, controller, clock):
        """Test a good sample resets the poor streak."""
        source = ScriptedStatsSource([lossy(8.0), lossy(8.0), healthy_stats(), lossy(8.0), lossy(8.0)])
        monitor = build(source, clock, downgrade_after=3)
        await controller.start(QualityTier.HIGH)
        monitor.attach(controller)
        for _ in range(5):
            await monitor.tick("stream-1")
        await asyncio.sleep(0.02)
        assert controller.tier is QualityTier.HIGH
        await monitor.aclose()

    @pytest.mark.asyncio
    async def test_auto_downgrade_disabled(self, controller, clock):
        """Test nothing changes when automatic downgrade is off."""
        monitor = build(ScriptedStatsSource([lossy(8.0)]), clock, auto_downgrade=False)
        await controller.start(QualityTier.HIGH)
        monitor.attach(controller)
        for _ in range(6):
            await monitor.tick("stream-1")
        await asyncio.sleep(0.02)
        assert controller.tier is QualityTier.HIGH
