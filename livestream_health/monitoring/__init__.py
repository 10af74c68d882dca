"""Health sampling, classification and the monitoring loop."""

from __future__ import annotations

from livestream_health.monitoring.classifier import classify, connection_quality
from livestream_health.monitoring.monitor import HealthMonitor
from livestream_health.monitoring.sampler import HealthSampler, StatsSource
from livestream_health.monitoring.sources import (
    ScriptedStatsSource,
    SyntheticStatsSource,
    healthy_stats,
)


__all__ = [
    "HealthMonitor",
    "HealthSampler",
    "ScriptedStatsSource",
    "StatsSource",
    "SyntheticStatsSource",
    "classify",
    "connection_quality",
    "healthy_stats",
]
