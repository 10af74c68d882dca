from __future__ import annotations

import argparse
import asyncio
import platform
import threading
from dataclasses import replace

from loguru import logger

from livestream_health.api.app import create_app, run_api
from livestream_health.capture.opencv import OpenCVCaptureBackend, OpenCVStatsSource
from livestream_health.capture.simulated import SimulatedCaptureBackend
from livestream_health.config import MonitorConfig
from livestream_health.devices.prober import CapabilityProber
from livestream_health.devices.registry import DeviceRegistry
from livestream_health.errors import StreamHealthError
from livestream_health.logging import (
    attach_log_buffer,
    configure_logging,
    create_log_buffer,
)
from livestream_health.monitoring.monitor import HealthMonitor
from livestream_health.monitoring.sampler import HealthSampler
from livestream_health.monitoring.sources import SyntheticStatsSource
from livestream_health.session import StreamSessionController
from livestream_health.types import QualityTier, SessionStatus


def parse_args(argv: list | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Live stream capture negotiation with health monitoring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  livestream-health --backend simulated --duration 30
  livestream-health --backend opencv --quality medium --interval-ms 1000
  livestream-health --api-port 5000 --json-logs
		""",
    )

    parser.add_argument(
        "--backend", type=str, choices=["simulated", "opencv"], default="simulated"
    )
    parser.add_argument(
        "--quality",
        type=str,
        choices=[tier.value for tier in QualityTier],
        default=QualityTier.HIGH.value,
        help="Requested quality tier; lowered automatically if the camera cannot reach it",
    )
    parser.add_argument(
        "--interval-ms",
        type=int,
        default=None,
        help="Sampling interval (default: LIVESTREAM_HEALTH_INTERVAL_MS or 5000)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until Ctrl+C)",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="Serve the telemetry API on this port",
    )
    parser.add_argument("--stream-id", type=str, default="stream-1")
    parser.add_argument("--seed", type=int, default=None, help="Seed for simulated stats")
    parser.add_argument(
        "--no-auto-downgrade",
        action="store_true",
        help="Keep the quality tier even when the connection stays poor",
    )
    parser.add_argument("--json-logs", action="store_true")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )

    return parser.parse_args(argv)


async def run_session(args: argparse.Namespace, log_buffer: object = None) -> int:
    """Start one stream, monitor it and tear it down again."""
    config = MonitorConfig.from_env()
    if args.interval_ms is not None:
        config = replace(config, interval_ms=args.interval_ms)
    if args.no_auto_downgrade:
        config = replace(config, auto_downgrade=False)

    if args.backend == "opencv":
        backend = OpenCVCaptureBackend()
        source = OpenCVStatsSource()
    else:
        backend = SimulatedCaptureBackend.with_defaults()
        source = SyntheticStatsSource(seed=args.seed, interval_s=config.interval_ms / 1000.0)

    registry = DeviceRegistry(backend, CapabilityProber(backend))
    controller = StreamSessionController(args.stream_id, backend, registry)
    sampler = HealthSampler(source, timeout_s=config.stats_timeout_ms / 1000.0)
    monitor = HealthMonitor(sampler, config)
    monitor.attach(controller)

    ended = asyncio.Event()

    def _on_state(session, old, new) -> None:
        if new is SessionStatus.DISCONNECTED:
            ended.set()

    controller.add_state_listener(_on_state)
    monitor.on_stats_update(
        lambda session_id, stats: logger.info(
            "{} | {} | viewers {} (peak {}) | {:.0f} kbps | loss {:.1f}% | rtt {:.0f} ms",
            session_id,
            stats.connection_quality.value if stats.connection_quality else "stale",
            stats.current_viewers,
            stats.peak_viewers,
            stats.video.bitrate / 1000,
            stats.network.packet_loss,
            stats.network.round_trip_time,
        )
    )

    try:
        await controller.start(QualityTier(args.quality))
    except StreamHealthError as exc:
        logger.error("Could not start stream: {}", exc)
        return 1

    audio, video = controller.constraints
    logger.info("Quality: {}", controller.tier.value)
    logger.info("Video constraints: {}", video)
    logger.info("Audio constraints: {}", audio)
    for note in controller.diagnostics:
        logger.info(
            "Negotiated {} {} ({}): {!r} -> {!r}",
            note.kind.value,
            note.field,
            note.reason,
            note.requested,
            note.effective,
        )

    if args.api_port:
        app = create_app(monitor, {controller.session_id: controller}, log_buffer)
        threading.Thread(
            target=run_api, args=(app, None, args.api_port), daemon=True
        ).start()

    monitor.start_monitoring(controller.session_id)
    try:
        await asyncio.wait_for(ended.wait(), timeout=args.duration)
    except asyncio.TimeoutError:
        logger.info("Duration of {:.0f}s reached", args.duration)
    finally:
        controller.stop()
        await monitor.aclose()

    alerts = monitor.get_alerts(controller.session_id, limit=config.max_alerts)
    logger.success(
        "Stream {} ended ({}); {} alert(s) raised",
        controller.session_id,
        controller.disconnect_reason,
        len(alerts),
    )
    return 0


def main(argv: list | None = None) -> int:
    """Entry point for the livestream-health command."""
    args = parse_args(argv)
    configure_logging(args.log_level, json_logs=args.json_logs)
    log_buffer = create_log_buffer(max_lines=200)
    attach_log_buffer(log_buffer, level="INFO")

    logger.info("=" * 60)
    logger.info("Live Stream Health Monitor")
    logger.info("=" * 60)
    logger.info("Platform: {} {}", platform.system(), platform.release())
    logger.info("Python: {}", platform.python_version())
    logger.info("Backend: {}", args.backend)

    try:
        return asyncio.run(run_session(args, log_buffer))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
