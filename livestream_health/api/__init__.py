"""HTTP telemetry for monitored sessions."""

from __future__ import annotations

from livestream_health.api.app import create_app, run_api


__all__ = ["create_app", "run_api"]
