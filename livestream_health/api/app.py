"""Read-only Flask endpoints exposing live session health."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from flask import Flask, abort, jsonify, request
from loguru import logger

from livestream_health.types import to_jsonable


if TYPE_CHECKING:
    from collections import deque

    from flask import Response

    from livestream_health.monitoring.monitor import HealthMonitor
    from livestream_health.session import StreamSessionController


def create_app(
    monitor: HealthMonitor,
    controllers: dict[str, StreamSessionController] | None = None,
    log_buffer: deque[str] | None = None,
) -> Flask:
    """Create the telemetry Flask app around a running monitor."""
    app = Flask(__name__)

    def _controller(session_id: str) -> StreamSessionController:
        if controllers is not None and session_id in controllers:
            return controllers[session_id]
        if session_id in monitor.session_ids:
            return monitor.controller(session_id)
        abort(404, description=f"Unknown session {session_id}")

    @app.route("/sessions/<session_id>/stats")
    def stats(session_id: str) -> Response:
        """Return the latest health sample for a session."""
        current = monitor.get_current_stats(session_id)
        if current is None:
            abort(404, description=f"No stats for session {session_id}")
        return jsonify(current.to_dict())

    @app.route("/sessions/<session_id>/alerts")
    def alerts(session_id: str) -> Response:
        """Return recent alerts, newest first."""
        limit = request.args.get("limit", default=10, type=int)
        return jsonify(
            [alert.to_dict() for alert in monitor.get_alerts(session_id, limit=limit)]
        )

    @app.route("/sessions/<session_id>/constraints")
    def constraints(session_id: str) -> Response:
        """Return the session's tier and the constraints in effect."""
        controller = _controller(session_id)
        audio, video = controller.constraints
        return jsonify(
            {
                "session_id": session_id,
                "status": controller.status.value,
                "tier": controller.tier.value,
                "audio": to_jsonable(audio),
                "video": to_jsonable(video),
                "diagnostics": to_jsonable(controller.diagnostics),
            }
        )

    @app.route("/logs")
    def logs() -> Response:
        """Return the buffered log lines."""
        return jsonify(list(log_buffer) if log_buffer is not None else [])

    app.extensions["health_monitor"] = monitor
    return app


def run_api(app: Flask, host: str | None = None, port: int = 5000) -> None:
    """Serve the telemetry app; blocks until interrupted."""
    host = host or os.getenv("LIVESTREAM_HEALTH_API_HOST", "127.0.0.1")
    logger.info("Telemetry API on http://{}:{}", host, port)
    app.run(host=host, port=port, debug=False, threaded=True, use_reloader=False)
