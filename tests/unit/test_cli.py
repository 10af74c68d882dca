"""Unit tests for command line parsing."""

import pytest

from livestream_health.cli import parse_args


class TestParseArgs:
    """Tests for parse_args."""

    def test_defaults(self):
        """Test defaults run the simulated backend at high quality."""
        args = parse_args([])
        assert args.backend == "simulated"
        assert args.quality == "high"
        assert args.interval_ms is None
        assert args.duration is None
        assert args.api_port is None
        assert args.json_logs is False
        assert args.log_level == "INFO"

    def test_all_options(self):
        """Test every option is parsed."""
        args = parse_args(
            [
                "--backend",
                "opencv",
                "--quality",
                "low",
                "--interval-ms",
                "500",
                "--duration",
                "2.5",
                "--api-port",
                "8080",
                "--log-level",
                "DEBUG",
                "--json-logs",
                "--no-auto-downgrade",
            ]
        )
        assert args.backend == "opencv"
        assert args.quality == "low"
        assert args.interval_ms == 500
        assert args.duration == 2.5
        assert args.api_port == 8080
        assert args.no_auto_downgrade

    def test_rejects_unknown_quality(self):
        """Test unknown quality tiers are rejected."""
        with pytest.raises(SystemExit):
            parse_args(["--quality", "8k"])
