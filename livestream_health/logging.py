"""Logging helpers for the stream health monitor."""

from __future__ import annotations

import os
import sys
from collections import deque
from pathlib import Path

from loguru import logger


# Records outside a session context show "-" in the session column.
NO_SESSION = "-"

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[session]}</magenta> | "
    "<cyan>{name}:{function}:{line}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {process}:{thread} | "
    "{extra[session]} | {name}:{function}:{line} | {message}"
)
BUFFER_FORMAT = "{time:HH:mm:ss} | {level: <8} | {extra[session]} | {message}"


def configure_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    *,
    json_logs: bool = False,
) -> None:
    """Configure loguru logging for console, rotating file and optional JSONL."""
    log_level = os.getenv("LIVESTREAM_HEALTH_LOG_LEVEL", log_level).upper()
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.configure(extra={"session": NO_SESSION})
    logger.add(sink=sys.stdout, format=CONSOLE_FORMAT, level=log_level)
    log_path = Path(log_dir) / "health_{time:YYYY-MM-DD}.log"
    logger.add(
        str(log_path),
        rotation="10 MB",
        retention="7 days",
        level=log_level,
        format=FILE_FORMAT,
    )
    if json_logs:
        json_path = Path(log_dir) / "health_{time:YYYY-MM-DD}.jsonl"
        logger.add(
            str(json_path),
            rotation="10 MB",
            retention="7 days",
            level=log_level,
            serialize=True,
        )


def create_log_buffer(max_lines: int = 200) -> deque[str]:
    """Create a bounded buffer for recent log messages."""
    return deque(maxlen=max_lines)


def attach_log_buffer(buffer: deque[str], level: str = "INFO") -> int:
    """Attach a loguru sink that appends formatted messages to buffer."""

    logger.configure(extra={"session": NO_SESSION})

    def _sink(message: object) -> None:
        buffer.append(str(message).rstrip("\n"))

    return logger.add(_sink, level=level, format=BUFFER_FORMAT)


def session_context(session_id: str):
    """Tag every record logged inside the block with session_id.

    Backed by contextvars, so tasks and worker threads started inside the
    block keep the tag.
    """
    return logger.contextualize(session=session_id)
