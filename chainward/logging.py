"""Logging configuration for Chainward.

Structured logging via loguru. Logging is disabled by default (library
behavior) and enabled by the CLI, which adds a console sink and a per-run
log file.

Example:
    from chainward.logging import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="deploy.log"))
    try:
        ...
    finally:
        teardown_logging(handler_ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

from loguru import logger

logger.disable("chainward")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[component]} | {name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level.
        file: Path to a log file. The file always captures DEBUG.
        console: Whether to log to stderr.
        rotation: File rotation policy (e.g. "50 MB").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def run_log_path(logs_dir: Path, prefix: str = "chainward") -> Path:
    """Timestamped log file path for one CLI invocation."""
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return logs_dir / f"{prefix}-{stamp}.log"


def setup_logging(config: LogConfig) -> list[int]:
    """Configure logging and return handler IDs for cleanup."""
    logger.enable("chainward")
    logger.configure(extra={"component": "chainward"})
    handler_ids: list[int] = []

    if config.console:
        hid = logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="chainward",
        )
        handler_ids.append(hid)

    if config.file:
        hid = logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            diagnose=False,  # Don't expose credentials in tracebacks
            enqueue=True,
            filter="chainward",
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers and disable logging."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("chainward")
