"""Logging configuration for the relay.

This module provides centralized logging configuration using Loguru.
It sets up logging to both file and console with proper formatting
and log rotation. Library modules only import ``logger``; sinks are
installed by the command-line entry points.
"""

import sys
from pathlib import Path

from loguru import logger

# Logs live in the user's home directory
LOG_DIR = Path.home() / ".proxy-relay" / "logs"
LOG_FILE_NAME = "relay.log"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def configure_logging(level: str = "INFO", log_dir: Path | None = None) -> Path:
    """Install the console and rotating file sinks.

    Args:
        level: Console log level
        log_dir: Directory for the log file, defaults to ``LOG_DIR``

    Returns:
        Path: The log file in use
    """
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level.upper(),
        backtrace=True,
        diagnose=False,
    )
    logger.add(
        log_file,
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        format=FILE_FORMAT,
        level="DEBUG",
        backtrace=True,
        diagnose=False,
        enqueue=True,
    )
    return log_file


__all__ = ["configure_logging", "logger", "LOG_DIR"]
