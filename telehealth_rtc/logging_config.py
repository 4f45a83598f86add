"""
Logging configuration for the telehealth communication core.

Provides centralized logging with proper levels, formatting, and optional file output.
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from logging.handlers import RotatingFileHandler


LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ROOT_LOGGER = "telehealth_rtc"

LOGGER_NAMES = [
    "telehealth_rtc.app",
    "telehealth_rtc.hub",
    "telehealth_rtc.transport",
    "telehealth_rtc.presence",
    "telehealth_rtc.messaging",
    "telehealth_rtc.media",
    "telehealth_rtc.call_state",
    "telehealth_rtc.message_filter",
    "telehealth_rtc.config",
    "telehealth_rtc.call_history",
]


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    console: bool = True,
) -> None:
    """
    Configure logging for the communication core.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (optional, creates rotating log)
        console: Whether to log to console (default: True)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(numeric_level)

    root_logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        if isinstance(log_file, str):
            log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"  # 5MB
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for logger_name in LOGGER_NAMES:
        logging.getLogger(logger_name).setLevel(numeric_level)

    # Socket.IO and aiortc are chatty at DEBUG; keep them at WARNING unless asked.
    if numeric_level > logging.DEBUG:
        for noisy in ("socketio", "engineio", "aiortc", "aioice"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific component.

    Args:
        name: Component name (e.g., 'telehealth_rtc.transport' or just 'transport')

    Returns:
        Logger instance
    """
    if not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def get_log_directory() -> Path:
    """Get the default log directory."""
    return Path.home() / ".telehealth_rtc" / "logs"


def get_default_log_file() -> Path:
    """Get the default log file path."""
    return get_log_directory() / "telehealth_rtc.log"
