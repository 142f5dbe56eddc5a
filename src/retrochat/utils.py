"""
RetroChat - Utility functions.

Logging setup and small formatting helpers used by the command-line
front end.
"""

import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from .config import Config
from .constants import (
    DEFAULT_DATA_DIR,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)

logger = logging.getLogger(__name__)


def setup_logging(config: Config, log_dir: Optional[Path] = None, debug: bool = False) -> logging.Logger:
    """
    Configure the retrochat package logger from the [logging] section.

    Args:
        config: Loaded configuration
        log_dir: Directory for the rotating log file (default: ~/.retrochat/logs)
        debug: Force DEBUG level regardless of configuration

    Returns:
        The configured package logger
    """
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    package_logger = logging.getLogger("retrochat")
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if config.get("logging", "console_logging", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        package_logger.addHandler(console)

    if config.get("logging", "file_logging", False):
        if log_dir is None:
            log_dir = Path(DEFAULT_DATA_DIR).expanduser() / LOGS_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / LOG_FILENAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    if not package_logger.handlers:
        package_logger.addHandler(logging.NullHandler())

    package_logger.propagate = False
    return package_logger


def format_timestamp(iso_timestamp: str, format_str: str = "%H:%M:%S") -> str:
    """
    Format an ISO timestamp as local wall-clock time.

    Args:
        iso_timestamp: ISO 8601 timestamp string
        format_str: strftime format string

    Returns:
        Formatted timestamp string, or original if parsing fails
    """
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
        return dt.astimezone().strftime(format_str)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Failed to parse timestamp '{iso_timestamp}': {e}")
        return iso_timestamp


def endpoint_label(endpoint: Optional[str]) -> str:
    """Short host name for an endpoint URL, for status lines."""
    if not endpoint:
        return "-"
    return urlsplit(endpoint).hostname or endpoint


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length.

    Args:
        s: String to truncate
        max_length: Maximum length including suffix
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix
