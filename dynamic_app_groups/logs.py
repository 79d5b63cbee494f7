"""
Logging setup — console output plus one log file per run-day.

Every record carries an action tag (``extra={"action": "AddMember"}``) that is
rendered next to the level. Records logged without one are tagged ``General``.
"""

from __future__ import annotations

import logging
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

ROOT_LOGGER = "dynamic_app_groups"
LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(action)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_PREFIX = "dynamic-app-groups"

# Between DEBUG and INFO
VERBOSE = 15
logging.addLevelName(VERBOSE, "VERBOSE")


class ActionFilter(logging.Filter):
    """Ensures every record has an ``action`` attribute for the formatter."""

    def __init__(self, default: str = "General"):
        super().__init__()
        self.default = default

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "action", None):
            record.action = self.default
        return True


def log_file_for(log_dir: Path, day: Optional[date] = None) -> Path:
    """Return the log file used for ``day`` (today by default)."""
    day = day or date.today()
    return log_dir / f"{LOG_FILE_PREFIX}_{day.isoformat()}.log"


def parse_level(name: str) -> int:
    name = name.upper()
    if name == "VERBOSE":
        return VERBOSE
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def configure_logging(config: LoggingConfig, day: Optional[date] = None) -> Path:
    """
    Attach console and daily file handlers to the package logger.
    Safe to call more than once; previous handlers are replaced.

    Returns:
        Path to the log file for this run.
    """
    log_dir = config.log_path
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_file_for(log_dir, day)

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    action_filter = ActionFilter()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(parse_level(config.console_level))
    console.setFormatter(formatter)
    console.addFilter(action_filter)
    logger.addHandler(console)

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(action_filter)
    logger.addHandler(file_handler)

    return log_path
