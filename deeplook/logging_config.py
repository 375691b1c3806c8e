"""Logging configuration for the DeepLook pipeline.

This module provides structured logging with timestamps, module names,
and configurable log levels.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

VALID_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level and logger name on a terminal.

    Args:
        fmt: Log format string
        datefmt: Date format string
        use_color: Emit ANSI colors; callers pass ``stream.isatty()``
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_color: bool = True):
        super().__init__(fmt, datefmt=datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname)
        if not self.use_color or color is None:
            return super().format(record)

        # Other handlers share the record, so color a copy
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{self.BOLD}{record.levelname}{self.RESET}"
        colored.name = f"{self.BOLD}{record.name}{self.RESET}"
        return super().format(colored)


def _level_from_env() -> str:
    level = os.getenv("DEEPLOOK_LOG_LEVEL", "INFO").upper()
    if level not in VALID_LEVELS:
        return "INFO"
    return level


def setup_logging(
    name: str = "deeplook",
    level: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Setup and configure logger with consistent formatting.

    Args:
        name: Logger name (usually module name or 'deeplook' for root)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               If None, reads DEEPLOOK_LOG_LEVEL from the environment.
        log_file: Optional file path to also log to a file.

    Returns:
        Configured logger instance.

    Example:
        >>> logger = setup_logging(__name__)
        >>> logger.info("Clustering started")
        >>> logger.error("Failed to align face", exc_info=True)
    """
    logger = logging.getLogger(name)

    # Already configured, avoid duplicate handlers
    if logger.handlers:
        return logger

    if level is None:
        level = _level_from_env()

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logger.level)

    # Format: 2025-11-04 15:30:45 | INFO | deeplook.processor | Message
    fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    date_fmt = "%Y-%m-%d %H:%M:%S"

    console_handler.setFormatter(
        ColoredFormatter(fmt, datefmt=date_fmt, use_color=sys.stdout.isatty())
    )
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logger.level)
        file_handler.setFormatter(logging.Formatter(fmt, datefmt=date_fmt))
        logger.addHandler(file_handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get logger for a specific module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured logger instance.
    """
    return setup_logging(name)
