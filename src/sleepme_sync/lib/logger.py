"""Logging utilities for sleepme_sync.

All module loggers are children of the ``sleepme_sync`` logger, which owns
the single stdout handler. Verbosity follows ``settings.log_level`` and can
be changed at runtime with configure_logging().
"""

import logging
import sys
import time

from sleepme_sync.config import settings
from sleepme_sync.lib.consts import LogLevel

ROOT_LOGGER_NAME = "sleepme_sync"

# Below DEBUG: one line per admission decision and cache hit
VERBOSE = 5
logging.addLevelName(VERBOSE, "VERBOSE")

LEVELS = {
    LogLevel.NORMAL: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.VERBOSE: VERBOSE,
}


class ColoredFormatter(logging.Formatter):
    """Formatter with ANSI level colors and [HH:MM:SS.mmm] timestamps."""

    COLORS = {
        "VERBOSE": "\033[2m",  # Dim
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[1;31m",  # Bold Red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str | None = None, use_color: bool = True):
        super().__init__(fmt)
        self.use_color = use_color

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        clock = time.strftime(datefmt or "%H:%M:%S", self.converter(record.created))
        return f"{clock}.{int(record.msecs):03d}"

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            # Other handlers may format the same record
            record.levelname = levelname


def configure_logging(level: LogLevel | None = None) -> logging.Logger:
    """Attach the stdout handler once and apply the verbosity.

    Args:
        level: Verbosity to apply (defaults to settings.log_level)

    Returns:
        The package root logger
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)

    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            ColoredFormatter(
                "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
                use_color=sys.stdout.isatty(),
            )
        )
        root.addHandler(handler)
        root.propagate = False

    root.setLevel(LEVELS[LogLevel(level or settings.log_level)])
    return root


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the package root.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    if not logging.getLogger(ROOT_LOGGER_NAME).handlers:
        configure_logging()

    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
