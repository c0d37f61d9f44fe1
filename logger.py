"""Logging configuration for the onboarding reminder service."""

import logging
import sys
from logging.handlers import TimedRotatingFileHandler

from config import LOG_DIR, LOG_LEVEL

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging() -> logging.Logger:
    """Set up logging to a daily-rotated file and, when interactive, the console.

    The service runs for weeks at a time, so the file handler rolls over at
    midnight instead of naming the file once at startup.
    """
    logger = logging.getLogger("onboarding_reminders")
    logger.setLevel(LOG_LEVEL)

    # Clear any existing handlers (module may be reloaded by tests)
    logger.handlers.clear()

    file_handler = TimedRotatingFileHandler(
        LOG_DIR / "reminders.log",
        when="midnight",
        backupCount=30,
        encoding="utf-8",
    )
    file_handler.setLevel(LOG_LEVEL)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(file_handler)

    if sys.stdout is not None and sys.stdout.isatty():
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(LOG_LEVEL)
        console_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(message)s",
            datefmt="%H:%M:%S"
        ))
        logger.addHandler(console_handler)

    return logger


# Global logger instance
logger = setup_logging()
