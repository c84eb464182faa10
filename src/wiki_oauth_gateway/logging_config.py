"""Logging configuration for the wiki OAuth gateway.

Sets up a single stderr handler on the package logger and hands out
child loggers so every module shares one format.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wiki_oauth_gateway.config import Config

LOGGER_NAME = "wiki_oauth_gateway"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_logging_configured = False


def setup_logging(config: Config) -> None:
    """Configure the package logger from the application config.

    Safe to call more than once: later calls only adjust the level.

    Args:
        config: Application configuration containing log_level setting
    """
    global _logging_configured

    log_level = getattr(logging, config.log_level.value)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    if _logging_configured:
        for handler in logger.handlers:
            handler.setLevel(log_level)
        return

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)

    # uvicorn installs its own root handlers
    logger.propagate = False

    _logging_configured = True

    logger.debug("Logging configured with level %s", config.log_level.value)


def get_logger(name: str) -> logging.Logger:
    """Return a logger nested under the package logger.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Logger instance
    """
    if name.startswith(LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Drop handlers so tests can re-run setup_logging."""
    global _logging_configured
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    _logging_configured = False
