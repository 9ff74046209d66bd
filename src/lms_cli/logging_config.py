"""Logging for lms-cli.

Everything logs under the ``lms_cli`` logger, which writes to stderr so
that stdout stays reserved for command output (``auth token`` prints a
bare access token that scripts capture). The logger does not propagate,
so records from uvicorn, httpx and keyring never reach its handler and
ours never reach a host application's root handler.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lms_cli.config import Config

# Package logger name
LOGGER_NAME = "lms_cli"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Track if logging has been set up to prevent duplicate handlers
_logging_configured = False


def setup_logging(config: Config) -> None:
    """Attach the stderr handler and apply the configured level.

    Calling this more than once only updates the level.

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

    # Keep uvicorn/httpx records out of our handler
    logger.propagate = False

    _logging_configured = True

    logger.debug("Logging configured with level %s", config.log_level.value)


def get_logger(name: str) -> logging.Logger:
    """Return the ``lms_cli`` child logger for a module.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        Configured Logger instance
    """
    if name.startswith(LOGGER_NAME):
        return logging.getLogger(name)

    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def reset_logging() -> None:
    """Drop the handler and restore propagation so pytest's caplog sees records."""
    global _logging_configured
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
    _logging_configured = False
