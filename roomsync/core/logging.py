# roomsync/core/logging.py

import logging
import os
import sys
from typing import Optional


DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Loggers of libraries we talk to, and the level they are capped at
LIBRARY_LEVELS = {
    "redis": logging.WARNING,
    "asyncio": logging.WARNING,
    "uvicorn": logging.INFO,
    "uvicorn.error": logging.INFO,
    "uvicorn.access": logging.WARNING,
}


def _level(name: str, default: str) -> int:
    return getattr(logging, os.getenv(name, default).upper(), logging.INFO)


def setup_logging() -> None:
    """
    Configure application-wide logging.

    - LOG_LEVEL sets the root level (default INFO)
    - ROOMSYNC_LOG_LEVEL sets the level of the engine's own loggers,
      e.g. DEBUG to trace subscriptions without library chatter
    - LOG_FORMAT overrides the line format
    - Logs go to stdout
    """
    level = _level("LOG_LEVEL", "INFO")

    root_logger = logging.getLogger()
    # Uvicorn may have configured handlers already; only adjust levels then
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(os.getenv("LOG_FORMAT", DEFAULT_FORMAT)))
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("roomsync").setLevel(_level("ROOMSYNC_LOG_LEVEL", logging.getLevelName(level)))

    for name, library_level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Logger under the app's configuration.

    Usage:
        from roomsync.core.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Room %s is on", rid)
    """
    return logging.getLogger(name)
