"""
askbase - Logging
===================
Logger factory plus a small timing helper for the pipeline stages.

Level resolution (first match wins):
  1. the ``level`` argument of ``get_logger``
  2. ``settings.LOG_LEVEL``
  3. ``settings.ENV``: ``dev`` → DEBUG, ``prod`` → WARNING

Every askbase logger writes one line per record to stdout::

    2024-01-01 12:00:00 | INFO     | askbase.src.core.ingestor | [INGEST] ...

and does not propagate, so uvicorn's root handlers never print it twice.

Usage:
    from askbase.src.utils.logger import get_logger, log_duration
    logger = get_logger(__name__)
    with log_duration(logger, "[INGEST] Embedding"):
        ...
"""

import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager

from askbase.config.settings import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_ENV_LEVELS = {"dev": logging.DEBUG, "prod": logging.WARNING}


def default_level() -> int:
    """The level used when ``get_logger`` gets no explicit one."""
    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL)
    return _ENV_LEVELS.get(settings.ENV, logging.INFO)


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return the logger *name*, attaching the stdout handler on first use.

    Calling it again for the same name returns the same logger without
    stacking a second handler.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    resolved = level if level is not None else default_level()
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))

    logger.setLevel(resolved)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


@contextmanager
def log_duration(logger: logging.Logger, label: str, level: int = logging.INFO) -> Iterator[None]:
    """Log ``"<label>: <ms>ms"`` when the block exits, even if it raised."""
    t_start = time.perf_counter()
    try:
        yield
    finally:
        logger.log(level, "%s: %.1fms", label, (time.perf_counter() - t_start) * 1000)
