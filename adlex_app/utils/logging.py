"""Central logging configuration using loguru.

Modules log through ``logging.getLogger("adlex")``; ``init_logging`` routes
those records into a single loguru sink.
"""

from __future__ import annotations

import logging
import os
import sys

from loguru import logger


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def init_logging() -> logger.__class__:
    """Configure the loguru sink.

    The log level is controlled by the ``ADLEX_DEBUG`` environment variable.
    """
    debug = os.getenv("ADLEX_DEBUG") == "1"
    logger.remove()
    logger.add(
        sys.stderr, level="DEBUG" if debug else "INFO", backtrace=True, diagnose=debug
    )
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers = [InterceptHandler()]
        logging.getLogger(name).propagate = False
    return logger


__all__ = ["init_logging", "logger", "InterceptHandler"]
