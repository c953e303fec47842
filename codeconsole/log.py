"""Logging configuration using loguru.

Both processes (the relay server and the ``watch`` engine) log through one
loguru sink on stderr.  Stdlib records from uvicorn, httpx and FastAPI are
intercepted so they share the format.  Every line carries the process
component (``relay`` / ``engine``) so interleaved output from a relay and a
watcher running side by side stays readable.  ``json_logs`` switches the
sink to loguru's serialized records for log shippers.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[component]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# Per-request client logs; the feed and the upstreams are long-lived.
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


class _InterceptHandler(logging.Handler):
    """Forward stdlib records to loguru, keeping the original call site."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", *, component: str = "codeconsole", json_logs: bool = False) -> None:
    """Make loguru the only sink and route stdlib logging into it.

    Call once at process startup, before uvicorn or the engine starts.
    """
    level = level.upper()

    logger.remove()
    logger.configure(extra={"component": component})
    if json_logs:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_TEXT_FORMAT)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging initialised (level={}, json={})", level, json_logs)
