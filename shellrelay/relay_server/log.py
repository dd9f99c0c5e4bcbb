"""Loguru setup for the relay server.

Everything logs through loguru.  Records from stdlib loggers (uvicorn,
httpx, watchfiles) are forwarded by ``_InterceptHandler``.  Code that works
on one terminal session logs through ``session_logger`` so the session key
shows up in every line about it.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[session]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# uvicorn.access logs every request; watchfiles logs every change batch at INFO.
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "watchfiles.main")


class _InterceptHandler(logging.Handler):
    """Forward stdlib logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Report the caller of the stdlib logger, not this handler.
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", *, json_output: bool = False) -> None:
    """Make loguru the only sink, writing to stderr.

    ``json_output`` switches to one JSON object per line for log shippers.
    Safe to call more than once; each call replaces the previous sink.
    """
    level = level.upper()

    logger.remove()
    logger.configure(extra={"session": "-"})
    if json_output:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_FORMAT)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging initialised (level={}, json={})", level, json_output)


def session_logger(session_key: str):
    """A logger whose records carry *session_key* in ``extra["session"]``."""
    return logger.bind(session=session_key)
