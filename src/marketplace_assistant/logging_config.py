"""Loguru logging configuration.

Call ``setup_logging()`` once at startup. It installs the loguru sinks and
routes stdlib ``logging`` records (uvicorn, openai, httpx, pydantic_ai)
through loguru.

Every record carries an ``extra["user"]`` field, ``"-"`` outside a request.
The chat route wraps each turn in ``logger.contextualize(user=...)`` so the
orchestrator and its background tasks log under the caller's id without
threading it through every call.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from loguru import logger

NO_USER = "-"

_THIRD_PARTY_LOGGERS = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "fastapi",
    "openai",
    "httpx",
    "pydantic_ai",
)

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[user]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
    "<level>{message}</level>"
)

_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[user]} | {name}:{function} - {message}"


class InterceptHandler(logging.Handler):
    """Redirect stdlib logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(*, level: str = "INFO", json: bool = False, file: Path | None = None) -> None:
    """Make loguru the single logging backend.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ...).
        json: Emit serialized records instead of the coloured console format.
        file: Optional log file, rotated at 10 MB and kept for 14 days.
    """
    logger.remove()
    logger.configure(extra={"user": NO_USER})

    if json:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, colorize=True)

    if file is not None:
        file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(file),
            level=level,
            format=_FILE_FORMAT,
            serialize=json,
            rotation="10 MB",
            retention="14 days",
            enqueue=True,
        )

    intercept = InterceptHandler()
    for name in _THIRD_PARTY_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [intercept]
        stdlib_logger.propagate = False

    logging.root.handlers = [intercept]
    logging.root.setLevel(logging.DEBUG)
