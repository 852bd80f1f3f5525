"""Logging setup for the ``chunkpipe`` command line."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TextIO

LOGGER_NAME = "chunkpipe"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
STDERR_FORMAT = "chunkpipe: %(levelname)s: %(message)s"


def configure_logging(
    *,
    verbose: bool = False,
    log_path: Path | None = None,
    stream: TextIO | None = None,
) -> logging.Handler:
    """Attach one handler to the package logger and return it.

    Diagnostics are opt-in: without ``verbose`` a ``NullHandler`` is
    installed, which also keeps :data:`logging.lastResort` from printing
    warnings to stderr. Verbose output goes to ``log_path`` when set,
    otherwise to ``stream`` (stderr by default). Calling this again replaces
    the handler installed by the previous call.
    """

    logger = logging.getLogger(LOGGER_NAME)
    for existing in list(logger.handlers):
        if getattr(existing, "_chunkpipe_handler", False):
            logger.removeHandler(existing)
            existing.close()

    if not verbose:
        handler: logging.Handler = logging.NullHandler()
        logger.setLevel(logging.WARNING)
    elif log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.setLevel(logging.DEBUG)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(STDERR_FORMAT))
        logger.setLevel(logging.DEBUG)
    handler._chunkpipe_handler = True  # type: ignore[attr-defined]  # noqa: SLF001

    logger.addHandler(handler)
    return handler


@contextmanager
def logging_scope(
    *,
    verbose: bool = False,
    log_path: Path | None = None,
    stream: TextIO | None = None,
) -> Iterator[logging.Handler]:
    """Configure logging for the duration of one command and detach afterwards."""

    logger = logging.getLogger(LOGGER_NAME)
    previous_level = logger.level
    handler = configure_logging(verbose=verbose, log_path=log_path, stream=stream)
    try:
        yield handler
    finally:
        logger.removeHandler(handler)
        handler.close()
        logger.setLevel(previous_level)
