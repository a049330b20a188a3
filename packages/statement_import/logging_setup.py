"""Logging configuration for the ``statement_import`` package.

Two helpers are public:

- ``configure_logging(...)`` installs one ``StreamHandler`` on the package
  logger (``"statement_import"``). Entry points (the CLI, a host app) call it
  once at startup; later calls are no-ops.
- ``get_logger(name)`` returns a child logger. Until the package logger is
  configured it carries a ``NullHandler`` so library use stays silent.

Modules never attach handlers of their own; they call
``get_logger("statement_import.<module>")`` and log short structured lines of
the form ``area:event key=value ...``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "statement_import"
_LEVEL_ENV = "STATEMENT_IMPORT_LOG_LEVEL"
_DEFAULT_FMT = "%(asctime)s %(name)s %(levelname)s %(message)s"

_configured = False


def resolve_level(level: int | str | None) -> int:
    """Turn an int, a level name, or a numeric string into a logging level.

    ``None`` and unknown names fall back to ``STATEMENT_IMPORT_LOG_LEVEL`` and
    then to ``INFO``.
    """

    if isinstance(level, int):
        return level
    if isinstance(level, str) and level.strip():
        name = level.strip().upper()
        if name.isdigit():
            return int(name)
        numeric = logging.getLevelName(name)
        if isinstance(numeric, int):
            return numeric
    env_val = os.getenv(_LEVEL_ENV)
    if env_val and env_val != level:
        return resolve_level(env_val)
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Attach the package handler once and return the package logger."""

    global _configured
    logger = logging.getLogger(_PKG_LOGGER_NAME)
    if _configured:
        return logger

    for handler in list(logger.handlers):
        if isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)

    resolved = resolve_level(level)
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FMT))
    logger.addHandler(handler)
    logger.setLevel(resolved)
    logger.propagate = False

    _configured = True
    return logger


def get_logger(name: str) -> logging.Logger:
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _configured and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "resolve_level"]
