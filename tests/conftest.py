"""Pytest configuration for test isolation.

The pipeline reads ``SI_*`` settings, ``DATABASE_URL``, and
``OPENAI_API_KEY`` from the environment, caches SQLAlchemy engines per URL,
and configures the package logger at most once per process. Any of these
leaking from one test into the next (or from the developer's shell) makes
results depend on test order, so every test starts from a clean slate.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from statement_import import db, logging_setup


@pytest.fixture(autouse=True)
def _isolate_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop settings from the outer environment and run in a scratch CWD.

    The CLI loads ``.env`` from the current directory, so the working
    directory is moved to the test's temporary directory as well.
    """

    for name in list(os.environ):
        if name.startswith("SI_") or name in {
            "DATABASE_URL",
            "OPENAI_API_KEY",
            "STATEMENT_IMPORT_LOG_LEVEL",
        }:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def _reset_process_state() -> Iterator[None]:
    yield
    db.dispose_engines()
    pkg_logger = logging.getLogger("statement_import")
    for handler in list(pkg_logger.handlers):
        pkg_logger.removeHandler(handler)
    pkg_logger.propagate = True
    pkg_logger.setLevel(logging.NOTSET)
    logging_setup._configured = False
