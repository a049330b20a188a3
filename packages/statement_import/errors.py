"""Exception taxonomy for CSV imports.

Only :class:`FileFatalError` subclasses end an import in the ``failed`` state.
Row-level problems are counted by the extractor and service problems are
absorbed by the categorization fallbacks, so neither has an exception that
crosses the pipeline boundary.
"""

from __future__ import annotations


class FileFatalError(ValueError):
    """Base class for errors that abort a whole file import.

    ``reason_code`` is a short machine-readable token reported on
    :class:`~statement_import.models.ImportResult`.
    """

    reason_code: str = "file_fatal"

    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


class EmptyFileError(FileFatalError):
    reason_code = "empty_file"


class UnmappableColumnsError(FileFatalError):
    """The headers could not be mapped to date/description/amount roles."""

    reason_code = "unmappable_columns"

    def __init__(
        self,
        message: str,
        *,
        headers: tuple[str, ...] = (),
        source: str | None = None,
    ) -> None:
        super().__init__(message, source=source)
        self.headers = headers


class CategorizationServiceError(RuntimeError):
    """A categorization service call failed or returned an unusable body."""


__all__ = [
    "CategorizationServiceError",
    "EmptyFileError",
    "FileFatalError",
    "UnmappableColumnsError",
]
