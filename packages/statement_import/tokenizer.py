"""Split raw CSV text into a :data:`~statement_import.models.RawTable`.

Bank exports are line oriented: each physical line is one record. Lines are
split on universal newlines first and every line is then read with the stdlib
:mod:`csv` reader, so a double quote toggles quoting and separators inside
quotes stay literal. Quotes never survive into field values and every field
is trimmed after unquoting.
"""

from __future__ import annotations

import csv

from .errors import EmptyFileError
from .models import RawTable

_BOM = "\ufeff"


def _split_line(line: str, delimiter: str) -> list[str]:
    # One line at a time: an unbalanced quote ends with the line instead of
    # swallowing the rest of the file.
    reader = csv.reader(
        [line], delimiter=delimiter, quotechar='"', skipinitialspace=True, strict=False
    )
    fields = next(reader, [])
    # The reader keeps quotes that open mid-field and folds "" into ";
    # neither may reach a value.
    return [f.replace('"', "").strip() for f in fields]


def tokenize(raw_text: str, *, delimiter: str = ",", source: str | None = None) -> RawTable:
    """Return the header row followed by every non-blank data row.

    Raises :class:`~statement_import.errors.EmptyFileError` when ``raw_text``
    is empty or whitespace only. The header line is kept even if it is
    blank; blank data lines are dropped.
    """

    text = raw_text[1:] if raw_text.startswith(_BOM) else raw_text
    if not text.strip():
        raise EmptyFileError("The CSV file is empty", source=source)

    lines = text.splitlines()
    header, data_lines = lines[0], lines[1:]

    table: RawTable = [_split_line(header, delimiter)]
    for line in data_lines:
        if not line.strip():
            continue
        table.append(_split_line(line, delimiter))
    return table


__all__ = ["tokenize"]
