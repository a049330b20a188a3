"""Apply a :class:`~statement_import.models.ColumnMapping` to data rows.

Each row either becomes a :class:`~statement_import.models.CandidateTransaction`
with a normalized sign (expenses negative, income positive) or is skipped with
one :class:`SkipReason`. Row problems never abort the file; they are counted
on the :class:`ExtractionResult`.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from .config import DEFAULT_DATE_FORMATS
from .logging_setup import get_logger
from .models import ROLES, CandidateTransaction, ColumnMapping, RawTable

_logger = get_logger("statement_import.extractor")

_CURRENCY_SYMBOLS = frozenset("$£€¥₹")


class SkipReason(StrEnum):
    BAD_DATE = "bad_date"
    BAD_AMOUNT = "bad_amount"
    MISSING_DESCRIPTION = "missing_description"
    ZERO_AMOUNT = "zero_amount"
    SHORT_ROW = "short_row"


class RowRejected(ValueError):
    def __init__(self, reason: SkipReason, detail: str = "") -> None:
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason


@dataclass(slots=True)
class ExtractionResult:
    candidates: list[CandidateTransaction] = field(default_factory=list)
    rows_seen: int = 0
    skip_reasons: Counter[str] = field(default_factory=Counter)

    @property
    def rows_skipped(self) -> int:
        return sum(self.skip_reasons.values())


# ---- Field parsers -----------------------------------------------------------


def parse_amount(raw: str | None) -> Decimal:
    """Parse a bank amount string into a signed ``Decimal``.

    Accepts currency symbols, thousands separators, a leading ``+``/``-``, a
    trailing ``-`` and accounting parentheses in any combination, e.g.
    ``"-($1,234.56)"`` or ``"$4.50-"``.
    Raises ``ValueError`` for empty or unparseable input.
    """

    if raw is None:
        raise ValueError("amount is required")
    s = raw.strip()
    if not s:
        raise ValueError("amount is empty")
    negative = False

    # Peel sign, currency symbol, and parentheses until stable so any ordering
    # of these markers is handled.
    while True:
        changed = False
        if s.startswith("+"):
            s = s[1:].lstrip()
            changed = True
        elif s.startswith("-"):
            negative = True
            s = s[1:].lstrip()
            changed = True
        if s.endswith("-"):
            # Trailing-minus exports: "4.50-"
            negative = True
            s = s[:-1].rstrip()
            changed = True
        if s[:1] in _CURRENCY_SYMBOLS:
            s = s[1:].lstrip()
            changed = True
        if s.startswith("(") and s.endswith(")") and len(s) >= 2:
            negative = True
            s = s[1:-1].strip()
            changed = True
        if not changed:
            break

    # Trailing symbols ("4.50 €"), inner whitespace, and thousands separators.
    s = "".join(ch for ch in s if ch not in _CURRENCY_SYMBOLS and ch != "," and not ch.isspace())

    try:
        d = Decimal(s)
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {raw!r}") from exc
    if not d.is_finite():
        raise ValueError(f"invalid amount: {raw!r}")
    return -abs(d) if negative else d


def parse_date(raw: str | None, formats: Sequence[str] = DEFAULT_DATE_FORMATS) -> date:
    """Parse the first whitespace token of ``raw`` with the first matching format."""

    s = (raw or "").strip()
    if not s:
        raise ValueError("date is empty")
    # Tolerate timestamps such as "01/15/2024 10:42"
    first = s.split()[0]
    for fmt in formats:
        try:
            return datetime.strptime(first, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"invalid date: {raw!r}")


def counterparty_hint(description: str) -> str | None:
    """Description without its trailing token, when it has more than one."""

    tokens = description.split()
    if len(tokens) < 2:
        return None
    return " ".join(tokens[:-1])


# ---- Row extraction ----------------------------------------------------------


def _column_indices(mapping: ColumnMapping, headers: Sequence[str]) -> dict[str, int]:
    indices: dict[str, int] = {}
    for role in ROLES:
        name = mapping.get(role)
        if name is not None:
            indices[role] = list(headers).index(name)
    return indices


def _signed_amount(row: Sequence[str], indices: dict[str, int]) -> Decimal:
    if "amount" in indices:
        try:
            amount = parse_amount(row[indices["amount"]])
        except ValueError as e:
            raise RowRejected(SkipReason.BAD_AMOUNT, str(e)) from e
        if amount == 0:
            raise RowRejected(SkipReason.ZERO_AMOUNT)
        return amount

    magnitudes: dict[str, Decimal] = {}
    for role in ("debit", "credit"):
        raw = row[indices[role]].strip() if role in indices else ""
        if not raw:
            continue
        try:
            magnitudes[role] = abs(parse_amount(raw))
        except ValueError as e:
            raise RowRejected(SkipReason.BAD_AMOUNT, str(e)) from e

    if magnitudes.get("debit", Decimal(0)) > 0:
        return -magnitudes["debit"]
    if magnitudes.get("credit", Decimal(0)) > 0:
        return magnitudes["credit"]
    raise RowRejected(SkipReason.ZERO_AMOUNT)


def extract_row(
    row: Sequence[str],
    indices: dict[str, int],
    *,
    source: str,
    date_formats: Sequence[str] = DEFAULT_DATE_FORMATS,
) -> CandidateTransaction:
    """Build one candidate or raise :class:`RowRejected`."""

    if any(i >= len(row) for i in indices.values()):
        raise RowRejected(SkipReason.SHORT_ROW, f"{len(row)} fields")

    try:
        when = parse_date(row[indices["date"]], date_formats)
    except ValueError as e:
        raise RowRejected(SkipReason.BAD_DATE, str(e)) from e

    description = row[indices["merchant"]].strip()
    if not description:
        raise RowRejected(SkipReason.MISSING_DESCRIPTION)

    amount = _signed_amount(row, indices)

    category: str | None = None
    if "category" in indices:
        category = row[indices["category"]].strip() or None

    return CandidateTransaction(
        date=when,
        amount=amount,
        description=description,
        source_file=source,
        counterparty_hint=counterparty_hint(description),
        source_category=category,
    )


def extract_rows(
    table: RawTable,
    mapping: ColumnMapping,
    *,
    source: str,
    date_formats: Sequence[str] = DEFAULT_DATE_FORMATS,
) -> ExtractionResult:
    """Extract every data row of ``table`` (row 0 is the header)."""

    headers, data = table[0], table[1:]
    indices = _column_indices(mapping, headers)
    result = ExtractionResult(rows_seen=len(data))
    for row_no, row in enumerate(data, start=1):
        try:
            result.candidates.append(
                extract_row(row, indices, source=source, date_formats=date_formats)
            )
        except RowRejected as e:
            result.skip_reasons[e.reason.value] += 1
            _logger.debug("extractor:row_skipped source=%s row=%d reason=%s", source, row_no, e)

    if result.rows_skipped:
        _logger.info(
            "extractor:done source=%s rows=%d candidates=%d skipped=%s",
            source,
            result.rows_seen,
            len(result.candidates),
            dict(result.skip_reasons),
        )
    return result


__all__ = [
    "ExtractionResult",
    "RowRejected",
    "SkipReason",
    "counterparty_hint",
    "extract_row",
    "extract_rows",
    "parse_amount",
    "parse_date",
]
