"""Map CSV headers to semantic roles.

Detection is a small strategy chain:

1. An ordered tuple of pure matcher functions, one per role, runs over the
   lower-cased headers. A header claimed by one role is not offered to later
   roles, and roles run in the order date, debit, credit, amount, category,
   merchant so that a "Debit Amount" column becomes the debit column rather
   than the signed amount.
2. If that leaves the date, the description, or the amount representation
   undecided, the categorization service is asked to classify the columns.
   Its answer passes through :func:`validate_ai_mapping` before use, which
   drops every value that is not literally one of the headers.
3. Deterministic matches win; AI values only fill empty slots.
4. The merged mapping is normalized (a signed amount beats a debit/credit
   pair) and validated. Violations raise
   :class:`~statement_import.errors.UnmappableColumnsError`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace

from pydantic import ValidationError

from .errors import UnmappableColumnsError
from .logging_setup import get_logger
from .models import ROLES, ColumnMapping, ColumnRolesBody
from .service import CategorizationService

_logger = get_logger("statement_import.columns")

# A matcher receives the lower-cased headers and the indices already claimed
# by earlier roles; it returns the index it claims, or None.
type Matcher = Callable[[Sequence[str], frozenset[int]], int | None]


def synonym_matcher(*synonyms: str) -> Matcher:
    """Return a matcher that tries ``synonyms`` in order as substrings.

    For each synonym the headers are scanned left to right and the first
    unclaimed header containing it wins.
    """

    wanted = tuple(s.lower() for s in synonyms)

    def _match(lowered: Sequence[str], claimed: frozenset[int]) -> int | None:
        for synonym in wanted:
            for i, header in enumerate(lowered):
                if i not in claimed and synonym in header:
                    return i
        return None

    return _match


ROLE_MATCHERS: tuple[tuple[str, Matcher], ...] = (
    ("date", synonym_matcher("date", "transaction date", "posting date")),
    ("debit", synonym_matcher("debit", "withdrawal", "money out", "paid out")),
    ("credit", synonym_matcher("credit", "deposit", "money in", "paid in")),
    ("amount", synonym_matcher("amount", "transaction amount")),
    ("category", synonym_matcher("category")),
    (
        "merchant",
        synonym_matcher("description", "memo", "details", "merchant", "payee", "narrative"),
    ),
)


def detect_deterministic(headers: Sequence[str]) -> ColumnMapping:
    """Run the matcher chain over ``headers`` and return a (possibly partial) mapping."""

    lowered = [h.strip().lower() for h in headers]
    claimed: set[int] = set()
    found: dict[str, str] = {}
    for role, matcher in ROLE_MATCHERS:
        idx = matcher(lowered, frozenset(claimed))
        if idx is None:
            continue
        claimed.add(idx)
        found[role] = headers[idx]
    return ColumnMapping(**found)


def validate_ai_mapping(raw: Mapping[str, object], headers: Sequence[str]) -> ColumnMapping:
    """Keep only role values that are literally present in ``headers``.

    Anything else (invented names, near-misses, non-strings, unknown roles) is
    dropped and logged. This is the only path by which service output reaches
    a :class:`ColumnMapping`.
    """

    header_set = set(headers)
    try:
        body = ColumnRolesBody.model_validate(dict(raw))
    except (TypeError, ValueError, ValidationError):
        _logger.warning("columns:ai_mapping_unusable body_type=%s", type(raw).__name__)
        return ColumnMapping()

    accepted: dict[str, str] = {}
    for role in ROLES:
        value = getattr(body, role)
        if value is None:
            continue
        if value in header_set:
            accepted[role] = value
        else:
            _logger.warning("columns:ai_value_discarded role=%s value=%r", role, value)
    return ColumnMapping(**accepted)


def merge_mappings(primary: ColumnMapping, secondary: ColumnMapping) -> ColumnMapping:
    """Fill ``primary``'s empty slots from ``secondary``.

    A secondary value naming a header that ``primary`` already uses for some
    other role is ignored, so one column never serves two roles.
    """

    used = {v for v in primary.as_dict().values() if v is not None}
    usable = {
        role: value
        for role, value in secondary.as_dict().items()
        if value is not None and value not in used
    }
    return primary.fill_from(ColumnMapping(**usable))


def normalize_representation(mapping: ColumnMapping) -> ColumnMapping:
    """Drop debit/credit slots when a signed amount column is present."""

    if mapping.amount is not None and (mapping.debit is not None or mapping.credit is not None):
        return replace(mapping, debit=None, credit=None)
    return mapping


def needs_ai(mapping: ColumnMapping) -> bool:
    has_amount = mapping.has_signed_amount or mapping.has_debit_credit
    return mapping.date is None or mapping.merchant is None or not has_amount


def mapping_problems(mapping: ColumnMapping, headers: Sequence[str]) -> list[str]:
    """Return human-readable invariant violations (empty when valid)."""

    problems: list[str] = []
    header_set = set(headers)
    for role, value in mapping.as_dict().items():
        if value is not None and value not in header_set:
            problems.append(f"{role} column {value!r} is not in the header row")

    if mapping.date is None and mapping.merchant is None:
        problems.append("could not identify date or description columns")
    elif mapping.date is None:
        problems.append("could not identify a date column")
    elif mapping.merchant is None:
        problems.append("could not identify a description column")

    has_pair = mapping.debit is not None or mapping.credit is not None
    if mapping.amount is not None and has_pair:
        problems.append("both an amount column and debit/credit columns are mapped")
    elif mapping.amount is None and not mapping.has_debit_credit:
        problems.append("could not identify amount (or debit and credit) columns")
    return problems


async def detect_columns(
    headers: Sequence[str],
    sample_row: Sequence[str],
    *,
    service: CategorizationService | None,
    timeout: float,
    source: str | None = None,
) -> ColumnMapping:
    """Return a validated :class:`ColumnMapping` for ``headers``.

    ``service`` may be ``None`` to disable the AI fallback. A service failure
    or timeout is logged and treated as "no answer"; only the final
    validation can fail the file.
    """

    mapping = detect_deterministic(headers)
    if needs_ai(mapping) and service is not None:
        _logger.info(
            "columns:ai_fallback source=%s deterministic=%s", source, mapping.as_dict()
        )
        try:
            raw = await asyncio.wait_for(
                service.classify_columns(list(headers), list(sample_row)), timeout=timeout
            )
        except Exception as e:  # noqa: BLE001 - any service failure degrades to "no answer"
            _logger.warning(
                "columns:ai_failed source=%s error=%s", source, e.__class__.__name__
            )
        else:
            mapping = merge_mappings(mapping, validate_ai_mapping(raw, headers))

    mapping = normalize_representation(mapping)
    problems = mapping_problems(mapping, headers)
    if problems:
        raise UnmappableColumnsError(
            "; ".join(problems), headers=tuple(headers), source=source
        )
    _logger.debug("columns:mapped source=%s mapping=%s", source, mapping.as_dict())
    return mapping


__all__ = [
    "ROLE_MATCHERS",
    "detect_columns",
    "detect_deterministic",
    "mapping_problems",
    "merge_mappings",
    "needs_ai",
    "normalize_representation",
    "synonym_matcher",
    "validate_ai_mapping",
]
