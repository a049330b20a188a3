"""Data model for ``statement_import``.

Plain frozen dataclasses carry data between pipeline stages; pydantic models
validate what comes back from the categorization service before it can
influence any state.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields, replace
from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class StandardCategory(StrEnum):
    """The closed set of labels every transaction ends up in."""

    HOUSING = "Housing"
    FOOD = "Food"
    TRANSPORTATION = "Transportation"
    HEALTHCARE = "Healthcare"
    ENTERTAINMENT = "Entertainment"
    SHOPPING = "Shopping"
    SAVINGS = "Savings"
    UTILITIES = "Utilities"
    INCOME = "Income"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: object) -> StandardCategory | None:
        """Return the member whose label matches ``value`` case-insensitively."""

        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        wanted = value.strip().casefold()
        for member in cls:
            if member.value.casefold() == wanted:
                return member
        return None


STANDARD_CATEGORY_LABELS: tuple[str, ...] = tuple(c.value for c in StandardCategory)


# ---------------------------------------------------------------------------
# Tokenizer / column detection
# ---------------------------------------------------------------------------

# Row 0 is the header; every field is already unquoted and trimmed.
type RawTable = list[list[str]]

ROLES: tuple[str, ...] = ("date", "merchant", "amount", "debit", "credit", "category")


@dataclass(frozen=True, slots=True)
class ColumnMapping:
    """Semantic role → header name, as it literally appears in the file.

    Use :func:`statement_import.columns.mapping_problems` to check the
    invariants; the class itself accepts any combination so that partial
    deterministic and AI results can be merged.
    """

    date: str | None = None
    merchant: str | None = None
    amount: str | None = None
    debit: str | None = None
    credit: str | None = None
    category: str | None = None

    def get(self, role: str) -> str | None:
        if role not in ROLES:
            raise KeyError(role)
        return getattr(self, role)

    def as_dict(self) -> dict[str, str | None]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def fill_from(self, other: ColumnMapping) -> ColumnMapping:
        """Return a copy where unset slots take ``other``'s values."""

        changes = {
            role: other.get(role)
            for role in ROLES
            if self.get(role) is None and other.get(role) is not None
        }
        return replace(self, **changes) if changes else self

    @property
    def has_signed_amount(self) -> bool:
        return self.amount is not None

    @property
    def has_debit_credit(self) -> bool:
        return self.debit is not None and self.credit is not None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CandidateTransaction:
    """A row that passed extraction but has no standard category yet.

    ``amount`` is signed: expenses negative, income positive, never zero.
    ``source_category`` is the bank's own category string when the file had
    one; ``None`` means the AI categorizer has to decide.
    """

    date: date
    amount: Decimal
    description: str
    source_file: str
    counterparty_hint: str | None = None
    source_category: str | None = None


@dataclass(frozen=True, slots=True)
class Transaction:
    """A stored, categorized transaction.

    ``category_source`` records how the category was chosen: ``source``
    (standardized bank category), ``llm``, ``cache``, ``fallback`` (keyword
    table or ``Other``), or ``manual`` for user edits made elsewhere.
    """

    date: date
    amount: Decimal
    description: str
    category: StandardCategory
    source_file: str
    counterparty_hint: str | None = None
    source_category: str | None = None
    category_source: str = "unknown"

    @classmethod
    def from_candidate(
        cls,
        candidate: CandidateTransaction,
        category: StandardCategory,
        *,
        category_source: str,
    ) -> Transaction:
        return cls(
            date=candidate.date,
            amount=candidate.amount,
            description=candidate.description,
            category=category,
            source_file=candidate.source_file,
            counterparty_hint=candidate.counterparty_hint,
            source_category=candidate.source_category,
            category_source=category_source,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "amount": f"{self.amount:.2f}",
            "description": self.description,
            "category": self.category.value,
            "category_source": self.category_source,
            "counterparty_hint": self.counterparty_hint,
            "source_category": self.source_category,
            "source_file": self.source_file,
        }


@dataclass(frozen=True, slots=True)
class CategoryAssignment:
    """A category decision for one candidate, plus where it came from."""

    category: StandardCategory
    source: str


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class ImportState(StrEnum):
    IDLE = "idle"
    TOKENIZING = "tokenizing"
    DETECTING_COLUMNS = "detecting_columns"
    EXTRACTING = "extracting"
    STANDARDIZING = "standardizing"
    CATEGORIZING = "categorizing"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class ImportResult:
    """Outcome of one ``import_file`` call.

    Counts are filled in as the run progresses, so a ``failed`` result still
    reports what was seen before the failure (nothing is ever added then).
    """

    source: str
    state: ImportState = ImportState.IDLE
    rows_seen: int = 0
    rows_skipped: int = 0
    skip_reasons: Counter[str] = field(default_factory=Counter)
    transactions_added: int = 0
    duplicates_rejected: int = 0
    categorization_fallbacks: int = 0
    mapping: ColumnMapping | None = None
    reason_code: str | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is ImportState.DONE

    def to_json(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "state": self.state.value,
            "rows_seen": self.rows_seen,
            "rows_skipped": self.rows_skipped,
            "skip_reasons": dict(sorted(self.skip_reasons.items())),
            "transactions_added": self.transactions_added,
            "duplicates_rejected": self.duplicates_rejected,
            "categorization_fallbacks": self.categorization_fallbacks,
            "mapping": self.mapping.as_dict() if self.mapping else None,
            "reason_code": self.reason_code,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Notification sent to the progress sink; it cannot steer the pipeline."""

    source: str
    state: ImportState
    message: str = ""
    fraction: float | None = None
    counts: Mapping[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Service response DTOs
# ---------------------------------------------------------------------------


class ColumnRolesBody(BaseModel):
    """``classify_columns`` output: one nullable header string per role.

    Values are kept exactly as returned; only verbatim header names survive
    validation.
    """

    model_config = ConfigDict(extra="ignore")

    date: str | None = None
    merchant: str | None = None
    amount: str | None = None
    debit: str | None = None
    credit: str | None = None
    category: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _non_strings_are_null(cls, v: object) -> object:
        # A number or list where a header was expected is unusable, not fatal.
        return v if isinstance(v, str) else None


class CategoryPair(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    source: str
    category: str


class CategoryMappingBody(BaseModel):
    """``standardize_categories`` output."""

    model_config = ConfigDict(extra="forbid")

    mappings: list[CategoryPair]


class MerchantDecision(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    idx: int
    category: str


class MerchantDecisionBody(BaseModel):
    """``categorize_merchants`` output, aligned by batch-relative ``idx``."""

    model_config = ConfigDict(extra="forbid")

    results: list[MerchantDecision]


@dataclass(frozen=True, slots=True)
class MerchantQuery:
    """One item of a ``categorize_merchants`` batch."""

    signature: str
    amount: Decimal
    context: Sequence[str] = ()


__all__ = [
    "CandidateTransaction",
    "CategoryAssignment",
    "CategoryMappingBody",
    "CategoryPair",
    "ColumnMapping",
    "ColumnRolesBody",
    "ImportResult",
    "ImportState",
    "MerchantDecision",
    "MerchantDecisionBody",
    "MerchantQuery",
    "ProgressEvent",
    "ROLES",
    "RawTable",
    "STANDARD_CATEGORY_LABELS",
    "StandardCategory",
    "Transaction",
]
