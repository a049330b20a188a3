"""Merge incoming transactions into the existing set, rejecting near-duplicates.

Two transactions are duplicates when their dates are less than one day
apart, their amounts differ by less than ``epsilon``, and their descriptions
are exactly equal. Existing transactions are never modified or replaced.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from .models import Transaction

DEFAULT_EPSILON = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class MergeResult:
    """``merged`` is sorted by date descending; ties keep insertion order."""

    merged: list[Transaction]
    added: list[Transaction]
    rejected: int


def is_duplicate(a: Transaction, b: Transaction, *, epsilon: Decimal = DEFAULT_EPSILON) -> bool:
    return (
        a.description == b.description
        and abs((a.date - b.date).days) < 1
        and abs(a.amount - b.amount) < epsilon
    )


def merge_transactions(
    existing: Sequence[Transaction],
    incoming: Sequence[Transaction],
    *,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> MergeResult:
    """Return ``existing ∪ (incoming − duplicates)``.

    Each incoming transaction is checked against everything kept so far,
    which includes earlier incoming rows; two identical rows in one file
    therefore collapse to one.
    """

    by_description: dict[str, list[Transaction]] = {}
    for t in existing:
        by_description.setdefault(t.description, []).append(t)

    added: list[Transaction] = []
    rejected = 0
    for t in incoming:
        peers = by_description.setdefault(t.description, [])
        if any(is_duplicate(t, kept, epsilon=epsilon) for kept in peers):
            rejected += 1
            continue
        peers.append(t)
        added.append(t)

    merged = sorted([*existing, *added], key=lambda t: t.date, reverse=True)
    return MergeResult(merged=merged, added=added, rejected=rejected)


__all__ = ["DEFAULT_EPSILON", "MergeResult", "is_duplicate", "merge_transactions"]
