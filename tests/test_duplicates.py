from __future__ import annotations

from datetime import date
from decimal import Decimal

from statement_import.duplicates import is_duplicate, merge_transactions
from statement_import.models import StandardCategory, Transaction


def _tx(day: int, amount: str, description: str, *, category=StandardCategory.FOOD, src="a.csv"):
    return Transaction(
        date=date(2024, 1, day),
        amount=Decimal(amount),
        description=description,
        category=category,
        source_file=src,
    )


def test_duplicate_rule() -> None:
    base = _tx(15, "-4.50", "Coffee Shop")
    assert is_duplicate(base, _tx(15, "-4.50", "Coffee Shop"))
    assert is_duplicate(base, _tx(15, "-4.505", "Coffee Shop"))
    assert not is_duplicate(base, _tx(16, "-4.50", "Coffee Shop"))
    assert not is_duplicate(base, _tx(15, "-4.51", "Coffee Shop"))
    assert not is_duplicate(base, _tx(15, "-4.50", "coffee shop"))


def test_existing_transactions_win_and_are_untouched() -> None:
    existing = [_tx(15, "-4.50", "Coffee Shop", category=StandardCategory.FOOD, src="old.csv")]
    incoming = [_tx(15, "-4.50", "Coffee Shop", category=StandardCategory.OTHER, src="new.csv")]
    result = merge_transactions(existing, incoming)
    assert result.added == []
    assert result.rejected == 1
    assert result.merged == existing
    assert result.merged[0].source_file == "old.csv"


def test_duplicates_within_one_batch_collapse() -> None:
    incoming = [_tx(15, "-4.50", "Coffee Shop"), _tx(15, "-4.50", "Coffee Shop")]
    result = merge_transactions([], incoming)
    assert len(result.added) == 1
    assert result.rejected == 1


def test_merged_view_is_sorted_by_date_descending_and_stable() -> None:
    existing = [_tx(10, "-1", "A"), _tx(20, "-2", "B")]
    incoming = [_tx(15, "-3", "C"), _tx(20, "-4", "D"), _tx(5, "-5", "E")]
    result = merge_transactions(existing, incoming)
    assert [t.description for t in result.merged] == ["B", "D", "C", "A", "E"]
    assert [t.description for t in result.added] == ["C", "D", "E"]


def test_custom_epsilon() -> None:
    result = merge_transactions(
        [_tx(15, "-4.50", "X")], [_tx(15, "-4.60", "X")], epsilon=Decimal("0.25")
    )
    assert result.rejected == 1
