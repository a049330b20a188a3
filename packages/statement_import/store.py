"""Transaction stores.

A store is a keyed record store with two blocking operations: ``read`` the
full current set and ``write`` a full replacement. The pipeline calls both
from a worker thread and serializes merges per store, so implementations
need no locking of their own.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from sqlalchemy import delete, select

from .db import StoredTransaction, session_scope
from .models import StandardCategory, Transaction


class TransactionStore(Protocol):
    def read(self) -> list[Transaction]: ...

    def write(self, transactions: Sequence[Transaction]) -> None: ...


class InMemoryTransactionStore:
    def __init__(self, transactions: Sequence[Transaction] = ()) -> None:
        self._transactions: list[Transaction] = list(transactions)

    def read(self) -> list[Transaction]:
        return list(self._transactions)

    def write(self, transactions: Sequence[Transaction]) -> None:
        self._transactions = list(transactions)

    def __len__(self) -> int:
        return len(self._transactions)


def _to_row(position: int, t: Transaction) -> StoredTransaction:
    return StoredTransaction(
        position=position,
        date=t.date,
        amount=t.amount,
        description=t.description,
        category=t.category.value,
        category_source=t.category_source,
        counterparty_hint=t.counterparty_hint,
        source_category=t.source_category,
        source_file=t.source_file,
    )


def _from_row(row: StoredTransaction) -> Transaction:
    category = StandardCategory.parse(row.category) or StandardCategory.OTHER
    return Transaction(
        date=row.date,
        amount=row.amount,
        description=row.description,
        category=category,
        source_file=row.source_file,
        counterparty_hint=row.counterparty_hint,
        source_category=row.source_category,
        category_source=row.category_source,
    )


class SqlTransactionStore:
    """Store backed by the ``si_transactions`` table.

    ``write`` replaces the table contents inside one session transaction, so
    a failed write leaves the previous set intact.
    """

    def __init__(self, database_url: str | None = None) -> None:
        self.database_url = database_url

    def read(self) -> list[Transaction]:
        with session_scope(database_url=self.database_url) as session:
            rows = session.scalars(
                select(StoredTransaction).order_by(StoredTransaction.position)
            ).all()
            return [_from_row(r) for r in rows]

    def write(self, transactions: Sequence[Transaction]) -> None:
        with session_scope(database_url=self.database_url) as session:
            session.execute(delete(StoredTransaction))
            session.add_all(_to_row(i, t) for i, t in enumerate(transactions))


__all__ = ["InMemoryTransactionStore", "SqlTransactionStore", "TransactionStore"]
