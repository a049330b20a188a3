from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from statement_import.cache import CategoryMappingCache, MerchantCategoryCache
from statement_import.config import PipelineSettings
from statement_import.models import ImportState, ProgressEvent, StandardCategory, Transaction
from statement_import.pipeline import ImportPipeline, merge_lock_for
from statement_import.store import InMemoryTransactionStore
from tests.helpers.fake_service import FakeCategorizationService, by_keyword

COFFEE_CSV = "Date,Description,Amount\n01/15/2024,Coffee Shop,-4.50\n"
PAYCHECK_CSV = "Date,Details,Debit,Credit\n01/16/2024,Paycheck,,2000.00\n"


def _pipeline(store=None, **kwargs) -> tuple[ImportPipeline, InMemoryTransactionStore]:
    store = store if store is not None else InMemoryTransactionStore()
    return ImportPipeline(store=store, **kwargs), store


# ---- Scenarios ---------------------------------------------------------------


def test_signed_amount_file() -> None:
    service = FakeCategorizationService(merchants=by_keyword({"coffee": "Food"}))
    pipeline, store = _pipeline(service=service)
    result = asyncio.run(pipeline.import_file(COFFEE_CSV, "coffee.csv"))

    assert result.state is ImportState.DONE
    assert result.ok
    assert result.rows_seen == 1
    assert result.transactions_added == 1
    (tx,) = store.read()
    assert tx.amount == Decimal("-4.50")
    assert tx.description == "Coffee Shop"
    assert tx.date == date(2024, 1, 15)
    assert tx.category is StandardCategory.FOOD
    assert tx.category_source == "llm"
    assert tx.source_file == "coffee.csv"


def test_debit_credit_file() -> None:
    pipeline, store = _pipeline(service=FakeCategorizationService(merchants=lambda _s: "Income"))
    result = asyncio.run(pipeline.import_file(PAYCHECK_CSV, "bank.csv"))
    assert result.ok
    (tx,) = store.read()
    assert tx.amount == Decimal("2000.00")
    assert tx.category is StandardCategory.INCOME


def test_duplicate_of_existing_transaction_adds_nothing() -> None:
    existing = Transaction(
        date=date(2024, 1, 15),
        amount=Decimal("-4.50"),
        description="Coffee Shop",
        category=StandardCategory.FOOD,
        source_file="earlier.csv",
        category_source="manual",
    )
    pipeline, store = _pipeline(InMemoryTransactionStore([existing]))
    result = asyncio.run(pipeline.import_file(COFFEE_CSV, "coffee.csv"))
    assert result.transactions_added == 0
    assert result.duplicates_rejected == 1
    assert store.read() == [existing]


def test_service_unavailable_uber_is_transportation() -> None:
    service = FakeCategorizationService(fail=ConnectionError("offline"))
    pipeline, store = _pipeline(service=service)
    csv_text = "Date,Description,Amount\n01/17/2024,Uber,-18.20\n"
    result = asyncio.run(pipeline.import_file(csv_text, "rides.csv"))
    assert result.ok
    assert result.categorization_fallbacks == 1
    (tx,) = store.read()
    assert tx.category is StandardCategory.TRANSPORTATION
    assert tx.category_source == "fallback"


# ---- Properties --------------------------------------------------------------


def test_importing_the_same_file_twice_is_idempotent() -> None:
    csv_text = (
        "Date,Description,Amount\n"
        "01/15/2024,Coffee Shop,-4.50\n"
        "01/16/2024,Grocery Outlet,-52.10\n"
        "01/17/2024,Uber,-18.20\n"
    )
    pipeline, store = _pipeline()
    first = asyncio.run(pipeline.import_file(csv_text, "a.csv"))
    size_after_first = len(store)
    second = asyncio.run(pipeline.import_file(csv_text, "a.csv"))
    assert first.transactions_added == 3
    assert second.transactions_added == 0
    assert second.duplicates_rejected == 3
    assert len(store) == size_after_first == 3


def test_every_transaction_is_categorized_without_a_service() -> None:
    csv_text = (
        "Date,Description,Amount,Category\n"
        "01/15/2024,Coffee Shop,-4.50,Dining\n"
        "01/16/2024,Mystery Vendor,-9.99,\n"
        "01/17/2024,Paycheck,2000,income\n"
    )
    pipeline, store = _pipeline()
    result = asyncio.run(pipeline.import_file(csv_text, "m.csv"))
    assert result.transactions_added == 3
    by_desc = {t.description: t for t in store.read()}
    assert all(isinstance(t.category, StandardCategory) for t in by_desc.values())
    assert by_desc["Coffee Shop"].category is StandardCategory.OTHER
    assert by_desc["Coffee Shop"].source_category == "Dining"
    assert by_desc["Mystery Vendor"].category is StandardCategory.OTHER
    assert by_desc["Paycheck"].category is StandardCategory.INCOME
    assert by_desc["Paycheck"].category_source == "source"
    assert result.categorization_fallbacks == 2


def test_bank_categories_are_standardized_and_cached() -> None:
    service = FakeCategorizationService(categories={"Dining": "Food"})
    cache = CategoryMappingCache()
    pipeline, store = _pipeline(service=service, category_cache=cache)
    csv_text = "Date,Description,Amount,Category\n01/15/2024,Coffee Shop,-4.50,Dining\n"
    asyncio.run(pipeline.import_file(csv_text, "m.csv"))
    assert store.read()[0].category is StandardCategory.FOOD
    assert cache.get("dining") is StandardCategory.FOOD
    assert service.merchant_calls == []


def test_rows_are_skipped_with_reasons() -> None:
    csv_text = (
        "Date,Description,Amount\n"
        "01/15/2024,Coffee Shop,-4.50\n"
        "yesterday,Tea,-2.00\n"
        "01/15/2024,,-2.00\n"
        "01/15/2024,Free,0\n"
    )
    pipeline, store = _pipeline()
    result = asyncio.run(pipeline.import_file(csv_text, "s.csv"))
    assert result.ok
    assert result.rows_seen == 4
    assert result.rows_skipped == 3
    assert dict(result.skip_reasons) == {
        "bad_date": 1,
        "missing_description": 1,
        "zero_amount": 1,
    }
    assert len(store) == 1


def test_merged_store_is_date_descending() -> None:
    pipeline, store = _pipeline()
    asyncio.run(pipeline.import_file(COFFEE_CSV, "a.csv"))
    asyncio.run(pipeline.import_file(PAYCHECK_CSV, "b.csv"))
    assert [t.date for t in store.read()] == [date(2024, 1, 16), date(2024, 1, 15)]


# ---- Failures ----------------------------------------------------------------


def test_empty_file_fails_without_touching_the_store() -> None:
    pipeline, store = _pipeline()
    result = asyncio.run(pipeline.import_file("  \n", "empty.csv"))
    assert result.state is ImportState.FAILED
    assert result.reason_code == "empty_file"
    assert result.message == "The CSV file is empty"
    assert len(store) == 0


def test_unmappable_columns_fail_the_file() -> None:
    service = FakeCategorizationService(columns={"date": "Timestamp"})
    pipeline, store = _pipeline(service=service)
    result = asyncio.run(pipeline.import_file("Foo,Bar\n1,2\n", "weird.csv"))
    assert result.state is ImportState.FAILED
    assert result.reason_code == "unmappable_columns"
    assert "could not identify" in (result.message or "")
    assert result.to_json()["state"] == "failed"
    assert len(store) == 0


def test_header_only_file_is_done_with_nothing_added() -> None:
    pipeline, store = _pipeline()
    result = asyncio.run(pipeline.import_file("Date,Description,Amount\n", "h.csv"))
    assert result.ok
    assert result.rows_seen == 0
    assert len(store) == 0


def test_store_errors_propagate() -> None:
    class _BrokenStore(InMemoryTransactionStore):
        def write(self, transactions):
            raise OSError("disk full")

    pipeline, _ = _pipeline(_BrokenStore())
    with pytest.raises(OSError, match="disk full"):
        asyncio.run(pipeline.import_file(COFFEE_CSV, "a.csv"))


# ---- Progress ----------------------------------------------------------------


def test_progress_events_follow_the_state_machine() -> None:
    events: list[ProgressEvent] = []
    pipeline, _ = _pipeline(progress=events.append)
    asyncio.run(pipeline.import_file(COFFEE_CSV, "a.csv"))
    states = [e.state for e in events if e.fraction is None]
    assert states == [
        ImportState.TOKENIZING,
        ImportState.DETECTING_COLUMNS,
        ImportState.EXTRACTING,
        ImportState.STANDARDIZING,
        ImportState.CATEGORIZING,
        ImportState.MERGING,
        ImportState.DONE,
    ]
    batch_events = [e for e in events if e.fraction is not None]
    assert batch_events[-1].fraction == 1.0
    assert events[-1].counts["transactions_added"] == 1


def test_failing_progress_sink_cannot_change_the_outcome() -> None:
    def _sink(_event: ProgressEvent) -> None:
        raise RuntimeError("ui crashed")

    pipeline, store = _pipeline(progress=_sink)
    result = asyncio.run(pipeline.import_file(COFFEE_CSV, "a.csv"))
    assert result.ok
    assert len(store) == 1


# ---- Concurrency -------------------------------------------------------------


class _SlowStore(InMemoryTransactionStore):
    """Store whose reads are slow enough to expose unserialized merges."""

    def read(self):
        snapshot = super().read()
        time.sleep(0.05)
        return snapshot


def test_concurrent_imports_serialize_merges() -> None:
    pipeline, store = _pipeline(_SlowStore())
    files = [(COFFEE_CSV, "a.csv"), (COFFEE_CSV, "b.csv"), (PAYCHECK_CSV, "c.csv")]
    results = asyncio.run(pipeline.import_files(files))
    assert [r.source for r in results] == ["a.csv", "b.csv", "c.csv"]
    assert sum(r.transactions_added for r in results) == 2
    assert sum(r.duplicates_rejected for r in results) == 1
    assert len(store) == 2


def test_pipelines_sharing_a_store_share_the_merge_lock() -> None:
    store = _SlowStore()
    p1, _ = _pipeline(store)
    p2, _ = _pipeline(store)

    async def _both():
        return await asyncio.gather(
            p1.import_file(COFFEE_CSV, "a.csv"), p2.import_file(COFFEE_CSV, "b.csv")
        )

    r1, r2 = asyncio.run(_both())
    assert r1.transactions_added + r2.transactions_added == 1
    assert len(store) == 1


def test_import_path_reads_utf8_with_bom(tmp_path: Path) -> None:
    path = tmp_path / "statement.csv"
    path.write_bytes(("\ufeff" + COFFEE_CSV).encode("utf-8"))
    pipeline, store = _pipeline()
    result = asyncio.run(pipeline.import_path(path))
    assert result.source == "statement.csv"
    assert result.ok
    assert store.read()[0].source_file == "statement.csv"


# ---- Cancellation ------------------------------------------------------------


def test_cancellation_before_merge_leaves_store_untouched() -> None:
    service = FakeCategorizationService(block=asyncio.Event())
    pipeline, store = _pipeline(service=service)

    async def _run():
        task = asyncio.ensure_future(pipeline.import_file(COFFEE_CSV, "a.csv"))
        while not service.merchant_calls:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())
    assert len(store) == 0


def test_merge_completes_even_when_cancelled_during_merging() -> None:
    holder: dict[str, asyncio.Future] = {}

    def _sink(event: ProgressEvent) -> None:
        if event.state is ImportState.MERGING:
            holder["task"].cancel()

    pipeline, store = _pipeline(_SlowStore(), progress=_sink)

    async def _run():
        task = asyncio.ensure_future(pipeline.import_file(COFFEE_CSV, "a.csv"))
        holder["task"] = task
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())
    assert len(store) == 1


def test_repeated_cancellation_cannot_abandon_a_started_merge() -> None:
    holder: dict[str, asyncio.Future] = {}

    def _sink(event: ProgressEvent) -> None:
        if event.state is ImportState.MERGING:
            task = holder["task"]
            task.cancel()
            # Lands while the slow store read is still in its worker thread.
            asyncio.get_running_loop().call_later(0.01, task.cancel)
            asyncio.get_running_loop().call_later(0.02, task.cancel)

    pipeline, store = _pipeline(_SlowStore(), progress=_sink)

    async def _run():
        task = asyncio.ensure_future(pipeline.import_file(COFFEE_CSV, "a.csv"))
        holder["task"] = task
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())
    assert len(store) == 1


@dataclass
class _DataclassStore:
    # Dataclasses with eq=True are unhashable.
    rows: list[Transaction] = field(default_factory=list)

    def read(self) -> list[Transaction]:
        return list(self.rows)

    def write(self, transactions) -> None:
        self.rows = list(transactions)


class _SlottedStore:
    # No __weakref__ slot.
    __slots__ = ("rows",)

    def __init__(self) -> None:
        self.rows: list[Transaction] = []

    def read(self) -> list[Transaction]:
        return list(self.rows)

    def write(self, transactions) -> None:
        self.rows = list(transactions)


@pytest.mark.parametrize("store_cls", [_DataclassStore, _SlottedStore])
def test_any_protocol_store_can_be_merged_into(store_cls) -> None:
    store = store_cls()
    pipeline, _ = _pipeline(store)
    files = [(COFFEE_CSV, "a.csv"), (COFFEE_CSV, "b.csv")]
    results = asyncio.run(pipeline.import_files(files))
    assert all(r.ok for r in results)
    assert sum(r.transactions_added for r in results) == 1
    assert len(store.rows) == 1


def test_merge_lock_is_shared_per_store_and_loop() -> None:
    store, other = InMemoryTransactionStore(), _DataclassStore()

    async def _locks():
        return merge_lock_for(store), merge_lock_for(store), merge_lock_for(other)

    a, b, c = asyncio.run(_locks())
    assert a is b
    assert a is not c


# ---- Settings and caches -----------------------------------------------------


def test_default_caches_follow_settings() -> None:
    settings = PipelineSettings(merchant_cache_enabled=False, merchant_cache_ttl=60.0)
    pipeline, _ = _pipeline(settings=settings)
    assert pipeline.merchant_cache.enabled is False
    assert pipeline.merchant_cache.ttl == 60.0


def test_merchant_cache_is_shared_across_imports() -> None:
    service = FakeCategorizationService(merchants=by_keyword({"coffee": "Food"}))
    cache = MerchantCategoryCache()
    pipeline, _ = _pipeline(service=service, merchant_cache=cache)
    asyncio.run(pipeline.import_file(COFFEE_CSV, "a.csv"))
    asyncio.run(pipeline.import_file(COFFEE_CSV.replace("01/15", "02/15"), "b.csv"))
    assert len(service.merchant_calls) == 1


def test_save_caches_writes_snapshots(tmp_path: Path) -> None:
    service = FakeCategorizationService(merchants=by_keyword({"coffee": "Food"}))
    settings = PipelineSettings(cache_dir=tmp_path / "caches")
    pipeline, _ = _pipeline(service=service, settings=settings)
    asyncio.run(pipeline.import_file(COFFEE_CSV, "a.csv"))
    pipeline.save_caches()
    reloaded = MerchantCategoryCache.load(tmp_path / "caches")
    assert reloaded.get("coffee shop") is StandardCategory.FOOD
