"""Import orchestration.

:class:`ImportPipeline` runs one CSV file through every stage and reports an
:class:`~statement_import.models.ImportResult`:

    idle → tokenizing → detecting_columns → extracting → standardizing
         → categorizing → merging → done

``failed`` is reachable only from tokenizing and detecting_columns, via a
:class:`~statement_import.errors.FileFatalError`; nothing is added to the
store in that case. Service trouble in later stages degrades to fallbacks and
never fails the file. Any other exception (store I/O, bugs) propagates.

Concurrency: the tokenize/detect/extract stages are synchronous. Merges take a
per-store lock and run store I/O in a worker thread. Once merging starts it is
shielded from cancellation and always completes; the ``CancelledError`` is
re-raised afterwards.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Callable, Iterable, Sequence
from os import PathLike
from pathlib import Path

from .cache import CategoryMappingCache, MerchantCategoryCache
from .categorize import categorize_candidates
from .columns import detect_columns
from .config import PipelineSettings
from .duplicates import MergeResult, merge_transactions
from .errors import FileFatalError
from .extractor import extract_rows
from .logging_setup import get_logger
from .models import (
    CandidateTransaction,
    CategoryAssignment,
    ColumnMapping,
    ImportResult,
    ImportState,
    ProgressEvent,
    Transaction,
)
from .service import CategorizationService
from .standardize import standardize_categories
from .store import TransactionStore
from .tokenizer import tokenize

_logger = get_logger("statement_import.pipeline")

type ProgressSink = Callable[[ProgressEvent], None]

# id(store) -> event loop -> lock. Keyed by identity so stores need not be
# hashable; an entry is dropped when its store is collected, for stores that
# support weak references.
_MERGE_LOCKS: dict[
    int, weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]
] = {}


def merge_lock_for(store: TransactionStore) -> asyncio.Lock:
    """Return the merge lock shared by every pipeline writing to ``store``."""

    loop = asyncio.get_running_loop()
    key = id(store)
    per_loop = _MERGE_LOCKS.get(key)
    if per_loop is None:
        per_loop = weakref.WeakKeyDictionary()
        _MERGE_LOCKS[key] = per_loop
        try:
            weakref.finalize(store, _MERGE_LOCKS.pop, key, None)
        except TypeError:
            # No weakref support: the entry lives for the process.
            _logger.debug("pipeline:merge_lock_pinned store=%s", type(store).__name__)
    lock = per_loop.get(loop)
    if lock is None:
        lock = asyncio.Lock()
        per_loop[loop] = lock
    return lock


class ImportPipeline:
    """Turns raw CSV text into merged, categorized transactions.

    Parameters
    ----------
    store:
        Where merged transactions live.
    service:
        Categorization backend; ``None`` disables every AI path (column
        fallback, standardization, merchant categorization) so only
        deterministic rules and fallbacks apply.
    settings:
        Policy values; defaults to :class:`PipelineSettings` defaults.
    category_cache / merchant_cache:
        Shared caches. Fresh ones are created when omitted.
    progress:
        Optional sink for :class:`ProgressEvent` notifications.
    """

    def __init__(
        self,
        *,
        store: TransactionStore,
        service: CategorizationService | None = None,
        settings: PipelineSettings | None = None,
        category_cache: CategoryMappingCache | None = None,
        merchant_cache: MerchantCategoryCache | None = None,
        progress: ProgressSink | None = None,
    ) -> None:
        self.store = store
        self.service = service
        self.settings = settings or PipelineSettings()
        if category_cache is None:
            category_cache = CategoryMappingCache()
        self.category_cache = category_cache
        if merchant_cache is None:
            merchant_cache = MerchantCategoryCache(
                ttl=self.settings.merchant_cache_ttl,
                enabled=self.settings.merchant_cache_enabled,
            )
        self.merchant_cache = merchant_cache
        self._progress = progress

    # ---- progress ------------------------------------------------------------

    def _emit(self, result: ImportResult, message: str = "", fraction: float | None = None) -> None:
        if self._progress is None:
            return
        event = ProgressEvent(
            source=result.source,
            state=result.state,
            message=message,
            fraction=fraction,
            counts={
                "rows_seen": result.rows_seen,
                "rows_skipped": result.rows_skipped,
                "transactions_added": result.transactions_added,
                "duplicates_rejected": result.duplicates_rejected,
                "categorization_fallbacks": result.categorization_fallbacks,
            },
        )
        try:
            self._progress(event)
        except Exception:  # noqa: BLE001 - the sink is observational only
            _logger.warning(
                "pipeline:progress_sink_failed source=%s state=%s",
                result.source,
                result.state.value,
                exc_info=True,
            )

    def _enter(self, result: ImportResult, state: ImportState, message: str = "") -> None:
        result.state = state
        _logger.debug("pipeline:state source=%s state=%s", result.source, state.value)
        self._emit(result, message)

    # ---- stages --------------------------------------------------------------

    async def _categorize(
        self, result: ImportResult, candidates: Sequence[CandidateTransaction]
    ) -> list[Transaction]:
        with_category = [i for i, c in enumerate(candidates) if c.source_category is not None]
        without_category = [i for i, c in enumerate(candidates) if c.source_category is None]
        assignments: dict[int, CategoryAssignment] = {}

        self._enter(result, ImportState.STANDARDIZING)
        if with_category:
            std = await standardize_categories(
                [candidates[i] for i in with_category],
                cache=self.category_cache,
                service=self.service,
                timeout=self.settings.request_timeout,
            )
            assignments.update(zip(with_category, std.assignments, strict=True))
            result.categorization_fallbacks += std.fallbacks

        self._enter(result, ImportState.CATEGORIZING)
        if without_category:

            def _on_progress(fraction: float, succeeded: int, failed: int) -> None:
                self._emit(
                    result,
                    f"categorized {succeeded} merchants, {failed} fell back",
                    fraction=fraction,
                )

            cat = await categorize_candidates(
                [candidates[i] for i in without_category],
                service=self.service,
                cache=self.merchant_cache,
                settings=self.settings,
                on_progress=_on_progress,
            )
            assignments.update(zip(without_category, cat.assignments, strict=True))
            result.categorization_fallbacks += cat.fallbacks

        return [
            Transaction.from_candidate(
                c, assignments[i].category, category_source=assignments[i].source
            )
            for i, c in enumerate(candidates)
        ]

    async def _merge(self, transactions: Sequence[Transaction]) -> MergeResult:
        async with merge_lock_for(self.store):
            existing = await asyncio.to_thread(self.store.read)
            merge = merge_transactions(
                existing, transactions, epsilon=self.settings.amount_epsilon
            )
            if merge.added:
                await asyncio.to_thread(self.store.write, merge.merged)
            return merge

    async def _merge_shielded(
        self, transactions: Sequence[Transaction], source: str
    ) -> MergeResult:
        """Run the merge to completion however often the caller is cancelled.

        The first ``CancelledError`` seen while waiting is re-raised once the
        merge has finished.
        """

        merge_task = asyncio.ensure_future(self._merge(transactions))
        cancelled: asyncio.CancelledError | None = None
        while not merge_task.done():
            try:
                await asyncio.shield(merge_task)
            except asyncio.CancelledError as e:
                if merge_task.done():
                    break
                if cancelled is None:
                    _logger.info("pipeline:cancel_deferred source=%s; finishing merge", source)
                    cancelled = e
        merge = merge_task.result()
        if cancelled is not None:
            raise cancelled
        return merge

    # ---- public API ----------------------------------------------------------

    async def detect(self, raw_text: str, source: str) -> ColumnMapping:
        """Tokenize ``raw_text`` and return its column mapping without importing."""

        table = tokenize(raw_text, source=source)
        sample = table[1] if len(table) > 1 else []
        return await detect_columns(
            table[0],
            sample,
            service=self.service,
            timeout=self.settings.request_timeout,
            source=source,
        )

    async def import_file(self, raw_text: str, source: str) -> ImportResult:
        """Import one file's text; ``source`` identifies it (usually the file name)."""

        result = ImportResult(source=source)
        try:
            self._enter(result, ImportState.TOKENIZING)
            table = tokenize(raw_text, source=source)

            self._enter(result, ImportState.DETECTING_COLUMNS)
            sample = table[1] if len(table) > 1 else []
            result.mapping = await detect_columns(
                table[0],
                sample,
                service=self.service,
                timeout=self.settings.request_timeout,
                source=source,
            )
        except FileFatalError as e:
            result.state = ImportState.FAILED
            result.reason_code = e.reason_code
            result.message = str(e)
            _logger.warning(
                "pipeline:failed source=%s reason=%s message=%s", source, e.reason_code, e
            )
            self._emit(result, result.message)
            return result

        self._enter(result, ImportState.EXTRACTING)
        extraction = extract_rows(
            table, result.mapping, source=source, date_formats=self.settings.date_formats
        )
        result.rows_seen = extraction.rows_seen
        result.rows_skipped = extraction.rows_skipped
        result.skip_reasons.update(extraction.skip_reasons)

        transactions = await self._categorize(result, extraction.candidates)

        self._enter(result, ImportState.MERGING)
        merge = await self._merge_shielded(transactions, source)
        result.transactions_added = len(merge.added)
        result.duplicates_rejected = merge.rejected

        self._enter(result, ImportState.DONE)
        _logger.info(
            (
                "pipeline:done source=%s rows=%d skipped=%d added=%d duplicates=%d "
                "fallbacks=%d"
            ),
            source,
            result.rows_seen,
            result.rows_skipped,
            result.transactions_added,
            result.duplicates_rejected,
            result.categorization_fallbacks,
        )
        return result

    async def import_files(self, files: Iterable[tuple[str, str]]) -> list[ImportResult]:
        """Import ``(raw_text, source)`` pairs concurrently; results keep input order."""

        return list(await asyncio.gather(*(self.import_file(text, src) for text, src in files)))

    async def import_path(self, path: str | PathLike[str]) -> ImportResult:
        """Read a UTF-8 file (BOM tolerated) and import it under its file name."""

        p = Path(path)
        raw_text = await asyncio.to_thread(p.read_text, encoding="utf-8-sig")
        return await self.import_file(raw_text, p.name)

    def save_caches(self) -> None:
        """Snapshot both caches to ``settings.cache_dir`` when one is configured."""

        directory = self.settings.cache_dir
        if directory is None:
            return
        self.category_cache.save(directory)
        self.merchant_cache.save(directory)


__all__ = ["ImportPipeline", "ProgressSink", "merge_lock_for"]
