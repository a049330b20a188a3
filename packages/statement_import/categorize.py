"""Merchant categorization for candidates without a bank category.

Public API:
    - :func:`merchant_signature`
    - :func:`keyword_fallback`
    - :func:`categorize_candidates`

Flow:

1. Candidates are grouped by merchant signature; each group is decided once
   and the decision fans out to every member.
2. Unexpired :class:`~statement_import.cache.MerchantCategoryCache` hits are
   used directly.
3. Remaining signatures are paginated into batches of ``batch_size`` and sent
   to ``categorize_merchants`` with at most ``max_concurrent_batches`` in
   flight. Each call is bounded by ``request_timeout``.
4. A failed batch (exception, timeout, unusable body) falls back per item to
   :data:`KEYWORD_FALLBACKS`; so do items a successful batch leaves
   unanswered.
5. Every resolved signature, fallbacks included, is written to the cache.
"""

from __future__ import annotations

import asyncio
import math
import re
import time
import unicodedata
from collections import deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass

from .cache import MerchantCategoryCache
from .config import PipelineSettings
from .logging_setup import get_logger
from .models import (
    CandidateTransaction,
    CategoryAssignment,
    MerchantQuery,
    StandardCategory,
)
from .pmap import p_map
from .service import CategorizationService

_logger = get_logger("statement_import.categorize")

LLM = "llm"
CACHE = "cache"
FALLBACK = "fallback"

# (fraction of batches finished, items decided by the service, items that fell back)
type CategorizeProgress = Callable[[float, int, int], None]

# Longest first so "pos purchase" wins over "pos".
_NOISE_PREFIXES: tuple[str, ...] = (
    "debit card purchase",
    "recurring payment",
    "card purchase",
    "pos purchase",
    "purchase at",
    "payment to",
    "pos",
    "ach",
    "sq *",
    "tst*",
    "pp*",
)


def _prefix_pattern(prefixes: Iterable[str]) -> re.Pattern[str]:
    parts = []
    for p in prefixes:
        escaped = re.escape(p)
        # Word-like prefixes must end at a word boundary ("posh" is not "pos").
        parts.append(escaped + r"(?![a-z0-9])" if p[-1].isalnum() else escaped)
    return re.compile(r"^(?:" + "|".join(parts) + r")[\s:*#\-]*")


_NOISE_RE = _prefix_pattern(_NOISE_PREFIXES)

# Ordered: the first rule with a keyword contained in the description wins.
KEYWORD_FALLBACKS: tuple[tuple[tuple[str, ...], StandardCategory], ...] = (
    (("grocery", "food", "restaurant", "coffee", "cafe"), StandardCategory.FOOD),
    (("rent", "mortgage"), StandardCategory.HOUSING),
    (("gas", "uber", "lyft"), StandardCategory.TRANSPORTATION),
    (("doctor", "pharmacy", "health"), StandardCategory.HEALTHCARE),
    (("netflix", "movie", "game"), StandardCategory.ENTERTAINMENT),
    (("amazon", "store", "shop"), StandardCategory.SHOPPING),
    (("electric", "water", "internet"), StandardCategory.UTILITIES),
    (("paycheck", "salary", "deposit"), StandardCategory.INCOME),
)


def _is_reference_token(token: str) -> bool:
    if token.startswith("#"):
        return True
    digits = sum(ch.isdigit() for ch in token)
    return digits >= 4 and digits * 2 >= len(token)


def merchant_signature(description: str, counterparty_hint: str | None = None) -> str:
    """Return the grouping/caching key for a transaction's merchant.

    NFKC-normalizes and casefolds the description (or ``counterparty_hint``
    when the description is blank), strips payment-rail noise prefixes such
    as ``"POS PURCHASE"`` or ``"SQ *"``, drops reference-number tokens, and
    collapses whitespace. Falls back to the plain normalized text when
    stripping would leave nothing.
    """

    raw = description if description.strip() else (counterparty_hint or "")
    base = " ".join(unicodedata.normalize("NFKC", raw).casefold().split())

    s = base
    while True:
        stripped = _NOISE_RE.sub("", s, count=1)
        if stripped == s:
            break
        s = stripped
    tokens = [t for t in s.split() if not _is_reference_token(t)]
    return " ".join(tokens) or base


def keyword_fallback(text: str) -> StandardCategory:
    lowered = text.casefold()
    for keywords, category in KEYWORD_FALLBACKS:
        if any(k in lowered for k in keywords):
            return category
    return StandardCategory.OTHER


def _paginate(n_total: int, page_size: int) -> Iterable[tuple[int, int, int]]:
    """Yield ``(batch_index, base, end)`` half-open ranges over ``n_total`` items."""

    for k in range(math.ceil(n_total / page_size)):
        base = k * page_size
        yield (k, base, min(base + page_size, n_total))


def _group_by_signature(
    candidates: Sequence[CandidateTransaction],
) -> dict[str, list[int]]:
    """Signature → member indices, in order of first appearance."""

    by_sig: dict[str, list[int]] = {}
    for i, c in enumerate(candidates):
        by_sig.setdefault(merchant_signature(c.description, c.counterparty_hint), []).append(i)
    return by_sig


@dataclass(slots=True)
class CategorizeOutcome:
    # Aligned with the input candidates.
    assignments: list[CategoryAssignment]
    fallbacks: int = 0
    batches: int = 0
    failed_batches: int = 0


@dataclass(slots=True)
class _BatchResult:
    batch_index: int
    decisions: dict[str, CategoryAssignment]
    failed: bool


def _accept_decisions(
    raw: Mapping[object, object], num_items: int
) -> dict[int, StandardCategory]:
    """Keep entries keyed by an in-range batch index with a taxonomy value."""

    out: dict[int, StandardCategory] = {}
    for key, value in raw.items():
        if not isinstance(key, int) or isinstance(key, bool) or not 0 <= key < num_items:
            continue
        category = StandardCategory.parse(value)
        if category is not None:
            out[key] = category
    return out


async def categorize_candidates(
    candidates: Sequence[CandidateTransaction],
    *,
    service: CategorizationService | None,
    cache: MerchantCategoryCache,
    settings: PipelineSettings,
    on_progress: CategorizeProgress | None = None,
) -> CategorizeOutcome:
    """Assign a category to every candidate; never raises for service trouble."""

    by_sig = _group_by_signature(candidates)
    decided: dict[str, CategoryAssignment] = {}
    # Recently resolved "signature: category" pairs offered as context.
    recent: deque[str] = deque(maxlen=max(settings.context_window, 1))

    pending: list[str] = []
    for sig in by_sig:
        hit = cache.get(sig)
        if hit is not None:
            decided[sig] = CategoryAssignment(hit, CACHE)
            recent.append(f"{sig}: {hit.value}")
        else:
            pending.append(sig)

    _logger.info(
        "categorize:start transactions=%d signatures=%d cache_hits=%d pending=%d",
        len(candidates),
        len(by_sig),
        len(by_sig) - len(pending),
        len(pending),
    )

    def _fallback_for(sig: str) -> CategoryAssignment:
        first = candidates[by_sig[sig][0]]
        return CategoryAssignment(
            keyword_fallback(f"{first.description} {sig}"), FALLBACK
        )

    pages = list(_paginate(len(pending), settings.batch_size))
    finished = 0
    succeeded_items = 0
    failed_items = 0
    failed_batches = 0

    async def _run_batch(page: tuple[int, int, int]) -> _BatchResult:
        nonlocal finished, succeeded_items, failed_items, failed_batches
        batch_index, base, end = page
        sigs = pending[base:end]
        context = tuple(recent)[-settings.context_window :] if settings.context_window else ()
        queries = [
            MerchantQuery(sig, candidates[by_sig[sig][0]].amount, context) for sig in sigs
        ]

        t0 = time.perf_counter()
        accepted: dict[int, StandardCategory] = {}
        failed = False
        if service is None:
            failed = True
        else:
            try:
                raw = await asyncio.wait_for(
                    service.categorize_merchants(queries), timeout=settings.request_timeout
                )
                accepted = _accept_decisions(dict(raw), len(sigs))
            except Exception as e:  # noqa: BLE001 - batch falls back to keywords
                failed = True
                _logger.warning(
                    "categorize:batch_failed batch_index=%d items=%d latency_ms=%.2f error=%s",
                    batch_index,
                    len(sigs),
                    (time.perf_counter() - t0) * 1000.0,
                    e.__class__.__name__,
                )

        decisions: dict[str, CategoryAssignment] = {}
        for i, sig in enumerate(sigs):
            if i in accepted:
                decisions[sig] = CategoryAssignment(accepted[i], LLM)
                succeeded_items += 1
            else:
                decisions[sig] = _fallback_for(sig)
                failed_items += 1
            cache.put(sig, decisions[sig].category)
            recent.append(f"{sig}: {decisions[sig].category.value}")

        if failed:
            failed_batches += 1
        elif len(accepted) < len(sigs):
            _logger.warning(
                "categorize:batch_partial batch_index=%d items=%d answered=%d",
                batch_index,
                len(sigs),
                len(accepted),
            )
        else:
            _logger.info(
                "categorize:batch_done batch_index=%d items=%d latency_ms=%.2f",
                batch_index,
                len(sigs),
                (time.perf_counter() - t0) * 1000.0,
            )

        finished += 1
        if on_progress is not None:
            on_progress(finished / len(pages), succeeded_items, failed_items)
        return _BatchResult(batch_index, decisions, failed)

    results = await p_map(pages, _run_batch, concurrency=settings.max_concurrent_batches)
    for r in results:
        decided.update(r.decisions)

    assignments = [decided[sig] for sig in _signatures_in_order(by_sig, len(candidates))]
    fallbacks = sum(len(by_sig[sig]) for sig, a in decided.items() if a.source == FALLBACK)

    _logger.info(
        "categorize:done transactions=%d batches=%d failed_batches=%d fallbacks=%d",
        len(candidates),
        len(pages),
        failed_batches,
        fallbacks,
    )
    return CategorizeOutcome(
        assignments, fallbacks=fallbacks, batches=len(pages), failed_batches=failed_batches
    )


def _signatures_in_order(by_sig: Mapping[str, list[int]], n: int) -> list[str]:
    """Fan group keys back out to one entry per candidate position."""

    out: list[str] = [""] * n
    for sig, positions in by_sig.items():
        for i in positions:
            out[i] = sig
    return out


__all__ = [
    "KEYWORD_FALLBACKS",
    "CategorizeOutcome",
    "categorize_candidates",
    "keyword_fallback",
    "merchant_signature",
]
