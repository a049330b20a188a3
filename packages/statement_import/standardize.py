"""Map bank-provided category strings onto :class:`StandardCategory`.

Resolution order for each distinct (normalized) string:

1. :class:`~statement_import.cache.CategoryMappingCache` hit.
2. The string already names a taxonomy label ("food", "Income").
3. One batched ``standardize_categories`` request for everything left.

Service answers are cached; strings the service fails on or leaves
unanswered become ``Other`` for this run only and are not cached.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass

from .cache import CategoryMappingCache, normalize_category_key
from .logging_setup import get_logger
from .models import CandidateTransaction, CategoryAssignment, StandardCategory
from .service import CategorizationService

_logger = get_logger("statement_import.standardize")

SOURCE = "source"
FALLBACK = "fallback"


@dataclass(slots=True)
class StandardizeOutcome:
    # Aligned with the input candidates.
    assignments: list[CategoryAssignment]
    fallbacks: int = 0
    service_called: bool = False


async def _ask_service(
    service: CategorizationService,
    pending: dict[str, str],
    *,
    timeout: float,
) -> dict[str, StandardCategory]:
    """Return ``normalized key -> category`` for the strings the service answered."""

    t0 = time.perf_counter()
    spellings = list(pending.values())
    try:
        raw = await asyncio.wait_for(service.standardize_categories(spellings), timeout=timeout)
    except Exception as e:  # noqa: BLE001 - degraded path: unresolved strings become Other
        _logger.warning(
            "standardize:service_failed strings=%d latency_ms=%.2f error=%s",
            len(spellings),
            (time.perf_counter() - t0) * 1000.0,
            e.__class__.__name__,
        )
        return {}

    answered: dict[str, StandardCategory] = {}
    for text, value in dict(raw).items():
        key = normalize_category_key(str(text))
        category = StandardCategory.parse(value)
        if key not in pending or category is None:
            _logger.warning("standardize:answer_discarded source=%r category=%r", text, value)
            continue
        answered.setdefault(key, category)
    return answered


async def standardize_categories(
    candidates: Sequence[CandidateTransaction],
    *,
    cache: CategoryMappingCache,
    service: CategorizationService | None,
    timeout: float,
) -> StandardizeOutcome:
    """Assign a standard category to every candidate with ``source_category`` set."""

    keys: list[str] = []
    # First spelling seen per key is the one sent to the service.
    distinct: dict[str, str] = {}
    for c in candidates:
        if c.source_category is None:
            raise ValueError("standardize_categories requires source_category on every candidate")
        key = normalize_category_key(c.source_category)
        keys.append(key)
        distinct.setdefault(key, " ".join(c.source_category.split()))

    resolved: dict[str, StandardCategory] = {}
    pending: dict[str, str] = {}
    for key, spelling in distinct.items():
        hit = cache.get(key)
        if hit is None:
            hit = StandardCategory.parse(spelling)
            if hit is not None:
                cache.put(key, hit)
        if hit is not None:
            resolved[key] = hit
        else:
            pending[key] = spelling

    service_called = False
    if pending and service is not None:
        service_called = True
        answered = await _ask_service(service, pending, timeout=timeout)
        for key, category in answered.items():
            cache.put(key, category)
            resolved[key] = category

    assignments: list[CategoryAssignment] = []
    fallbacks = 0
    for key in keys:
        category = resolved.get(key)
        if category is None:
            assignments.append(CategoryAssignment(StandardCategory.OTHER, FALLBACK))
            fallbacks += 1
        else:
            assignments.append(CategoryAssignment(category, SOURCE))

    _logger.info(
        "standardize:done transactions=%d distinct=%d requested=%d fallbacks=%d",
        len(candidates),
        len(distinct),
        len(pending) if service_called else 0,
        fallbacks,
    )
    return StandardizeOutcome(assignments, fallbacks=fallbacks, service_called=service_called)


__all__ = ["StandardizeOutcome", "standardize_categories"]
