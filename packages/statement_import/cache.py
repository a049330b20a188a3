"""Category caches shared across imports.

- :class:`CategoryMappingCache`: normalized bank category string →
  :class:`~statement_import.models.StandardCategory`. Grows for the life of
  the process and never evicts.
- :class:`MerchantCategoryCache`: merchant signature → category with a
  time-to-live. A disabled cache answers every lookup with a miss and
  ignores writes.

Both are plain objects injected into the pipeline. They can optionally be
snapshotted to a directory as JSON:

  ``<cache_dir>/category_mappings.json``
  ``<cache_dir>/merchant_categories.json``

Snapshots are validated with pydantic on load (anything unreadable is treated
as an empty cache) and written atomically: ``.tmp`` first, then
``os.replace`` into place.
"""

from __future__ import annotations

import contextlib
import json
import os
import time
from collections.abc import Callable, Iterator
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError

from .logging_setup import get_logger
from .models import StandardCategory

# Bump only when the on-disk snapshot JSON shape changes.
SCHEMA_VERSION: int = 1

CATEGORY_SNAPSHOT_NAME = "category_mappings.json"
MERCHANT_SNAPSHOT_NAME = "merchant_categories.json"

_logger = get_logger("statement_import.cache")


def normalize_category_key(value: str) -> str:
    """Casefold and collapse internal whitespace."""

    return " ".join(value.split()).casefold()


# ----------------------------------------------------------------------------
# Snapshot schemas
# ----------------------------------------------------------------------------


class _CategorySnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int
    entries: dict[str, StandardCategory]


class _MerchantEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: StandardCategory
    stored_at: float


class _MerchantSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int
    entries: dict[str, _MerchantEntry]


def _write_atomic(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")),
            encoding="utf-8",
        )
        os.replace(tmp, path)
    except Exception:
        with contextlib.suppress(FileNotFoundError):
            tmp.unlink()
        raise


def _read_text(path: Path) -> str | None:
    if not path.exists():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        _logger.debug("cache:read_failed path=%s", os.fspath(path), exc_info=True)
        return None


# ----------------------------------------------------------------------------
# Caches
# ----------------------------------------------------------------------------


class CategoryMappingCache:
    """Normalized source category string → standard category."""

    def __init__(self, entries: dict[str, StandardCategory] | None = None) -> None:
        self._entries: dict[str, StandardCategory] = {}
        for key, category in (entries or {}).items():
            self.put(key, category)

    def get(self, source_category: str) -> StandardCategory | None:
        return self._entries.get(normalize_category_key(source_category))

    def put(self, source_category: str, category: StandardCategory) -> None:
        key = normalize_category_key(source_category)
        if key:
            self._entries[key] = category

    def __contains__(self, source_category: object) -> bool:
        return (
            isinstance(source_category, str)
            and normalize_category_key(source_category) in self._entries
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def save(self, directory: Path) -> Path:
        path = directory / CATEGORY_SNAPSHOT_NAME
        snap = _CategorySnapshot(schema_version=SCHEMA_VERSION, entries=dict(self._entries))
        _write_atomic(path, snap.model_dump(mode="json"))
        return path

    @classmethod
    def load(cls, directory: Path) -> CategoryMappingCache:
        path = directory / CATEGORY_SNAPSHOT_NAME
        text = _read_text(path)
        if text is None:
            return cls()
        try:
            snap = _CategorySnapshot.model_validate_json(text)
        except ValidationError:
            _logger.warning("cache:snapshot_invalid path=%s", os.fspath(path))
            return cls()
        if snap.schema_version != SCHEMA_VERSION:
            return cls()
        return cls(snap.entries)


class MerchantCategoryCache:
    """Merchant signature → category, each entry expiring after ``ttl`` seconds.

    ``clock`` returns wall-clock seconds (``time.time`` by default) so that
    snapshot timestamps stay meaningful across processes; tests inject a
    fake clock.
    """

    def __init__(
        self,
        *,
        ttl: float = 24 * 3600.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self.enabled = enabled
        self._clock = clock
        self._entries: dict[str, tuple[StandardCategory, float]] = {}

    def _fresh(self, stored_at: float) -> bool:
        return self._clock() - stored_at < self.ttl

    def get(self, signature: str) -> StandardCategory | None:
        if not self.enabled:
            return None
        hit = self._entries.get(signature)
        if hit is None:
            return None
        category, stored_at = hit
        if not self._fresh(stored_at):
            del self._entries[signature]
            return None
        return category

    def put(self, signature: str, category: StandardCategory) -> None:
        if not self.enabled or not signature:
            return
        self._entries[signature] = (category, self._clock())

    def purge_expired(self) -> int:
        stale = [s for s, (_, at) in self._entries.items() if not self._fresh(at)]
        for s in stale:
            del self._entries[s]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def save(self, directory: Path) -> Path:
        self.purge_expired()
        path = directory / MERCHANT_SNAPSHOT_NAME
        snap = _MerchantSnapshot(
            schema_version=SCHEMA_VERSION,
            entries={
                sig: _MerchantEntry(category=cat, stored_at=at)
                for sig, (cat, at) in self._entries.items()
            },
        )
        _write_atomic(path, snap.model_dump(mode="json"))
        return path

    @classmethod
    def load(
        cls,
        directory: Path,
        *,
        ttl: float = 24 * 3600.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> MerchantCategoryCache:
        cache = cls(ttl=ttl, enabled=enabled, clock=clock)
        path = directory / MERCHANT_SNAPSHOT_NAME
        text = _read_text(path)
        if text is None:
            return cache
        try:
            snap = _MerchantSnapshot.model_validate_json(text)
        except ValidationError:
            _logger.warning("cache:snapshot_invalid path=%s", os.fspath(path))
            return cache
        if snap.schema_version != SCHEMA_VERSION:
            return cache
        for sig, entry in snap.entries.items():
            if cache._fresh(entry.stored_at):
                cache._entries[sig] = (entry.category, entry.stored_at)
        return cache


__all__ = [
    "CategoryMappingCache",
    "MerchantCategoryCache",
    "normalize_category_key",
]
