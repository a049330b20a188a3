from __future__ import annotations

import json
from pathlib import Path

import pytest

from statement_import.cache import (
    CATEGORY_SNAPSHOT_NAME,
    MERCHANT_SNAPSHOT_NAME,
    CategoryMappingCache,
    MerchantCategoryCache,
    normalize_category_key,
)
from statement_import.models import StandardCategory


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---- CategoryMappingCache ----------------------------------------------------


def test_normalize_category_key() -> None:
    assert normalize_category_key("  Dining \t Out ") == "dining out"
    assert normalize_category_key("GROCERIES") == "groceries"


def test_category_cache_lookup_is_normalized() -> None:
    cache = CategoryMappingCache()
    cache.put("Dining  Out", StandardCategory.FOOD)
    assert cache.get("dining out") is StandardCategory.FOOD
    assert "DINING OUT" in cache
    assert 42 not in cache
    assert list(cache) == ["dining out"]


def test_category_cache_ignores_blank_keys() -> None:
    cache = CategoryMappingCache()
    cache.put("   ", StandardCategory.OTHER)
    assert len(cache) == 0


def test_category_cache_snapshot_roundtrip(tmp_path: Path) -> None:
    cache = CategoryMappingCache({"Groceries": StandardCategory.FOOD})
    path = cache.save(tmp_path)
    assert path.name == CATEGORY_SNAPSHOT_NAME
    assert not path.with_suffix(".json.tmp").exists()

    loaded = CategoryMappingCache.load(tmp_path)
    assert loaded.get("GROCERIES") is StandardCategory.FOOD


def test_category_cache_load_missing_or_corrupt_is_empty(tmp_path: Path) -> None:
    assert len(CategoryMappingCache.load(tmp_path)) == 0

    (tmp_path / CATEGORY_SNAPSHOT_NAME).write_text("{not json", encoding="utf-8")
    assert len(CategoryMappingCache.load(tmp_path)) == 0

    (tmp_path / CATEGORY_SNAPSHOT_NAME).write_text(
        json.dumps({"schema_version": 1, "entries": {"groceries": "Snacks"}}),
        encoding="utf-8",
    )
    assert len(CategoryMappingCache.load(tmp_path)) == 0


def test_category_cache_other_schema_version_is_ignored(tmp_path: Path) -> None:
    (tmp_path / CATEGORY_SNAPSHOT_NAME).write_text(
        json.dumps({"schema_version": 99, "entries": {"groceries": "Food"}}),
        encoding="utf-8",
    )
    assert len(CategoryMappingCache.load(tmp_path)) == 0


# ---- MerchantCategoryCache ---------------------------------------------------


def test_merchant_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = MerchantCategoryCache(ttl=60.0, clock=clock)
    cache.put("uber", StandardCategory.TRANSPORTATION)

    clock.now += 59.0
    assert cache.get("uber") is StandardCategory.TRANSPORTATION
    clock.now += 1.0
    assert cache.get("uber") is None
    assert len(cache) == 0


def test_put_refreshes_timestamp() -> None:
    clock = FakeClock()
    cache = MerchantCategoryCache(ttl=60.0, clock=clock)
    cache.put("uber", StandardCategory.TRANSPORTATION)
    clock.now += 50.0
    cache.put("uber", StandardCategory.TRANSPORTATION)
    clock.now += 50.0
    assert cache.get("uber") is StandardCategory.TRANSPORTATION


def test_purge_expired_counts_removed_entries() -> None:
    clock = FakeClock()
    cache = MerchantCategoryCache(ttl=10.0, clock=clock)
    cache.put("a", StandardCategory.FOOD)
    clock.now += 5.0
    cache.put("b", StandardCategory.FOOD)
    clock.now += 6.0
    assert cache.purge_expired() == 1
    assert len(cache) == 1


def test_disabled_cache_never_hits_or_stores() -> None:
    cache = MerchantCategoryCache(enabled=False)
    cache.put("uber", StandardCategory.TRANSPORTATION)
    assert cache.get("uber") is None
    assert len(cache) == 0


def test_ttl_must_be_positive() -> None:
    with pytest.raises(ValueError):
        MerchantCategoryCache(ttl=0)


def test_merchant_snapshot_keeps_only_fresh_entries(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = MerchantCategoryCache(ttl=100.0, clock=clock)
    cache.put("old", StandardCategory.SHOPPING)
    clock.now += 60.0
    cache.put("new", StandardCategory.FOOD)
    path = cache.save(tmp_path)
    assert path.name == MERCHANT_SNAPSHOT_NAME

    clock.now += 50.0
    loaded = MerchantCategoryCache.load(tmp_path, ttl=100.0, clock=clock)
    assert loaded.get("old") is None
    assert loaded.get("new") is StandardCategory.FOOD


def test_merchant_snapshot_corrupt_file_is_empty(tmp_path: Path) -> None:
    (tmp_path / MERCHANT_SNAPSHOT_NAME).write_text(
        json.dumps({"schema_version": 1, "entries": {"x": {"category": "Food"}}}),
        encoding="utf-8",
    )
    assert len(MerchantCategoryCache.load(tmp_path)) == 0
