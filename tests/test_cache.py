"""Tests for AnalysisCache: write-through, hydration, failures and clearing."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

from chess_hurdles.cache import NAMESPACE, AnalysisCache, make_key
from chess_hurdles.errors import StoreError
from chess_hurdles.models import CacheEntry
from chess_hurdles.store import MemoryStore

_FEN = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"


def _entry(cp: int = 25) -> CacheEntry:
    return CacheEntry(cp=cp, depth=12, best_move="e7e5", timestamp=1)


class TestKeys:

    def test_key_includes_fingerprint_and_fen(self):
        key = make_key(_FEN, "sf-depth12")
        assert key.startswith(NAMESPACE)
        assert "sf-depth12" in key
        assert key.endswith(_FEN)

    def test_move_clocks_are_part_of_the_key(self):
        later = _FEN.replace(" 0 1", " 2 5")
        assert make_key(_FEN, "fp") != make_key(later, "fp")


class TestMemoryOnly:

    def test_set_and_get(self):
        cache = AnalysisCache()
        cache.set("k", _entry())
        assert cache.get("k") == _entry()
        assert "k" in cache
        assert len(cache) == 1

    def test_miss(self):
        assert AnalysisCache().get("missing") is None

    def test_initialize_without_store(self):
        assert AnalysisCache().initialize() == 0

    def test_clear_persistent_without_store(self):
        cache = AnalysisCache()
        cache.set("a", _entry())
        assert cache.clear_persistent() == 1
        assert len(cache) == 0


class TestWriteThrough:

    def test_set_writes_json_to_store(self, store):
        cache = AnalysisCache(store)
        key = make_key(_FEN, "fp")
        cache.set(key, _entry(40))
        stored = json.loads(store.get(key))
        assert stored["cp"] == 40
        assert stored["best_move"] == "e7e5"

    def test_get_hydrates_from_store(self, store):
        key = make_key(_FEN, "fp")
        AnalysisCache(store).set(key, _entry(40))
        fresh = AnalysisCache(store)
        assert key not in fresh
        assert fresh.get(key).cp == 40
        assert key in fresh

    def test_failed_store_write_keeps_memory(self):
        failing = MagicMock()
        failing.set.side_effect = StoreError("disk full")
        cache = AnalysisCache(failing)
        cache.set("k", _entry())
        assert cache.get("k") == _entry()

    def test_failed_store_read_is_a_miss(self):
        failing = MagicMock()
        failing.get.side_effect = StoreError("locked")
        assert AnalysisCache(failing).get("k") is None

    def test_malformed_stored_value_is_a_miss(self, store):
        store.set("analysis::fp::x", "not json")
        assert AnalysisCache(store).get("analysis::fp::x") is None


class TestInitialize:

    def test_loads_namespace_only(self, store):
        store.set(make_key(_FEN, "fp"), json.dumps({"cp": 10, "depth": 8}))
        store.set("game::abc", json.dumps({"cp": 1, "depth": 1}))
        cache = AnalysisCache(store)
        assert cache.initialize() == 1
        assert cache.keys() == [make_key(_FEN, "fp")]

    def test_skips_malformed_entries(self, store):
        store.set(NAMESPACE + "good", json.dumps({"cp": 10, "depth": 8}))
        store.set(NAMESPACE + "bad-json", "{")
        store.set(NAMESPACE + "missing-depth", json.dumps({"cp": 3}))
        store.set(NAMESPACE + "list", json.dumps([1, 2]))
        cache = AnalysisCache(store)
        assert cache.initialize() == 1
        assert NAMESPACE + "good" in cache

    def test_scan_failure_leaves_cache_usable(self):
        failing = MagicMock()
        failing.scan.side_effect = StoreError("gone")
        cache = AnalysisCache(failing)
        assert cache.initialize() == 0
        cache.set("k", _entry())
        assert cache.get("k") == _entry()


class TestClear:

    def test_clear_keeps_store(self, store):
        cache = AnalysisCache(store)
        key = make_key(_FEN, "fp")
        cache.set(key, _entry())
        cache.clear()
        assert len(cache) == 0
        assert store.get(key) is not None

    def test_clear_persistent_removes_namespaced_keys(self, store):
        cache = AnalysisCache(store)
        cache.set(make_key(_FEN, "fp"), _entry())
        cache.set(make_key(_FEN, "other"), _entry())
        store.set("rating::local", json.dumps({"rating": 1300}))
        assert cache.clear_persistent() == 2
        assert len(cache) == 0
        assert list(store.scan(NAMESPACE)) == []
        assert store.get("rating::local") is not None

    def test_clear_persistent_on_empty_store(self):
        assert AnalysisCache(MemoryStore()).clear_persistent() == 0
