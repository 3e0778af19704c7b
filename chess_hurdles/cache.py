"""Content-addressed cache of engine evaluations.

Keys combine an engine fingerprint with the raw FEN. Move-clock fields are
not normalized, so two positions that differ only in halfmove/fullmove
counters are separate entries. Entries are never evicted.

The in-memory index mirrors the durable store: reads hit memory first and
hydrate from the store on a miss; writes go to both, and a failed store
write leaves the memory write in place.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict

from chess_hurdles.errors import StoreError
from chess_hurdles.models import CacheEntry
from chess_hurdles.store import KeyValueStore

logger = logging.getLogger(__name__)

NAMESPACE = "analysis::"


def make_key(fen: str, fingerprint: str) -> str:
    """Stable cache key for a position under one engine configuration.

    The FEN is used exactly as the engine saw it, move clocks included.
    """
    return f"{NAMESPACE}{fingerprint}::{fen}"


def _decode(raw: str) -> CacheEntry:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("cache entry must be a JSON object")
    return CacheEntry(
        cp=int(data["cp"]),
        depth=int(data["depth"]),
        best_move=data.get("best_move"),
        multi_pv=data.get("multi_pv"),
        timestamp=int(data.get("timestamp", 0)),
    )


class AnalysisCache:
    """Write-through evaluation cache over a KeyValueStore.

    Args:
        store: Durable store, or None for a memory-only cache.
        namespace: Key prefix scanned by initialize().
    """

    def __init__(self, store: KeyValueStore | None = None, namespace: str = NAMESPACE) -> None:
        self._store = store
        self._namespace = namespace
        self._memory: dict[str, CacheEntry] = {}

    def initialize(self) -> int:
        """Load every entry under the namespace into memory.

        Malformed entries are skipped one by one.

        Returns:
            Number of entries loaded.
        """
        loaded = 0
        if self._store is None:
            logger.info("No durable store; starting with an empty memory index")
            return 0
        try:
            for key, raw in self._store.scan(self._namespace):
                try:
                    self._memory[key] = _decode(raw)
                except (ValueError, KeyError, TypeError):
                    logger.debug("Skipping malformed cache entry %s", key)
                    continue
                loaded += 1
        except StoreError as exc:
            logger.warning("Cache scan failed: %s", exc)
        logger.info("Loaded %d cache entr%s into memory", loaded, "y" if loaded == 1 else "ies")
        return loaded

    def get(self, key: str) -> CacheEntry | None:
        """Memory first, then the store. A miss returns None."""
        entry = self._memory.get(key)
        if entry is not None:
            return entry
        if self._store is None:
            return None
        try:
            raw = self._store.get(key)
        except StoreError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            entry = _decode(raw)
        except (ValueError, KeyError, TypeError):
            return None
        self._memory[key] = entry
        return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        """Write to memory, then to the store; store failures are logged only."""
        self._memory[key] = entry
        if self._store is None:
            return
        try:
            self._store.set(key, json.dumps(asdict(entry)))
        except (StoreError, TypeError, ValueError) as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    def clear(self) -> None:
        """Drop the memory index; the durable store is untouched."""
        self._memory.clear()

    def clear_persistent(self) -> int:
        """Delete every namespaced entry from the store and from memory."""
        if self._store is None:
            removed = len(self._memory)
            self._memory.clear()
            return removed
        removed = 0
        for key, _ in list(self._store.scan(self._namespace)):
            try:
                self._store.delete(key)
            except StoreError as exc:
                logger.warning("Could not delete %s: %s", key, exc)
                continue
            self._memory.pop(key, None)
            removed += 1
        logger.info("Cleared %d persistent cache entr%s", removed, "y" if removed == 1 else "ies")
        return removed

    def keys(self) -> list[str]:
        return list(self._memory)

    def __len__(self) -> int:
        return len(self._memory)

    def __contains__(self, key: str) -> bool:
        return key in self._memory
