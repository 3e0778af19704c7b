"""Hurdles: positions where the player went wrong, kept for practice.

Records are JSON under ``hurdle::<uuid>`` in the same KeyValueStore as
finished games. Each one holds the position before the bad move, what was
played, what the engine preferred and the annotation if one was paid for.
Mastery runs 0-3 (not attempted, struggling, improving, mastered).
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Sequence

from chess_hurdles.errors import PersistenceError, StoreError
from chess_hurdles.metrics import severity_rank
from chess_hurdles.models import AnalysisResultItem, HurdleRecord
from chess_hurdles.protocol import strip_move_number
from chess_hurdles.store import KeyValueStore

logger = logging.getLogger(__name__)

HURDLE_PREFIX = "hurdle::"
MAX_MASTERY_LEVEL = 3
DEFAULT_PRACTICE_THRESHOLD = 2


def difficulty_for(item: AnalysisResultItem) -> int:
    """1-5 scale: the classification tier, one higher when mate was missed."""
    level = severity_rank(item.classification) + 1
    if item.is_mate:
        level += 1
    return max(1, min(5, level))


def hurdle_from_item(
    item: AnalysisResultItem,
    fen: str,
    game_id: str | None = None,
    depth: int | None = None,
    title: str = "",
) -> HurdleRecord:
    """Build a hurdle from one analyzed move and the position before it."""
    marker = "." if item.is_white_move else "..."
    return HurdleRecord(
        fen=fen,
        side="w" if item.is_white_move else "b",
        move_number=item.move_number,
        played_move=item.move,
        evaluation=item.evaluation,
        best_move=strip_move_number(item.best_move) or None,
        centipawn_loss=item.centipawn_change,
        ai_description=item.annotation,
        depth=depth,
        mate_in=item.mate_distance,
        calculation_time=item.calculation_time or None,
        difficulty_level=difficulty_for(item),
        title=title or f"Move {item.move_number}{marker} {item.move} ({item.classification})",
        game_id=game_id,
    )


class HurdleRepository:
    """Saves, lists and retires hurdles for one player.

    Args:
        store: Durable key-value store.
        player_id: Whose hurdles are read and written.
    """

    def __init__(self, store: KeyValueStore, player_id: str = "local") -> None:
        self._store = store
        self.player_id = player_id

    def save(self, record: HurdleRecord) -> str:
        """Persist one hurdle.

        Returns:
            Generated hurdle id.

        Raises:
            PersistenceError: If the store write fails.
        """
        hurdle_id = str(uuid.uuid4())
        payload = asdict(record)
        payload["id"] = hurdle_id
        payload["player_id"] = self.player_id
        payload["saved_at"] = datetime.now(timezone.utc).isoformat()
        payload["mastery_level"] = 0
        payload["practice_count"] = 0
        payload["last_practiced"] = None
        self._write(hurdle_id, payload)
        logger.info("Saved hurdle %s (%s in %s)", hurdle_id, record.played_move, record.fen)
        return hurdle_id

    def save_from_analysis(
        self,
        results: Sequence[AnalysisResultItem],
        fens: Sequence[str],
        game_id: str | None = None,
        depth: int | None = None,
        only_annotated: bool = False,
    ) -> list[str]:
        """Save every annotation-worthy move of an analyzed game.

        Args:
            results: Output of process_game_analysis.
            fens: Position before each move, indexed like the moves.
            game_id: Saved game the moves come from, if any.
            depth: Search depth the evaluations were made at.
            only_annotated: Keep only the moves that got an annotation
                (``will_use_ai``), not the throttled candidates.

        Returns:
            Ids of the hurdles written. A position already saved with the
            same played move is skipped.
        """
        existing = {(h.get("fen"), h.get("played_move")) for h in self.list_hurdles()}
        saved: list[str] = []
        for item in results:
            if not item.is_ai_worthy:
                continue
            if only_annotated and not item.will_use_ai:
                continue
            fen = fens[item.index]
            if (fen, item.move) in existing:
                logger.debug("Hurdle for %s in %s already saved", item.move, fen)
                continue
            saved.append(self.save(hurdle_from_item(item, fen, game_id=game_id, depth=depth)))
            existing.add((fen, item.move))
        return saved

    def get(self, hurdle_id: str) -> dict | None:
        try:
            raw = self._store.get(f"{HURDLE_PREFIX}{hurdle_id}")
        except StoreError as exc:
            raise PersistenceError(f"Could not load hurdle {hurdle_id}: {exc}") from exc
        if not raw:
            return None
        hurdle = json.loads(raw)
        if hurdle.get("player_id") != self.player_id:
            return None
        return hurdle

    def list_hurdles(self, game_id: str | None = None) -> list[dict]:
        """The player's hurdles, newest first; one game's in move order."""
        hurdles: list[dict] = []
        try:
            for _, raw in self._store.scan(HURDLE_PREFIX):
                try:
                    hurdle = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if hurdle.get("player_id") != self.player_id:
                    continue
                if game_id is not None and hurdle.get("game_id") != game_id:
                    continue
                hurdles.append(hurdle)
        except StoreError as exc:
            raise PersistenceError(f"Could not list hurdles: {exc}") from exc
        if game_id is not None:
            hurdles.sort(key=lambda h: (h.get("move_number") or 0, h.get("side") != "w"))
        else:
            hurdles.sort(key=lambda h: h.get("saved_at", ""), reverse=True)
        return hurdles

    def for_practice(self, mastery_threshold: int = DEFAULT_PRACTICE_THRESHOLD) -> list[dict]:
        """Hurdles below ``mastery_threshold``, least recently practiced first."""
        due = [h for h in self.list_hurdles() if h.get("mastery_level", 0) < mastery_threshold]
        # never practiced sorts before any timestamp
        due.sort(key=lambda h: h.get("last_practiced") or "")
        return due

    def record_practice(self, hurdle_id: str, mastery_level: int) -> dict | None:
        """Store a practice attempt. Returns the updated hurdle, or None."""
        hurdle = self.get(hurdle_id)
        if hurdle is None:
            return None
        hurdle["mastery_level"] = max(0, min(MAX_MASTERY_LEVEL, mastery_level))
        hurdle["practice_count"] = hurdle.get("practice_count", 0) + 1
        hurdle["last_practiced"] = datetime.now(timezone.utc).isoformat()
        self._write(hurdle_id, hurdle)
        return hurdle

    def delete(self, hurdle_id: str) -> bool:
        """Remove a hurdle. Returns False if the player has no such hurdle."""
        if self.get(hurdle_id) is None:
            return False
        try:
            self._store.delete(f"{HURDLE_PREFIX}{hurdle_id}")
        except StoreError as exc:
            raise PersistenceError(f"Could not delete hurdle {hurdle_id}: {exc}") from exc
        logger.info("Deleted hurdle %s", hurdle_id)
        return True

    def _write(self, hurdle_id: str, payload: dict) -> None:
        try:
            self._store.set(f"{HURDLE_PREFIX}{hurdle_id}", json.dumps(payload, ensure_ascii=False))
        except StoreError as exc:
            raise PersistenceError(f"Could not save hurdle: {exc}") from exc
