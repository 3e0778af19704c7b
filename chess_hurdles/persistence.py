"""Finished-game and rating persistence over a KeyValueStore.

Records are JSON under ``game::<uuid>``; a player's rating lives under
``rating::<player_id>``. Store failures surface as PersistenceError so
the caller can keep the in-memory game and offer a retry.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict
from datetime import datetime, timezone

from chess_hurdles.errors import PersistenceError, StoreError
from chess_hurdles.models import GameRecord
from chess_hurdles.store import KeyValueStore

logger = logging.getLogger(__name__)

GAME_PREFIX = "game::"
RATING_PREFIX = "rating::"
DEFAULT_RATING = 1200


class GameRepository:
    """Saves finished games and player ratings.

    Args:
        store: Durable key-value store.
        player_id: Whose rating is read and updated.
    """

    def __init__(self, store: KeyValueStore, player_id: str = "local") -> None:
        self._store = store
        self.player_id = player_id

    def save_game(self, record: GameRecord) -> str:
        """Persist a finished game.

        Returns:
            Generated game id, used to link to post-game review.

        Raises:
            PersistenceError: If the store write fails.
        """
        game_id = str(uuid.uuid4())
        payload = asdict(record)
        payload["id"] = game_id
        payload["player_id"] = self.player_id
        payload["saved_at"] = datetime.now(timezone.utc).isoformat()
        try:
            self._store.set(f"{GAME_PREFIX}{game_id}", json.dumps(payload, ensure_ascii=False))
        except StoreError as exc:
            raise PersistenceError(f"Could not save game: {exc}") from exc
        logger.info("Saved game %s (%s)", game_id, record.result_code)
        return game_id

    def load_game(self, game_id: str) -> dict | None:
        try:
            raw = self._store.get(f"{GAME_PREFIX}{game_id}")
        except StoreError as exc:
            raise PersistenceError(f"Could not load game {game_id}: {exc}") from exc
        return json.loads(raw) if raw else None

    def list_games(self) -> list[dict]:
        """All saved games for any player, oldest first."""
        games: list[dict] = []
        try:
            for _, raw in self._store.scan(GAME_PREFIX):
                try:
                    games.append(json.loads(raw))
                except json.JSONDecodeError:
                    continue
        except StoreError as exc:
            raise PersistenceError(f"Could not list games: {exc}") from exc
        games.sort(key=lambda g: g.get("saved_at", ""))
        return games

    def get_rating(self) -> int:
        """Current rating, or the default for a new player."""
        try:
            raw = self._store.get(f"{RATING_PREFIX}{self.player_id}")
        except StoreError as exc:
            logger.warning("Rating read failed, using default: %s", exc)
            return DEFAULT_RATING
        if raw is None:
            return DEFAULT_RATING
        try:
            return int(json.loads(raw)["rating"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return DEFAULT_RATING

    def update_rating(self, new_rating: int) -> None:
        """Store ``{"rating": new_rating}`` for the player.

        Raises:
            PersistenceError: If the store write fails.
        """
        try:
            self._store.set(
                f"{RATING_PREFIX}{self.player_id}",
                json.dumps({"rating": new_rating}),
            )
        except StoreError as exc:
            raise PersistenceError(f"Could not update rating: {exc}") from exc
