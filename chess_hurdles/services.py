"""Wiring of stores, repositories, book, cache and collaborators from Settings.

Shared by the CLI and the MCP server so both surfaces build the same
objects the same way.
"""

from __future__ import annotations

from dataclasses import dataclass

import chess

from chess_hurdles.analysis import GameAnalyzer
from chess_hurdles.annotation import GeminiAnnotator
from chess_hurdles.cache import AnalysisCache
from chess_hurdles.config import Settings
from chess_hurdles.engine import EngineSession
from chess_hurdles.game import Game
from chess_hurdles.hurdles import HurdleRepository
from chess_hurdles.models import TimeControl
from chess_hurdles.openings import OpeningBook
from chess_hurdles.persistence import GameRepository
from chess_hurdles.store import KeyValueStore, SqliteStore


@dataclass
class Services:
    settings: Settings
    store: KeyValueStore
    cache: AnalysisCache
    book: OpeningBook
    repository: GameRepository
    hurdles: HurdleRepository
    annotator: GeminiAnnotator

    @classmethod
    def from_settings(cls, settings: Settings, store: KeyValueStore | None = None) -> Services:
        """Open the durable store and load the cache index into memory."""
        store = store if store is not None else SqliteStore(settings.db_path)
        cache = AnalysisCache(store)
        cache.initialize()
        return cls(
            settings=settings,
            store=store,
            cache=cache,
            book=OpeningBook(
                repertoire_path=settings.book_path,
                use_explorer=settings.use_explorer,
            ),
            repository=GameRepository(store),
            hurdles=HurdleRepository(store),
            annotator=GeminiAnnotator(
                api_key=settings.gemini_api_key,
                model=settings.gemini_model,
            ),
        )

    @property
    def time_control(self) -> TimeControl:
        return TimeControl(
            initial_ms=self.settings.initial_time_ms,
            increment_ms=self.settings.increment_ms,
        )

    def engine_session(self, skill_level: int, with_book: bool = True) -> EngineSession:
        return EngineSession(
            book=self.book if with_book else None,
            skill_level=skill_level,
            movetime_ms=self.settings.movetime_ms,
            cache=self.cache,
            stockfish_path=self.settings.stockfish_path,
        )

    def new_game(self, user_side: chess.Color, skill_level: int, starting_fen: str | None = None) -> Game:
        return Game(
            self.engine_session(skill_level),
            repository=self.repository,
            user_side=user_side,
            time_control=self.time_control,
            starting_fen=starting_fen,
        )

    def analyzer(self, depth: int | None = None) -> GameAnalyzer:
        """Analyzer with its own engine session, separate from any live game."""
        engine = self.engine_session(skill_level=20, with_book=False)
        if depth is None:
            return GameAnalyzer(engine, book=self.book, annotator=self.annotator)
        return GameAnalyzer(engine, book=self.book, annotator=self.annotator, depth=depth)
