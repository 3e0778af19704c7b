"""Live game orchestration: board, clocks, engine replies and the result.

Per applied ply the order is fixed: push the move, credit the mover's
clock, detect game over, then ask the engine to reply. The engine only
sees a turn after the increment has been applied.

A game reaches a terminal status at most once. ``_finalize`` stops the
clock, invalidates any in-flight engine work, schedules the engine
subprocess shutdown and persists the game exactly once (aborted games are
not persisted).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from datetime import datetime, timezone
from typing import Callable

import chess
import chess.pgn

from chess_hurdles.clock import GameClock
from chess_hurdles.elo import calculate_new_elo, skill_level_to_elo
from chess_hurdles.engine import EngineSession
from chess_hurdles.errors import PersistenceError
from chess_hurdles.models import GameRecord, GameResult, TimeControl
from chess_hurdles.persistence import DEFAULT_RATING, GameRepository

logger = logging.getLogger(__name__)


class GameStatus(enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    CHECKMATE = "checkmate"
    DRAW = "draw"
    RESIGNED = "resigned"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


def _color_name(side: chess.Color | None) -> str | None:
    if side is None:
        return None
    return "white" if side == chess.WHITE else "black"


def _result_code(winner: chess.Color | None, status: GameStatus) -> str:
    if status is GameStatus.ABORTED:
        return "*"
    if winner is None:
        return "1/2-1/2"
    return "1-0" if winner == chess.WHITE else "0-1"


def _draw_reason(board: chess.Board) -> str | None:
    """Why the position is drawn now, or None.

    Repetition and the fifty-move rule end the game once they have
    happened, not one ply early when they could merely be claimed.
    """
    if board.is_stalemate():
        return "stalemate"
    if board.is_insufficient_material():
        return "insufficient_material"
    if board.is_repetition(3):
        return "threefold_repetition"
    if board.is_fifty_moves():
        return "fifty_moves"
    return None


class Game:
    """One human-vs-engine game.

    Args:
        engine: Session that produces the engine's moves.
        repository: Where finished games and ratings go. None disables
            persistence.
        user_side: Colour the human plays.
        time_control: Both sides' initial time and increment.
        starting_fen: Custom start position (standard by default).
        now: Monotonic time source for the clock.
    """

    def __init__(
        self,
        engine: EngineSession,
        repository: GameRepository | None = None,
        user_side: chess.Color = chess.WHITE,
        time_control: TimeControl | None = None,
        starting_fen: str | None = None,
        now: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.repository = repository
        self.user_side = user_side
        self.starting_fen = starting_fen or chess.STARTING_FEN
        self.board = chess.Board(self.starting_fen)
        self.clock = GameClock(time_control or TimeControl(), on_timeout=self._on_timeout, now=now)
        self.engine.on_error = self._on_engine_error

        self.status = GameStatus.NOT_STARTED
        self.result: GameResult | None = None
        self.game_id: str | None = None
        self.rating_before: int | None = None
        self.rating_after: int | None = None
        self.persistence_error: str | None = None
        self.engine_error: str | None = None
        self.on_update: Callable[[Game], None] | None = None

        self._clock_task: asyncio.Task | None = None
        self._engine_shutdown: asyncio.Task | None = None
        self._finalized = False
        self._persisted = False
        self._pending_record: GameRecord | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def engine_side(self) -> chess.Color:
        return not self.user_side

    @property
    def in_progress(self) -> bool:
        return self.status is GameStatus.IN_PROGRESS

    @property
    def is_user_turn(self) -> bool:
        return self.in_progress and self.board.turn == self.user_side

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, run_clock: bool = True) -> None:
        """Begin play. Must be called from inside a running event loop.

        Args:
            run_clock: Start the background ticker. Tests drive ``tick()``
                directly instead.
        """
        if self.status is not GameStatus.NOT_STARTED:
            return
        self.status = GameStatus.IN_PROGRESS
        if self.repository is not None:
            self.rating_before = self.repository.get_rating()
        if run_clock:
            self._clock_task = asyncio.get_running_loop().create_task(self.clock.run())
        logger.info(
            "Game started: user plays %s vs level %d",
            _color_name(self.user_side),
            self.engine.skill_level,
        )
        if self.board.turn == self.engine_side:
            self._request_engine_move()
        self._notify()

    async def new_game(
        self,
        user_side: chess.Color | None = None,
        starting_fen: str | None = None,
        run_clock: bool = True,
    ) -> None:
        """Discard the current game, tear down the engine, start fresh."""
        if self.in_progress:
            self.abort()
        self._stop_clock_task()
        await self._join_engine_shutdown()
        await self.engine.reset()
        if user_side is not None:
            self.user_side = user_side
        if starting_fen is not None:
            self.starting_fen = starting_fen
        self.board = chess.Board(self.starting_fen)
        self.clock.reset()
        self.status = GameStatus.NOT_STARTED
        self.result = None
        self.game_id = None
        self.rating_before = None
        self.rating_after = None
        self.persistence_error = None
        self.engine_error = None
        self._finalized = False
        self._persisted = False
        self._pending_record = None
        self.start(run_clock=run_clock)

    async def close(self) -> None:
        self._stop_clock_task()
        await self._join_engine_shutdown()
        await self.engine.close()

    def _stop_clock_task(self) -> None:
        task, self._clock_task = self._clock_task, None
        if task is not None and not task.done():
            task.cancel()

    def _schedule_engine_shutdown(self) -> None:
        """Stop the engine subprocess once the game is over."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: close() stops the engine
            return
        self._engine_shutdown = loop.create_task(self.engine.shutdown())

    async def _join_engine_shutdown(self) -> None:
        task, self._engine_shutdown = self._engine_shutdown, None
        if task is not None:
            await task

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def set_engine_level(self, level: int) -> None:
        """Applies to the next search; a search in flight keeps its level."""
        self.engine.set_skill_level(level)

    def set_time_control(self, time_control: TimeControl) -> None:
        """Raises ClockLockedError once moves have been played."""
        self.clock.configure(time_control)

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    def _parse_move(self, text: str) -> chess.Move | None:
        text = text.strip()
        if not text:
            return None
        try:
            return self.board.parse_san(text)
        except ValueError:
            pass
        try:
            move = chess.Move.from_uci(text)
        except ValueError:
            return None
        return move if move in self.board.legal_moves else None

    def submit_user_move(self, text: str) -> bool:
        """Apply the user's move given in SAN or UCI.

        Returns:
            True if the move was applied. Illegal input, the wrong turn or
            a finished game leave everything unchanged and return False.
        """
        if not self.is_user_turn:
            return False
        move = self._parse_move(text)
        if move is None:
            logger.debug("Rejected move %r in %s", text, self.board.fen())
            return False
        self._apply_move(move, self.user_side)
        return True

    def _apply_move(self, move: chess.Move, mover: chess.Color) -> None:
        self.board.push(move)
        self.clock.on_move_applied(mover)
        # the mover may have flagged on this very move
        if not self.in_progress:
            self._notify()
            return
        if self._check_game_over():
            return
        if self.board.turn == self.engine_side:
            self._request_engine_move()
        self._notify()

    def _request_engine_move(self) -> None:
        fen = self.board.fen()
        side = self.engine_side

        def is_current() -> bool:
            return self.in_progress and self.board.turn == side and self.board.fen() == fen

        time_control = TimeControl(
            initial_ms=self.clock.remaining(side),
            increment_ms=self.clock.increment(side),
        )
        self.engine.request_move(
            fen,
            self._on_engine_move,
            is_current=is_current,
            time_control=time_control,
            first_move=not self.board.move_stack,
        )

    def _on_engine_move(self, move: chess.Move, source: str) -> None:
        if not self.in_progress or self.board.turn != self.engine_side:
            logger.debug("Ignoring engine move %s: game moved on", move.uci())
            return
        if move not in self.board.legal_moves:
            logger.warning("Ignoring illegal engine move %s", move.uci())
            return
        logger.info("Engine plays %s (%s)", self.board.san(move), source)
        self._apply_move(move, self.engine_side)

    def _on_engine_error(self, message: str) -> None:
        self.engine_error = message
        self._notify()

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _check_game_over(self) -> bool:
        """Finalize on checkmate or a draw; checkmate wins over everything."""
        if self.board.is_checkmate():
            # the side that just moved delivered mate
            self._finalize(GameStatus.CHECKMATE, not self.board.turn, "checkmate")
            return True
        reason = _draw_reason(self.board)
        if reason is not None:
            self._finalize(GameStatus.DRAW, None, reason)
            return True
        return False

    def handle_game_over(self) -> bool:
        """Re-check the board and finalize if it is terminal."""
        if self.status is not GameStatus.IN_PROGRESS:
            return False
        return self._check_game_over()

    def _on_timeout(self, side: chess.Color) -> None:
        if not self.in_progress:
            return
        if self._check_game_over():
            return
        self._finalize(GameStatus.TIMEOUT, not side, f"{_color_name(side)} ran out of time")

    def resign(self) -> None:
        """The user resigns; the engine wins."""
        if not self.in_progress:
            return
        self._finalize(GameStatus.RESIGNED, self.engine_side, f"{_color_name(self.user_side)} resigned")

    def abort(self) -> None:
        """End the game without a result. Nothing is persisted."""
        if self.status not in (GameStatus.NOT_STARTED, GameStatus.IN_PROGRESS):
            return
        self._finalize(GameStatus.ABORTED, None, "aborted")

    def _finalize(self, status: GameStatus, winner: chess.Color | None, reason: str) -> None:
        if self._finalized:
            return
        self._finalized = True
        self.status = status
        self.result = GameResult(status=status.value, winner=_color_name(winner), reason=reason)
        self.clock.stop()
        self._stop_clock_task()
        self.engine.invalidate()
        self._schedule_engine_shutdown()
        logger.info("Game over: %s (%s)", status.value, reason)

        if status is not GameStatus.ABORTED and self.repository is not None:
            self._pending_record = self._build_record(status, winner, reason)
            self._persist()
        self._notify()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def build_pgn(self, result_code: str | None = None) -> str:
        root = chess.Board(self.starting_fen)
        pgn_game = chess.pgn.Game()
        if self.starting_fen != chess.STARTING_FEN:
            pgn_game.setup(root)

        level = self.engine.skill_level
        engine_name = f"Stockfish (Level {level})"
        pgn_game.headers["Event"] = "Chess Hurdles"
        pgn_game.headers["Site"] = "Local"
        pgn_game.headers["Date"] = datetime.now(timezone.utc).strftime("%Y.%m.%d")
        pgn_game.headers["White"] = "Player" if self.user_side == chess.WHITE else engine_name
        pgn_game.headers["Black"] = "Player" if self.user_side == chess.BLACK else engine_name
        if result_code is not None:
            pgn_game.headers["Result"] = result_code

        node = pgn_game
        for move in self.board.move_stack:
            node = node.add_variation(move)
        return str(pgn_game)

    def _build_record(self, status: GameStatus, winner: chess.Color | None, reason: str) -> GameRecord:
        if winner is None:
            score = 0.5
        else:
            score = 1.0 if winner == self.user_side else 0.0
        level = self.engine.skill_level
        opponent_elo = skill_level_to_elo(level)
        before = self.rating_before if self.rating_before is not None else DEFAULT_RATING
        after = calculate_new_elo(before, opponent_elo, score)
        result_code = _result_code(winner, status)
        return GameRecord(
            move_text=self.build_pgn(result_code),
            result_code=result_code,
            rating_before=before,
            rating_after=after,
            opponent_difficulty=opponent_elo,
            title=f"Vs Stockfish (Level {level})",
            description=reason,
            tags={
                "engine_level": level,
                "user_side": _color_name(self.user_side),
                "status": status.value,
                "moves": len(self.board.move_stack),
            },
        )

    def _persist(self) -> None:
        record = self._pending_record
        if record is None or self._persisted or self.repository is None:
            return
        try:
            # a retry after a failed rating update must not store the game twice
            if self.game_id is None:
                self.game_id = self.repository.save_game(record)
            self.repository.update_rating(record.rating_after)
        except PersistenceError as exc:
            self.persistence_error = str(exc)
            logger.error("Could not persist game: %s", exc)
            return
        self._persisted = True
        self.persistence_error = None
        self.rating_after = record.rating_after
        logger.info("Rating %d -> %d", record.rating_before, record.rating_after)

    def retry_persistence(self) -> bool:
        """Retry a failed save. Returns True once the game is stored."""
        if self._persisted:
            return True
        self._persist()
        return self._persisted

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self)

    def snapshot(self) -> dict:
        """Read-only view for interactive surfaces."""
        replay = chess.Board(self.starting_fen)
        start_move_number = replay.fullmove_number
        start_white = replay.turn == chess.WHITE
        san_moves = []
        for move in self.board.move_stack:
            san_moves.append(replay.san(move))
            replay.push(move)
        return {
            "fen": self.board.fen(),
            "status": self.status.value,
            "user_side": _color_name(self.user_side),
            "turn": _color_name(self.board.turn),
            "moves": san_moves,
            "start_move_number": start_move_number,
            "start_white": start_white,
            "clock": self.clock.snapshot(),
            "engine_thinking": self.engine.is_thinking,
            "engine_level": self.engine.skill_level,
            "last_move_source": self.engine.last_move_source,
            "out_of_book": self.engine.out_of_book,
            "engine_error": self.engine_error,
            "result": None if self.result is None else {
                "status": self.result.status,
                "winner": self.result.winner,
                "reason": self.result.reason,
            },
            "game_id": self.game_id,
            "rating_before": self.rating_before,
            "rating_after": self.rating_after,
            "persistence_error": self.persistence_error,
        }
