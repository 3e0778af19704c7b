"""Shared data models for the game session and analysis engine.

EngineEvaluation and AnalysisResultItem are the contract between the
engine session, post-game analysis and whatever persists the results.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class EngineEvaluation:
    """Result of one completed search.

    ``evaluation`` is in centipawns from White's perspective. Mate scores
    are encoded as +/-(5000 + distance to mate).
    """

    evaluation: int
    best_move: str
    principal_variation: list[str] = field(default_factory=list)
    depth: int = 0
    calculation_time: int = 0


@dataclass(frozen=True)
class InfoLine:
    """A parsed ``info depth ... score ...`` progress line."""

    depth: int
    score: int
    is_mate: bool
    pv: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class BestMove:
    """A parsed ``bestmove`` line. The ponder move is kept but unused."""

    move: str
    ponder: str | None = None


@dataclass
class ClockState:
    """Remaining and increment times for both sides, in milliseconds."""

    white_remaining_ms: int
    black_remaining_ms: int
    white_increment_ms: int
    black_increment_ms: int
    last_tick: float | None = None


@dataclass(frozen=True)
class TimeControl:
    """Initial time and increment applied to both sides."""

    initial_ms: int = 30 * 60 * 1000
    increment_ms: int = 20 * 1000


@dataclass
class AnalysisResultItem:
    """Per-ply outcome of post-game analysis."""

    index: int
    move_number: int
    move: str
    is_white_move: bool
    absolute_move_index: int
    evaluation: int
    best_move: str
    calculation_time: int = 0
    principal_variation: list[str] = field(default_factory=list)
    post_move_evaluation: int | None = None
    centipawn_change: int | None = None
    wpl: float | None = None
    classification: str = "none"
    is_ai_worthy: bool = False
    will_use_ai: bool = False
    is_mate: bool = False
    mate_distance: int | None = None
    is_book_move: bool = False
    annotation: str | None = None


@dataclass(frozen=True)
class CacheEntry:
    """A cached evaluation for one (engine fingerprint, position) pair."""

    cp: int
    depth: int
    best_move: str | None = None
    multi_pv: list[dict] | None = None
    timestamp: int = 0


@dataclass(frozen=True)
class GameResult:
    """Terminal outcome of a live game.

    ``winner`` is "white", "black" or None for a draw or an abort.
    """

    status: str
    winner: str | None
    reason: str


@dataclass
class GameRecord:
    """A finished game as handed to the persistence collaborator."""

    move_text: str
    result_code: str
    rating_before: int
    rating_after: int
    opponent_difficulty: int
    title: str = ""
    description: str = ""
    tags: dict = field(default_factory=dict)


@dataclass
class HurdleRecord:
    """A position where the player went wrong, saved for practice.

    ``fen`` is the position before ``played_move``; ``side`` is "w" or "b".
    ``difficulty_level`` runs 1-5.
    """

    fen: str
    side: str
    move_number: int
    played_move: str
    evaluation: int | None = None
    best_move: str | None = None
    centipawn_loss: int | None = None
    ai_description: str | None = None
    depth: int | None = None
    mate_in: int | None = None
    calculation_time: int | None = None
    difficulty_level: int | None = None
    title: str = ""
    game_id: str | None = None
    opening_tags: list[str] = field(default_factory=list)
