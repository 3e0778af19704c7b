"""Parsing of the line-oriented UCI text the engine subprocess emits.

Three message classes matter here:
- ``uciok``: the engine finished its handshake.
- ``info depth N ... score (cp|mate) V ... pv m1 m2 ...``: search progress.
- ``bestmove M [ponder P]``: the search finished and picked M.

Scores arrive from the side to move's point of view and are converted to
a single White-perspective integer scale, with mates encoded as
+/-(5000 + plies to mate) so plain integer comparison orders them above
every centipawn score.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Callable

import chess

from chess_hurdles.metrics import MATE_BASE
from chess_hurdles.models import BestMove, EngineEvaluation, InfoLine

logger = logging.getLogger(__name__)

READY_TOKEN = "uciok"
BESTMOVE_TOKEN = "bestmove"

_DEPTH_RE = re.compile(r"\bdepth (\d+)")
_SCORE_RE = re.compile(r"\bscore (cp|mate) (-?\d+)")
_PV_RE = re.compile(r"\bpv ((?:[a-h][1-8][a-h][1-8][qrbn]?\s*)+)", re.IGNORECASE)
_MOVE_NUMBER_PREFIX_RE = re.compile(r"^\d+\.+")


# ---------------------------------------------------------------------------
# Line parsers
# ---------------------------------------------------------------------------


def parse_ready(line: str) -> bool:
    return READY_TOKEN in line


def parse_info(line: str) -> InfoLine | None:
    """Parse a progress line.

    Args:
        line: Raw text line from the engine.

    Returns:
        InfoLine, or None when the line lacks a depth or a score marker.
        A missing PV is valid and yields an empty list.
    """
    if not line.startswith("info"):
        return None
    depth_match = _DEPTH_RE.search(line)
    score_match = _SCORE_RE.search(line)
    if depth_match is None or score_match is None:
        return None

    pv_match = _PV_RE.search(line)
    pv = pv_match.group(1).split() if pv_match else []
    return InfoLine(
        depth=int(depth_match.group(1)),
        score=int(score_match.group(2)),
        is_mate=score_match.group(1) == "mate",
        pv=[m.lower() for m in pv],
    )


def parse_bestmove(line: str) -> BestMove | None:
    """Parse ``bestmove <uci> [ponder <uci>]``; None if not a bestmove line."""
    if BESTMOVE_TOKEN not in line:
        return None
    tokens = line.split()
    try:
        idx = tokens.index(BESTMOVE_TOKEN)
    except ValueError:
        return None
    if idx + 1 >= len(tokens):
        return None
    ponder = None
    if idx + 3 < len(tokens) and tokens[idx + 2] == "ponder":
        ponder = tokens[idx + 3]
    return BestMove(move=tokens[idx + 1], ponder=ponder)


# ---------------------------------------------------------------------------
# Score normalization
# ---------------------------------------------------------------------------


def encode_score(score: int, is_mate: bool) -> int:
    """Map a raw side-to-move score onto the shared integer scale.

    ``mate 0`` means the side to move is already mated. It encodes as
    -5001 so every mate score stays beyond ``MATE_BASE``.
    """
    if not is_mate:
        return score
    if score > 0:
        return MATE_BASE + score
    return -(MATE_BASE + max(abs(score), 1))


def normalize_score(score: int, is_mate: bool, fen: str) -> int:
    """Convert a side-to-move score to White's perspective."""
    value = encode_score(score, is_mate)
    if _side_to_move(fen) == chess.BLACK:
        value = -value
    return value


def _side_to_move(fen: str) -> chess.Color:
    fields = fen.split()
    if len(fields) > 1 and fields[1] == "b":
        return chess.BLACK
    return chess.WHITE


# ---------------------------------------------------------------------------
# Notation helpers
# ---------------------------------------------------------------------------


def uci_to_san(uci: str, fen: str) -> str | None:
    """Convert one UCI move to SAN in ``fen``; None if it is not legal there."""
    try:
        board = chess.Board(fen)
        move = chess.Move.from_uci(uci)
    except ValueError:
        return None
    if move not in board.legal_moves:
        return None
    return board.san(move)


def pv_to_san(pv: list[str], fen: str) -> list[str]:
    """Convert a UCI principal variation to SAN.

    Conversion stops at the first move that is not legal in context, so
    a diverged PV is shown truncated rather than dropped.
    """
    try:
        board = chess.Board(fen)
    except ValueError:
        return []
    san_moves: list[str] = []
    for uci in pv:
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            break
        if move not in board.legal_moves:
            logger.debug("PV truncated at %s (illegal in %s)", uci, board.fen())
            break
        san_moves.append(board.san(move))
        board.push(move)
    return san_moves


def format_move_with_number(san: str, fen: str) -> str:
    """Prefix a SAN move with its move number: ``1.e4`` or ``1...e5``."""
    board = chess.Board(fen)
    dots = "." if board.turn == chess.WHITE else "..."
    return f"{board.fullmove_number}{dots}{san}"


def strip_move_number(move: str) -> str:
    """``"2...Nf6"`` -> ``"Nf6"``; rank digits inside the move are kept."""
    return _MOVE_NUMBER_PREFIX_RE.sub("", move.strip()).strip()


# ---------------------------------------------------------------------------
# Search listener
# ---------------------------------------------------------------------------


class SearchListener:
    """Turns the message stream of one search into results.

    Progress below ``target_depth`` is dropped. The first and every later
    progress line at or beyond it becomes an EngineEvaluation.
    """

    def __init__(
        self,
        fen: str,
        target_depth: int = 0,
        on_evaluation: Callable[[EngineEvaluation], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fen = fen
        self.target_depth = target_depth
        self._on_evaluation = on_evaluation
        self._clock = clock
        self._start = clock()
        self.evaluation: EngineEvaluation | None = None
        self.best_move: BestMove | None = None

    def elapsed_ms(self) -> int:
        return int(round((self._clock() - self._start) * 1000))

    def feed(self, line: str) -> EngineEvaluation | BestMove | None:
        """Consume one line; return what it produced, if anything."""
        line = line.strip()
        if not line:
            return None
        if parse_ready(line):
            logger.debug("Engine ready")
            return None

        info = parse_info(line)
        if info is not None:
            if info.depth < self.target_depth:
                return None
            evaluation = self._to_evaluation(info)
            self.evaluation = evaluation
            if self._on_evaluation is not None:
                self._on_evaluation(evaluation)
            return evaluation

        best = parse_bestmove(line)
        if best is not None:
            self.best_move = best
            return best
        return None

    def _to_evaluation(self, info: InfoLine) -> EngineEvaluation:
        san_pv = pv_to_san(info.pv, self.fen)
        best = format_move_with_number(san_pv[0], self.fen) if san_pv else ""
        return EngineEvaluation(
            evaluation=normalize_score(info.score, info.is_mate, self.fen),
            best_move=best,
            principal_variation=san_pv,
            depth=info.depth,
            calculation_time=self.elapsed_ms(),
        )
