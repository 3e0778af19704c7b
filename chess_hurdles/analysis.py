"""Post-game analysis: per-move WPL classification and AI-annotation budget.

``process_game_analysis`` is the pure core. It takes the SAN move list and
one evaluation per position (N + 1 for N moves: ``evaluations[i]`` is the
position before ``moves[i]``) and returns one AnalysisResultItem per move.

Classification is exhaustive and cheap. Annotation is paid for, so only the
``max_ai_analysis`` most severe candidates get ``will_use_ai``; the rest of
the candidates stay ``is_ai_worthy`` so a UI can show them as throttled.

GameAnalyzer wires the core to an EngineSession, the opening book and an
annotator to review a whole PGN.
"""

from __future__ import annotations

import io
import logging
from typing import Iterable, Protocol, Sequence

import chess
import chess.pgn

from chess_hurdles.annotation import AnnotationRequest
from chess_hurdles.engine import EngineSession
from chess_hurdles.metrics import (
    calculate_wpl,
    classify_wpl,
    compute_centipawn_change,
    is_mate_score,
    mate_distance,
)
from chess_hurdles.models import AnalysisResultItem, EngineEvaluation
from chess_hurdles.openings import OpeningBook
from chess_hurdles.protocol import strip_move_number

logger = logging.getLogger(__name__)

DEFAULT_AI_WORTHY_THRESHOLD = 0.2
DEFAULT_MAX_AI_ANALYSIS = 5
DEFAULT_ANALYSIS_DEPTH = 8


class Annotator(Protocol):
    async def annotate(self, request: AnnotationRequest) -> str: ...


def _matches_best_move(played: str, best_move: str) -> bool:
    if not best_move:
        return False
    return played.strip().lower() == strip_move_number(best_move).lower()


def process_game_analysis(
    moves: Sequence[str],
    evaluations: Sequence[EngineEvaluation | None],
    ai_worthy_threshold: float = DEFAULT_AI_WORTHY_THRESHOLD,
    max_ai_analysis: int = DEFAULT_MAX_AI_ANALYSIS,
    start_move_number: int = 1,
    start_with_white: bool = True,
    book_move_indices: Iterable[int] = (),
    start_absolute_index: int = 0,
) -> list[AnalysisResultItem]:
    """Classify every move and pick the annotation budget.

    Args:
        moves: SAN moves in game order.
        evaluations: Evaluation before each move plus one after the last.
            A missing entry (None or short list) means "not analyzed".
        ai_worthy_threshold: Minimum WPL for an annotation candidate.
        max_ai_analysis: How many candidates get ``will_use_ai``.
        start_move_number: Full-move number of ``moves[0]``.
        start_with_white: Whether ``moves[0]`` is a White move.
        book_move_indices: Indices into ``moves`` played from book.
        start_absolute_index: Ply index of ``moves[0]`` in the full game.

    Returns:
        One item per move that has a pre-move evaluation.
    """
    book = set(book_move_indices)
    results: list[AnalysisResultItem] = []
    candidates: list[AnalysisResultItem] = []

    for index, move in enumerate(moves):
        is_white_move = (index % 2 == 0) if start_with_white else (index % 2 != 0)
        move_number = start_move_number + (index + (0 if start_with_white else 1)) // 2

        pre = evaluations[index] if index < len(evaluations) else None
        post = evaluations[index + 1] if index + 1 < len(evaluations) else None
        if pre is None:
            continue

        item = AnalysisResultItem(
            index=index,
            move_number=move_number,
            move=move,
            is_white_move=is_white_move,
            absolute_move_index=start_absolute_index + index,
            evaluation=pre.evaluation,
            best_move=pre.best_move,
            calculation_time=pre.calculation_time,
            principal_variation=list(pre.principal_variation),
            post_move_evaluation=post.evaluation if post is not None else None,
            is_mate=is_mate_score(pre.evaluation),
            mate_distance=mate_distance(pre.evaluation),
            is_book_move=index in book,
        )

        if post is not None:
            wpl = calculate_wpl(pre.evaluation, post.evaluation, is_white_move)
            item.centipawn_change = compute_centipawn_change(
                pre.evaluation, post.evaluation, is_white_move
            )
            item.wpl = wpl

            # search noise between two separate analyses is not an error
            if _matches_best_move(move, pre.best_move):
                item.classification = "none"
            else:
                item.classification = classify_wpl(wpl)

            if item.is_book_move and item.classification in ("inaccuracy", "mistake"):
                logger.debug(
                    "Overriding %s for book move %d%s %s",
                    item.classification,
                    move_number,
                    "." if is_white_move else "...",
                    move,
                )
                item.classification = "none"

            if item.classification != "none" and wpl >= ai_worthy_threshold:
                item.is_ai_worthy = True
                candidates.append(item)

        results.append(item)

    ranked = sorted(candidates, key=lambda c: -(c.wpl or 0.0))
    for item in ranked[:max(0, max_ai_analysis)]:
        item.will_use_ai = True

    logger.info(
        "Analysis candidates: %d, approved: %d (max %d)",
        len(candidates),
        min(len(candidates), max(0, max_ai_analysis)),
        max_ai_analysis,
    )
    return results


def summarise(results: Iterable[AnalysisResultItem]) -> dict:
    """Count inaccuracies, mistakes and blunders per side."""
    summary = {
        side: {"inaccuracy": 0, "mistake": 0, "blunder": 0}
        for side in ("white", "black")
    }
    for item in results:
        if item.classification == "none":
            continue
        side = "white" if item.is_white_move else "black"
        summary[side][item.classification] += 1
    return summary


async def annotate_results(
    results: Sequence[AnalysisResultItem],
    fens: Sequence[str],
    annotator: Annotator,
) -> int:
    """Fill ``annotation`` for every ``will_use_ai`` item.

    Args:
        results: Output of process_game_analysis.
        fens: Position before each move, indexed like the moves.
        annotator: Annotation collaborator; it must not raise.

    Returns:
        Number of annotations requested.
    """
    requested = 0
    for item in results:
        if not item.will_use_ai:
            continue
        request = AnnotationRequest(
            fen=fens[item.index],
            move=item.move,
            evaluation=item.evaluation,
            best_move=strip_move_number(item.best_move),
            principal_variation=item.principal_variation,
            centipawn_loss=item.centipawn_change or 0,
        )
        item.annotation = await annotator.annotate(request)
        requested += 1
    return requested


def fens_before_moves(board: chess.Board) -> list[str]:
    """Position before each move of ``board.move_stack``, in order."""
    replay = board.root()
    fens: list[str] = []
    for move in board.move_stack:
        fens.append(replay.fen())
        replay.push(move)
    return fens


def read_pgn(pgn_text: str) -> chess.Board:
    """Board at the end of the mainline of the first game in ``pgn_text``.

    Raises:
        ValueError: If the text holds no game.
    """
    game = chess.pgn.read_game(io.StringIO(pgn_text))
    if game is None:
        raise ValueError("No game found in PGN text")
    return game.end().board()


def _book_indices(book: OpeningBook | None, fens: Sequence[str], ucis: Sequence[str]) -> set[int]:
    """Plies played from book, up to the first move that left it."""
    indices: set[int] = set()
    if book is None:
        return indices
    for index, (fen, uci) in enumerate(zip(fens, ucis)):
        if not book.is_book_move(fen, uci):
            break
        indices.add(index)
    return indices


class GameAnalyzer:
    """Reviews finished games with the engine, book and annotator.

    Args:
        engine: Session used for analysis-mode searches (not a live game's).
        book: Opening book for book-move suppression.
        annotator: Annotation collaborator, or None to skip annotations.
        depth: Target search depth per position.
        ai_worthy_threshold: Minimum WPL for an annotation candidate.
        max_ai_analysis: Annotation budget per game.
    """

    def __init__(
        self,
        engine: EngineSession,
        book: OpeningBook | None = None,
        annotator: Annotator | None = None,
        depth: int = DEFAULT_ANALYSIS_DEPTH,
        ai_worthy_threshold: float = DEFAULT_AI_WORTHY_THRESHOLD,
        max_ai_analysis: int = DEFAULT_MAX_AI_ANALYSIS,
    ) -> None:
        self._engine = engine
        self._book = book
        self._annotator = annotator
        self.depth = depth
        self.ai_worthy_threshold = ai_worthy_threshold
        self.max_ai_analysis = max_ai_analysis

    async def evaluate_positions(self, fens: Sequence[str]) -> list[EngineEvaluation]:
        evaluations: list[EngineEvaluation] = []
        for fen in fens:
            evaluations.append(await self._engine.analyse(fen, self.depth))
        return evaluations

    async def analyse_board(self, board: chess.Board) -> list[AnalysisResultItem]:
        """Analyze every move in ``board.move_stack``."""
        start = board.root()
        replay = start.copy()
        fens: list[str] = []
        sans: list[str] = []
        ucis: list[str] = []
        for move in board.move_stack:
            fens.append(replay.fen())
            sans.append(replay.san(move))
            ucis.append(move.uci())
            replay.push(move)
        positions = fens + [replay.fen()]

        evaluations = await self.evaluate_positions(positions)
        results = process_game_analysis(
            sans,
            evaluations,
            ai_worthy_threshold=self.ai_worthy_threshold,
            max_ai_analysis=self.max_ai_analysis,
            start_move_number=start.fullmove_number,
            start_with_white=start.turn == chess.WHITE,
            book_move_indices=_book_indices(self._book, fens, ucis),
        )
        if self._annotator is not None:
            await annotate_results(results, fens, self._annotator)
        return results

    async def analyse_pgn(self, pgn_text: str) -> list[AnalysisResultItem]:
        """Analyze the mainline of the first game in ``pgn_text``.

        Raises:
            ValueError: If the text holds no game.
        """
        return await self.analyse_board(read_pgn(pgn_text))

    async def close(self) -> None:
        await self._engine.close()
