"""Response shaping for MCP tool return values.

Keeps tool responses small: the move list becomes a PGN move string, and
analysis items and hurdles keep only the fields a reader acts on.
"""

from __future__ import annotations

import os

from chess_hurdles.models import AnalysisResultItem


# ---------------------------------------------------------------------------
# Minification functions
# ---------------------------------------------------------------------------


def minify_game_state(game_id: str, state: dict) -> dict:
    """Compact a Game.snapshot() dict.

    Args:
        game_id: Server-side handle of the game.
        state: Snapshot as produced by Game.snapshot().

    Returns:
        Dict with the position, clocks, move string and result.
    """
    result = {"game_id": game_id}
    for key in (
        "fen", "status", "user_side", "turn", "engine_level",
        "engine_thinking", "last_move_source",
    ):
        result[key] = state.get(key)

    clock = state.get("clock") or {}
    result["clock_ms"] = {
        "white": clock.get("white_ms"),
        "black": clock.get("black_ms"),
    }
    result["move_list"] = _moves_to_pgn_string(
        state.get("moves", []),
        first_number=state.get("start_move_number", 1),
        white_first=state.get("start_white", True),
    )
    result["result"] = state.get("result")

    # only present when something went wrong or the game was saved
    for key in ("engine_error", "persistence_error", "rating_before", "rating_after"):
        if state.get(key) is not None:
            result[key] = state[key]
    if state.get("game_id"):
        result["saved_game_id"] = state["game_id"]
    return result


def minify_analysis_item(item: AnalysisResultItem) -> dict:
    """Keep move, classification, WPL, best move and annotation."""
    result = {
        "move": item.move,
        "classification": item.classification,
        "best_move": item.best_move,
        "evaluation": item.post_move_evaluation,
    }
    if item.wpl is not None:
        result["wpl"] = round(item.wpl, 3)
    if item.is_book_move:
        result["book"] = True
    if item.annotation:
        result["annotation"] = item.annotation
    return result


def minify_analysis(results: list[AnalysisResultItem], summary: dict) -> dict:
    """Return only flagged moves plus per-side counts."""
    flagged = [
        minify_analysis_item(item)
        for item in results
        if item.classification != "none" or item.annotation
    ]
    return {
        "moves_analyzed": len(results),
        "flagged": flagged,
        "summary": summary,
    }


_HURDLE_FIELDS = (
    "id", "fen", "side", "move_number", "played_move", "best_move", "evaluation",
    "centipawn_loss", "mate_in", "difficulty_level", "mastery_level", "practice_count",
)


def minify_hurdle(hurdle: dict) -> dict:
    """Keep the position, the moves and practice progress of a saved hurdle."""
    result = {key: hurdle.get(key) for key in _HURDLE_FIELDS}
    for key in ("game_id", "ai_description", "last_practiced"):
        if hurdle.get(key):
            result[key] = hurdle[key]
    return result


# ---------------------------------------------------------------------------
# Helper: move list to PGN string
# ---------------------------------------------------------------------------


def _moves_to_pgn_string(moves: list[str], first_number: int = 1, white_first: bool = True) -> str:
    """Convert a list of SAN moves to a PGN move string.

    E.g., ['e4', 'e5', 'Nf3', 'Nc6'] -> '1.e4 e5 2.Nf3 Nc6'
    """
    if not moves:
        return ""

    parts = []
    number = first_number
    white = white_first
    for i, move in enumerate(moves):
        if white:
            parts.append(f"{number}.{move}")
        elif i == 0:
            parts.append(f"{number}...{move}")
        else:
            parts.append(move)
        if not white:
            number += 1
        white = not white

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Validation schemas (dict-based)
# ---------------------------------------------------------------------------

GAME_STATE_SCHEMA = {
    "game_id": str,
    "fen": str,
    "status": str,
    "user_side": str,
    "turn": str,
    "engine_level": int,
    "engine_thinking": bool,
    "last_move_source": (str, type(None)),
    "clock_ms": dict,
    "move_list": str,
    "result": (dict, type(None)),
}

ANALYSIS_SCHEMA = {
    "moves_analyzed": int,
    "flagged": list,
    "summary": dict,
}

HURDLE_SCHEMA = {
    "id": str,
    "fen": str,
    "side": str,
    "move_number": int,
    "played_move": str,
    "mastery_level": int,
    "practice_count": int,
}

ERROR_SCHEMA = {
    "error": str,
}


def validate_response(response: dict, schema: dict) -> list[str]:
    """Validate a response dict against a schema.

    Only runs when CHESS_HURDLES_VALIDATE=1 env var is set.

    Args:
        response: Response dict to validate.
        schema: Dict mapping key names to expected types (or tuple of types).

    Returns:
        List of validation error strings (empty = valid).
    """
    if os.environ.get("CHESS_HURDLES_VALIDATE") != "1":
        return []

    errors = []

    if not isinstance(response, dict):
        errors.append(f"Response is not a dict: {type(response).__name__}")
        return errors

    for key, expected_types in schema.items():
        if key not in response:
            errors.append(f"Missing key: {key}")
            continue

        value = response[key]
        if isinstance(expected_types, tuple):
            if not isinstance(value, expected_types):
                type_names = ", ".join(t.__name__ for t in expected_types)
                errors.append(
                    f"Key '{key}': expected ({type_names}), "
                    f"got {type(value).__name__}"
                )
        else:
            if not isinstance(value, expected_types):
                errors.append(
                    f"Key '{key}': expected {expected_types.__name__}, "
                    f"got {type(value).__name__}"
                )

    return errors
