"""Move-quality metrics: centipawn change, win-probability loss, tiers.

All evaluations are White-perspective centipawns. Win-probability loss
(WPL) is the classification source of truth; the centipawn classifier is
kept for data persisted before WPL existed.
"""

from __future__ import annotations

import math

# Lichess-style winning-chances slope
_WIN_CHANCE_K = 0.00368208

WPL_THRESHOLDS = {
    "inaccuracy": 0.09,
    "mistake": 0.18,
    "blunder": 0.45,
}

CP_LOSS_THRESHOLDS = {
    "inaccuracy": 50,
    "mistake": 150,
    "blunder": 300,
}

SEVERITY_ORDER = ("none", "inaccuracy", "mistake", "blunder")

MATE_BASE = 5000


def compute_centipawn_change(
    pre_white_eval: int,
    post_white_eval: int,
    is_white_move: bool,
) -> int:
    """Centipawns the mover gave away, never negative.

    Args:
        pre_white_eval: White-perspective eval before the move.
        post_white_eval: White-perspective eval after the move.
        is_white_move: True if White made the move.

    Returns:
        max(0, pre - post) for White, max(0, post - pre) for Black.
    """
    if is_white_move:
        return max(0, pre_white_eval - post_white_eval)
    return max(0, post_white_eval - pre_white_eval)


def win_chance(cp: float) -> float:
    """White's winning chances in (-1, 1) for a centipawn score."""
    return 2 / (1 + math.exp(-_WIN_CHANCE_K * cp)) - 1


def calculate_wpl(pre_cp: float, post_cp: float, is_white_move: bool) -> float:
    """Loss of winning chances caused by the mover, never negative.

    Black's chances are the negation of White's, so for a Black move the
    loss is ``win_chance(post) - win_chance(pre)``.
    """
    pre_wc = win_chance(pre_cp)
    post_wc = win_chance(post_cp)
    if is_white_move:
        loss = pre_wc - post_wc
    else:
        loss = post_wc - pre_wc
    return max(0.0, loss)


def _tier(value: float, thresholds: dict) -> str:
    if value >= thresholds["blunder"]:
        return "blunder"
    if value >= thresholds["mistake"]:
        return "mistake"
    if value >= thresholds["inaccuracy"]:
        return "inaccuracy"
    return "none"


def classify_wpl(wpl: float) -> str:
    """Classify a WPL value. A value exactly on a threshold takes that tier."""
    return _tier(wpl, WPL_THRESHOLDS)


def classify_cp_loss(cp_loss: int) -> str:
    """Legacy centipawn-loss classifier for previously persisted analyses."""
    return _tier(cp_loss, CP_LOSS_THRESHOLDS)


def severity_rank(classification: str) -> int:
    """Position of a classification in none < inaccuracy < mistake < blunder."""
    return SEVERITY_ORDER.index(classification)


def is_mate_score(value: int) -> bool:
    return abs(value) > MATE_BASE


def mate_distance(value: int) -> int | None:
    """Plies to mate encoded in ``value``, or None for ordinary scores."""
    if not is_mate_score(value):
        return None
    return abs(value) - MATE_BASE
