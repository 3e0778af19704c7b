"""Elo rating updates and engine skill-level mapping."""

from __future__ import annotations

_MIN_MAPPED_ELO = 800
_MAX_MAPPED_ELO = 3000
_MAX_SKILL_LEVEL = 20
_ELO_PER_LEVEL = 110


def calculate_new_elo(
    current_elo: int,
    opponent_elo: int,
    score: float,
    k_factor: int = 40,
) -> int:
    """Standard Elo update.

    Args:
        current_elo: Player's rating before the game.
        opponent_elo: Opponent's rating.
        score: 1 for a win, 0.5 for a draw, 0 for a loss.
        k_factor: Update weight (40, provisional/rapid).

    Returns:
        New rating, rounded to the nearest integer.

    Raises:
        ValueError: If score is not 0, 0.5 or 1.
    """
    if score not in (0, 0.5, 1):
        raise ValueError(f"Score must be 0, 0.5 or 1, got {score}")
    expected = 1 / (1 + 10 ** ((opponent_elo - current_elo) / 400))
    return round(current_elo + k_factor * (score - expected))


def elo_to_skill_level(elo: int) -> int:
    """Approximate Stockfish "Skill Level" (0-20) for a human rating."""
    if elo < _MIN_MAPPED_ELO:
        return 0
    if elo > _MAX_MAPPED_ELO:
        return _MAX_SKILL_LEVEL
    level = round((elo - _MIN_MAPPED_ELO) * (_MAX_SKILL_LEVEL / (_MAX_MAPPED_ELO - _MIN_MAPPED_ELO)))
    return max(0, min(_MAX_SKILL_LEVEL, level))


def skill_level_to_elo(level: int) -> int:
    """Opponent rating shown for an engine skill level."""
    return _MIN_MAPPED_ELO + level * _ELO_PER_LEVEL
