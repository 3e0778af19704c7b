"""Opening book: position-keyed weighted replies and human-like delays.

The book is an in-memory index from EPD (FEN without move clocks) to
weighted UCI replies, built by replaying a repertoire of mainline move
sequences. An optional JSON file extends the repertoire, and the Lichess
masters explorer can be consulted for positions the local index lacks.

Usage:
    from chess_hurdles.openings import OpeningBook
    book = OpeningBook()
    reply = book.get_opening_move(chess.STARTING_FEN)  # e.g. "e2e4"
"""

from __future__ import annotations

import json
import logging
import random
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path

import chess

logger = logging.getLogger(__name__)

_EXPLORER_URL = "https://explorer.lichess.ovh/masters"

FIRST_MOVE_DELAY_CAP_MS = 2000
_MIN_DELAY_S = 2
_MAX_DELAY_S = 13
_NOISE_S = 5

# (space separated UCI line, weight). Weights approximate master game counts
# in thousands so popular lines are chosen more often.
_MAINLINES: list[tuple[str, int]] = [
    ("e2e4 e7e5 g1f3 b8c6 f1b5 a7a6 b5a4 g8f6 e1g1 f8e7", 40),  # Ruy Lopez
    ("e2e4 e7e5 g1f3 b8c6 f1c4 f8c5 c2c3 g8f6", 25),  # Italian Game
    ("e2e4 c7c5 g1f3 d7d6 d2d4 c5d4 f3d4 g8f6 b1c3 a7a6", 45),  # Najdorf
    ("e2e4 c7c5 g1f3 b8c6 d2d4 c5d4 f3d4 g8f6 b1c3 e7e5", 20),  # Sveshnikov
    ("e2e4 e7e6 d2d4 d7d5 b1c3 g8f6 c1g5 f8e7", 20),  # French Classical
    ("e2e4 c7c6 d2d4 d7d5 b1c3 d5e4 c3e4 c8f5 e4g3 f5g6", 20),  # Caro-Kann
    ("d2d4 d7d5 c2c4 e7e6 b1c3 g8f6 c1g5 f8e7", 35),  # Queen's Gambit Declined
    ("d2d4 d7d5 c2c4 c7c6 g1f3 g8f6 b1c3 d5c4", 20),  # Slav
    ("d2d4 g8f6 c2c4 e7e6 b1c3 f8b4 e2e3 e8g8", 30),  # Nimzo-Indian
    ("d2d4 g8f6 c2c4 g7g6 b1c3 f8g7 e2e4 d7d6 g1f3 e8g8", 25),  # King's Indian
    ("c2c4 e7e5 b1c3 g8f6 g1f3 b8c6 g2g3 d7d5", 15),  # English
    ("g1f3 d7d5 g2g3 g8f6 f1g2 e7e6 e1g1 f8e7", 10),  # Reti
]


def position_key(fen: str) -> str:
    """EPD of a FEN: placement, side to move, castling, en passant."""
    return chess.Board(fen).epd()


def _load_lines(path: Path) -> list[tuple[str, int]]:
    """Read extra repertoire lines. Returns [] if unavailable or corrupt.

    Accepted shape: ``[{"moves": "e2e4 e7e5", "weight": 10}, ...]``.
    """
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        logger.warning("Ignoring unreadable opening repertoire %s", path)
        return []
    if not isinstance(data, list):
        return []
    lines: list[tuple[str, int]] = []
    for item in data:
        if isinstance(item, dict) and isinstance(item.get("moves"), str):
            lines.append((item["moves"], int(item.get("weight", 1))))
    return lines


class OpeningBook:
    """Weighted opening replies keyed by position.

    Args:
        lines: Repertoire as (UCI line, weight) pairs. Defaults to the
            built-in mainlines.
        repertoire_path: Optional JSON file with extra lines.
        use_explorer: Query the Lichess masters explorer on local misses.
        rng: Random source for weighted selection.
        explorer_timeout: Seconds before the explorer request is abandoned.
    """

    def __init__(
        self,
        lines: list[tuple[str, int]] | None = None,
        repertoire_path: str | Path | None = None,
        use_explorer: bool = False,
        rng: random.Random | None = None,
        explorer_timeout: float = 3.0,
    ) -> None:
        self._rng = rng or random.Random()
        self._use_explorer = use_explorer
        self._explorer_timeout = explorer_timeout
        self._index: dict[str, dict[str, int]] = {}

        all_lines = list(_MAINLINES if lines is None else lines)
        if repertoire_path is not None:
            all_lines.extend(_load_lines(Path(repertoire_path)))
        for moves, weight in all_lines:
            self._add_line(moves, weight)

    def _add_line(self, moves: str, weight: int) -> None:
        board = chess.Board()
        for uci in moves.split():
            key = board.epd()
            try:
                board.push_uci(uci)
            except ValueError:
                logger.warning("Repertoire line stops at illegal move %s: %s", uci, moves)
                return
            replies = self._index.setdefault(key, {})
            replies[uci] = replies.get(uci, 0) + weight

    def __len__(self) -> int:
        return len(self._index)

    def candidates(self, fen: str) -> dict[str, int]:
        """Weighted replies for ``fen``; local index first, then explorer."""
        local = self._index.get(position_key(fen))
        if local:
            return dict(local)
        if self._use_explorer:
            return self._fetch_explorer(fen)
        return {}

    def get_opening_move(self, fen: str) -> str | None:
        """Pick a reply by weighted random choice, or None when out of book."""
        weighted = [(uci, w) for uci, w in self.candidates(fen).items() if w > 0]
        total = sum(w for _, w in weighted)
        if total == 0:
            return None
        pick = self._rng.randrange(total)
        for uci, weight in weighted:
            pick -= weight
            if pick < 0:
                return uci
        return weighted[0][0]

    def is_book_move(self, fen: str, uci: str) -> bool:
        return uci in self.candidates(fen)

    def _fetch_explorer(self, fen: str) -> dict[str, int]:
        """Masters explorer lookup. Any failure counts as out of book."""
        url = f"{_EXPLORER_URL}?fen={urllib.parse.quote(fen)}"
        request = urllib.request.Request(url, headers={"Accept": "application/json"})
        try:
            with urllib.request.urlopen(request, timeout=self._explorer_timeout) as response:
                data = json.loads(response.read())
        except (urllib.error.URLError, OSError, ValueError) as exc:
            logger.debug("Explorer lookup failed: %s", exc)
            return {}
        moves = data.get("moves") if isinstance(data, dict) else None
        if not moves:
            return {}
        return {
            m["uci"]: m.get("white", 0) + m.get("draws", 0) + m.get("black", 0)
            for m in moves
            if m.get("uci")
        }


def get_book_move_delay(
    initial_time_ms: int,
    increment_ms: int,
    first_move: bool = False,
    rng: random.Random | None = None,
) -> int:
    """Human-looking think time before a book move, in milliseconds.

    base = minutes / 13 + increment seconds / 21, plus up to 5 s of noise,
    clamped to [2 s, 13 s]. The first move of a game waits at most 2 s.

    Args:
        initial_time_ms: Starting time for one side.
        increment_ms: Per-move increment.
        first_move: True if no move has been played yet.
        rng: Random source for the noise term.

    Returns:
        Delay in milliseconds.
    """
    rng = rng or random
    minutes = initial_time_ms / 60000
    inc_seconds = increment_ms / 1000
    base = minutes / 13 + inc_seconds / 21
    seconds = min(_MAX_DELAY_S, max(_MIN_DELAY_S, base + rng.random() * _NOISE_S))
    delay = int(round(seconds * 1000))
    if first_move:
        delay = min(delay, FIRST_MOVE_DELAY_CAP_MS)
    return delay
