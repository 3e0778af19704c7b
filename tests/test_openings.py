"""Tests for the opening book and book-move delays.

Covers:
- Position-keyed lookup ignoring move clocks
- Weighted selection and out-of-book behaviour
- Repertoire files (valid, corrupt, illegal lines)
- Explorer fallback, success and failure
- Delay formula, clamping and first-move cap
"""

from __future__ import annotations

import json
import random
import urllib.error
from unittest.mock import MagicMock, patch

import chess
import pytest

from chess_hurdles.openings import (
    FIRST_MOVE_DELAY_CAP_MS,
    OpeningBook,
    get_book_move_delay,
    position_key,
)

_AFTER_E4 = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"


def _rng(value: float = 0.0, pick: int = 0) -> MagicMock:
    rng = MagicMock(spec=random.Random)
    rng.random.return_value = value
    rng.randrange.return_value = pick
    return rng


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class TestLookup:

    def test_builtin_book_covers_start(self):
        book = OpeningBook()
        assert set(book.candidates(chess.STARTING_FEN)) >= {"e2e4", "d2d4"}
        assert len(book) > 20

    def test_key_ignores_move_clocks(self):
        later = _AFTER_E4.replace(" 0 1", " 4 9")
        assert position_key(_AFTER_E4) == position_key(later)
        book = OpeningBook()
        assert book.candidates(later) == book.candidates(_AFTER_E4)

    def test_weights_accumulate_across_lines(self):
        book = OpeningBook(lines=[("e2e4 e7e5", 3), ("e2e4 c7c5", 2)])
        assert book.candidates(chess.STARTING_FEN) == {"e2e4": 5}
        assert book.candidates(_AFTER_E4) == {"e7e5": 3, "c7c5": 2}

    def test_weighted_pick(self):
        lines = [("e2e4", 3), ("d2d4", 1)]
        assert OpeningBook(lines=lines, rng=_rng(pick=0)).get_opening_move(chess.STARTING_FEN) == "e2e4"
        assert OpeningBook(lines=lines, rng=_rng(pick=2)).get_opening_move(chess.STARTING_FEN) == "e2e4"
        assert OpeningBook(lines=lines, rng=_rng(pick=3)).get_opening_move(chess.STARTING_FEN) == "d2d4"

    def test_out_of_book(self):
        book = OpeningBook(lines=[("e2e4", 1)])
        assert book.get_opening_move(_AFTER_E4) is None

    def test_is_book_move(self):
        book = OpeningBook(lines=[("e2e4 e7e5", 1)])
        assert book.is_book_move(_AFTER_E4, "e7e5")
        assert not book.is_book_move(_AFTER_E4, "c7c5")

    def test_every_builtin_reply_is_legal(self):
        book = OpeningBook()
        for epd, replies in book._index.items():
            board = chess.Board.from_epd(epd)[0]
            for uci in replies:
                assert chess.Move.from_uci(uci) in board.legal_moves


# ---------------------------------------------------------------------------
# Repertoire files
# ---------------------------------------------------------------------------


class TestRepertoire:

    def test_extra_lines_are_added(self, tmp_path):
        path = tmp_path / "rep.json"
        path.write_text(json.dumps([{"moves": "b2b3 e7e5", "weight": 7}]), encoding="utf-8")
        book = OpeningBook(lines=[], repertoire_path=path)
        assert book.candidates(chess.STARTING_FEN) == {"b2b3": 7}

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "rep.json"
        path.write_text("{not json", encoding="utf-8")
        book = OpeningBook(lines=[("e2e4", 1)], repertoire_path=path)
        assert book.candidates(chess.STARTING_FEN) == {"e2e4": 1}

    def test_missing_file_is_ignored(self, tmp_path):
        book = OpeningBook(lines=[("e2e4", 1)], repertoire_path=tmp_path / "absent.json")
        assert len(book) == 1

    def test_illegal_line_is_truncated(self):
        book = OpeningBook(lines=[("e2e4 e2e4 d2d4", 1)])
        assert book.candidates(chess.STARTING_FEN) == {"e2e4": 1}
        assert book.candidates(_AFTER_E4) == {}


# ---------------------------------------------------------------------------
# Explorer
# ---------------------------------------------------------------------------


class TestExplorer:

    def test_not_consulted_when_disabled(self):
        book = OpeningBook(lines=[])
        with patch("chess_hurdles.openings.urllib.request.urlopen") as urlopen:
            assert book.get_opening_move(chess.STARTING_FEN) is None
        urlopen.assert_not_called()

    def test_local_hit_skips_explorer(self):
        book = OpeningBook(lines=[("e2e4", 1)], use_explorer=True)
        with patch("chess_hurdles.openings.urllib.request.urlopen") as urlopen:
            assert book.get_opening_move(chess.STARTING_FEN) == "e2e4"
        urlopen.assert_not_called()

    def test_explorer_moves(self):
        response = MagicMock()
        response.read.return_value = json.dumps({
            "moves": [
                {"uci": "e2e4", "white": 10, "draws": 5, "black": 5},
                {"uci": "d2d4", "white": 1, "draws": 0, "black": 0},
            ]
        }).encode()
        response.__enter__.return_value = response
        book = OpeningBook(lines=[], use_explorer=True)
        with patch("chess_hurdles.openings.urllib.request.urlopen", return_value=response):
            assert book.candidates(chess.STARTING_FEN) == {"e2e4": 20, "d2d4": 1}

    def test_explorer_failure_is_out_of_book(self):
        book = OpeningBook(lines=[], use_explorer=True)
        with patch(
            "chess_hurdles.openings.urllib.request.urlopen",
            side_effect=urllib.error.URLError("offline"),
        ):
            assert book.get_opening_move(chess.STARTING_FEN) is None


# ---------------------------------------------------------------------------
# Delays
# ---------------------------------------------------------------------------


class TestBookMoveDelay:

    def test_base_without_noise(self):
        # 30 min + 20 s: 30/13 + 20/21 seconds
        expected = round((30 / 13 + 20 / 21) * 1000)
        assert get_book_move_delay(30 * 60000, 20000, rng=_rng(0.0)) == expected

    def test_noise_adds_up_to_five_seconds(self):
        low = get_book_move_delay(30 * 60000, 20000, rng=_rng(0.0))
        high = get_book_move_delay(30 * 60000, 20000, rng=_rng(0.5))
        assert high - low == 2500

    def test_clamped_low(self):
        assert get_book_move_delay(60000, 0, rng=_rng(0.0)) == 2000

    def test_clamped_high(self):
        assert get_book_move_delay(180 * 60000, 60000, rng=_rng(0.99)) == 13000

    def test_first_move_capped(self):
        assert get_book_move_delay(30 * 60000, 20000, first_move=True, rng=_rng(0.9)) == FIRST_MOVE_DELAY_CAP_MS

    @pytest.mark.parametrize("seed", range(5))
    def test_always_within_bounds(self, seed):
        delay = get_book_move_delay(10 * 60000, 5000, rng=random.Random(seed))
        assert 2000 <= delay <= 13000
