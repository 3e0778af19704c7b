"""Tests for CLI parsing, Rich rendering and the terminal game loop."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import chess
import pytest
from rich.console import Console

from conftest import FakeUciProcess, no_sleep
from chess_hurdles import cli
from chess_hurdles.cli import (
    _build_parser,
    _move_list,
    _play,
    main,
    render_analysis,
    render_board,
    render_hurdles,
)
from chess_hurdles.config import Settings
from chess_hurdles.engine import EngineSession
from chess_hurdles.hurdles import HurdleRepository
from chess_hurdles.models import AnalysisResultItem, HurdleRecord
from chess_hurdles.services import Services
from chess_hurdles.store import MemoryStore, SqliteStore


def _render(renderable) -> str:
    console = Console(width=120, record=True, color_system=None)
    console.print(renderable)
    return console.export_text()


class TestParser:

    def test_play_defaults(self):
        args = _build_parser().parse_args(["play"])
        assert args.command == "play"
        assert not args.black

    def test_analyze(self):
        args = _build_parser().parse_args(["analyze", "game.pgn", "--depth", "8"])
        assert str(args.pgn) == "game.pgn"
        assert args.depth == 8

    def test_command_required(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args([])

    def test_cache_action_checked(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["cache", "compact"])

    def test_play_by_rating(self):
        args = _build_parser().parse_args(["play", "--elo", "1500"])
        assert args.elo == 1500

    def test_level_and_rating_exclusive(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["play", "--level", "5", "--elo", "1500"])

    def test_analyze_save_hurdles(self):
        args = _build_parser().parse_args(["analyze", "game.pgn", "--save-hurdles"])
        assert args.save_hurdles

    def test_hurdles_commands(self):
        listing = _build_parser().parse_args(["hurdles", "list", "--practice"])
        assert listing.action == "list"
        assert listing.practice
        delete = _build_parser().parse_args(["hurdles", "delete", "abc"])
        assert delete.action == "delete"
        assert delete.hurdle_id == "abc"


class TestRendering:

    def test_board_orientation(self):
        text = _render(render_board(chess.Board()))
        lines = [line for line in text.splitlines() if line.strip()]
        assert lines[0].strip().startswith("8")
        assert "♜" in lines[0]
        flipped = _render(render_board(chess.Board(), flipped=True))
        assert [line for line in flipped.splitlines() if line.strip()][0].strip().startswith("1")

    def test_move_list_from_black(self):
        root = chess.Board("rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1")
        assert _move_list(["e5", "Nf3", "Nc6"], root) == "1...e5 2.Nf3 Nc6"

    def test_analysis_table(self):
        item = AnalysisResultItem(
            index=3, move="g6", move_number=2, is_white_move=False,
            absolute_move_index=3, evaluation=-39, post_move_evaluation=807,
            best_move="Nc6", classification="blunder", wpl=0.93,
            annotation="Drops the rook on h8.",
        )
        text = _render(render_analysis([item]))
        assert "g6" in text
        assert "blunder" in text
        assert "0.93" in text
        assert "Drops the rook" in text

    def test_hurdles_table(self):
        hurdle = {
            "id": "h-1", "side": "b", "move_number": 2, "played_move": "g6",
            "best_move": "Nc6", "centipawn_loss": 846, "difficulty_level": 4,
            "mastery_level": 1, "practice_count": 2,
        }
        text = _render(render_hurdles([hurdle]))
        assert "2..." in text
        assert "Nc6" in text
        assert "846" in text
        assert "1 (2x)" in text


class TestMain:

    def test_cache_stats(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setenv("CHESS_HURDLES_DB", str(tmp_path / "cli.db"))
        assert main(["cache", "stats"]) == 0
        assert "0 cached evaluations" in capsys.readouterr().out

    def test_missing_pgn_file(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setenv("CHESS_HURDLES_DB", str(tmp_path / "cli.db"))
        assert main(["analyze", str(tmp_path / "missing.pgn")]) == 1

    def test_play_rating_picks_level(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CHESS_HURDLES_DB", str(tmp_path / "cli.db"))
        levels: list[int] = []

        async def fake_play(services, console, side, level):
            levels.append(level)
            return 0

        monkeypatch.setattr(cli, "_play", fake_play)
        assert main(["play", "--elo", "3000"]) == 0
        assert main(["play", "--level", "4"]) == 0
        assert levels == [20, 4]

    def test_no_hurdles(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setenv("CHESS_HURDLES_DB", str(tmp_path / "cli.db"))
        assert main(["hurdles", "list"]) == 0
        assert "No hurdles saved" in capsys.readouterr().out

    def test_hurdles_list_and_delete(self, monkeypatch, tmp_path, capsys):
        db = tmp_path / "cli.db"
        monkeypatch.setenv("CHESS_HURDLES_DB", str(db))
        hurdle_id = HurdleRepository(SqliteStore(db)).save(
            HurdleRecord(fen=chess.STARTING_FEN, side="w", move_number=1, played_move="f3")
        )
        assert main(["hurdles", "list", "--practice"]) == 0
        assert "f3" in capsys.readouterr().out
        assert main(["hurdles", "delete", hurdle_id]) == 0
        assert main(["hurdles", "list"]) == 0
        assert "No hurdles saved" in capsys.readouterr().out

    def test_delete_unknown_hurdle(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CHESS_HURDLES_DB", str(tmp_path / "cli.db"))
        assert main(["hurdles", "delete", "nope"]) == 1
        assert main(["hurdles", "delete"]) == 1


# ---------------------------------------------------------------------------
# Terminal game loop
# ---------------------------------------------------------------------------


class TestPlay:

    def test_engine_failure_waits_for_explicit_abort(self):
        fake = FakeUciProcess()
        fake.crash_on_go = True
        svc = Services.from_settings(Settings(), store=MemoryStore())
        svc.engine_session = lambda skill_level, with_book=True: EngineSession(
            process_factory=lambda: fake, skill_level=skill_level, sleep=no_sleep,
        )
        console = MagicMock()
        console.input.side_effect = ["e4", "resign", "abort"]

        assert asyncio.run(_play(svc, console, chess.WHITE, 5)) == 0
        assert console.input.call_count == 3
        assert "Type 'abort'" in console.input.call_args_list[1].args[0]
        assert svc.repository.list_games() == []
