"""Command-line entry point for Chess Hurdles.

    chess-hurdles play [--black] [--level N | --elo R]    # play the engine in the terminal
    chess-hurdles analyze game.pgn [--depth N] [--save-hurdles]
    chess-hurdles hurdles list [--practice] | delete ID   # saved practice positions
    chess-hurdles cache stats|clear                       # evaluation cache maintenance
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import chess
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chess_hurdles.analysis import fens_before_moves, read_pgn, summarise
from chess_hurdles.config import Settings, configure_logging
from chess_hurdles.elo import elo_to_skill_level
from chess_hurdles.engine import DEFAULT_SKILL_LEVEL
from chess_hurdles.errors import ChessHurdlesError
from chess_hurdles.game import Game
from chess_hurdles.models import AnalysisResultItem
from chess_hurdles.services import Services

logger = logging.getLogger(__name__)

# Unicode piece symbols
_PIECE_SYMBOLS = {
    "K": "♔", "Q": "♕", "R": "♖", "B": "♗",
    "N": "♘", "P": "♙",
    "k": "♚", "q": "♛", "r": "♜", "b": "♝",
    "n": "♞", "p": "♟",
}

_LIGHT_SQ = "grey85"
_DARK_SQ = "grey50"
_HIGHLIGHT = "yellow"

_CLASSIFICATION_STYLES = {
    "inaccuracy": "yellow",
    "mistake": "dark_orange",
    "blunder": "bold red",
}


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _format_ms(ms: int) -> str:
    seconds = ms // 1000
    return f"{seconds // 60}:{seconds % 60:02d}"


def render_board(board: chess.Board, flipped: bool = False) -> Table:
    """Render ``board`` as a Rich table, highlighting the last move."""
    highlight: set[int] = set()
    if board.move_stack:
        last = board.peek()
        highlight = {last.from_square, last.to_square}

    table = Table(show_header=False, show_edge=False, pad_edge=False,
                  box=None, padding=(0, 0))
    table.add_column(width=2, justify="right")
    for _ in range(8):
        table.add_column(width=3, justify="center")

    ranks = range(8) if flipped else range(7, -1, -1)
    files = range(7, -1, -1) if flipped else range(8)
    for rank in ranks:
        row: list[Text] = [Text(str(rank + 1), style="bold")]
        for file in files:
            sq = chess.square(file, rank)
            piece = board.piece_at(sq)
            bg = _LIGHT_SQ if (rank + file) % 2 == 1 else _DARK_SQ
            if sq in highlight:
                bg = _HIGHLIGHT
            symbol = _PIECE_SYMBOLS[piece.symbol()] if piece is not None else " "
            row.append(Text(f" {symbol} ", style=f"black on {bg}"))
        table.add_row(*row)

    labels = [Text("")] + [
        Text(chess.FILE_NAMES[f], style="bold") for f in files
    ]
    table.add_row(*labels)
    return table


def render_game(game: Game) -> Panel:
    state = game.snapshot()
    clock = state["clock"]
    header = Text()
    header.append(f"White {_format_ms(clock['white_ms'])}  ", style="bold")
    header.append(f"Black {_format_ms(clock['black_ms'])}", style="bold")
    if state["engine_thinking"]:
        header.append("   engine thinking...", style="dim")
    elif state["last_move_source"] == "book":
        header.append("   (book)", style="dim")

    body = Table.grid()
    body.add_row(header)
    body.add_row(render_board(game.board, flipped=game.user_side == chess.BLACK))
    if state["moves"]:
        body.add_row(Text(_move_list(state["moves"], game.board.root()), style="dim"))
    return Panel(body, title=f"Chess Hurdles - level {state['engine_level']}", border_style="blue")


def _move_list(sans: list[str], root: chess.Board) -> str:
    parts = []
    number = root.fullmove_number
    white = root.turn == chess.WHITE
    for i, san in enumerate(sans):
        if white:
            parts.append(f"{number}.{san}")
        elif i == 0:
            parts.append(f"{number}...{san}")
        else:
            parts.append(san)
        if not white:
            number += 1
        white = not white
    return " ".join(parts)


def render_hurdles(hurdles: list[dict]) -> Table:
    table = Table(title="Hurdles")
    table.add_column("Id", overflow="fold")
    table.add_column("Move")
    table.add_column("Played")
    table.add_column("Best")
    table.add_column("Loss", justify="right")
    table.add_column("Difficulty", justify="right")
    table.add_column("Mastery", justify="right")
    for hurdle in hurdles:
        marker = "." if hurdle.get("side") == "w" else "..."
        loss = hurdle.get("centipawn_loss")
        table.add_row(
            hurdle["id"],
            f"{hurdle.get('move_number')}{marker}",
            hurdle.get("played_move") or "",
            hurdle.get("best_move") or "",
            "" if loss is None else str(loss),
            str(hurdle.get("difficulty_level") or ""),
            f"{hurdle.get('mastery_level', 0)} ({hurdle.get('practice_count', 0)}x)",
        )
    return table


def render_analysis(results: list[AnalysisResultItem]) -> Table:
    table = Table(title="Post-game review")
    table.add_column("Move")
    table.add_column("Eval", justify="right")
    table.add_column("Best")
    table.add_column("WPL", justify="right")
    table.add_column("Class")
    table.add_column("Note", overflow="fold")
    for item in results:
        style = _CLASSIFICATION_STYLES.get(item.classification, "")
        classification = item.classification
        if item.is_book_move:
            classification = "book"
        table.add_row(
            item.move,
            str(item.post_move_evaluation if item.post_move_evaluation is not None else ""),
            item.best_move,
            f"{item.wpl:.2f}" if item.wpl is not None else "",
            Text(classification, style=style),
            item.annotation or "",
        )
    return table


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _play(services: Services, console: Console, side: chess.Color, level: int) -> int:
    game = services.new_game(side, level)
    changed = asyncio.Event()
    game.on_update = lambda _game: changed.set()
    game.start()
    try:
        while game.in_progress:
            console.print(render_game(game))
            if game.engine_error:
                # the engine keeps "thinking" until the user gives up on it
                console.print(f"[red]Engine error: {game.engine_error}[/red]")
                text = await asyncio.to_thread(
                    console.input, "Engine stopped responding. Type 'abort' to end the game: "
                )
                if text.strip() == "abort":
                    game.abort()
                continue
            if not game.is_user_turn:
                changed.clear()
                await changed.wait()
                continue
            text = await asyncio.to_thread(console.input, "[bold]Your move[/bold] (or resign/abort): ")
            text = text.strip()
            if text == "resign":
                game.resign()
            elif text == "abort":
                game.abort()
            elif not game.submit_user_move(text):
                console.print(f"[yellow]Not a legal move: {text!r}[/yellow]")
    finally:
        await game.close()

    console.print(render_game(game))
    if game.result is not None:
        console.print(f"[bold]{game.result.status}[/bold]: {game.result.reason}")
    if game.persistence_error:
        console.print(f"[red]Game not saved: {game.persistence_error}[/red]")
        if game.retry_persistence():
            console.print("[green]Saved on retry.[/green]")
    if game.rating_after is not None:
        console.print(f"Rating {game.rating_before} -> {game.rating_after}")
    if game.game_id:
        console.print(f"Review later with game id {game.game_id}")
    return 0


async def _analyze(
    services: Services,
    console: Console,
    path: Path,
    depth: int | None,
    save_hurdles: bool = False,
) -> int:
    board = read_pgn(path.read_text(encoding="utf-8"))
    analyzer = services.analyzer(depth)
    try:
        results = await analyzer.analyse_board(board)
    finally:
        await analyzer.close()
    console.print(render_analysis(results))
    if save_hurdles:
        saved = services.hurdles.save_from_analysis(
            results, fens_before_moves(board), depth=analyzer.depth
        )
        console.print(f"Saved {len(saved)} hurdles")
    summary = summarise(results)
    for side in ("white", "black"):
        counts = summary[side]
        console.print(
            f"{side.capitalize()}: {counts['inaccuracy']} inaccuracies, "
            f"{counts['mistake']} mistakes, {counts['blunder']} blunders"
        )
    return 0


def _hurdles(services: Services, console: Console, args: argparse.Namespace) -> int:
    if args.action == "delete":
        if not args.hurdle_id:
            console.print("[red]hurdles delete needs a hurdle id[/red]")
            return 1
        if not services.hurdles.delete(args.hurdle_id):
            console.print(f"[red]Hurdle not found: {args.hurdle_id}[/red]")
            return 1
        console.print(f"Deleted hurdle {args.hurdle_id}")
        return 0
    if args.practice:
        hurdles = services.hurdles.for_practice()
    else:
        hurdles = services.hurdles.list_hurdles()
    if not hurdles:
        console.print("No hurdles saved")
    else:
        console.print(render_hurdles(hurdles))
    return 0


def _cache(services: Services, console: Console, action: str) -> int:
    if action == "clear":
        removed = services.cache.clear_persistent()
        console.print(f"Removed {removed} cached evaluations")
    else:
        console.print(f"{len(services.cache)} cached evaluations in {services.settings.db_path}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chess-hurdles", description="Play and review games against Stockfish")
    sub = parser.add_subparsers(dest="command", required=True)

    play = sub.add_parser("play", help="Play a game in the terminal")
    play.add_argument("--black", action="store_true", help="Play the black pieces")
    strength = play.add_mutually_exclusive_group()
    strength.add_argument("--level", type=int, default=DEFAULT_SKILL_LEVEL, help="Engine skill level 0-20")
    strength.add_argument("--elo", type=int, default=None, help="Target engine rating")

    analyze = sub.add_parser("analyze", help="Review a PGN file")
    analyze.add_argument("pgn", type=Path)
    analyze.add_argument("--depth", type=int, default=None, help="Search depth per position")
    analyze.add_argument("--save-hurdles", action="store_true", help="Save flagged moves as hurdles")

    hurdles = sub.add_parser("hurdles", help="List or delete saved hurdles")
    hurdles.add_argument("action", choices=["list", "delete"])
    hurdles.add_argument("hurdle_id", nargs="?", default=None)
    hurdles.add_argument("--practice", action="store_true", help="Only hurdles not yet mastered")

    cache = sub.add_parser("cache", help="Inspect or clear the evaluation cache")
    cache.add_argument("action", choices=["stats", "clear"])
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = _build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    console = Console()

    try:
        services = Services.from_settings(settings)
        if args.command == "play":
            side = chess.BLACK if args.black else chess.WHITE
            level = args.level if args.elo is None else elo_to_skill_level(args.elo)
            return asyncio.run(_play(services, console, side, level))
        if args.command == "analyze":
            return asyncio.run(_analyze(services, console, args.pgn, args.depth, args.save_hurdles))
        if args.command == "hurdles":
            return _hurdles(services, console, args)
        return _cache(services, console, args.action)
    except ChessHurdlesError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    except (OSError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
