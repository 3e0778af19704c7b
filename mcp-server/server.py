"""MCP server for Chess Hurdles.

Exposes live games against Stockfish, post-game review and saved hurdles
via FastMCP. Games are held in memory keyed by UUID; finished games are
persisted through the shared GameRepository and only the most recent
finished games stay in memory.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from pathlib import Path

# Add project root and mcp-server dir to path for imports
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_MCP_SERVER_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(_PROJECT_ROOT))
sys.path.insert(0, str(_MCP_SERVER_DIR))

import chess
from mcp.server.fastmcp import FastMCP

from chess_hurdles.analysis import fens_before_moves, read_pgn, summarise
from chess_hurdles.config import Settings, configure_logging
from chess_hurdles.elo import elo_to_skill_level
from chess_hurdles.engine import DEFAULT_SKILL_LEVEL
from chess_hurdles.errors import ChessHurdlesError
from chess_hurdles.game import Game
from chess_hurdles.services import Services

from response_schemas import minify_analysis, minify_game_state, minify_hurdle  # noqa: E402

logger = logging.getLogger(__name__)

mcp = FastMCP("chess-hurdles")

# In-memory game store: game_id -> Game
_games: dict[str, Game] = {}

_services: Services | None = None

# How long a tool waits for the engine's reply before returning
_ENGINE_WAIT_S = 30.0

# Finished games kept for retry_save, get_game_pgn and analyze_game
_MAX_FINISHED_GAMES = 20


def _get_services() -> Services:
    global _services
    if _services is None:
        _services = Services.from_settings(Settings.from_env())
    return _services


def _get_game(game_id: str) -> Game | None:
    return _games.get(game_id)


def _state(game_id: str, game: Game) -> dict:
    return minify_game_state(game_id, game.snapshot())


def _prune_finished_games() -> None:
    """Drop the oldest finished games beyond _MAX_FINISHED_GAMES."""
    finished = [game_id for game_id, game in _games.items() if game.result is not None]
    for game_id in finished[:max(0, len(finished) - _MAX_FINISHED_GAMES)]:
        del _games[game_id]
        logger.debug("Dropped finished game %s", game_id)


async def _wait_for_user_turn(game: Game, timeout: float = _ENGINE_WAIT_S) -> None:
    """Wait until it is the user's move, the game ends or the engine fails."""
    changed = asyncio.Event()
    game.on_update = lambda _game: changed.set()

    def settled() -> bool:
        return not game.in_progress or game.is_user_turn or game.engine_error is not None

    async def settle() -> None:
        while not settled():
            changed.clear()
            await changed.wait()

    try:
        await asyncio.wait_for(settle(), timeout)
    except asyncio.TimeoutError:
        logger.warning("Engine reply still pending after %.0fs", timeout)
    finally:
        game.on_update = None


# ---------------------------------------------------------------------------
# Game tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def new_game(
    player_color: str = "white",
    level: int = DEFAULT_SKILL_LEVEL,
    starting_fen: str | None = None,
    target_elo: int | None = None,
) -> dict:
    """Start a new game against Stockfish.

    Args:
        player_color: 'white' or 'black'. Default 'white'.
        level: Engine skill level 0-20.
        starting_fen: Optional custom starting position FEN.
        target_elo: Target rating; overrides level with the nearest
            skill level.

    Returns:
        Game state after the engine's first move if it plays first.
    """
    if player_color not in ("white", "black"):
        return {"error": f"player_color must be 'white' or 'black', got {player_color!r}"}
    if starting_fen is not None:
        try:
            board = chess.Board(starting_fen)
        except ValueError as exc:
            return {"error": f"Invalid FEN: {exc}"}
        if not board.is_valid():
            return {"error": f"Invalid FEN position: {starting_fen}"}

    side = chess.WHITE if player_color == "white" else chess.BLACK
    if target_elo is not None:
        level = elo_to_skill_level(target_elo)
    game = _get_services().new_game(side, max(0, min(20, level)), starting_fen)
    _prune_finished_games()
    game_id = str(uuid.uuid4())
    _games[game_id] = game
    game.start()
    await _wait_for_user_turn(game)
    return _state(game_id, game)


@mcp.tool()
def get_board(game_id: str) -> dict:
    """Get the current board state for a game.

    Args:
        game_id: UUID of the game.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}
    return _state(game_id, game)


@mcp.tool()
async def make_move(game_id: str, move: str, wait_for_engine: bool = True) -> dict:
    """Play the user's move (SAN or UCI) and optionally wait for the reply.

    Args:
        game_id: UUID of the game.
        move: Move in SAN (e.g. 'Nf3') or UCI (e.g. 'g1f3').
        wait_for_engine: Return only after the engine has answered.

    Returns:
        Updated game state.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}
    if not game.in_progress:
        return {"error": f"Game is over: {game.status.value}"}
    if not game.is_user_turn:
        return {"error": "Not your turn"}
    if not game.submit_user_move(move):
        legal = [game.board.san(m) for m in game.board.legal_moves]
        return {"error": f"Illegal move: {move}. Legal moves: {legal}"}
    if wait_for_engine:
        await _wait_for_user_turn(game)
    return _state(game_id, game)


@mcp.tool()
def resign(game_id: str) -> dict:
    """Resign the game; it is saved and the rating updated."""
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}
    game.resign()
    return _state(game_id, game)


@mcp.tool()
async def abort_game(game_id: str) -> dict:
    """Abort without a result. Nothing is saved."""
    game = _games.pop(game_id, None)
    if game is None:
        return {"error": f"Game not found: {game_id}"}
    game.abort()
    state = _state(game_id, game)
    await game.close()
    return state


@mcp.tool()
def set_difficulty(game_id: str, level: int | None = None, target_elo: int | None = None) -> dict:
    """Change engine strength; an in-flight search keeps the old level.

    Args:
        game_id: UUID of the game.
        level: New skill level (clamped to 0-20).
        target_elo: Target rating, mapped to the nearest skill level.
            Used when no level is given.
    """
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}
    if level is None and target_elo is None:
        return {"error": "Provide level or target_elo"}
    if level is None:
        level = elo_to_skill_level(target_elo)
    game.set_engine_level(level)
    result = {
        "game_id": game_id,
        "level": game.engine.skill_level,
        "message": f"Skill level set to {game.engine.skill_level}",
    }
    if target_elo is not None:
        result["target_elo"] = target_elo
    return result


@mcp.tool()
def retry_save(game_id: str) -> dict:
    """Retry saving a finished game whose first save failed."""
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}
    if game.result is None:
        return {"error": "Game is still in progress"}
    saved = game.retry_persistence()
    return {"saved": saved, **_state(game_id, game)}


@mcp.tool()
def get_game_pgn(game_id: str) -> dict:
    """Export a game as a PGN string."""
    game = _get_game(game_id)
    if game is None:
        return {"error": f"Game not found: {game_id}"}
    return {"pgn": game.build_pgn()}


# ---------------------------------------------------------------------------
# Review tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def analyze_game(
    game_id: str | None = None,
    pgn: str | None = None,
    depth: int | None = None,
    save_hurdles: bool = False,
) -> dict:
    """Review a live/finished game or a PGN for inaccuracies, mistakes and blunders.

    Args:
        game_id: A game held by this server.
        pgn: PGN text, used when no game_id is given.
        depth: Search depth per position.
        save_hurdles: Save every annotation-worthy move as a hurdle.

    Returns:
        Flagged moves with annotations and per-side counts, plus the ids
        of saved hurdles when requested.
    """
    services = _get_services()
    analyzer = services.analyzer(depth)
    saved_game_id = None
    try:
        if game_id is not None:
            game = _get_game(game_id)
            if game is None:
                return {"error": f"Game not found: {game_id}"}
            board = game.board.copy()
            saved_game_id = game.game_id
        elif pgn:
            board = read_pgn(pgn)
        else:
            return {"error": "Provide game_id or pgn"}
        results = await analyzer.analyse_board(board)
        response = minify_analysis(results, summarise(results))
        if save_hurdles:
            response["hurdle_ids"] = services.hurdles.save_from_analysis(
                results,
                fens_before_moves(board),
                game_id=saved_game_id,
                depth=analyzer.depth,
            )
    except (ChessHurdlesError, ValueError) as exc:
        return {"error": str(exc)}
    finally:
        await analyzer.close()
    return response


# ---------------------------------------------------------------------------
# Hurdle tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_hurdles(game_id: str | None = None, for_practice: bool = False) -> dict:
    """List saved hurdles.

    Args:
        game_id: Only hurdles from this saved game, in move order.
        for_practice: Only hurdles not yet mastered, least recently
            practiced first.
    """
    hurdles = _get_services().hurdles
    try:
        if for_practice:
            items = hurdles.for_practice()
        else:
            items = hurdles.list_hurdles(game_id)
    except ChessHurdlesError as exc:
        return {"error": str(exc)}
    return {"count": len(items), "hurdles": [minify_hurdle(h) for h in items]}


@mcp.tool()
def record_hurdle_practice(hurdle_id: str, mastery_level: int) -> dict:
    """Record a practice attempt on a hurdle.

    Args:
        hurdle_id: Id returned by analyze_game or list_hurdles.
        mastery_level: 0 not attempted, 1 struggling, 2 improving,
            3 mastered.
    """
    try:
        hurdle = _get_services().hurdles.record_practice(hurdle_id, mastery_level)
    except ChessHurdlesError as exc:
        return {"error": str(exc)}
    if hurdle is None:
        return {"error": f"Hurdle not found: {hurdle_id}"}
    return minify_hurdle(hurdle)


@mcp.tool()
def delete_hurdle(hurdle_id: str) -> dict:
    """Delete a saved hurdle."""
    try:
        deleted = _get_services().hurdles.delete(hurdle_id)
    except ChessHurdlesError as exc:
        return {"error": str(exc)}
    if not deleted:
        return {"error": f"Hurdle not found: {hurdle_id}"}
    return {"deleted": hurdle_id}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    configure_logging(Settings.from_env().log_level)
    mcp.run()
