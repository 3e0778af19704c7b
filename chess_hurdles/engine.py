"""Engine session: opening book or live search for the computer's moves.

Owns one UCI subprocess per live game and drives it through an explicit
state machine:

    IDLE -> DECIDING -> BOOK_DELAY_PENDING -> (book hit) MOVE_READY -> IDLE
                                           -> (book miss) SEARCH_PENDING
                     -> SEARCH_PENDING -> MOVE_READY -> IDLE

Every asynchronous step captures the session generation when it starts and
re-checks it on resume. ``reset()`` bumps the generation, so a delayed book
move or a late ``bestmove`` from a previous game is dropped silently.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import shutil
import time
from pathlib import Path
from typing import Awaitable, Callable, Protocol

import chess
import chess.engine

from chess_hurdles.cache import AnalysisCache, make_key
from chess_hurdles.errors import EngineUnavailableError, SessionStateError
from chess_hurdles.models import BestMove, CacheEntry, EngineEvaluation, TimeControl
from chess_hurdles.openings import OpeningBook, get_book_move_delay
from chess_hurdles.protocol import SearchListener, normalize_score

logger = logging.getLogger(__name__)

# Stockfish search paths in priority order
_STOCKFISH_PATHS = [
    "/opt/homebrew/bin/stockfish",
    "/usr/local/bin/stockfish",
    "/usr/games/stockfish",
    "/usr/bin/stockfish",
]

DEFAULT_MOVETIME_MS = 1000
DEFAULT_SKILL_LEVEL = 5
_HANDSHAKE_TIMEOUT_S = 10.0
_QUIT_TIMEOUT_S = 2.0


def _find_stockfish() -> str:
    """Auto-detect Stockfish binary path.

    Checks known install paths, then falls back to PATH lookup.

    Returns:
        Path to Stockfish binary.

    Raises:
        FileNotFoundError: If Stockfish is not found anywhere.
    """
    for path_str in _STOCKFISH_PATHS:
        if Path(path_str).is_file():
            return path_str

    which_result = shutil.which("stockfish")
    if which_result is not None:
        return which_result

    raise FileNotFoundError(
        "Stockfish not found. Install it or set STOCKFISH_PATH."
    )


# ---------------------------------------------------------------------------
# Subprocess transport
# ---------------------------------------------------------------------------


class EngineProcess(Protocol):
    """What the session needs from a UCI subprocess."""

    @property
    def alive(self) -> bool: ...

    async def start(
        self,
        on_line: Callable[[str], None],
        on_exit: Callable[[], None],
    ) -> None: ...

    def send(self, command: str) -> None: ...

    async def quit(self) -> None: ...


class _ListeningUciProtocol(chess.engine.UciProtocol):
    """python-chess UCI protocol that hands raw output lines to a callback.

    The handshake goes through python-chess; once ``on_line`` is set every
    stdout line is forwarded to the session's SearchListener.
    """

    def __init__(self) -> None:
        super().__init__()
        self.on_line: Callable[[str], None] | None = None
        self.on_exit: Callable[[], None] | None = None

    def line_received(self, line: str) -> None:
        super().line_received(line)
        line = line.strip()
        if line and self.on_line is not None:
            self.on_line(line)

    def connection_lost(self, exc: Exception | None) -> None:
        super().connection_lost(exc)
        on_exit, self.on_exit = self.on_exit, None
        if on_exit is not None:
            on_exit()


class UciProcess:
    """A UCI engine subprocess driven through python-chess.

    Args:
        path: Engine binary.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._transport: asyncio.SubprocessTransport | None = None
        self._protocol: _ListeningUciProtocol | None = None

    @property
    def alive(self) -> bool:
        return self._protocol is not None and not self._protocol.returncode.done()

    async def start(
        self,
        on_line: Callable[[str], None],
        on_exit: Callable[[], None],
    ) -> None:
        """Spawn the engine and complete the ``uci``/``uciok`` handshake.

        Raises:
            EngineUnavailableError: If the binary cannot be run or never
                answers the handshake.
        """
        try:
            transport, protocol = await _ListeningUciProtocol.popen([self._path])
        except OSError as exc:
            raise EngineUnavailableError(f"Cannot start {self._path}: {exc}") from exc

        try:
            await asyncio.wait_for(protocol.initialize(), _HANDSHAKE_TIMEOUT_S)
        except (asyncio.TimeoutError, chess.engine.EngineError) as exc:
            transport.close()
            raise EngineUnavailableError(f"Engine did not answer 'uci': {exc}") from exc

        protocol.on_line = on_line
        protocol.on_exit = on_exit
        self._transport = transport
        self._protocol = protocol
        logger.info("Engine started: %s (pid %s)", self._path, transport.get_pid())

    def send(self, command: str) -> None:
        if not self.alive:
            raise EngineUnavailableError("Engine process is not running")
        try:
            self._protocol.send_line(command)
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise EngineUnavailableError(f"Engine pipe closed: {exc}") from exc

    async def quit(self) -> None:
        """Ask the engine to exit, killing it if it does not."""
        transport, protocol = self._transport, self._protocol
        self._transport = self._protocol = None
        if transport is None or protocol is None:
            return
        protocol.on_line = None
        protocol.on_exit = None
        if not protocol.returncode.done():
            try:
                await asyncio.wait_for(protocol.quit(), _QUIT_TIMEOUT_S)
            except (asyncio.TimeoutError, chess.engine.EngineError):
                logger.warning("Engine did not quit; killing %s", self._path)
                transport.kill()
        transport.close()


# ---------------------------------------------------------------------------
# Session state machine
# ---------------------------------------------------------------------------


class EngineState(enum.Enum):
    IDLE = "idle"
    DECIDING = "deciding"
    BOOK_DELAY_PENDING = "book_delay_pending"
    SEARCH_PENDING = "search_pending"
    MOVE_READY = "move_ready"


_TRANSITIONS: dict[EngineState, frozenset[EngineState]] = {
    EngineState.IDLE: frozenset({EngineState.DECIDING}),
    EngineState.DECIDING: frozenset({EngineState.BOOK_DELAY_PENDING, EngineState.SEARCH_PENDING}),
    EngineState.BOOK_DELAY_PENDING: frozenset(
        {EngineState.IDLE, EngineState.MOVE_READY, EngineState.SEARCH_PENDING}
    ),
    EngineState.SEARCH_PENDING: frozenset({EngineState.IDLE, EngineState.MOVE_READY}),
    EngineState.MOVE_READY: frozenset({EngineState.IDLE}),
}

MoveCallback = Callable[[chess.Move, str], None]


def _legal_move(fen: str, uci: str) -> chess.Move | None:
    try:
        move = chess.Move.from_uci(uci)
    except ValueError:
        return None
    if move not in chess.Board(fen).legal_moves:
        return None
    return move


class EngineSession:
    """Chooses and delivers the computer's moves for one live game.

    Args:
        process_factory: Builds a fresh EngineProcess. Defaults to a
            UciProcess on the auto-detected Stockfish.
        book: Opening book, or None to always search.
        skill_level: Stockfish "Skill Level" (0-20).
        movetime_ms: Fixed search budget per move.
        cache: Optional evaluation cache for analysis-mode searches.
        sleep: Awaitable sleep, injectable for tests.
        rng: Random source for book delays.
    """

    def __init__(
        self,
        process_factory: Callable[[], EngineProcess] | None = None,
        book: OpeningBook | None = None,
        skill_level: int = DEFAULT_SKILL_LEVEL,
        movetime_ms: int = DEFAULT_MOVETIME_MS,
        cache: AnalysisCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        stockfish_path: str | None = None,
    ) -> None:
        self._stockfish_path = stockfish_path
        self._process_factory = process_factory or self._default_process
        self._book = book
        self.skill_level = skill_level
        self.movetime_ms = movetime_ms
        self._cache = cache
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._process: EngineProcess | None = None
        self._listener: SearchListener | None = None
        self._search_future: asyncio.Future | None = None
        self._search_lock: asyncio.Lock | None = None
        self._task: asyncio.Task | None = None
        self._generation = 0

        self.state = EngineState.IDLE
        self.out_of_book = False
        self.last_move_source: str | None = None
        self.engine_error: str | None = None
        self.on_error: Callable[[str], None] | None = None
        self.on_evaluation: Callable[[EngineEvaluation], None] | None = None

    def _default_process(self) -> EngineProcess:
        return UciProcess(self._stockfish_path or _find_stockfish())

    # -- state --------------------------------------------------------------

    @property
    def is_thinking(self) -> bool:
        return self.state is not EngineState.IDLE

    @property
    def generation(self) -> int:
        return self._generation

    def _transition(self, target: EngineState) -> None:
        """The only place ``state`` changes outside of reset()."""
        if target not in _TRANSITIONS[self.state]:
            raise SessionStateError(f"Illegal transition {self.state.value} -> {target.value}")
        logger.debug("Engine session %s -> %s", self.state.value, target.value)
        self.state = target

    def _is_live(self, generation: int) -> bool:
        return generation == self._generation

    # -- process lifecycle ----------------------------------------------------

    async def start(self) -> None:
        """Start the subprocess if it is not already running.

        Raises:
            EngineUnavailableError: If the engine cannot be started.
        """
        if self._process is not None and self._process.alive:
            return
        try:
            process = self._process_factory()
        except FileNotFoundError as exc:
            raise EngineUnavailableError(str(exc)) from exc
        await process.start(self._on_line, self._on_exit)
        self._process = process
        process.send(f"setoption name Skill Level value {self.skill_level}")
        process.send("ucinewgame")

    def _send(self, command: str) -> None:
        if self._process is None or not self._process.alive:
            raise EngineUnavailableError("Engine process is not running")
        self._process.send(command)

    def _on_line(self, line: str) -> None:
        listener = self._listener
        if listener is None:
            return
        result = listener.feed(line)
        if isinstance(result, EngineEvaluation) and self.on_evaluation is not None:
            self.on_evaluation(result)
        elif isinstance(result, BestMove):
            future = self._search_future
            if future is not None and not future.done():
                future.set_result(result)

    def _on_exit(self) -> None:
        logger.warning("Engine process exited")
        future = self._search_future
        if future is not None and not future.done():
            future.set_exception(EngineUnavailableError("Engine process exited during search"))

    def set_skill_level(self, level: int) -> None:
        """Change search strength now; an in-flight search is not interrupted."""
        self.skill_level = max(0, min(20, level))
        if self._process is not None and self._process.alive:
            self._process.send(f"setoption name Skill Level value {self.skill_level}")

    def invalidate(self) -> None:
        """Make any pending book delay or search a no-op when it resolves."""
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        future, self._search_future = self._search_future, None
        if future is not None and not future.done():
            future.cancel()
        self._listener = None
        self.state = EngineState.IDLE

    async def shutdown(self) -> None:
        """Invalidate pending work and stop the subprocess.

        Book state is kept, so a finished game still reports it.
        """
        self.invalidate()
        process, self._process = self._process, None
        if process is not None:
            await process.quit()

    async def reset(self) -> None:
        """Invalidate pending work and tear down the subprocess for a new game."""
        await self.shutdown()
        self.out_of_book = False
        self.last_move_source = None
        self.engine_error = None

    async def close(self) -> None:
        """Clean up the engine process."""
        await self.reset()

    # -- live play ----------------------------------------------------------

    def request_move(
        self,
        fen: str,
        on_move: MoveCallback,
        is_current: Callable[[], bool] = lambda: True,
        time_control: TimeControl | None = None,
        first_move: bool = False,
    ) -> asyncio.Task | None:
        """Start deciding the engine's reply to ``fen``.

        A request while a decision is already in flight is dropped, since
        the same turn change can be reported more than once.

        Args:
            fen: Position the engine must move in.
            on_move: Receives the legal chess.Move and "book" or "engine".
            is_current: Re-checked after every wait; False means the game
                moved on and the result must not be applied.
            time_control: Engine side's remaining time and increment,
                used to scale the book delay.
            first_move: True if no move has been played yet.

        Returns:
            The decision task, or None if the request was ignored.
        """
        if self.state is not EngineState.IDLE:
            logger.debug("Ignoring duplicate move request while %s", self.state.value)
            return None
        self._transition(EngineState.DECIDING)
        generation = self._generation
        self._task = asyncio.get_running_loop().create_task(
            self._decide(fen, on_move, is_current, time_control or TimeControl(), first_move, generation)
        )
        return self._task

    async def _decide(
        self,
        fen: str,
        on_move: MoveCallback,
        is_current: Callable[[], bool],
        time_control: TimeControl,
        first_move: bool,
        generation: int,
    ) -> None:
        if not self.out_of_book and self._book is not None:
            self._transition(EngineState.BOOK_DELAY_PENDING)
            delay_ms = get_book_move_delay(
                time_control.initial_ms, time_control.increment_ms, first_move, self._rng
            )
            await self._sleep(delay_ms / 1000)
            if not self._is_live(generation):
                return
            if not is_current():
                self._transition(EngineState.IDLE)
                return

            uci = await asyncio.to_thread(self._book.get_opening_move, fen)
            if not self._is_live(generation):
                return
            if not is_current():
                self._transition(EngineState.IDLE)
                return
            move = _legal_move(fen, uci) if uci else None
            if move is not None:
                logger.info("Book move %s", uci)
                self._deliver(move, "book", on_move)
                return
            if uci:
                logger.warning("Book move %s is illegal in %s; searching instead", uci, fen)
            else:
                logger.info("Out of book")
            self.out_of_book = True
        elif self._book is None:
            self.out_of_book = True

        self._transition(EngineState.SEARCH_PENDING)
        try:
            best, _ = await self._search(fen, f"go movetime {self.movetime_ms}")
        except EngineUnavailableError as exc:
            if not self._is_live(generation):
                return
            # stays SEARCH_PENDING: the game cannot continue until aborted
            self.engine_error = str(exc)
            logger.error("Engine unavailable: %s", exc)
            if self.on_error is not None:
                self.on_error(str(exc))
            return
        if not self._is_live(generation):
            logger.debug("Discarding stale bestmove %s", best.move)
            return
        if not is_current():
            self._transition(EngineState.IDLE)
            return
        move = _legal_move(fen, best.move)
        if move is None:
            self.engine_error = f"Engine returned unusable move {best.move!r}"
            logger.error(self.engine_error)
            self._transition(EngineState.IDLE)
            if self.on_error is not None:
                self.on_error(self.engine_error)
            return
        self._deliver(move, "engine", on_move)

    def _deliver(self, move: chess.Move, source: str, on_move: MoveCallback) -> None:
        self._transition(EngineState.MOVE_READY)
        self.last_move_source = source
        self._transition(EngineState.IDLE)
        on_move(move, source)

    async def _search(
        self,
        fen: str,
        go_command: str,
        target_depth: int = 0,
    ) -> tuple[BestMove, SearchListener]:
        """Send one search and wait for its ``bestmove``.

        Returns:
            The bestmove and the listener holding the last evaluation.

        Raises:
            EngineUnavailableError: If the engine is missing or dies.
        """
        if self._search_lock is None:
            self._search_lock = asyncio.Lock()
        async with self._search_lock:
            await self.start()
            loop = asyncio.get_running_loop()
            future: asyncio.Future = loop.create_future()
            listener = SearchListener(fen, target_depth=target_depth)
            self._search_future = future
            self._listener = listener
            self._send(f"position fen {fen}")
            self._send(go_command)
            try:
                return await future, listener
            finally:
                if self._search_future is future:
                    self._search_future = None
                if self._listener is listener:
                    self._listener = None

    # -- analysis -------------------------------------------------------------

    def fingerprint(self, depth: int) -> str:
        """Identifies engine settings that change an evaluation."""
        return f"stockfish|d{depth}|mpv1"

    async def analyse(self, fen: str, depth: int) -> EngineEvaluation:
        """Evaluate ``fen`` to ``depth``, consulting the cache first.

        Returns:
            White-perspective evaluation of the position.

        Raises:
            EngineUnavailableError: If the engine is missing or dies.
        """
        key = make_key(fen, self.fingerprint(depth))
        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                return EngineEvaluation(
                    evaluation=cached.cp,
                    best_move=cached.best_move or "",
                    depth=cached.depth,
                )

        board = chess.Board(fen)
        if board.is_game_over():
            evaluation = EngineEvaluation(
                # side to move is mated: "mate 0"
                evaluation=normalize_score(0, True, fen) if board.is_checkmate() else 0,
                best_move="",
                depth=depth,
            )
        else:
            started = time.monotonic()
            _, listener = await self._search(fen, f"go depth {depth}", target_depth=depth)
            result = listener.evaluation
            if result is None:
                raise EngineUnavailableError(f"No evaluation reached depth {depth}")
            evaluation = EngineEvaluation(
                evaluation=result.evaluation,
                best_move=result.best_move,
                principal_variation=result.principal_variation,
                depth=result.depth,
                calculation_time=int((time.monotonic() - started) * 1000),
            )

        if self._cache is not None:
            self._cache.set(
                key,
                CacheEntry(
                    cp=evaluation.evaluation,
                    depth=evaluation.depth,
                    best_move=evaluation.best_move,
                    timestamp=int(time.time() * 1000),
                ),
            )
        return evaluation
