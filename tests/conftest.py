"""Shared test fixtures with dual-mode support (fake vs real Stockfish).

Usage:
    pytest tests/                  # Fast, scripted UCI engine (no Stockfish)
    pytest tests/ --e2e            # Real Stockfish for integration tests

Fixtures:
    fake_engine    - A scripted UCI process answering every search.
    engine_session - EngineSession bound to fake_engine, no book, no delays.
    store          - In-memory KeyValueStore.
    fake_clock     - Settable monotonic time source.
"""

from __future__ import annotations

import asyncio

import chess
import pytest

from chess_hurdles.engine import EngineSession
from chess_hurdles.errors import EngineUnavailableError
from chess_hurdles.store import MemoryStore


# ---------------------------------------------------------------------------
# CLI option and marker registration
# ---------------------------------------------------------------------------


def pytest_addoption(parser):
    """Register --e2e CLI flag for real Stockfish tests."""
    parser.addoption(
        "--e2e",
        action="store_true",
        default=False,
        help="Run with real Stockfish engine (no fakes).",
    )


def pytest_configure(config):
    """Register the e2e marker."""
    config.addinivalue_line(
        "markers", "e2e: mark test as end-to-end (requires real Stockfish)"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--e2e"):
        return
    skip = pytest.mark.skip(reason="needs --e2e and a Stockfish binary")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Scripted UCI process
# ---------------------------------------------------------------------------


class FakeUciProcess:
    """Speaks just enough UCI for EngineSession.

    ``go`` is answered with one info line and a bestmove. By default the
    bestmove is the first legal move; ``bestmove`` overrides it, ``script``
    supplies one bestmove per search in order, and ``score`` sets the
    side-to-move centipawn score. With ``hold=True`` answers wait until
    ``release()`` is called.
    """

    def __init__(
        self,
        bestmove: str | None = None,
        score: int = 25,
        hold: bool = False,
        script: list[str] | None = None,
    ) -> None:
        self.bestmove = bestmove
        self.script = list(script or [])
        self.score = score
        self.sent: list[str] = []
        self.starts = 0
        self.quits = 0
        self.crash_on_go = False
        self._alive = False
        self._fen = chess.STARTING_FEN
        self._hold = hold
        self._released: asyncio.Event | None = None
        self._on_line = None
        self._on_exit = None

    @property
    def alive(self) -> bool:
        return self._alive

    async def start(self, on_line, on_exit) -> None:
        self._on_line = on_line
        self._on_exit = on_exit
        self._alive = True
        self.starts += 1
        self._released = asyncio.Event()
        if not self._hold:
            self._released.set()

    def release(self) -> None:
        self._released.set()

    def send(self, command: str) -> None:
        if not self._alive:
            raise EngineUnavailableError("Engine process is not running")
        self.sent.append(command)
        if command.startswith("position fen "):
            self._fen = command[len("position fen "):]
        elif command.startswith("go"):
            loop = asyncio.get_running_loop()
            if self.crash_on_go:
                self._alive = False
                loop.call_soon(self._on_exit)
                return
            depth = 12
            parts = command.split()
            if "depth" in parts:
                depth = int(parts[parts.index("depth") + 1])
            loop.create_task(self._answer(self._fen, depth))

    async def _answer(self, fen: str, depth: int) -> None:
        await self._released.wait()
        if not self._alive:
            return
        move = self.script.pop(0) if self.script else self.bestmove
        if move is None:
            board = chess.Board(fen)
            legal = list(board.legal_moves)
            move = legal[0].uci() if legal else "(none)"
        pv = f" pv {move}" if move != "(none)" else ""
        self._on_line(f"info depth {depth} score cp {self.score}{pv}")
        self._on_line(f"bestmove {move}")

    async def quit(self) -> None:
        self._alive = False
        self.quits += 1

    def searches(self) -> list[str]:
        return [c for c in self.sent if c.startswith("go")]


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture()
def fake_engine():
    return FakeUciProcess()


@pytest.fixture()
def engine_session(fake_engine):
    return EngineSession(process_factory=lambda: fake_engine, sleep=no_sleep)


@pytest.fixture()
def store():
    return MemoryStore()


class FakeClock:
    """Monotonic time source advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def fake_clock():
    return FakeClock()
