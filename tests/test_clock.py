"""Tests for GameClock: start on first move, increments, flagging, locking."""

from __future__ import annotations

import asyncio

import chess
import pytest

from chess_hurdles.clock import GameClock
from chess_hurdles.errors import ClockLockedError
from chess_hurdles.models import TimeControl

_ONE_MINUTE = TimeControl(initial_ms=60000, increment_ms=20000)


class TestStart:

    def test_idle_before_first_move(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        fake_clock.advance(30)
        clock.tick()
        assert clock.remaining(chess.WHITE) == 60000
        assert not clock.started

    def test_first_move_credits_increment(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        assert clock.remaining(chess.WHITE) == 80000
        assert clock.active == chess.BLACK
        assert clock.started

    def test_defaults(self):
        clock = GameClock()
        assert clock.remaining(chess.WHITE) == 30 * 60 * 1000
        assert clock.increment(chess.BLACK) == 20 * 1000


class TestTicking:

    def test_charges_active_side(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        fake_clock.advance(1.5)
        clock.tick()
        assert clock.remaining(chess.BLACK) == 58500
        assert clock.remaining(chess.WHITE) == 80000

    def test_move_charges_thinking_time_then_increment(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        fake_clock.advance(5)
        clock.on_move_applied(chess.BLACK)
        assert clock.remaining(chess.BLACK) == 60000 - 5000 + 20000
        assert clock.active == chess.WHITE

    def test_fractional_milliseconds_carry(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        for _ in range(3):
            fake_clock.advance(0.0004)
            clock.tick()
        assert clock.remaining(chess.BLACK) == 59999

    def test_increment_only_from_move_applied(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        clock.tick()
        clock.tick()
        assert clock.remaining(chess.WHITE) == 80000
        assert clock.remaining(chess.BLACK) == 60000


class TestTimeout:

    def test_flags_once_and_clamps(self, fake_clock):
        flagged = []
        clock = GameClock(_ONE_MINUTE, on_timeout=flagged.append, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        fake_clock.advance(61)
        clock.tick()
        fake_clock.advance(10)
        clock.tick()
        assert flagged == [chess.BLACK]
        assert clock.remaining(chess.BLACK) == 0
        assert clock.stopped

    def test_mover_flagging_gets_no_increment(self, fake_clock):
        flagged = []
        clock = GameClock(_ONE_MINUTE, on_timeout=flagged.append, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        fake_clock.advance(70)
        clock.on_move_applied(chess.BLACK)
        assert flagged == [chess.BLACK]
        assert clock.remaining(chess.BLACK) == 0

    def test_stop_halts(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        clock.stop()
        fake_clock.advance(100)
        clock.tick()
        assert clock.remaining(chess.BLACK) == 60000
        assert clock.flagged is None


class TestConfiguration:

    def test_locked_during_game(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        with pytest.raises(ClockLockedError):
            clock.configure(TimeControl(initial_ms=1000, increment_ms=0))

    def test_configurable_before_first_move(self):
        clock = GameClock(_ONE_MINUTE)
        clock.configure(TimeControl(initial_ms=5000, increment_ms=1000))
        assert clock.remaining(chess.BLACK) == 5000

    def test_configurable_after_stop(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        clock.stop()
        clock.configure(TimeControl(initial_ms=5000, increment_ms=0))
        assert clock.remaining(chess.WHITE) == 5000
        assert not clock.started

    def test_asymmetric_controls(self):
        clock = GameClock(_ONE_MINUTE, TimeControl(initial_ms=30000, increment_ms=0))
        assert clock.remaining(chess.BLACK) == 30000
        assert clock.increment(chess.BLACK) == 0

    def test_reset_restores_initial(self, fake_clock):
        clock = GameClock(_ONE_MINUTE, now=fake_clock)
        clock.on_move_applied(chess.WHITE)
        fake_clock.advance(3)
        clock.tick()
        clock.reset()
        assert clock.snapshot() == {
            "white_ms": 60000,
            "black_ms": 60000,
            "active": None,
            "flagged": None,
        }


class TestRunLoop:

    def test_run_exits_when_flagged(self):
        flagged = []
        clock = GameClock(TimeControl(initial_ms=30, increment_ms=0), on_timeout=flagged.append)

        async def scenario():
            clock.on_move_applied(chess.WHITE)
            await asyncio.wait_for(clock.run(interval=0.01), timeout=2)

        asyncio.run(scenario())
        assert flagged == [chess.BLACK]
