"""Per-side countdown clocks with increment-on-move.

The clock is idle until the first move is applied, then charges elapsed
wall time to the side to move on every tick. Remaining time is clamped
at zero; reaching zero flags that side once and halts the clock.

Increments are credited only by ``on_move_applied``. Nothing that
observes a turn change may add time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import chess

from chess_hurdles.errors import ClockLockedError
from chess_hurdles.models import ClockState, TimeControl

logger = logging.getLogger(__name__)

TICK_INTERVAL_S = 0.1


def _side_name(side: chess.Color) -> str:
    return "white" if side == chess.WHITE else "black"


class GameClock:
    """Two countdowns, one per side, each with its own increment.

    Args:
        white: White's time control.
        black: Black's time control (defaults to White's).
        on_timeout: Called once with the flagged side.
        now: Monotonic time source in seconds.
    """

    def __init__(
        self,
        white: TimeControl | None = None,
        black: TimeControl | None = None,
        on_timeout: Callable[[chess.Color], None] | None = None,
        now: Callable[[], float] = time.monotonic,
    ) -> None:
        self._now = now
        self.on_timeout = on_timeout
        self._apply_time_controls(white or TimeControl(), black)

    def _apply_time_controls(self, white: TimeControl, black: TimeControl | None) -> None:
        black = black or white
        self.white_control = white
        self.black_control = black
        self.state = ClockState(
            white_remaining_ms=white.initial_ms,
            black_remaining_ms=black.initial_ms,
            white_increment_ms=white.increment_ms,
            black_increment_ms=black.increment_ms,
        )
        self.active: chess.Color = chess.WHITE
        self.started = False
        self.stopped = False
        self.flagged: chess.Color | None = None

    # -- configuration -----------------------------------------------------

    @property
    def in_progress(self) -> bool:
        return self.started and not self.stopped

    def configure(self, white: TimeControl, black: TimeControl | None = None) -> None:
        """Set a new time control and reset both sides.

        Raises:
            ClockLockedError: If moves have been played and the clock has not
                been stopped.
        """
        if self.in_progress:
            raise ClockLockedError("Cannot change the time control during a game")
        self._apply_time_controls(white, black)

    def reset(self) -> None:
        """Restore the configured initial times for a new game."""
        self._apply_time_controls(self.white_control, self.black_control)

    # -- queries ----------------------------------------------------------

    def remaining(self, side: chess.Color) -> int:
        if side == chess.WHITE:
            return self.state.white_remaining_ms
        return self.state.black_remaining_ms

    def increment(self, side: chess.Color) -> int:
        if side == chess.WHITE:
            return self.state.white_increment_ms
        return self.state.black_increment_ms

    def snapshot(self) -> dict:
        return {
            "white_ms": self.state.white_remaining_ms,
            "black_ms": self.state.black_remaining_ms,
            "active": _side_name(self.active) if self.in_progress else None,
            "flagged": _side_name(self.flagged) if self.flagged is not None else None,
        }

    # -- mutation ---------------------------------------------------------

    def _set_remaining(self, side: chess.Color, value: int) -> None:
        if side == chess.WHITE:
            self.state.white_remaining_ms = value
        else:
            self.state.black_remaining_ms = value

    def add_increment(self, side: chess.Color) -> None:
        """Credit ``side`` with its increment once."""
        self._set_remaining(side, self.remaining(side) + self.increment(side))

    def on_move_applied(self, mover: chess.Color) -> None:
        """Charge the mover's thinking time, credit its increment, switch sides.

        This is the only path that adds increments. The first call starts
        the clock.
        """
        if self.stopped:
            return
        if self.started:
            self.tick()
            if self.stopped:
                return
        self.add_increment(mover)
        self.active = not mover
        self.started = True
        self.state.last_tick = self._now()

    def tick(self) -> None:
        """Charge wall time since the last tick to the active side."""
        if not self.started or self.stopped:
            return
        now = self._now()
        last = self.state.last_tick if self.state.last_tick is not None else now
        elapsed_ms = int((now - last) * 1000)
        if elapsed_ms <= 0:
            return
        # advance by whole milliseconds so fractions carry into the next tick
        self.state.last_tick = last + elapsed_ms / 1000

        side = self.active
        remaining = max(0, self.remaining(side) - elapsed_ms)
        self._set_remaining(side, remaining)
        if remaining == 0:
            self._flag(side)

    def _flag(self, side: chess.Color) -> None:
        if self.flagged is not None:
            return
        self.flagged = side
        self.stopped = True
        logger.info("%s flagged", _side_name(side).capitalize())
        if self.on_timeout is not None:
            self.on_timeout(side)

    def stop(self) -> None:
        """Halt permanently for this game (result finalized or aborted)."""
        self.stopped = True

    async def run(self, interval: float = TICK_INTERVAL_S) -> None:
        """Tick every ``interval`` seconds until stopped or cancelled."""
        while not self.stopped:
            await asyncio.sleep(interval)
            self.tick()
