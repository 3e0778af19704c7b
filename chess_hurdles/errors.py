"""Exception hierarchy for the game session and analysis engine."""

from __future__ import annotations


class ChessHurdlesError(Exception):
    """Base class for all errors raised by chess_hurdles."""


class EngineUnavailableError(ChessHurdlesError):
    """The search engine subprocess is missing, crashed, or was shut down."""


class StoreError(ChessHurdlesError):
    """A durable key-value store operation failed."""


class PersistenceError(ChessHurdlesError):
    """A finished game or rating update could not be saved."""


class ClockLockedError(ChessHurdlesError):
    """Time control changes are not allowed while a game is in progress."""


class SessionStateError(ChessHurdlesError):
    """An engine session state transition that the state machine forbids."""
