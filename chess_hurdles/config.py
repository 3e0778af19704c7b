"""Runtime settings read from the environment.

Library code takes explicit arguments; only the CLI and the MCP server
build a Settings instance and configure logging.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_DATA_DIR = _PROJECT_ROOT / "data"

DEFAULT_MOVETIME_MS = 1000
DEFAULT_INITIAL_MS = 30 * 60 * 1000
DEFAULT_INCREMENT_MS = 20 * 1000
DEFAULT_MODEL = "gemini-flash-latest"

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(
            "Ignoring non-integer %s=%r, using %d", name, raw, default
        )
        return default


@dataclass(frozen=True)
class Settings:
    """Environment-derived configuration."""

    stockfish_path: str | None = None
    db_path: Path = _DATA_DIR / "chess_hurdles.db"
    gemini_api_key: str | None = None
    gemini_model: str = DEFAULT_MODEL
    movetime_ms: int = DEFAULT_MOVETIME_MS
    initial_time_ms: int = DEFAULT_INITIAL_MS
    increment_ms: int = DEFAULT_INCREMENT_MS
    log_level: str = "INFO"
    book_path: Path | None = None
    use_explorer: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from CHESS_HURDLES_* and related variables."""
        db = os.environ.get("CHESS_HURDLES_DB")
        book = os.environ.get("CHESS_HURDLES_BOOK")
        return cls(
            stockfish_path=os.environ.get("STOCKFISH_PATH") or None,
            db_path=Path(db) if db else _DATA_DIR / "chess_hurdles.db",
            gemini_api_key=os.environ.get("GEMINI_API_KEY") or None,
            gemini_model=os.environ.get("CHESS_HURDLES_MODEL", DEFAULT_MODEL),
            movetime_ms=_env_int("CHESS_HURDLES_MOVETIME_MS", DEFAULT_MOVETIME_MS),
            initial_time_ms=_env_int("CHESS_HURDLES_INITIAL_MS", DEFAULT_INITIAL_MS),
            increment_ms=_env_int("CHESS_HURDLES_INCREMENT_MS", DEFAULT_INCREMENT_MS),
            log_level=os.environ.get("CHESS_HURDLES_LOG_LEVEL", "INFO").upper(),
            book_path=Path(book) if book else None,
            use_explorer=os.environ.get("CHESS_HURDLES_EXPLORER") == "1",
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler. Safe to call more than once."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=_LOG_FORMAT,
    )
