"""Natural-language move annotations from Gemini.

The remote call is slow and can fail. Every path returns a string: a mock
when no API key is configured, a fixed fallback on error or timeout.
"""

from __future__ import annotations

import asyncio
import logging
import textwrap
from dataclasses import dataclass, field

from google import genai

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 20.0


@dataclass(frozen=True)
class AnnotationRequest:
    """Everything the coach prompt needs about one move."""

    fen: str
    move: str
    evaluation: int
    best_move: str
    principal_variation: list[str] = field(default_factory=list)
    centipawn_loss: int = 0


def fallback_annotation(request: AnnotationRequest) -> str:
    return f"(AI Unavailable) The move {request.move} was a mistake. Best was {request.best_move}."


def mock_annotation(request: AnnotationRequest) -> str:
    pv = " ".join(request.principal_variation)[:20]
    return (
        f"[MOCK AI (No Key)] You played **{request.move}** (cp loss: {request.centipawn_loss}). "
        f"The engine prefers **{request.best_move}**. (PV: {pv}...)"
    )


def build_prompt(request: AnnotationRequest) -> str:
    return textwrap.dedent(
        f"""\
        You are an expert chess coach. Analyze this specific move in a game.
        Position FEN: {request.fen}
        Player Move: {request.move}
        Engine Best Move: {request.best_move}
        Centipawn Loss: {request.centipawn_loss}
        Principal Variation (Best Line): {" ".join(request.principal_variation)}

        Explain briefly (max 2 sentences) why the player's move was a mistake compared to the best move.
        Focus on the strategic, positional or tactical consequences or deviation from a workable plan.
        Do not mention centipawn values directly.
        Be constructive but clear.
        """
    )


class GeminiAnnotator:
    """Annotation collaborator backed by google-genai.

    Args:
        api_key: Gemini API key; None makes the annotator return mocks.
        model: Model name.
        timeout: Seconds to wait for one completion.
        client: Pre-built genai.Client (tests).
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gemini-flash-latest",
        timeout: float = DEFAULT_TIMEOUT_S,
        client: genai.Client | None = None,
    ) -> None:
        self._model = model
        self._timeout = timeout
        self._client = client
        if self._client is None and api_key:
            self._client = genai.Client(api_key=api_key)

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def annotate(self, request: AnnotationRequest) -> str:
        """Return a short coaching comment for ``request``; never raises."""
        if self._client is None:
            logger.warning("GEMINI_API_KEY not set; returning mock annotation")
            return mock_annotation(request)
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._model,
                    contents=build_prompt(request),
                ),
                self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Annotation timed out after %.0fs", self._timeout)
            return fallback_annotation(request)
        except Exception as exc:
            logger.error("Annotation failed: %s", exc)
            return fallback_annotation(request)
        text = (response.text or "").strip()
        return text or fallback_annotation(request)
