"""Tests for GeminiAnnotator with a mocked genai client."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

from chess_hurdles.annotation import (
    AnnotationRequest,
    GeminiAnnotator,
    build_prompt,
    fallback_annotation,
)

_REQUEST = AnnotationRequest(
    fen="rnbqkbnr/pppp1ppp/8/4p3/4P3/8/PPPP1PPP/RNBQKBNR w KQkq - 0 2",
    move="Qh5",
    evaluation=-40,
    best_move="Nf3",
    principal_variation=["Nf3", "Nc6", "Bb5"],
    centipawn_loss=70,
)


def _client(generate: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.aio.models.generate_content = generate
    return client


class TestPrompt:

    def test_prompt_contents(self):
        prompt = build_prompt(_REQUEST)
        assert "Position FEN: " + _REQUEST.fen in prompt
        assert "Player Move: Qh5" in prompt
        assert "Engine Best Move: Nf3" in prompt
        assert "Nf3 Nc6 Bb5" in prompt
        assert "max 2 sentences" in prompt


class TestAnnotator:

    def test_mock_without_key(self):
        annotator = GeminiAnnotator(api_key=None)
        assert not annotator.configured
        text = asyncio.run(annotator.annotate(_REQUEST))
        assert text.startswith("[MOCK AI (No Key)]")
        assert "**Qh5**" in text
        assert "**Nf3**" in text

    def test_remote_text(self):
        generate = AsyncMock(return_value=MagicMock(text="  Develop before the queen.  "))
        annotator = GeminiAnnotator(client=_client(generate), model="test-model")
        assert asyncio.run(annotator.annotate(_REQUEST)) == "Develop before the queen."
        kwargs = generate.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert "Player Move: Qh5" in kwargs["contents"]

    def test_error_falls_back(self):
        generate = AsyncMock(side_effect=RuntimeError("quota"))
        annotator = GeminiAnnotator(client=_client(generate))
        assert asyncio.run(annotator.annotate(_REQUEST)) == fallback_annotation(_REQUEST)

    def test_empty_reply_falls_back(self):
        generate = AsyncMock(return_value=MagicMock(text=None))
        annotator = GeminiAnnotator(client=_client(generate))
        assert asyncio.run(annotator.annotate(_REQUEST)) == fallback_annotation(_REQUEST)

    def test_timeout_falls_back(self):
        async def slow(**_kwargs):
            await asyncio.sleep(5)

        annotator = GeminiAnnotator(client=_client(AsyncMock(side_effect=slow)), timeout=0.01)
        text = asyncio.run(annotator.annotate(_REQUEST))
        assert text == "(AI Unavailable) The move Qh5 was a mistake. Best was Nf3."
