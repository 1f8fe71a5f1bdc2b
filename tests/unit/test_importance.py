"""L1 Unit Tests: importance evaluation and score parsing."""

import pytest

from tiermem.core.errors import ParseError
from tiermem.memory.cache import TTLCache
from tiermem.memory.importance import (
    IMPORTANCE_GUIDANCE,
    ImportanceEvaluator,
    heuristic_score,
    parse_score,
)
from tiermem.memory.types import ContentType


@pytest.fixture
def evaluator(mock_provider, fake_clock):
    return ImportanceEvaluator(mock_provider, TTLCache(300, clock=fake_clock))


class TestParseScore:
    def test_plain_number(self):
        assert parse_score("0.75") == 0.75

    def test_number_in_sentence(self):
        assert parse_score("Importance Score: 0.3 because it is a greeting") == 0.3

    def test_integer_bounds(self):
        assert parse_score("1") == 1.0
        assert parse_score("0") == 0.0

    def test_missing_number(self):
        with pytest.raises(ParseError):
            parse_score("very important!")

    def test_out_of_range(self):
        with pytest.raises(ParseError):
            parse_score("7")


class TestHeuristicScore:
    def test_short_plain_text_is_low(self):
        assert heuristic_score("hi there") == pytest.approx(0.3)

    def test_keywords_raise_score(self):
        assert heuristic_score("remember my deadline") == pytest.approx(0.6)

    def test_clamped(self):
        text = "important goal " * 100
        assert heuristic_score(text, ContentType.UPLOADED_DOCUMENT_CONTENT) == 1.0


class TestImportanceEvaluator:
    async def test_force_important_skips_provider(self, evaluator, mock_provider):
        score = await evaluator.evaluate("anything", force_important=True)
        assert score == 1.0
        assert mock_provider.total_calls == 0

    async def test_empty_text_scores_zero(self, evaluator, mock_provider):
        assert await evaluator.evaluate("   ") == 0.0
        assert mock_provider.total_calls == 0

    async def test_model_score(self, evaluator, mock_provider):
        mock_provider.set_response("importance", "0.9")
        assert await evaluator.evaluate("I got the job offer today") == 0.9

    async def test_score_is_cached(self, evaluator, mock_provider):
        await evaluator.evaluate("I got the job offer today")
        await evaluator.evaluate("I got the job offer today")
        assert len(mock_provider.complete_calls) == 1

    async def test_cache_expires(self, evaluator, mock_provider, fake_clock):
        await evaluator.evaluate("I got the job offer today")
        fake_clock.advance(301)
        await evaluator.evaluate("I got the job offer today")
        assert len(mock_provider.complete_calls) == 2

    async def test_cache_key_includes_content_type(self, evaluator, mock_provider):
        await evaluator.evaluate("same text", ContentType.USER_CHAT)
        await evaluator.evaluate("same text", ContentType.AI_RESPONSE)
        assert len(mock_provider.complete_calls) == 2

    async def test_unparseable_is_unknown_and_not_cached(self, evaluator, mock_provider):
        mock_provider.set_response("importance", "quite important")
        assert await evaluator.evaluate("text") is None
        assert await evaluator.evaluate("text") is None
        assert len(mock_provider.complete_calls) == 2

    async def test_out_of_range_is_unknown(self, evaluator, mock_provider):
        mock_provider.set_response("importance", "7")
        assert await evaluator.evaluate("text") is None

    async def test_provider_error_is_unknown(self, evaluator, mock_provider):
        mock_provider.fail("importance")
        assert await evaluator.evaluate("text") is None

    async def test_prompt_carries_guidance(self, evaluator, mock_provider):
        await evaluator.evaluate("scan.png", ContentType.UPLOADED_FILE_EVENT, user_id="u1")
        prompt = mock_provider.complete_calls[0]
        assert IMPORTANCE_GUIDANCE[ContentType.UPLOADED_FILE_EVENT] in prompt
        assert "uploaded_file_event" in prompt
        assert "u1" in prompt

    async def test_unknown_content_type_uses_default(self, evaluator, mock_provider):
        await evaluator.evaluate("text", "not-a-type")
        assert IMPORTANCE_GUIDANCE[ContentType.DEFAULT] in mock_provider.complete_calls[0]
