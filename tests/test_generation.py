"""
Tests for execution/hr_rag/generation.py

Covers: grounding context assembly under a token budget, prompt
        construction per language and style, and OpenAIGenerator with a
        mocked client.
"""

from unittest.mock import MagicMock

import pytest


def _result(corpus, content, **kwargs):
    from execution.hr_rag.ranker import RankedResult
    return RankedResult(corpus=corpus, document_id=kwargs.pop("document_id", content[:8]),
                        title=kwargs.pop("title", "Handbook.pdf"), content=content,
                        fused_score=0.8, **kwargs)


# ---------------------------------------------------------------------------
# Grounding context
# ---------------------------------------------------------------------------

class TestGroundingContext:
    """Tests for build_grounding_context."""

    def test_numbered_and_cited(self):
        from execution.hr_rag.generation import build_grounding_context
        results = [
            _result("labor_law", "نص المادة", metadata={"article_number": "109", "law_source": "نظام العمل"}),
            _result("company_documents", "policy text"),
        ]
        context, included = build_grounding_context(results, "ar")
        assert included == 2
        assert context.startswith("[1] المادة 109 - نظام العمل:\nنص المادة")
        assert "[2] [Handbook.pdf]:\npolicy text" in context

    def test_budget_limits_sources(self):
        from execution.hr_rag.generation import build_grounding_context
        results = [_result("company_documents", "x" * 100, document_id=str(i)) for i in range(5)]
        context, included = build_grounding_context(results, "en", token_budget=70, chars_per_token=4.0)
        assert included == 2
        assert len(context) <= 280

    def test_first_source_always_included(self):
        from execution.hr_rag.generation import build_grounding_context
        context, included = build_grounding_context([_result("company_documents", "y" * 1000)], "en",
                                                    token_budget=10, chars_per_token=4.0)
        assert included == 1
        assert len(context) == 40

    def test_english_uses_article_translation(self):
        from execution.hr_rag.generation import build_grounding_context
        result = _result("labor_law", "نص عربي", metadata={"article_number": "80", "content_en": "English text"})
        context, _ = build_grounding_context([result], "en")
        assert "English text" in context
        assert "Article 80 - Labor Law" in context


# ---------------------------------------------------------------------------
# Prompts and generator
# ---------------------------------------------------------------------------

class TestPrompt:
    """Tests for build_prompt."""

    def test_arabic_prompt(self):
        from execution.hr_rag.generation import build_prompt
        from execution.hr_rag.language_patterns import LLM_PROMPTS

        messages = build_prompt("سياق", "سؤال", "ar", "brief")
        assert messages[0] == {"role": "system", "content": LLM_PROMPTS["ar"]["system"]}
        assert LLM_PROMPTS["ar"]["brief"] in messages[1]["content"]
        assert messages[1]["content"].endswith("السؤال: سؤال")

    def test_unknown_style_uses_balanced(self):
        from execution.hr_rag.generation import build_prompt
        from execution.hr_rag.language_patterns import LLM_PROMPTS
        messages = build_prompt("ctx", "q", "en", "poetic")
        assert LLM_PROMPTS["en"]["balanced"] in messages[1]["content"]


class TestOpenAIGenerator:
    """Tests for OpenAIGenerator with a mocked SDK client."""

    def _client(self, text="answer", tokens=42, model="gpt-4o-mini-2024"):
        response = MagicMock()
        response.choices = [MagicMock()]
        response.choices[0].message.content = text
        response.usage.total_tokens = tokens
        response.model = model
        client = MagicMock()
        client.chat.completions.create.return_value = response
        return client

    def test_complete(self):
        from execution.hr_rag.generation import GeneratorConfig, OpenAIGenerator

        client = self._client()
        generator = OpenAIGenerator(GeneratorConfig(max_tokens=500), client=client)
        result = generator.complete("ctx", "q", language="en")

        assert result.text == "answer"
        assert result.tokens_used == 42
        assert result.model == "gpt-4o-mini-2024"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 500
        assert kwargs["model"] == "gpt-4o-mini"

    def test_max_tokens_override(self):
        from execution.hr_rag.generation import OpenAIGenerator

        client = self._client()
        OpenAIGenerator(client=client).complete("ctx", "q", max_tokens=100)
        assert client.chat.completions.create.call_args.kwargs["max_tokens"] == 100

    def test_missing_api_key(self, monkeypatch):
        from execution.hr_rag.generation import GeneratorConfig, OpenAIGenerator

        monkeypatch.delenv("HR_RAG_TEST_MISSING_KEY", raising=False)
        generator = OpenAIGenerator(GeneratorConfig(api_key_env="HR_RAG_TEST_MISSING_KEY"))
        with pytest.raises(ValueError):
            generator.complete("ctx", "q")
