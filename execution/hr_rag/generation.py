"""
Grounding Context and Answer Generation

The language model itself is an external capability behind the Generator
interface. This module assembles ranked sources into a grounding context
that fits a token budget and provides an OpenAI-SDK backed generator
(any OpenAI-compatible endpoint via base_url).
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .citation import build_citation
from .language_patterns import LABELS, LLM_PROMPTS

logger = logging.getLogger(__name__)


@dataclass
class GeneratorConfig:
    """Configuration for the answer generator."""
    model: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    api_key_env: str = "OPENAI_API_KEY"
    max_tokens: int = 1500
    # Used when the caller asks to optimize for speed
    speed_max_tokens: int = 600
    temperature: float = 0.2
    timeout_seconds: float = 60.0
    # Budget for the grounding context handed to the model
    context_token_budget: int = 3000


@dataclass
class GenerationResult:
    """Generated answer with token accounting."""
    text: str
    tokens_used: int = 0
    model: str = ""


class Generator(ABC):
    """External answer-generation capability."""

    @abstractmethod
    def complete(
        self,
        grounding_context: str,
        query: str,
        language: str = "ar",
        response_style: str = "balanced",
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        """Answer `query` from `grounding_context` only."""


def build_prompt(grounding_context: str, query: str, language: str, response_style: str) -> list[dict]:
    """Chat messages for a grounded answer in the response language and style."""
    prompts = LLM_PROMPTS.get(language, LLM_PROMPTS["ar"])
    labels = LABELS.get(language, LABELS["ar"])
    style = prompts.get(response_style, prompts["balanced"])
    user = f"{labels['context_header']}\n{grounding_context}\n\n{style}\n\n{prompts['question']} {query}"
    return [
        {"role": "system", "content": prompts["system"]},
        {"role": "user", "content": user},
    ]


def build_grounding_context(
    results: list,
    language: str = "ar",
    token_budget: int = 3000,
    chars_per_token: float = 3.0,
) -> tuple[str, int]:
    """
    Number and cite ranked results until the token budget is spent.

    The first source is always included, truncated if it alone exceeds the
    budget.

    Returns:
        (context text, number of sources included)
    """
    char_budget = int(token_budget * chars_per_token)
    blocks = []
    used = 0
    for i, result in enumerate(results, start=1):
        citation = build_citation(result, language).short_format()
        content = result.content
        if language == "en" and result.metadata.get("content_en"):
            content = result.metadata["content_en"]
        block = f"[{i}] {citation}:\n{content}"
        if used + len(block) > char_budget:
            if not blocks:
                blocks.append(block[:char_budget])
            break
        blocks.append(block)
        used += len(block) + 5
    logger.debug(f"Grounding context: {len(blocks)} sources, {used} chars (budget {char_budget})")
    return "\n\n---\n\n".join(blocks), len(blocks)


class OpenAIGenerator(Generator):
    """Chat-completions generator through the OpenAI SDK."""

    def __init__(self, config: Optional[GeneratorConfig] = None, client=None):
        self.config = config or GeneratorConfig()
        self._client = client

    def _get_client(self):
        """Get or create the cached OpenAI client."""
        if self._client is None:
            from openai import OpenAI
            api_key = os.getenv(self.config.api_key_env)
            if not api_key:
                raise ValueError(f"{self.config.api_key_env} not found in environment")
            self._client = OpenAI(
                api_key=api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    def complete(self, grounding_context, query, language="ar", response_style="balanced", max_tokens=None):
        client = self._get_client()
        response = client.chat.completions.create(
            model=self.config.model,
            messages=build_prompt(grounding_context, query, language, response_style),
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=self.config.temperature,
        )
        usage = getattr(response, "usage", None)
        tokens = usage.total_tokens if usage is not None else 0
        return GenerationResult(
            text=response.choices[0].message.content or "",
            tokens_used=tokens,
            model=getattr(response, "model", None) or self.config.model,
        )
