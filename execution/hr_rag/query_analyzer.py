"""
Query Analyzer for HR Questions

Normalizes a raw query and classifies it with keyword lookups:
- detected language (ar / en / mixed)
- HR category (termination, leave, compensation, ...) with a confidence
- intent (question / request / comparison / search)
- follow-up detection from conversational markers and prior queries
- HR entities, law references and keywords

Never raises: unknown input degrades to category "general" and the
declared or default language.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .arabic_text import ArabicTextNormalizer, normalize_term
from .language_config import DEFAULT_LANGUAGE, SUPPORTED_LANGUAGES
from .language_patterns import (
    COMMON_QUESTIONS,
    DEFAULT_CATEGORY,
    FOLLOWUP_MARKERS,
    HR_ENTITIES,
    INTENT_WORDS,
    QUERY_CATEGORIES,
)

logger = logging.getLogger(__name__)


@dataclass
class QueryAnalysis:
    """Result of analyzing one query."""
    normalized_query: str
    detected_language: str
    category: str = DEFAULT_CATEGORY
    category_confidence: float = 0.0
    is_followup: bool = False
    intent: str = "search"
    entities: dict = field(default_factory=dict)
    keywords: list[str] = field(default_factory=list)

    @property
    def response_language(self) -> str:
        """Language answers are written in ("mixed" answers in Arabic)."""
        return self.detected_language if self.detected_language in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE

    def to_dict(self) -> dict:
        return {
            "normalized_query": self.normalized_query,
            "detected_language": self.detected_language,
            "category": self.category,
            "category_confidence": round(self.category_confidence, 3),
            "is_followup": self.is_followup,
            "intent": self.intent,
            "entities": self.entities,
            "keywords": self.keywords,
        }


class QueryAnalyzer:
    """Keyword/category classifier over normalized queries."""

    def __init__(self, normalizer: Optional[ArabicTextNormalizer] = None):
        self.normalizer = normalizer or ArabicTextNormalizer()

    def analyze(
        self,
        query: Optional[str],
        declared_language: Optional[str] = None,
        previous_queries: Optional[list[str]] = None,
    ) -> QueryAnalysis:
        """
        Analyze a raw query.

        Args:
            query: Raw query text (None or empty is allowed)
            declared_language: Language the caller says the query is in
            previous_queries: Earlier queries in the same conversation

        Returns:
            QueryAnalysis
        """
        normalized = self.normalizer.normalize(query)
        fallback_language = declared_language if declared_language in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE
        if not normalized:
            return QueryAnalysis(normalized_query="", detected_language=fallback_language)

        detected = self.normalizer.detect_language(normalized, default=fallback_language)
        if declared_language in SUPPORTED_LANGUAGES and detected == "mixed":
            detected = declared_language

        category, confidence = self._classify_category(normalized)
        analysis = QueryAnalysis(
            normalized_query=normalized,
            detected_language=detected,
            category=category,
            category_confidence=confidence,
            is_followup=self._is_followup(normalized, previous_queries),
            intent=self._classify_intent(normalized),
            entities=self._extract_entities(query, normalized),
            keywords=self.normalizer.extract_keywords(normalized),
        )
        logger.info(
            f"Query analyzed: lang={analysis.detected_language}, category={analysis.category} "
            f"({analysis.category_confidence:.2f}), intent={analysis.intent}, followup={analysis.is_followup}"
        )
        return analysis

    def _classify_category(self, normalized: str) -> tuple[str, float]:
        """Score categories by keyword hits; multi-word phrases weigh more."""
        scores = {}
        for category, keywords in QUERY_CATEGORIES.items():
            score = 0
            for lang_keywords in keywords.values():
                for keyword in lang_keywords:
                    if self.normalizer.contains_term(normalized, keyword):
                        score += len(keyword.split())
            if score:
                scores[category] = score

        if not scores:
            return DEFAULT_CATEGORY, 0.0

        # Ties break by declaration order of QUERY_CATEGORIES
        best = max(scores, key=lambda c: (scores[c], -list(QUERY_CATEGORIES).index(c)))
        return best, scores[best] / sum(scores.values())

    def _classify_intent(self, normalized: str) -> str:
        lowered = normalized.lower()
        for intent in ("comparison", "request", "question"):
            for lang_words in INTENT_WORDS.values():
                if any(self._has_phrase(lowered, w) for w in lang_words[intent]):
                    return intent
        if lowered.endswith("?") or lowered.endswith("؟"):
            return "question"
        return "search"

    def _is_followup(self, normalized: str, previous_queries: Optional[list[str]]) -> bool:
        lowered = normalized.lower()
        for markers in FOLLOWUP_MARKERS.values():
            if any(lowered.startswith(normalize_term(m)) for m in markers):
                return True
        # Very short queries continuing a conversation are follow-ups
        return bool(previous_queries) and len(self.normalizer.tokenize(normalized, remove_stop_words=True)) <= 2

    def _has_phrase(self, lowered: str, phrase: str) -> bool:
        needle = normalize_term(phrase)
        return f" {needle} " in f" {lowered.strip('?؟!.')} "

    def _extract_entities(self, raw: Optional[str], normalized: str) -> dict:
        entities = self.normalizer.extract_entities(raw)
        hr_terms = []
        for lang_terms in HR_ENTITIES.values():
            for term in lang_terms:
                if self.normalizer.contains_term(normalized, term):
                    hr_terms.append(term)
        entities["hr_terms"] = hr_terms
        return entities

    def related_questions(self, category: str, language: str = "ar", limit: int = 3) -> list[str]:
        """
        Canned common questions for a category, category-specific first.

        General questions fill the remaining slots.
        """
        language = language if language in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE
        questions = list(COMMON_QUESTIONS.get(category, {}).get(language, []))
        if category != DEFAULT_CATEGORY:
            questions.extend(COMMON_QUESTIONS[DEFAULT_CATEGORY][language])
        return questions[:max(limit, 0)]


# CLI for testing
if __name__ == "__main__":
    import json
    import sys

    logging.basicConfig(level=logging.INFO)
    analyzer = QueryAnalyzer()
    text = " ".join(sys.argv[1:]) or "ما هي أحكام الإجازة السنوية؟"
    result = analyzer.analyze(text)
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    print(analyzer.related_questions(result.category, result.response_language))
