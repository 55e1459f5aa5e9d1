"""
Retrieval Orchestrator

Top-level query flow:

    quota -> analyze -> cache lookup -> embed query -> hybrid retrieval
          -> rank -> grounding context -> generate -> cache store

Every collaborator is passed in by whoever builds the pipeline; nothing is
looked up from module state. A corpus that fails during retrieval lowers
confidence instead of failing the request. Generation failures return a
localized fallback answer that is never cached, and a cancelled request
discards its partial results without caching them.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from .api_models import QueryRequest, QueryResponse, SourceInfo
from .cache import ResponseCache, fingerprint
from .citation import build_source
from .embeddings import EmbeddingGenerator
from .errors import CacheError, EmbeddingError, OperationCancelled
from .generation import Generator, GeneratorConfig, build_grounding_context
from .language_config import OrganizationLanguageConfig
from .language_patterns import FALLBACK_MESSAGES, NO_SOURCES_MESSAGES
from .metrics import MetricsCollector
from .query_analyzer import QueryAnalyzer
from .quotas import QuotaManager
from .ranker import RankedSet, ResultRanker
from .retriever import HybridRetriever
from .vector_store import CORPUS_DOCUMENTS, CORPUS_LABOR_LAW, CORPUS_SCENARIOS, SearchFilters

logger = logging.getLogger(__name__)


@dataclass
class OrchestratorConfig:
    """Configuration for the query flow."""
    cost_per_token: float = 0.00002
    # Per-search limits handed to the retriever
    retrieval_limit: int = 20
    speed_retrieval_limit: int = 8
    related_questions: int = 3


class RetrievalOrchestrator:
    """
    Answers HR questions from company documents, labour law and scenarios.

    Usage:
        orchestrator = RetrievalOrchestrator(
            analyzer, embedder, retriever, ranker, generator,
            cache=ResponseCache(), quota_manager=QuotaManager(), metrics=MetricsCollector(),
        )
        response = orchestrator.query(QueryRequest(query="...", organization_id="org-1"))
    """

    def __init__(
        self,
        analyzer: QueryAnalyzer,
        embedder: EmbeddingGenerator,
        retriever: HybridRetriever,
        ranker: ResultRanker,
        generator: Generator,
        cache: Optional[ResponseCache] = None,
        quota_manager: Optional[QuotaManager] = None,
        metrics: Optional[MetricsCollector] = None,
        generator_config: Optional[GeneratorConfig] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.analyzer = analyzer
        self.embedder = embedder
        self.retriever = retriever
        self.ranker = ranker
        self.generator = generator
        self.cache = cache
        self.quota_manager = quota_manager
        self.metrics = metrics or MetricsCollector()
        self.generator_config = generator_config or GeneratorConfig()
        self.config = config or OrchestratorConfig()

    def query(self, request: QueryRequest, cancel_event: Optional[threading.Event] = None) -> QueryResponse:
        """
        Answer one query.

        Args:
            request: Validated query request
            cancel_event: Set by the caller (e.g. client disconnect) to abort

        Returns:
            QueryResponse; an empty corpus yields confidence 0 and no sources

        Raises:
            QuotaExceededError: If the organization's query quota is exhausted
            OperationCancelled: If cancel_event is set before the answer is ready
        """
        start_time = time.time()

        if self.quota_manager is not None:
            self.quota_manager.check_query_quota(request.organization_id, tier=request.tier)
            self.quota_manager.record_query(request.organization_id)

        with self.metrics.track_query(request.organization_id, request.query) as tracker:
            response = self._answer(request, cancel_event, start_time)
            tracker.set_results(len(response.sources), cache_hit=response.cached, failed_corpora=response.failed_corpora)
            if response.error_code:
                tracker.set_error(response.error_code)
        return response

    def _answer(self, request: QueryRequest, cancel_event: Optional[threading.Event], start_time: float) -> QueryResponse:
        prefs = request.preferences
        analysis = self.analyzer.analyze(request.query, request.language, request.context.previous_queries)
        language = request.language or analysis.response_language
        corpora = self._corpora(request)

        cache_key = fingerprint(
            analysis.normalized_query,
            language,
            request.organization_id,
            filters={
                "document_ids": sorted(request.document_ids) if request.document_ids else None,
                "category": request.category,
                "corpora": corpora,
            },
            preferences=prefs.fingerprint_dict(),
        )

        if prefs.cache_results and self.cache is not None:
            cached = self._cache_get(cache_key)
            if cached is not None:
                cached.pop("organization_id", None)
                cached["cached"] = True
                return QueryResponse(**cached)

        self._check_cancelled(cancel_event)

        # Lexical search still runs when the query cannot be embedded
        try:
            query_embedding = self.embedder.embed_query(analysis.normalized_query)
        except EmbeddingError as e:
            logger.warning(f"Query embedding failed, continuing with lexical search only: {e}")
            query_embedding = None

        language_config = OrganizationLanguageConfig.for_language(language)
        outcome = self.retriever.retrieve(
            query_text=analysis.normalized_query,
            query_embedding=query_embedding,
            corpora=corpora,
            language_config=language_config,
            filters=self._filters(request, corpora),
            similarity_threshold=prefs.confidence_threshold,
            limit=self.config.speed_retrieval_limit if prefs.optimize_for_speed else self.config.retrieval_limit,
            category=analysis.category,
            cancel_event=cancel_event,
        )
        ranked = self.ranker.rank(outcome.hits, prefs.max_sources, outcome.failed_corpora, outcome.searched_corpora)
        self._check_cancelled(cancel_event)

        related = self.analyzer.related_questions(analysis.category, language, self.config.related_questions)
        sources = [SourceInfo(**build_source(r, language)) for r in ranked.results]

        if not ranked.results:
            logger.info(f"No sources found for query in {corpora} (failed: {ranked.failed_corpora})")
            response = self._response(
                NO_SOURCES_MESSAGES.get(language, NO_SOURCES_MESSAGES["ar"]),
                ranked, [], start_time, language, analysis.category, related,
            )
            self._cache_put(cache_key, response, request)
            return response

        context, included = build_grounding_context(
            ranked.results, language,
            token_budget=self.generator_config.context_token_budget,
            chars_per_token=language_config.chars_per_token,
        )
        max_tokens = self.generator_config.speed_max_tokens if prefs.optimize_for_speed else None
        try:
            generation = self.generator.complete(
                context, request.query, language=language,
                response_style=prefs.response_style, max_tokens=max_tokens,
            )
        except Exception as e:
            logger.error(f"Answer generation failed ({language}): {type(e).__name__}: {e}")
            fallback = self._response(
                FALLBACK_MESSAGES.get(language, FALLBACK_MESSAGES["ar"]),
                ranked, sources, start_time, language, analysis.category, related,
            )
            fallback.confidence = 0.0
            fallback.quality_score = 0.0
            fallback.error_code = "generation_failed"
            return fallback

        self._check_cancelled(cancel_event)
        logger.info(f"Generated answer from {included} sources ({generation.tokens_used} tokens)")

        response = self._response(
            generation.text, ranked, sources, start_time, language, analysis.category, related,
            tokens_used=generation.tokens_used, model=generation.model,
        )
        self._cache_put(cache_key, response, request)
        return response

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _corpora(request: QueryRequest) -> list[str]:
        prefs = request.preferences
        corpora = []
        if prefs.include_company_docs:
            corpora.append(CORPUS_DOCUMENTS)
        if prefs.include_labor_law:
            corpora.append(CORPUS_LABOR_LAW)
        if prefs.include_scenarios:
            corpora.append(CORPUS_SCENARIOS)
        return corpora

    @staticmethod
    def _filters(request: QueryRequest, corpora: list[str]) -> dict:
        filters = {}
        for corpus in corpora:
            if corpus == CORPUS_DOCUMENTS:
                filters[corpus] = SearchFilters(
                    organization_id=request.organization_id,
                    document_ids=request.document_ids,
                )
            else:
                filters[corpus] = SearchFilters(category=request.category)
        return filters

    def _response(
        self,
        answer: str,
        ranked: RankedSet,
        sources: list[SourceInfo],
        start_time: float,
        language: str,
        category: str,
        related: list[str],
        tokens_used: int = 0,
        model: str = "",
    ) -> QueryResponse:
        return QueryResponse(
            answer=answer,
            confidence=round(ranked.confidence, 4),
            sources=sources,
            processing_time=(time.time() - start_time) * 1000,
            tokens_used=tokens_used,
            cost=round(tokens_used * self.config.cost_per_token, 6),
            quality_score=self._quality_score(ranked.confidence, len(sources)),
            cached=False,
            model=model,
            language=language,
            category=category,
            related_questions=related,
            failed_corpora=ranked.failed_corpora,
        )

    @staticmethod
    def _quality_score(confidence: float, source_count: int) -> float:
        """Confidence weighted with how many sources back the answer (three or more counts as full)."""
        if source_count == 0:
            return 0.0
        return round(0.7 * confidence + 0.3 * min(source_count / 3, 1.0), 4)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled("Query cancelled by caller")

    def _cache_get(self, key: str) -> Optional[dict]:
        try:
            return self.cache.get(key)
        except CacheError as e:
            logger.warning(f"Bypassing response cache: {e}")
            return None

    def _cache_put(self, key: str, response: QueryResponse, request: QueryRequest):
        if not request.preferences.cache_results or self.cache is None:
            return
        try:
            self.cache.put(key, response.model_dump(), organization_id=request.organization_id)
        except CacheError as e:
            logger.warning(f"Response not cached: {e}")


# CLI for testing
if __name__ == "__main__":
    import json
    import sys
    from dotenv import load_dotenv

    from .pipeline import PipelineSettings, build_retrieval_orchestrator

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) < 3:
        print("Usage: python -m execution.hr_rag.orchestrator <organization_id> <query>")
        sys.exit(1)

    orchestrator = build_retrieval_orchestrator(PipelineSettings.from_env())
    result = orchestrator.query(QueryRequest(organization_id=sys.argv[1], query=" ".join(sys.argv[2:])))
    print(json.dumps(result.model_dump(), indent=2, ensure_ascii=False))
