"""
Hybrid Retriever across HR Corpora

For every enabled corpus (company documents, labour-law articles,
scenario mappings) runs two searches in parallel:
1. Vector similarity against chunk/article embeddings (threshold-gated)
2. Lexical full-text search with the query language's configuration

Hits for the same chunk are fused into one score, either by weighted
combination of the two signals or by weighted Reciprocal Rank Fusion.
A per-request timeout bounds the fan-out; a corpus whose search fails or
times out is excluded from the merge and reported in `failed_corpora`.
The merge is deterministic regardless of completion order.
"""

import time
import logging
import threading
from dataclasses import dataclass, field, replace
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED
from typing import Optional

from .errors import CorpusSearchError, OperationCancelled
from .language_config import OrganizationLanguageConfig
from .vector_store import (
    CORPORA,
    CORPUS_DOCUMENTS,
    LexicalStore,
    RetrievalHit,
    VectorStore,
)

logger = logging.getLogger(__name__)

FUSION_METHODS = ("weighted", "rrf")

# How often the fan-out loop checks for caller cancellation (seconds)
CANCEL_POLL_SECONDS = 0.05


@dataclass
class RetrievalConfig:
    """Configuration for hybrid retrieval."""
    # Number of results from each search method, per corpus
    vector_top_k: int = 20
    lexical_top_k: int = 20

    similarity_threshold: float = 0.5

    # "weighted": vector_weight * similarity + lexical_weight * lexical score
    # "rrf": weighted reciprocal rank fusion, rescaled into [0, 1]
    fusion_method: str = "weighted"
    vector_weight: float = 0.7
    lexical_weight: float = 0.3
    rrf_k: int = 60

    # Added to law/scenario hits whose category matches the query category
    category_boost: float = 0.05

    timeout_seconds: float = 10.0
    max_workers: int = 6

    def __post_init__(self):
        if self.fusion_method not in FUSION_METHODS:
            raise ValueError(f"fusion_method must be one of {FUSION_METHODS}, got {self.fusion_method!r}")
        if self.vector_weight < 0 or self.lexical_weight < 0 or self.vector_weight + self.lexical_weight == 0:
            raise ValueError("Fusion weights must be non-negative and not both zero")


@dataclass
class RetrievalOutcome:
    """Fused hits from every corpus that answered in time."""
    hits: list[RetrievalHit]
    searched_corpora: list[str]
    failed_corpora: list[str] = field(default_factory=list)
    per_corpus_counts: dict = field(default_factory=dict)
    elapsed_ms: float = 0.0


class HybridRetriever:
    """
    Multi-corpus hybrid retrieval.

    Pipeline:
    1. Parallel vector and lexical search per corpus
    2. Per-corpus fusion of the two signals
    3. Deterministic cross-corpus merge ordered by fused score
    """

    def __init__(
        self,
        vector_store: VectorStore,
        lexical_store: LexicalStore,
        config: Optional[RetrievalConfig] = None,
    ):
        """
        Initialize retriever.

        Args:
            vector_store: Vector similarity capability
            lexical_store: Full-text search capability
            config: Optional retrieval configuration
        """
        self.vector_store = vector_store
        self.lexical_store = lexical_store
        self.config = config or RetrievalConfig()

    def retrieve(
        self,
        query_text: str,
        query_embedding: Optional[list[float]],
        corpora: list[str],
        language_config: OrganizationLanguageConfig,
        filters: Optional[dict] = None,
        similarity_threshold: Optional[float] = None,
        limit: Optional[int] = None,
        category: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RetrievalOutcome:
        """
        Search every requested corpus and fuse the results.

        Args:
            query_text: Normalized query text for lexical search
            query_embedding: Query vector (None skips vector search)
            corpora: Corpora to search, in any order
            language_config: Lexical configuration for the query language
            filters: Mapping of corpus -> SearchFilters
            similarity_threshold: Minimum cosine similarity for vector hits
            limit: Per-search result limit
            category: Query category used for the soft category boost
            cancel_event: Set by the caller to abort the request

        Returns:
            RetrievalOutcome

        Raises:
            OperationCancelled: If cancel_event is set before the fan-out finishes
        """
        start_time = time.time()
        threshold = self.config.similarity_threshold if similarity_threshold is None else similarity_threshold
        ordered = [c for c in CORPORA if c in set(corpora)]
        filters = filters or {}
        if not ordered:
            return RetrievalOutcome(hits=[], searched_corpora=[])

        tasks = []
        for corpus in ordered:
            corpus_filters = filters.get(corpus)
            if query_embedding is not None:
                tasks.append((corpus, "vector", lambda c=corpus, f=corpus_filters: self.vector_store.search(
                    query_embedding, c, f, threshold, limit or self.config.vector_top_k,
                )))
            tasks.append((corpus, "lexical", lambda c=corpus, f=corpus_filters: self.lexical_store.search(
                query_text, c, language_config, limit or self.config.lexical_top_k, f,
            )))

        logger.info(f"Running {len(tasks)} search tasks across {len(ordered)} corpora")
        results, failures = self._run_tasks(tasks, cancel_event)

        hits = []
        counts = {}
        failed = []
        for corpus in ordered:
            if corpus in failures:
                failed.append(corpus)
                logger.warning(f"Corpus {corpus} excluded from merge: {failures[corpus]}")
                continue
            fused = self._fuse(
                results.get((corpus, "vector"), []),
                results.get((corpus, "lexical"), []),
                category,
            )
            counts[corpus] = len(fused)
            hits.extend(fused)

        rank = {c: i for i, c in enumerate(CORPORA)}
        hits.sort(key=lambda h: (-h.fused_score, rank[h.corpus], h.chunk_id))

        elapsed = (time.time() - start_time) * 1000
        logger.info(f"Retrieved {len(hits)} fused hits ({counts}, failed={failed}) in {elapsed:.0f}ms")
        return RetrievalOutcome(
            hits=hits,
            searched_corpora=ordered,
            failed_corpora=failed,
            per_corpus_counts=counts,
            elapsed_ms=elapsed,
        )

    def _run_tasks(self, tasks: list, cancel_event: Optional[threading.Event]) -> tuple[dict, dict]:
        """Execute search tasks in parallel under the request timeout."""
        results: dict[tuple, list] = {}
        failures: dict[str, CorpusSearchError] = {}
        deadline = time.monotonic() + self.config.timeout_seconds

        executor = ThreadPoolExecutor(max_workers=min(len(tasks), self.config.max_workers))
        try:
            future_map = {executor.submit(fn): (corpus, kind) for corpus, kind, fn in tasks}
            pending = set(future_map)
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelled("Retrieval cancelled by caller")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(pending, timeout=min(remaining, CANCEL_POLL_SECONDS),
                                     return_when=FIRST_COMPLETED)
                for future in done:
                    corpus, kind = future_map[future]
                    try:
                        results[(corpus, kind)] = future.result()
                    except Exception as e:
                        logger.warning(f"Search task ({corpus}/{kind}) failed: {e}")
                        failures.setdefault(corpus, CorpusSearchError(f"{kind} search failed: {e}", corpus))

            for future in pending:
                corpus, kind = future_map[future]
                logger.warning(f"Search task ({corpus}/{kind}) timed out after {self.config.timeout_seconds}s")
                failures.setdefault(corpus, CorpusSearchError(f"{kind} search timed out", corpus))
        finally:
            # Slow searches are abandoned, not awaited
            executor.shutdown(wait=False, cancel_futures=True)

        return results, failures

    def _fuse(
        self,
        vector_hits: list[RetrievalHit],
        lexical_hits: list[RetrievalHit],
        category: Optional[str],
    ) -> list[RetrievalHit]:
        """Combine the vector and lexical hits of one corpus by chunk."""
        vector_by_chunk = _best_by_chunk(vector_hits, "vector_similarity")
        lexical_by_chunk = _best_by_chunk(lexical_hits, "lexical_score")

        fused = []
        for chunk_id in list(vector_by_chunk) + [c for c in lexical_by_chunk if c not in vector_by_chunk]:
            v_rank, v_hit = vector_by_chunk.get(chunk_id, (None, None))
            l_rank, l_hit = lexical_by_chunk.get(chunk_id, (None, None))
            base = v_hit or l_hit
            similarity = v_hit.vector_similarity if v_hit else None
            lexical = l_hit.lexical_score if l_hit else None

            if self.config.fusion_method == "rrf":
                score = self._rrf_score(v_rank, l_rank)
            else:
                score = self._weighted_score(similarity, lexical)

            if category and self.config.category_boost and base.corpus != CORPUS_DOCUMENTS:
                if base.metadata.get("category") == category:
                    score += self.config.category_boost

            fused.append(replace(
                base,
                vector_similarity=similarity,
                lexical_score=lexical,
                fused_score=round(min(max(score, 0.0), 1.0), 6),
                metadata=dict(base.metadata),
            ))
        return fused

    def _weighted_score(self, similarity: Optional[float], lexical: Optional[float]) -> float:
        cfg = self.config
        total = cfg.vector_weight + cfg.lexical_weight
        return (cfg.vector_weight * max(similarity or 0.0, 0.0) + cfg.lexical_weight * (lexical or 0.0)) / total

    def _rrf_score(self, vector_rank: Optional[int], lexical_rank: Optional[int]) -> float:
        """
        Weighted RRF: sum(weight / (k + rank)), divided by its maximum so a
        hit ranked first by both searches scores 1.0.
        """
        cfg = self.config
        score = 0.0
        if vector_rank is not None:
            score += cfg.vector_weight / (cfg.rrf_k + vector_rank)
        if lexical_rank is not None:
            score += cfg.lexical_weight / (cfg.rrf_k + lexical_rank)
        best = (cfg.vector_weight + cfg.lexical_weight) / (cfg.rrf_k + 1)
        return score / best


def _best_by_chunk(hits: list[RetrievalHit], score_field: str) -> dict[str, tuple[int, RetrievalHit]]:
    """
    Keep the highest-scoring hit per chunk id, in best-first order.

    Ranks count distinct chunks, so a chunk matched through several
    content types takes one rank slot.
    """
    best: dict[str, RetrievalHit] = {}
    for hit in hits:
        current = best.get(hit.chunk_id)
        if current is None or (getattr(hit, score_field) or 0.0) > (getattr(current, score_field) or 0.0):
            best[hit.chunk_id] = hit
    ordered = sorted(best.values(), key=lambda h: -(getattr(h, score_field) or 0.0))
    return {h.chunk_id: (rank, h) for rank, h in enumerate(ordered, start=1)}
