"""
Result Ranker and Confidence Scorer

Merges fused per-corpus hits into one ranked, deduplicated source list:
- hits collapse by (corpus, document/article identity)
- each identity keeps the maximum similarity seen across its chunks and
  the number of matching chunks
- ordering: fused score desc, then more matching chunks, then newer
  created_at
- the list is capped at min(requested max sources, 20)

Confidence combines top score, score consistency and corpus coverage.
An empty result set has confidence 0 and is not an error.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .vector_store import CORPUS_DOCUMENTS, CORPUS_LABOR_LAW, RetrievalHit

logger = logging.getLogger(__name__)

MAX_SOURCES_CAP = 20

# Confidence weights
TOP_SCORE_WEIGHT = 0.6
CONSISTENCY_WEIGHT = 0.2
COVERAGE_WEIGHT = 0.2
# Confidence multiplier per corpus that failed during retrieval
FAILED_CORPUS_PENALTY = 0.8


@dataclass
class RankedResult:
    """One source after merging every hit that shares its identity."""
    corpus: str
    document_id: str
    title: str
    content: str
    fused_score: float
    vector_similarity: Optional[float] = None
    lexical_score: Optional[float] = None
    match_count: int = 1
    created_at: Optional[datetime] = None
    language: str = "ar"
    section_title: str = ""
    page_numbers: list[int] = field(default_factory=list)
    chunk_ids: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.corpus, self.document_id)


@dataclass
class RankedSet:
    """Final ranked sources plus the confidence of the set."""
    results: list[RankedResult]
    confidence: float
    failed_corpora: list[str] = field(default_factory=list)

    @property
    def top_score(self) -> float:
        return self.results[0].fused_score if self.results else 0.0


class ResultRanker:
    """Identity merge, deterministic ordering and confidence scoring."""

    def rank(
        self,
        hits: list[RetrievalHit],
        max_sources: int = 5,
        failed_corpora: Optional[list[str]] = None,
        searched_corpora: Optional[list[str]] = None,
    ) -> RankedSet:
        """
        Rank hits into sources.

        Args:
            hits: Fused hits from every searched corpus
            max_sources: Requested number of sources (capped at 20)
            failed_corpora: Corpora whose search failed or timed out
            searched_corpora: Corpora the request asked for

        Returns:
            RankedSet with at most min(max_sources, 20) results
        """
        failed = sorted(set(failed_corpora or []))
        limit = max(0, min(max_sources, MAX_SOURCES_CAP))

        merged = self._merge(hits)
        ordered = sorted(merged.values(), key=self._sort_key)
        results = ordered[:limit]

        confidence = self._confidence(results, searched_corpora, failed)
        logger.info(
            f"Ranked {len(hits)} hits into {len(merged)} sources, returning {len(results)} "
            f"(confidence={confidence:.3f})"
        )
        return RankedSet(results=results, confidence=confidence, failed_corpora=failed)

    def _merge(self, hits: list[RetrievalHit]) -> dict:
        merged: dict[tuple, RankedResult] = {}
        for hit in hits:
            key = (hit.corpus, hit.document_id)
            current = merged.get(key)
            if current is None:
                merged[key] = RankedResult(
                    corpus=hit.corpus,
                    document_id=hit.document_id,
                    title=hit.title,
                    content=hit.content,
                    fused_score=hit.fused_score,
                    vector_similarity=hit.vector_similarity,
                    lexical_score=hit.lexical_score,
                    created_at=hit.created_at,
                    language=hit.language,
                    section_title=hit.section_title,
                    page_numbers=list(hit.page_numbers),
                    chunk_ids=[hit.chunk_id],
                    metadata=dict(hit.metadata),
                )
                continue

            if hit.chunk_id not in current.chunk_ids:
                current.chunk_ids.append(hit.chunk_id)
                current.match_count += 1
            current.vector_similarity = _max_optional(current.vector_similarity, hit.vector_similarity)
            current.lexical_score = _max_optional(current.lexical_score, hit.lexical_score)
            current.page_numbers = sorted(set(current.page_numbers) | set(hit.page_numbers))
            # The best chunk supplies the excerpt
            if hit.fused_score > current.fused_score:
                current.fused_score = hit.fused_score
                current.content = hit.content
                current.section_title = hit.section_title
        return merged

    @staticmethod
    def _sort_key(result: RankedResult):
        created = result.created_at.timestamp() if result.created_at else 0.0
        return (-result.fused_score, -result.match_count, -created, result.corpus, result.document_id)

    def _confidence(
        self,
        results: list[RankedResult],
        searched_corpora: Optional[list[str]],
        failed: list[str],
    ) -> float:
        if not results:
            return 0.0

        scores = [r.fused_score for r in results]
        top = max(0.0, min(scores[0], 1.0))

        # Low spread among the leading results means a consistent answer
        leading = scores[:3]
        spread = max(leading) - min(leading)
        consistency = max(0.0, 1.0 - spread) if len(leading) > 1 else 0.5

        # Coverage across the corpora that carry answers: company docs and law
        answer_corpora = [c for c in (searched_corpora or [CORPUS_DOCUMENTS, CORPUS_LABOR_LAW])
                          if c in (CORPUS_DOCUMENTS, CORPUS_LABOR_LAW)]
        represented = {r.corpus for r in results}
        coverage = (
            len(represented & set(answer_corpora)) / len(answer_corpora)
            if answer_corpora else 1.0
        )

        confidence = TOP_SCORE_WEIGHT * top + CONSISTENCY_WEIGHT * consistency + COVERAGE_WEIGHT * coverage
        confidence *= FAILED_CORPUS_PENALTY ** len(failed)
        return round(max(0.0, min(confidence, 1.0)), 4)


def _max_optional(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)
