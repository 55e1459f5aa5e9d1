"""
Tests for execution/hr_rag/ranker.py

Covers: identity merge, deterministic ordering, the max-sources cap and
        confidence scoring (top score, consistency, coverage, failed
        corpus penalty).
"""

from datetime import datetime, timedelta

import pytest

from execution.hr_rag.vector_store import CORPUS_DOCUMENTS, CORPUS_LABOR_LAW, CORPUS_SCENARIOS, RetrievalHit


def _hit(corpus, document_id, chunk_id, fused, content="", created_at=None, pages=None):
    return RetrievalHit(
        corpus=corpus,
        document_id=document_id,
        chunk_id=chunk_id,
        content=content or chunk_id,
        fused_score=fused,
        vector_similarity=fused,
        created_at=created_at,
        page_numbers=pages or [],
    )


@pytest.fixture
def ranker():
    from execution.hr_rag.ranker import ResultRanker
    return ResultRanker()


# ---------------------------------------------------------------------------
# Merge and ordering
# ---------------------------------------------------------------------------

class TestMergeAndOrder:
    """Tests for collapsing hits into sources."""

    def test_chunks_of_one_document_collapse(self, ranker):
        ranked = ranker.rank([
            _hit(CORPUS_DOCUMENTS, "doc-1", "c1", 0.6, pages=[1]),
            _hit(CORPUS_DOCUMENTS, "doc-1", "c2", 0.8, content="best chunk", pages=[2]),
        ])
        assert len(ranked.results) == 1
        result = ranked.results[0]
        assert result.match_count == 2
        assert result.fused_score == 0.8
        assert result.vector_similarity == 0.8
        assert result.content == "best chunk"
        assert result.page_numbers == [1, 2]
        assert result.chunk_ids == ["c1", "c2"]

    def test_same_id_in_different_corpora_stays_separate(self, ranker):
        ranked = ranker.rank([
            _hit(CORPUS_DOCUMENTS, "x", "c1", 0.5),
            _hit(CORPUS_LABOR_LAW, "x", "c2", 0.5),
        ])
        assert len(ranked.results) == 2

    def test_score_then_match_count_then_recency(self, ranker):
        now = datetime(2024, 1, 1)
        ranked = ranker.rank([
            _hit(CORPUS_DOCUMENTS, "old", "o1", 0.5, created_at=now - timedelta(days=30)),
            _hit(CORPUS_DOCUMENTS, "new", "n1", 0.5, created_at=now),
            _hit(CORPUS_DOCUMENTS, "multi", "m1", 0.5, created_at=now - timedelta(days=90)),
            _hit(CORPUS_DOCUMENTS, "multi", "m2", 0.4),
            _hit(CORPUS_DOCUMENTS, "top", "t1", 0.9),
        ])
        assert [r.document_id for r in ranked.results] == ["top", "multi", "new", "old"]

    def test_cap_at_requested(self, ranker):
        hits = [_hit(CORPUS_DOCUMENTS, f"d{i}", f"c{i}", 0.5) for i in range(10)]
        assert len(ranker.rank(hits, max_sources=3).results) == 3

    def test_cap_never_exceeds_twenty(self, ranker):
        hits = [_hit(CORPUS_DOCUMENTS, f"d{i}", f"c{i}", 0.5) for i in range(30)]
        assert len(ranker.rank(hits, max_sources=50).results) == 20


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

class TestConfidence:
    """Tests for the confidence of a ranked set."""

    def test_empty_set(self, ranker):
        ranked = ranker.rank([], failed_corpora=[CORPUS_SCENARIOS])
        assert ranked.results == []
        assert ranked.confidence == 0.0
        assert ranked.top_score == 0.0
        assert ranked.failed_corpora == [CORPUS_SCENARIOS]

    def test_single_source(self, ranker):
        ranked = ranker.rank(
            [_hit(CORPUS_DOCUMENTS, "d", "c", 0.8)],
            searched_corpora=[CORPUS_DOCUMENTS, CORPUS_LABOR_LAW],
        )
        # 0.6 * 0.8 + 0.2 * 0.5 + 0.2 * 0.5
        assert ranked.confidence == pytest.approx(0.68)

    def test_consistent_sources_across_corpora(self, ranker):
        ranked = ranker.rank(
            [_hit(CORPUS_DOCUMENTS, "d", "c", 0.8), _hit(CORPUS_LABOR_LAW, "a", "a1", 0.6)],
            searched_corpora=[CORPUS_DOCUMENTS, CORPUS_LABOR_LAW, CORPUS_SCENARIOS],
        )
        # 0.6 * 0.8 + 0.2 * (1 - 0.2) + 0.2 * 1.0
        assert ranked.confidence == pytest.approx(0.84)

    def test_failed_corpus_penalty(self, ranker):
        ranked = ranker.rank(
            [_hit(CORPUS_DOCUMENTS, "d", "c", 0.8)],
            failed_corpora=[CORPUS_SCENARIOS],
            searched_corpora=[CORPUS_DOCUMENTS, CORPUS_LABOR_LAW, CORPUS_SCENARIOS],
        )
        assert ranked.confidence == pytest.approx(0.68 * 0.8)

    def test_confidence_bounded(self, ranker):
        hits = [_hit(CORPUS_DOCUMENTS, f"d{i}", f"c{i}", 1.0) for i in range(3)]
        ranked = ranker.rank(hits, searched_corpora=[CORPUS_DOCUMENTS])
        assert 0.0 <= ranked.confidence <= 1.0
        assert ranked.confidence == pytest.approx(1.0)
