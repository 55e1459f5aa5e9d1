"""
Tests for execution/hr_rag/ingestion.py

Covers: the document state machine, stage outcomes (ok, fatal,
        recoverable), processing records, reprocessing, cancellation,
        status reporting, failed-document cleanup, concurrent uploads and
        response-cache invalidation.
"""

import threading
from datetime import datetime, timedelta

import pytest

from tests.conftest import SAMPLE_POLICY_AR, SAMPLE_POLICY_EN, HashingEmbeddingService, make_pipeline


def _ingest(pipeline, text=SAMPLE_POLICY_AR, filename="hr_policy.txt", **kwargs):
    return pipeline.ingestion.ingest(text.encode("utf-8"), filename, "text/plain", "org-1", **kwargs)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class TestTransitions:
    """Tests for the transition table."""

    def test_forward_edges_allowed(self):
        from execution.hr_rag.ingestion import can_transition
        from execution.hr_rag.models import DocumentStatus as S

        assert can_transition(S.UPLOADED, S.VALIDATING)
        assert can_transition(S.VALIDATING, S.EXTRACTING)
        assert can_transition(S.EXTRACTING, S.CHUNKING)
        assert can_transition(S.CHUNKING, S.EMBEDDING)
        assert can_transition(S.EMBEDDING, S.COMPLETED)
        assert can_transition(S.EMBEDDING, S.COMPLETED_WITH_WARNINGS)

    def test_any_active_state_can_fail(self):
        from execution.hr_rag.ingestion import can_transition
        from execution.hr_rag.models import DocumentStatus as S

        for status in (S.UPLOADED, S.VALIDATING, S.EXTRACTING, S.CHUNKING, S.EMBEDDING):
            assert can_transition(status, S.FAILED)

    def test_skipping_stages_rejected(self):
        from execution.hr_rag.ingestion import can_transition
        from execution.hr_rag.models import DocumentStatus as S

        assert not can_transition(S.VALIDATING, S.COMPLETED)
        assert not can_transition(S.UPLOADED, S.CHUNKING)
        assert not can_transition(S.CHUNKING, S.VALIDATING)

    def test_terminal_states_have_no_forward_edges(self):
        from execution.hr_rag.ingestion import TRANSITIONS
        from execution.hr_rag.models import DocumentStatus as S

        for status in (S.COMPLETED, S.COMPLETED_WITH_WARNINGS, S.FAILED):
            assert TRANSITIONS[status] == frozenset()

    def test_reprocess_edge_only_from_terminal_to_chunking(self):
        from execution.hr_rag.ingestion import REPROCESS_ENTRY, can_transition
        from execution.hr_rag.models import DocumentStatus as S

        assert REPROCESS_ENTRY == S.CHUNKING
        assert can_transition(S.COMPLETED, S.CHUNKING, reprocess=True)
        assert can_transition(S.FAILED, S.CHUNKING, reprocess=True)
        assert not can_transition(S.COMPLETED, S.CHUNKING)
        assert not can_transition(S.EMBEDDING, S.CHUNKING, reprocess=True)
        assert not can_transition(S.COMPLETED, S.EMBEDDING, reprocess=True)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestIngest:
    """Tests for a full ingestion pass."""

    def test_completes_with_one_embedding_per_chunk(self, pipeline):
        from execution.hr_rag.models import DocumentStatus

        document = _ingest(pipeline)
        assert document.status == DocumentStatus.COMPLETED
        assert document.chunks
        assert len(document.embeddings) == len(document.chunks)
        assert {e.owner_id for e in document.embeddings} == {c.chunk_id for c in document.chunks}
        assert document.error is None

    def test_chunk_spans_index_normalized_text(self, pipeline):
        document = _ingest(pipeline)
        for chunk in document.chunks:
            assert document.text[chunk.start_char:chunk.end_char] == chunk.content
        assert document.chunks[0].start_char == 0
        assert document.chunks[-1].end_char == len(document.text)

    def test_metadata_recorded(self, pipeline):
        document = _ingest(pipeline, uploaded_by="hr-admin", category="policy", tags=["2024"])
        assert document.language == "ar"
        assert document.category == "policy"
        assert document.tags == ["2024"]
        assert document.metadata["direction"] == "rtl"
        assert document.metadata["word_count"] > 0
        assert document.metadata["page_offsets"] == [0]
        assert document.metadata["total_chunks"] == len(document.chunks)
        assert document.metadata["strategy"] == "paragraph"
        assert len(document.metadata["security"]["sha256"]) == 64
        assert document.storage_path == f"org-1/{document.document_id}/hr_policy.txt"

    def test_english_document_detected(self, pipeline):
        document = _ingest(pipeline, text=SAMPLE_POLICY_EN, filename="handbook.txt")
        assert document.language == "en"
        assert document.metadata["direction"] == "ltr"

    def test_declared_language_kept(self, pipeline):
        document = _ingest(pipeline, text=SAMPLE_POLICY_EN, filename="handbook.txt", language="ar")
        assert document.language == "ar"
        assert document.metadata["detected_language"] == "en"

    def test_processing_record_lists_each_stage(self, pipeline):
        document = _ingest(pipeline)
        assert len(document.processing_history) == 1
        record = document.processing_history[0]
        assert record.entry_status == "uploaded"
        assert record.final_status == "completed"
        assert [s.stage for s in record.stages] == ["validating", "extracting", "chunking", "embedding"]
        assert all(s.outcome == "ok" for s in record.stages)
        assert record.completed_at is not None

    def test_chunks_become_searchable(self, pipeline):
        from execution.hr_rag.vector_store import CORPUS_DOCUMENTS, SearchFilters

        document = _ingest(pipeline)
        hits = pipeline.store.lexical_index.search(
            "الإجازة المرضية", CORPUS_DOCUMENTS, None, 10, SearchFilters(organization_id="org-1"),
        )
        assert hits
        assert all(h.document_id == document.document_id for h in hits)

    def test_ingest_request_model(self, pipeline):
        from execution.hr_rag.api_models import IngestionRequest
        from execution.hr_rag.models import DocumentStatus

        request = IngestionRequest(filename="handbook.txt", mime_type="text/plain",
                                   organization_id="org-2", category="handbook")
        document = pipeline.ingestion.ingest_request(SAMPLE_POLICY_EN.encode("utf-8"), request)
        assert document.status == DocumentStatus.COMPLETED
        assert document.organization_id == "org-2"
        assert document.category == "handbook"

    def test_missing_filename_raises(self, pipeline):
        from execution.hr_rag.errors import ValidationError

        with pytest.raises(ValidationError):
            pipeline.ingestion.ingest(b"text", "", "text/plain", "org-1")

    def test_metrics_recorded(self, pipeline):
        _ingest(pipeline)
        ingestion = pipeline.metrics.get_metrics_dict()["ingestion"]
        assert ingestion["documents"] == 1
        assert ingestion["chunks"] > 0


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    """Tests for fatal and recoverable stage outcomes."""

    def test_security_rejection_fails_document(self, pipeline):
        from execution.hr_rag.models import DocumentStatus

        document = pipeline.ingestion.ingest(b"", "empty.txt", "text/plain", "org-1")
        assert document.status == DocumentStatus.FAILED
        assert document.error["code"] == "security_rejected"
        assert document.chunks == []
        assert document.embeddings is None

        record = document.processing_history[-1]
        assert record.final_status == "failed"
        assert record.error["code"] == "security_rejected"
        assert record.stages[-1].stage == "validating"
        assert record.stages[-1].outcome == "fatal"

    def test_executable_rejected(self, pipeline):
        document = pipeline.ingestion.ingest(b"MZ\x90\x00" + b"\x00" * 64, "payroll.pdf",
                                             "application/pdf", "org-1")
        assert document.error["code"] == "security_rejected"

    def test_corrupt_pdf_fails_in_extraction(self, pipeline):
        pytest.importorskip("fitz")
        document = pipeline.ingestion.ingest(b"%PDF-1.4\nnot really a pdf", "broken.pdf",
                                             "application/pdf", "org-1")
        assert document.status.value == "failed"
        assert document.error["code"] == "extraction_failed"
        assert document.processing_history[-1].stages[-1].stage == "extracting"

    def test_embedding_failure_fails_by_default(self, failing_embedding_service, fake_generator):
        from execution.hr_rag.models import DocumentStatus

        pipeline = make_pipeline(failing_embedding_service, fake_generator)
        document = _ingest(pipeline)
        assert document.status == DocumentStatus.FAILED
        assert document.error["code"] == "embedding_failed"
        assert document.chunks == []

    def test_embedding_failure_can_complete_with_warnings(self, failing_embedding_service, fake_generator):
        from execution.hr_rag.models import DocumentStatus
        from execution.hr_rag.vector_store import CORPUS_DOCUMENTS

        pipeline = make_pipeline(failing_embedding_service, fake_generator)
        document = _ingest(pipeline, continue_on_embedding_failure=True)

        assert document.status == DocumentStatus.COMPLETED_WITH_WARNINGS
        assert document.embeddings is None
        assert document.chunks
        assert document.metadata["embeddingError"]["code"] == "embedding_failed"
        assert document.processing_history[-1].stages[-1].outcome == "recoverable"

        # Still findable through full-text search
        hits = pipeline.store.lexical_index.search("الرواتب", CORPUS_DOCUMENTS, None, 10)
        assert hits

    def test_failed_document_not_searchable(self, failing_embedding_service, fake_generator):
        from execution.hr_rag.vector_store import CORPUS_DOCUMENTS

        pipeline = make_pipeline(failing_embedding_service, fake_generator)
        _ingest(pipeline)
        assert pipeline.store.lexical_index.search("الرواتب", CORPUS_DOCUMENTS, None, 10) == []

    def test_document_quota_raises_before_document_created(self, pipeline):
        from execution.hr_rag.errors import QuotaExceededError
        from execution.hr_rag.quotas import QUOTA_TIERS

        for i in range(QUOTA_TIERS["free"].max_documents):
            _ingest(pipeline, filename=f"policy_{i}.txt", tier="free")

        with pytest.raises(QuotaExceededError) as exc_info:
            _ingest(pipeline, filename="one_more.txt", tier="free")
        assert exc_info.value.quota_type == "documents"
        assert len(pipeline.store.list_documents(organization_id="org-1")) == QUOTA_TIERS["free"].max_documents


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class _CancellingService(HashingEmbeddingService):
    """Sets the caller's cancel event while the embedding stage runs."""

    def __init__(self, event):
        super().__init__()
        self.event = event

    def embed_documents(self, texts, cancel_event=None):
        self.event.set()
        return super().embed_documents(texts, cancel_event=cancel_event)


class TestCancellation:
    """Tests for caller-initiated aborts."""

    def test_cancel_before_start(self, pipeline):
        event = threading.Event()
        event.set()
        document = _ingest(pipeline, cancel_event=event)
        assert document.status.value == "failed"
        assert document.error["code"] == "cancelled"
        assert document.processing_history[-1].stages == []

    def test_cancel_during_embedding_discards_results(self, fake_generator):
        event = threading.Event()
        pipeline = make_pipeline(_CancellingService(event), fake_generator)
        document = _ingest(pipeline, cancel_event=event)

        assert document.status.value == "failed"
        assert document.error["code"] == "cancelled"
        assert document.chunks == []
        assert document.embeddings is None

    def test_cancel_unknown_document(self, pipeline):
        assert pipeline.ingestion.cancel("missing") is False

    def test_cancel_finished_document(self, pipeline):
        document = _ingest(pipeline)
        assert pipeline.ingestion.cancel(document.document_id) is False


# ---------------------------------------------------------------------------
# Reprocessing
# ---------------------------------------------------------------------------

class TestReprocess:
    """Tests for re-entering the pipeline at chunking."""

    def test_reprocess_opens_new_record(self, pipeline):
        document = _ingest(pipeline)
        first_ids = {c.chunk_id for c in document.chunks}

        document = pipeline.ingestion.reprocess(document.document_id, overlap_chars=0)
        assert document.status.value == "completed"
        assert len(document.processing_history) == 2

        record = document.processing_history[-1]
        assert record.entry_status == "chunking"
        assert [s.stage for s in record.stages] == ["chunking", "embedding"]
        assert document.processing_history[0].final_status == "completed"
        assert not first_ids & {c.chunk_id for c in document.chunks}
        assert all(c.overlap_chars == 0 for c in document.chunks)

    def test_reprocess_with_new_strategy(self, pipeline):
        document = _ingest(pipeline)
        document = pipeline.ingestion.reprocess(document.document_id, strategy="sentence")
        assert document.metadata["strategy"] == "sentence"

    def test_reprocess_recovers_warnings(self, embedding_service, fake_generator):
        from execution.hr_rag.models import DocumentStatus

        pipeline = make_pipeline(embedding_service, fake_generator)
        pipeline.ingestion.embedder.service = _AlwaysFailing()
        document = _ingest(pipeline, continue_on_embedding_failure=True)
        assert document.status == DocumentStatus.COMPLETED_WITH_WARNINGS

        pipeline.ingestion.embedder.service = embedding_service
        document = pipeline.ingestion.reprocess(document.document_id)
        assert document.status == DocumentStatus.COMPLETED
        assert "embeddingError" not in document.metadata
        assert len(document.embeddings) == len(document.chunks)

    def test_reprocess_limit(self, pipeline):
        from execution.hr_rag.errors import ValidationError

        document = _ingest(pipeline)
        for _ in range(3):
            pipeline.ingestion.reprocess(document.document_id)

        with pytest.raises(ValidationError) as exc_info:
            pipeline.ingestion.reprocess(document.document_id)
        assert exc_info.value.code == "reprocess_limit"

    def test_reprocess_in_flight_document_rejected(self, pipeline):
        from execution.hr_rag.errors import InvalidTransition
        from execution.hr_rag.models import Document, DocumentStatus

        document = Document(organization_id="org-1", filename="x.txt", mime_type="text/plain",
                            size_bytes=10, text="some text", status=DocumentStatus.EMBEDDING)
        pipeline.store.save_document(document)

        with pytest.raises(InvalidTransition):
            pipeline.ingestion.reprocess(document.document_id)

    def test_reprocess_without_text_rejected(self, pipeline):
        from execution.hr_rag.errors import ValidationError

        document = pipeline.ingestion.ingest(b"", "empty.txt", "text/plain", "org-1")
        with pytest.raises(ValidationError):
            pipeline.ingestion.reprocess(document.document_id)

    def test_reprocess_unknown_document(self, pipeline):
        from execution.hr_rag.errors import DocumentNotFound

        with pytest.raises(DocumentNotFound):
            pipeline.ingestion.reprocess("missing")

    def test_reprocess_already_cancelled_leaves_document_untouched(self, pipeline):
        from execution.hr_rag.errors import OperationCancelled
        from execution.hr_rag.vector_store import CORPUS_DOCUMENTS

        document = _ingest(pipeline)
        before = pipeline.store.lexical_index.search("الرواتب", CORPUS_DOCUMENTS, None, 10)
        assert before

        event = threading.Event()
        event.set()
        with pytest.raises(OperationCancelled):
            pipeline.ingestion.reprocess(document.document_id, cancel_event=event)

        stored = pipeline.store.get_document(document.document_id)
        assert stored.status.value == "completed"
        assert len(stored.processing_history) == 1
        assert pipeline.store.lexical_index.search("الرواتب", CORPUS_DOCUMENTS, None, 10) == before

    def test_failed_reprocess_keeps_previous_chunks(self, embedding_service, fake_generator):
        from execution.hr_rag.models import DocumentStatus
        from execution.hr_rag.vector_store import CORPUS_DOCUMENTS

        pipeline = make_pipeline(embedding_service, fake_generator)
        document = _ingest(pipeline)
        chunk_ids = [c.chunk_id for c in document.chunks]

        pipeline.ingestion.embedder.service = _AlwaysFailing()
        document = pipeline.ingestion.reprocess(document.document_id)

        assert document.status == DocumentStatus.COMPLETED
        assert [c.chunk_id for c in document.chunks] == chunk_ids
        assert len(document.embeddings) == len(chunk_ids)
        assert document.metadata["reprocessError"]["code"] == "embedding_failed"

        record = document.processing_history[-1]
        assert record.final_status == "failed"
        assert record.error["code"] == "embedding_failed"
        assert record.completed_at is not None

        hits = pipeline.store.lexical_index.search("الرواتب", CORPUS_DOCUMENTS, None, 10)
        assert {h.chunk_id for h in hits} <= set(chunk_ids)
        assert hits

    def test_cancelled_reprocess_keeps_previous_status(self, fake_generator):
        event = threading.Event()
        service = _CancellingService(threading.Event())
        pipeline = make_pipeline(service, fake_generator)
        document = _ingest(pipeline)
        chunk_ids = [c.chunk_id for c in document.chunks]

        service.event = event
        document = pipeline.ingestion.reprocess(document.document_id, cancel_event=event)

        assert document.status.value == "completed"
        assert [c.chunk_id for c in document.chunks] == chunk_ids
        assert document.processing_history[-1].final_status == "failed"
        assert document.processing_history[-1].error["code"] == "cancelled"

    def test_successful_reprocess_clears_previous_failure(self, embedding_service, fake_generator):
        pipeline = make_pipeline(embedding_service, fake_generator)
        document = _ingest(pipeline)

        pipeline.ingestion.embedder.service = _AlwaysFailing()
        pipeline.ingestion.reprocess(document.document_id)
        pipeline.ingestion.embedder.service = embedding_service
        document = pipeline.ingestion.reprocess(document.document_id)

        assert document.status.value == "completed"
        assert "reprocessError" not in document.metadata
        assert len(document.processing_history) == 3


class _AlwaysFailing(HashingEmbeddingService):
    def embed_documents(self, texts, cancel_event=None):
        raise RuntimeError("provider down")


# ---------------------------------------------------------------------------
# Status, cleanup and concurrency
# ---------------------------------------------------------------------------

class TestStatusAndCleanup:
    """Tests for status reporting and failed-document cleanup."""

    def test_get_status(self, pipeline):
        document = _ingest(pipeline)
        status = pipeline.ingestion.get_status(document.document_id)
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert status["error"] is None
        assert status["processing_metadata"]["final_status"] == "completed"

    def test_get_status_unknown(self, pipeline):
        from execution.hr_rag.errors import DocumentNotFound

        with pytest.raises(DocumentNotFound):
            pipeline.ingestion.get_status("missing")

    def test_cleanup_failed_respects_age(self, pipeline):
        failed = pipeline.ingestion.ingest(b"", "empty.txt", "text/plain", "org-1")
        completed = _ingest(pipeline)

        assert pipeline.ingestion.cleanup_failed(older_than_hours=24) == 0

        failed.updated_at = datetime.now() - timedelta(hours=48)
        assert pipeline.ingestion.cleanup_failed(older_than_hours=24) == 1
        assert pipeline.store.get_document(failed.document_id) is None
        assert pipeline.store.get_document(completed.document_id) is not None


class TestConcurrentIngestion:
    """Tests for ingest_many."""

    def test_results_in_input_order(self, pipeline):
        from execution.hr_rag.api_models import IngestionRequest
        from execution.hr_rag.models import Document

        uploads = [
            (SAMPLE_POLICY_AR.encode("utf-8"),
             IngestionRequest(filename="ar.txt", mime_type="text/plain", organization_id="org-1")),
            (b"",
             IngestionRequest(filename="empty.txt", mime_type="text/plain", organization_id="org-1")),
            (SAMPLE_POLICY_EN.encode("utf-8"),
             IngestionRequest(filename="en.txt", mime_type="text/plain", organization_id="org-1")),
        ]
        results = pipeline.ingestion.ingest_many(uploads)

        assert [r.filename for r in results] == ["ar.txt", "empty.txt", "en.txt"]
        assert all(isinstance(r, Document) for r in results)
        assert [r.status.value for r in results] == ["completed", "failed", "completed"]

    def test_rejected_upload_reported_in_place(self, pipeline):
        from execution.hr_rag.api_models import IngestionRequest
        from execution.hr_rag.errors import QuotaExceededError
        from execution.hr_rag.quotas import QUOTA_TIERS

        for i in range(QUOTA_TIERS["free"].max_documents):
            _ingest(pipeline, filename=f"policy_{i}.txt", tier="free")

        request = IngestionRequest(filename="late.txt", mime_type="text/plain",
                                   organization_id="org-1", tier="free")
        results = pipeline.ingestion.ingest_many([(b"text", request)])
        assert isinstance(results[0], QuotaExceededError)

    def test_empty_batch(self, pipeline):
        assert pipeline.ingestion.ingest_many([]) == []


# ---------------------------------------------------------------------------
# Response cache
# ---------------------------------------------------------------------------

class TestCacheInvalidation:
    """Tests for dropping an organization's cached answers on document change."""

    def test_completion_invalidates_organization(self, pipeline):
        pipeline.response_cache.put("k-org-1", {"answer": "old"}, organization_id="org-1")
        pipeline.response_cache.put("k-org-2", {"answer": "other"}, organization_id="org-2")

        _ingest(pipeline)

        assert pipeline.response_cache.get("k-org-1") is None
        assert pipeline.response_cache.get("k-org-2") is not None

    def test_failure_invalidates_organization(self, pipeline):
        pipeline.response_cache.put("k-org-1", {"answer": "old"}, organization_id="org-1")
        pipeline.ingestion.ingest(b"", "empty.txt", "text/plain", "org-1")
        assert pipeline.response_cache.get("k-org-1") is None
