"""
Document Ingestion Orchestrator

Runs one document through an explicit state machine:

    uploaded -> validating -> extracting -> chunking -> embedding
             -> completed | completed_with_warnings | failed

Each stage returns a StageResult (Ok, Fatal or Recoverable); only this
orchestrator maps results to transitions. Stage duration and outcome are
recorded on a ProcessingRecord. Reprocessing re-enters at `chunking` from
the stored normalized text and opens a new ProcessingRecord, leaving the
history of earlier passes untouched.

Independent documents run concurrently on a bounded worker pool; stages
of one document always run in order.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from .arabic_text import ArabicTextNormalizer
from .chunker import Chunker, ChunkingResult
from .document_parser import PAGE_SEPARATOR, ExtractedText, TextExtractor
from .embeddings import EmbeddingGenerator
from .errors import (
    DocumentNotFound,
    EmbeddingError,
    HRRagError,
    InvalidTransition,
    OperationCancelled,
    QuotaExceededError,
    SecurityRejection,
    ValidationError,
)
from .models import Document, DocumentStatus, ProcessingRecord, StageRecord
from .security import SecurityValidator

logger = logging.getLogger(__name__)


# =============================================================================
# Stage results
# =============================================================================

@dataclass(frozen=True)
class Ok:
    """Stage succeeded; `output` feeds the next stage."""
    output: Any = None


@dataclass(frozen=True)
class Fatal:
    """Stage failed; the document moves to `failed`."""
    error: HRRagError


@dataclass(frozen=True)
class Recoverable:
    """Stage failed but the document can complete with warnings."""
    error: HRRagError


StageResult = Union[Ok, Fatal, Recoverable]


# =============================================================================
# State machine
# =============================================================================

S = DocumentStatus

TRANSITIONS = {
    S.UPLOADED: frozenset([S.VALIDATING, S.FAILED]),
    S.VALIDATING: frozenset([S.EXTRACTING, S.FAILED]),
    S.EXTRACTING: frozenset([S.CHUNKING, S.FAILED]),
    S.CHUNKING: frozenset([S.EMBEDDING, S.FAILED]),
    S.EMBEDDING: frozenset([S.COMPLETED, S.COMPLETED_WITH_WARNINGS, S.FAILED]),
    S.COMPLETED: frozenset(),
    S.COMPLETED_WITH_WARNINGS: frozenset(),
    S.FAILED: frozenset(),
}

# The only backward edge: reprocess re-enters here from a terminal state
REPROCESS_ENTRY = S.CHUNKING

STAGE_ORDER = (S.VALIDATING, S.EXTRACTING, S.CHUNKING, S.EMBEDDING)


def can_transition(current: DocumentStatus, target: DocumentStatus, reprocess: bool = False) -> bool:
    if reprocess:
        return current.is_terminal and target == REPROCESS_ENTRY
    return target in TRANSITIONS[current]


@dataclass
class IngestionConfig:
    """Configuration for the ingestion pipeline."""
    continue_on_embedding_failure: bool = False
    # Concurrent documents; bounded by the embedding API's rate limits
    max_workers: int = 4
    max_reprocess_attempts: int = 3
    chunk_strategy: Optional[str] = None
    overlap_chars: Optional[int] = None


@dataclass
class _IngestionContext:
    """Working state of one pass through the pipeline."""
    document: Document
    record: ProcessingRecord
    cancel_event: threading.Event
    continue_on_embedding_failure: bool
    tier: str = "default"
    data: bytes = b""
    detected_mime_type: Optional[str] = None
    extracted: Optional[ExtractedText] = None
    page_offsets: list[int] = field(default_factory=list)
    chunking: Optional[ChunkingResult] = None
    embeddings: Optional[list] = None
    warning: Optional[HRRagError] = None
    strategy: Optional[str] = None
    overlap_chars: Optional[int] = None
    # Terminal status a reprocess pass returns to if it does not finish
    restore_status: Optional[DocumentStatus] = None


class IngestionOrchestrator:
    """
    Sequences validation, extraction, chunking and embedding per document.

    Usage:
        orchestrator = IngestionOrchestrator(store, validator, extractor, chunker, embedder)
        document = orchestrator.ingest(data, "handbook.pdf", "application/pdf", organization_id)
    """

    def __init__(
        self,
        store,
        validator: SecurityValidator,
        extractor: TextExtractor,
        chunker: Chunker,
        embedder: EmbeddingGenerator,
        config: Optional[IngestionConfig] = None,
        quota_manager=None,
        metrics=None,
        response_cache=None,
        normalizer: Optional[ArabicTextNormalizer] = None,
    ):
        """
        Initialize the orchestrator with its collaborators.

        Args:
            store: DocumentStore for document records and searchable chunks
            validator: Security screen
            extractor: Text extractor
            chunker: Chunker
            embedder: EmbeddingGenerator with the document policy
            config: Ingestion configuration
            quota_manager: Optional QuotaManager for document limits
            metrics: Optional MetricsCollector
            response_cache: Optional ResponseCache, invalidated when an
                organization's searchable documents change
            normalizer: Text normalizer applied to extracted text
        """
        self.store = store
        self.validator = validator
        self.extractor = extractor
        self.chunker = chunker
        self.embedder = embedder
        self.config = config or IngestionConfig()
        self.quota_manager = quota_manager
        self.metrics = metrics
        self.response_cache = response_cache
        self.normalizer = normalizer or ArabicTextNormalizer()

        self._active: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Public operations
    # =========================================================================

    def ingest(
        self,
        data: bytes,
        filename: str,
        mime_type: str,
        organization_id: str,
        uploaded_by: str = "",
        category: str = "general",
        language: Optional[str] = None,
        tags: Optional[list[str]] = None,
        metadata: Optional[dict] = None,
        tier: str = "default",
        continue_on_embedding_failure: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Document:
        """
        Ingest one uploaded file.

        Returns:
            The persisted Document in a terminal state. Stage failures are
            reported through its status and `error`, not raised.

        Raises:
            ValidationError: Missing filename or organization
            QuotaExceededError: Organization document limits reached
        """
        if not filename or not organization_id:
            raise ValidationError("filename and organization_id are required")
        if self.quota_manager is not None:
            self.quota_manager.check_document_quota(organization_id, tier=tier, size_bytes=len(data or b""))

        document = Document(
            organization_id=organization_id,
            filename=filename,
            mime_type=mime_type,
            size_bytes=len(data or b""),
            uploaded_by=uploaded_by,
            language=language or "ar",
            category=category or "general",
            tags=list(tags or []),
            metadata=dict(metadata or {}),
        )
        if language:
            document.metadata["declared_language"] = language
        document.storage_path = f"{organization_id}/{document.document_id}/{filename}"
        self.store.save_document(document)
        logger.info(f"Ingesting {filename} as {document.document_id} ({document.size_bytes} bytes)")

        ctx = self._open_context(document, S.UPLOADED, tier, continue_on_embedding_failure, cancel_event)
        ctx.data = data or b""
        return self._run(ctx, S.VALIDATING)

    def ingest_request(self, data: bytes, request, **kwargs) -> Document:
        """Ingest using an IngestionRequest model."""
        return self.ingest(
            data,
            filename=request.filename,
            mime_type=request.mime_type,
            organization_id=request.organization_id,
            uploaded_by=request.uploaded_by,
            category=request.category,
            language=request.language,
            tags=request.tags,
            metadata=request.metadata,
            tier=request.tier,
            **kwargs,
        )

    def ingest_many(self, uploads: list[tuple[bytes, Any]]) -> list[Union[Document, HRRagError]]:
        """
        Ingest independent uploads concurrently on a bounded pool.

        Args:
            uploads: (bytes, IngestionRequest) pairs

        Returns:
            One entry per upload in input order: the Document, or the
            error that rejected it before a document was created
        """
        results: list[Union[Document, HRRagError, None]] = [None] * len(uploads)
        if not uploads:
            return []

        with ThreadPoolExecutor(max_workers=min(len(uploads), self.config.max_workers)) as executor:
            future_map = {
                executor.submit(self.ingest_request, data, request): i
                for i, (data, request) in enumerate(uploads)
            }
            for future in as_completed(future_map):
                index = future_map[future]
                try:
                    results[index] = future.result()
                except HRRagError as e:
                    logger.warning(f"Upload {uploads[index][1].filename} rejected: {e.code}")
                    results[index] = e
        return results

    def reprocess(
        self,
        document_id: str,
        strategy: Optional[str] = None,
        overlap_chars: Optional[int] = None,
        continue_on_embedding_failure: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Document:
        """
        Re-run chunking and embedding from previously extracted text.

        The new chunks replace the searchable ones only when the pass
        completes. A failed or cancelled pass is recorded in the processing
        history and the document keeps its previous status and chunks.

        Raises:
            DocumentNotFound: Unknown document
            InvalidTransition: Document is still being processed
            ValidationError: No extracted text, or reprocess attempts exhausted
            OperationCancelled: cancel_event was already set
        """
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"Reprocess of {document_id} cancelled before it started")
        document = self._get(document_id)
        if not can_transition(document.status, REPROCESS_ENTRY, reprocess=True):
            raise InvalidTransition(f"Document {document_id} is {document.status.value}; only finished documents can be reprocessed")
        if not document.text:
            raise ValidationError(f"Document {document_id} has no extracted text; upload it again")

        attempts = sum(1 for r in document.processing_history if r.entry_status == REPROCESS_ENTRY.value)
        if attempts >= self.config.max_reprocess_attempts:
            raise ValidationError(
                f"Document {document_id} reached the limit of {self.config.max_reprocess_attempts} reprocess attempts",
                code="reprocess_limit",
            )

        logger.info(f"Reprocessing {document_id} (attempt {attempts + 1})")
        ctx = self._open_context(document, REPROCESS_ENTRY, "default", continue_on_embedding_failure, cancel_event)
        ctx.strategy = strategy
        ctx.overlap_chars = overlap_chars
        ctx.restore_status = document.status
        ctx.page_offsets = list(document.metadata.get("page_offsets") or [])
        return self._run(ctx, REPROCESS_ENTRY, reprocess=True)

    def cancel(self, document_id: str) -> bool:
        """
        Abort an in-flight document.

        Returns:
            True if the document was in flight; it ends `failed` with code `cancelled`
        """
        with self._lock:
            event = self._active.get(document_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for {document_id}")
        return True

    def get_status(self, document_id: str) -> dict:
        """Status, progress percentage and latest processing record of a document."""
        document = self._get(document_id)
        return {
            "document_id": document.document_id,
            "status": document.status.value,
            "progress": document.progress,
            "error": document.error,
            "processing_metadata": document.processing_metadata,
        }

    def cleanup_failed(self, older_than_hours: int = 24, organization_id: Optional[str] = None) -> int:
        """Delete failed documents last updated before the cutoff."""
        cutoff = datetime.now() - timedelta(hours=older_than_hours)
        removed = 0
        for document in self.store.list_documents(organization_id=organization_id, status=S.FAILED):
            if document.updated_at < cutoff and self.store.delete_document(document.document_id):
                removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} failed documents older than {older_than_hours}h")
        return removed

    # =========================================================================
    # State machine driver
    # =========================================================================

    def _open_context(self, document, entry_status, tier, continue_flag, cancel_event) -> _IngestionContext:
        record = ProcessingRecord(entry_status=entry_status.value)
        document.processing_history.append(record)
        event = cancel_event or threading.Event()
        with self._lock:
            self._active[document.document_id] = event
        if continue_flag is None:
            continue_flag = self.config.continue_on_embedding_failure
        return _IngestionContext(
            document=document,
            record=record,
            cancel_event=event,
            continue_on_embedding_failure=continue_flag,
            tier=tier,
        )

    def _run(self, ctx: _IngestionContext, entry: DocumentStatus, reprocess: bool = False) -> Document:
        stages = {
            S.VALIDATING: self._validate,
            S.EXTRACTING: self._extract,
            S.CHUNKING: self._chunk,
            S.EMBEDDING: self._embed,
        }
        started = time.time()
        try:
            for index, status in enumerate(STAGE_ORDER[STAGE_ORDER.index(entry):]):
                if ctx.cancel_event.is_set():
                    self._fail(ctx, OperationCancelled("Ingestion cancelled by caller"))
                    return ctx.document
                self._transition(ctx.document, status, reprocess=reprocess and index == 0)
                result = self._timed(ctx, status, stages[status])

                if isinstance(result, Fatal):
                    self._fail(ctx, result.error)
                    return ctx.document
                if isinstance(result, Recoverable):
                    ctx.warning = result.error

            if ctx.cancel_event.is_set():
                self._fail(ctx, OperationCancelled("Ingestion cancelled by caller"))
                return ctx.document
            self._complete(ctx)
            return ctx.document
        except Exception as e:
            if not isinstance(e, InvalidTransition) and not ctx.document.status.is_terminal:
                logger.exception(f"Unexpected error ingesting {ctx.document.document_id}")
                self._fail(ctx, HRRagError("Unexpected error during ingestion"))
            raise
        finally:
            with self._lock:
                self._active.pop(ctx.document.document_id, None)
            self._record_metrics(ctx, (time.time() - started) * 1000)

    def _transition(self, document: Document, target: DocumentStatus, reprocess: bool = False) -> None:
        if not can_transition(document.status, target, reprocess=reprocess):
            raise InvalidTransition(f"Cannot move document from {document.status.value} to {target.value}")
        logger.debug(f"{document.document_id}: {document.status.value} -> {target.value}")
        document.status = target
        self.store.save_document(document)

    def _timed(self, ctx: _IngestionContext, status: DocumentStatus, stage) -> StageResult:
        started_at = datetime.now()
        start = time.time()
        result = stage(ctx)
        outcome = {Ok: "ok", Fatal: "fatal", Recoverable: "recoverable"}[type(result)]
        detail = "" if isinstance(result, Ok) else result.error.code
        ctx.record.stages.append(StageRecord(
            stage=status.value,
            outcome=outcome,
            duration_ms=(time.time() - start) * 1000,
            started_at=started_at,
            detail=detail,
        ))
        return result

    def _complete(self, ctx: _IngestionContext) -> None:
        document = ctx.document
        chunks = ctx.chunking.chunks
        if ctx.warning is not None:
            target = S.COMPLETED_WITH_WARNINGS
            document.embeddings = None
            document.metadata["embeddingError"] = ctx.warning.to_dict()
        else:
            target = S.COMPLETED
            document.embeddings = ctx.embeddings
            document.metadata.pop("embeddingError", None)

        document.chunks = chunks
        document.error = None
        document.metadata.pop("reprocessError", None)
        document.metadata.update(ctx.chunking.metadata)
        # Searchable state swaps in one step once the pass has succeeded
        self.store.replace_chunks(document, chunks, document.embeddings)
        self._transition(document, target)
        self._close_record(ctx, target)
        self._invalidate_cache(document.organization_id)
        logger.info(f"Document {document.document_id} {target.value}: {len(chunks)} chunks")

    def _fail(self, ctx: _IngestionContext, error: HRRagError) -> None:
        document = ctx.document
        if ctx.restore_status is not None:
            self._abandon_reprocess(ctx, error)
            return
        if not can_transition(document.status, S.FAILED):
            raise InvalidTransition(f"Cannot move document from {document.status.value} to {S.FAILED.value}")

        logger.error(f"Document {document.document_id} failed in {document.status.value}: {error.code}: {error}")
        document.chunks = []
        document.embeddings = None
        document.error = error.to_dict()
        self.store.replace_chunks(document, [], None)
        self._transition(document, S.FAILED)
        self._close_record(ctx, S.FAILED, error)
        self._invalidate_cache(document.organization_id)

    def _abandon_reprocess(self, ctx: _IngestionContext, error: HRRagError) -> None:
        """Close a failed reprocess pass; searchable chunks were never swapped."""
        document = ctx.document
        logger.error(
            f"Reprocess of {document.document_id} failed in {document.status.value}: {error.code}: {error};"
            f" keeping {ctx.restore_status.value}"
        )
        document.status = ctx.restore_status
        document.metadata["reprocessError"] = error.to_dict()
        self._close_record(ctx, S.FAILED, error)

    def _close_record(self, ctx: _IngestionContext, final: DocumentStatus, error: Optional[HRRagError] = None):
        ctx.record.final_status = final.value
        ctx.record.completed_at = datetime.now()
        ctx.record.error = error.to_dict() if error else None
        self.store.save_document(ctx.document)

    def _invalidate_cache(self, organization_id: str) -> None:
        if self.response_cache is None:
            return
        try:
            self.response_cache.invalidate_organization(organization_id)
        except HRRagError as e:
            logger.warning(f"Response cache invalidation failed: {e}")

    def _record_metrics(self, ctx: _IngestionContext, duration_ms: float) -> None:
        if self.metrics is None:
            return
        document = ctx.document
        self.metrics.record_ingestion(
            organization_id=document.organization_id,
            document_id=document.document_id,
            status=document.status.value,
            chunks_count=len(document.chunks),
            duration_ms=duration_ms,
            stage_durations={s.stage: s.duration_ms for s in ctx.record.stages},
        )

    def _get(self, document_id: str) -> Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise DocumentNotFound(f"Document {document_id} not found")
        return document

    # =========================================================================
    # Stages
    # =========================================================================

    def _validate(self, ctx: _IngestionContext) -> StageResult:
        document = ctx.document
        max_bytes = self.quota_manager.max_document_bytes(ctx.tier) if self.quota_manager else None
        check = self.validator.validate(
            ctx.data,
            declared_mime_type=document.mime_type,
            organization_id=document.organization_id,
            user_id=document.uploaded_by,
            filename=document.filename,
            max_size_bytes=max_bytes,
        )
        document.metadata["security"] = {"sha256": check.sha256, "issues": [i.to_dict() for i in check.issues]}
        if not check.is_valid:
            return Fatal(SecurityRejection(check.summary(), issues=check.issues))
        ctx.detected_mime_type = check.detected_mime_type or document.mime_type
        document.mime_type = ctx.detected_mime_type
        return Ok(check)

    def _extract(self, ctx: _IngestionContext) -> StageResult:
        try:
            extracted = self.extractor.extract(ctx.data, ctx.detected_mime_type)
        except HRRagError as e:
            return Fatal(e)

        document = ctx.document
        document.text, ctx.page_offsets = self._normalize_pages(extracted)
        # Raw bytes are not needed past extraction
        ctx.data = b""
        ctx.extracted = extracted
        if "declared_language" not in document.metadata:
            document.language = extracted.language
        document.metadata.update({
            "page_count": extracted.page_count,
            "word_count": extracted.word_count,
            "extraction_confidence": round(extracted.extraction_confidence, 3),
            "extraction_time_ms": round(extracted.extraction_time_ms, 2),
            "detected_language": extracted.language,
            "page_offsets": ctx.page_offsets,
            "direction": self.normalizer.detect_direction(document.text[:2000]),
        })
        for key, value in extracted.properties.items():
            document.metadata.setdefault(key, value)
        return Ok(extracted)

    def _normalize_pages(self, extracted: ExtractedText) -> tuple[str, list[int]]:
        """Normalize page by page so page offsets stay valid for the normalized text."""
        offsets = extracted.page_offsets or [0]
        bounds = offsets[1:] + [len(extracted.text) + len(PAGE_SEPARATOR)]
        pages = [
            self.normalizer.normalize(extracted.text[start:end - len(PAGE_SEPARATOR)], preserve_newlines=True)
            for start, end in zip(offsets, bounds)
        ]
        new_offsets = []
        position = 0
        for page in pages:
            new_offsets.append(position)
            position += len(page) + len(PAGE_SEPARATOR)
        return PAGE_SEPARATOR.join(pages), new_offsets

    def _chunk(self, ctx: _IngestionContext) -> StageResult:
        document = ctx.document
        try:
            result = self.chunker.chunk(
                document.text,
                document.document_id,
                language=document.language if document.language in ("ar", "en") else "ar",
                strategy=ctx.strategy or self.config.chunk_strategy,
                overlap_chars=ctx.overlap_chars if ctx.overlap_chars is not None else self.config.overlap_chars,
                page_offsets=ctx.page_offsets or None,
            )
        except HRRagError as e:
            return Fatal(e)

        if self.quota_manager is not None:
            limit = self.quota_manager.get_quota(ctx.tier).max_chunks_per_document
            if result.total_chunks > limit:
                return Fatal(QuotaExceededError(
                    f"Document too large ({result.total_chunks} chunks, max {limit})",
                    quota_type="chunks_per_document",
                    current=result.total_chunks,
                    limit=limit,
                ))
        ctx.chunking = result
        return Ok(result)

    def _embed(self, ctx: _IngestionContext) -> StageResult:
        try:
            ctx.embeddings = self.embedder.embed_chunks(ctx.chunking.chunks, cancel_event=ctx.cancel_event)
        except OperationCancelled as e:
            return Fatal(e)
        except EmbeddingError as e:
            if ctx.continue_on_embedding_failure:
                logger.warning(f"Embedding failed for {ctx.document.document_id}, continuing without embeddings: {e}")
                return Recoverable(e)
            return Fatal(e)
        return Ok(ctx.embeddings)


# CLI for testing
if __name__ == "__main__":
    import sys
    import json
    import mimetypes
    from pathlib import Path
    from dotenv import load_dotenv

    from .pipeline import PipelineSettings, build_ingestion_orchestrator

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) < 2:
        print("Usage: python -m execution.hr_rag.ingestion <file> [organization_id]")
        sys.exit(1)

    path = Path(sys.argv[1])
    org = sys.argv[2] if len(sys.argv) > 2 else "local-org"
    orchestrator = build_ingestion_orchestrator(PipelineSettings.from_env())
    doc = orchestrator.ingest(
        path.read_bytes(), path.name, mimetypes.guess_type(path.name)[0] or "text/plain", org,
        continue_on_embedding_failure=True,
    )
    print(json.dumps(orchestrator.get_status(doc.document_id), indent=2, ensure_ascii=False))
