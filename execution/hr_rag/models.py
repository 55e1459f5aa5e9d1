"""
Persistent Records for Documents and the Legal-Article Corpus

Document, processing history and article/scenario records shared by the
ingestion orchestrator, the article ingestor and the stores.
"""

import uuid
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class DocumentStatus(str, Enum):
    """Lifecycle states of an uploaded document."""
    UPLOADED = "uploaded"
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset([
    DocumentStatus.COMPLETED,
    DocumentStatus.COMPLETED_WITH_WARNINGS,
    DocumentStatus.FAILED,
])

# Progress reported while a document sits in each state
STATUS_PROGRESS = {
    DocumentStatus.UPLOADED: 0,
    DocumentStatus.VALIDATING: 10,
    DocumentStatus.EXTRACTING: 25,
    DocumentStatus.CHUNKING: 50,
    DocumentStatus.EMBEDDING: 75,
    DocumentStatus.COMPLETED: 100,
    DocumentStatus.COMPLETED_WITH_WARNINGS: 100,
    DocumentStatus.FAILED: 100,
}


@dataclass
class StageRecord:
    """Duration and outcome of one stage run."""
    stage: str
    outcome: str  # "ok", "fatal", "recoverable"
    duration_ms: float
    started_at: datetime = field(default_factory=datetime.now)
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "outcome": self.outcome,
            "duration_ms": round(self.duration_ms, 2),
            "started_at": self.started_at.isoformat(),
            "detail": self.detail,
        }


@dataclass
class ProcessingRecord:
    """One pass of a document through the pipeline. Never mutated once finished."""
    entry_status: str
    record_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    final_status: Optional[str] = None
    stages: list[StageRecord] = field(default_factory=list)
    error: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "entry_status": self.entry_status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "final_status": self.final_status,
            "stages": [s.to_dict() for s in self.stages],
            "error": self.error,
        }


@dataclass
class Document:
    """An uploaded document owned by one organization."""
    organization_id: str
    filename: str
    mime_type: str
    size_bytes: int
    uploaded_by: str = ""
    language: str = "ar"
    category: str = "general"
    tags: list[str] = field(default_factory=list)
    document_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: DocumentStatus = DocumentStatus.UPLOADED
    storage_path: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    # Normalized extracted text that chunk spans index into
    text: str = ""
    chunks: list = field(default_factory=list)
    # None when no embeddings are attached
    embeddings: Optional[list] = None
    metadata: dict = field(default_factory=dict)
    processing_history: list[ProcessingRecord] = field(default_factory=list)
    error: Optional[dict] = None

    @property
    def processing_metadata(self) -> dict:
        """Stage durations and outcomes of the latest processing record."""
        if not self.processing_history:
            return {}
        return self.processing_history[-1].to_dict()

    @property
    def progress(self) -> int:
        return STATUS_PROGRESS[self.status]

    def to_dict(self, include_text: bool = False) -> dict:
        data = {
            "document_id": self.document_id,
            "organization_id": self.organization_id,
            "filename": self.filename,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "uploaded_by": self.uploaded_by,
            "language": self.language,
            "category": self.category,
            "tags": self.tags,
            "status": self.status.value,
            "storage_path": self.storage_path,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "chunks": [c.to_dict() for c in self.chunks],
            "metadata": self.metadata,
            "processing_metadata": self.processing_metadata,
            "error": self.error,
        }
        if self.embeddings is not None:
            data["embeddings"] = [e.to_dict() for e in self.embeddings]
        if include_text:
            data["text"] = self.text
        return data


@dataclass
class ArticleRevision:
    """Entry in an article's update-history log."""
    version: int
    changed_fields: list[str]
    updated_at: datetime = field(default_factory=datetime.now)
    note: str = ""

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "changed_fields": self.changed_fields,
            "updated_at": self.updated_at.isoformat(),
            "note": self.note,
        }


@dataclass
class Article:
    """A bilingual labour-law article (immutable reference data)."""
    article_number: str
    title_ar: str
    title_en: str
    content_ar: str
    content_en: str
    category: str = "general"
    subcategory: str = ""
    law_source: str = "نظام العمل"
    keywords: list[str] = field(default_factory=list)
    article_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    version: int = 1
    created_at: datetime = field(default_factory=datetime.now)
    revisions: list[ArticleRevision] = field(default_factory=list)

    CONTENT_FIELDS = ("title_ar", "title_en", "content_ar", "content_en", "category",
                      "subcategory", "law_source", "keywords")

    def title(self, language: str) -> str:
        return self.title_en if language == "en" and self.title_en else self.title_ar

    def content(self, language: str) -> str:
        return self.content_en if language == "en" and self.content_en else self.content_ar

    def to_dict(self) -> dict:
        return {
            "article_id": self.article_id,
            "article_number": self.article_number,
            "title_ar": self.title_ar,
            "title_en": self.title_en,
            "content_ar": self.content_ar,
            "content_en": self.content_en,
            "category": self.category,
            "subcategory": self.subcategory,
            "law_source": self.law_source,
            "keywords": self.keywords,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "revisions": [r.to_dict() for r in self.revisions],
        }


@dataclass
class ScenarioMapping:
    """An HR scenario linked to the law articles that govern it."""
    name_ar: str
    name_en: str
    description: str
    keywords: list[str] = field(default_factory=list)
    article_numbers: list[str] = field(default_factory=list)
    category: str = "general"
    priority: int = 1
    scenario_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "scenario_id": self.scenario_id,
            "name_ar": self.name_ar,
            "name_en": self.name_en,
            "description": self.description,
            "keywords": self.keywords,
            "article_numbers": self.article_numbers,
            "category": self.category,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
        }
