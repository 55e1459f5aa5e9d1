"""
Pydantic models for the HR RAG request/response surface.
"""

from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(low, min(number, high))


class RAGPreferences(BaseModel):
    """Every recognized query option with its default. Out-of-range values are clamped."""
    response_style: str = Field(default="balanced", pattern=r"^(brief|detailed|balanced)$")
    include_company_docs: bool = True
    include_labor_law: bool = True
    include_scenarios: bool = True
    max_sources: int = 5
    confidence_threshold: float = 0.5
    cache_results: bool = True
    optimize_for_speed: bool = False

    @field_validator("confidence_threshold", mode="before")
    @classmethod
    def clamp_confidence_threshold(cls, value):
        return _clamp(value, 0.1, 1.0, default=0.5)

    @field_validator("max_sources", mode="before")
    @classmethod
    def clamp_max_sources(cls, value):
        return int(_clamp(value, 1, 20, default=5))

    @field_validator("response_style", mode="before")
    @classmethod
    def default_unknown_style(cls, value):
        return value if value in ("brief", "detailed", "balanced") else "balanced"

    def fingerprint_dict(self) -> dict:
        """Options that change the result (all of them except cache_results)."""
        return self.model_dump(exclude={"cache_results"})


class QueryContext(BaseModel):
    """Caller context supplied by the chat collaborator."""
    user_role: Optional[str] = None
    department: Optional[str] = None
    access_level: Optional[str] = None
    previous_queries: list[str] = Field(default_factory=list)


class QueryRequest(BaseModel):
    """Request body for a RAG query."""
    query: str = Field(..., min_length=1, max_length=2000)
    organization_id: str = Field(..., min_length=1)
    user_id: str = ""
    language: Optional[str] = Field(None, pattern=r"^(ar|en)$")
    tier: str = "default"
    document_ids: Optional[list[str]] = None
    category: Optional[str] = None
    preferences: RAGPreferences = Field(default_factory=RAGPreferences)
    context: QueryContext = Field(default_factory=QueryContext)


class SourceInfo(BaseModel):
    """Citation source in a query response."""
    id: str
    type: str  # document | labor_law | scenario
    title: str
    excerpt: str
    relevance_score: float
    page: Optional[int] = None
    section: Optional[str] = None
    citation: str


class QueryResponse(BaseModel):
    """Response body for a RAG query."""
    answer: str
    confidence: float
    sources: list[SourceInfo]
    processing_time: float  # milliseconds
    tokens_used: int = 0
    cost: float = 0.0
    quality_score: float = 0.0
    cached: bool = False
    model: str = ""
    language: str = "ar"
    category: str = "general"
    related_questions: list[str] = Field(default_factory=list)
    failed_corpora: list[str] = Field(default_factory=list)
    error_code: Optional[str] = None


class IngestionRequest(BaseModel):
    """Document upload from the document-upload collaborator."""
    filename: str = Field(..., min_length=1, max_length=255)
    mime_type: str
    organization_id: str = Field(..., min_length=1)
    uploaded_by: str = ""
    category: str = "general"
    language: Optional[str] = Field(None, pattern=r"^(ar|en|mixed)$")
    tags: list[str] = Field(default_factory=list)
    metadata: dict = Field(default_factory=dict)
    tier: str = "default"


class ErrorResponse(BaseModel):
    """Machine-readable error body."""
    code: str
    message: str
    quota_type: Optional[str] = None
    current: Optional[int] = None
    limit: Optional[int] = None
    reset_at: Optional[str] = None
