"""
Citation Formatting for Retrieved Sources

Formats ranked results as user-facing sources with citations:
- Labour-law articles: "المادة 109 - نظام العمل" / "Article 109 - Labor Law"
- Company documents: "[Handbook.pdf, المادة 5, ص. 3]"
- Scenario mappings: "حالة: إنهاء العقد"
"""

import logging
from typing import Optional
from dataclasses import dataclass, field

from .language_patterns import LABELS
from .vector_store import CORPUS_DOCUMENTS, CORPUS_LABOR_LAW, CORPUS_SCENARIOS

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 300

SOURCE_TYPES = {
    CORPUS_DOCUMENTS: "document",
    CORPUS_LABOR_LAW: "labor_law",
    CORPUS_SCENARIOS: "scenario",
}


@dataclass
class Citation:
    """A formatted citation for one source."""
    source_type: str  # document | labor_law | scenario
    title: str
    language: str = "ar"
    article_number: Optional[str] = None
    law_source: Optional[str] = None
    section: str = ""
    page_numbers: list[int] = field(default_factory=list)

    def short_format(self) -> str:
        """Short inline citation format."""
        labels = LABELS.get(self.language, LABELS["ar"])

        if self.source_type == "labor_law":
            law = self.law_source if self.language == "ar" and self.law_source else labels["labor_law"]
            return f"{labels['article']} {self.article_number} - {law}"

        if self.source_type == "scenario":
            return f"{labels['scenario']}: {self.title}"

        parts = [self.title]
        if self.section:
            parts.append(self.section)
        if self.page_numbers:
            parts.append(f"{labels['page']} {self._format_pages()}")
        return f"[{', '.join(parts)}]"

    def _format_pages(self) -> str:
        pages = sorted(set(self.page_numbers))
        if len(pages) > 1 and pages == list(range(pages[0], pages[-1] + 1)):
            return f"{pages[0]}-{pages[-1]}"
        return ", ".join(map(str, pages))

    def to_dict(self) -> dict:
        return {
            "source_type": self.source_type,
            "title": self.title,
            "article_number": self.article_number,
            "section": self.section,
            "page_numbers": self.page_numbers,
            "short_citation": self.short_format(),
        }


def build_citation(result, language: str = "ar") -> Citation:
    """Citation for a RankedResult in the response language."""
    source_type = SOURCE_TYPES.get(result.corpus, "document")
    metadata = result.metadata or {}
    title = result.title
    if language == "en":
        if source_type == "labor_law" and metadata.get("title_en"):
            title = metadata["title_en"]
        elif source_type == "scenario" and metadata.get("name_en"):
            title = metadata["name_en"]
    return Citation(
        source_type=source_type,
        title=title,
        language=language,
        article_number=metadata.get("article_number"),
        law_source=metadata.get("law_source"),
        section=result.section_title,
        page_numbers=list(result.page_numbers),
    )


def build_source(result, language: str = "ar") -> dict:
    """
    Source entry returned to callers.

    Returns:
        {id, type, title, excerpt, relevance_score, page, section, citation}
    """
    citation = build_citation(result, language)
    content = result.content
    if language == "en" and citation.source_type == "labor_law" and result.metadata.get("content_en"):
        content = result.metadata["content_en"]
    excerpt = content if len(content) <= EXCERPT_CHARS else content[:EXCERPT_CHARS].rstrip() + "..."
    return {
        "id": result.document_id,
        "type": citation.source_type,
        "title": citation.title,
        "excerpt": excerpt,
        "relevance_score": round(result.fused_score, 4),
        "page": min(result.page_numbers) if result.page_numbers else None,
        "section": result.section_title or None,
        "citation": citation.short_format(),
    }
