"""
Span-Addressable Chunker

Splits normalized document text into ordered chunks. Every chunk records
its [start, end) character span into the text it was cut from, so the
union of spans always covers the whole text and adjacent chunks share at
most the configured overlap window.

Strategies:
- paragraph: boundaries at blank lines
- sentence: boundaries at sentence terminators (Arabic and Latin)
- semantic: sentence units grouped until the embedding similarity between
  neighbouring sentences drops below a threshold
"""

import re
import uuid
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from .arabic_text import ArabicTextNormalizer
from .errors import ChunkingError, EmbeddingError
from .language_config import SUPPORTED_LANGUAGES
from .language_patterns import SECTION_HEADING_PATTERNS

logger = logging.getLogger(__name__)

STRATEGIES = ("semantic", "paragraph", "sentence")

PARAGRAPH_BOUNDARY = re.compile(r"\n[^\S\n]*\n\s*")
SENTENCE_BOUNDARY = re.compile(r"[.!?؟\u06D4]+[\"'»)\]]*\s+|\n+")
HEADING_PATTERNS = [re.compile(p, re.MULTILINE) for p in SECTION_HEADING_PATTERNS.values()]


@dataclass
class Chunk:
    """A bounded, addressable slice of a document's text."""
    chunk_id: str
    document_id: str
    chunk_index: int
    content: str
    start_char: int
    end_char: int
    language: str = "ar"
    token_count: int = 0
    section_title: str = ""
    page_numbers: list[int] = field(default_factory=list)
    # Leading characters duplicated from the previous chunk
    overlap_chars: int = 0
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "content": self.content,
            "start_char": self.start_char,
            "end_char": self.end_char,
            "language": self.language,
            "token_count": self.token_count,
            "section_title": self.section_title,
            "page_numbers": self.page_numbers,
            "overlap_chars": self.overlap_chars,
            "metadata": self.metadata,
        }


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters."""
    strategy: str = "semantic"
    max_chunk_chars: int = 1000
    # Semantic breaks are ignored until a chunk reaches this size
    min_chunk_chars: int = 200
    overlap_chars: int = 100
    semantic_threshold: float = 0.5


@dataclass
class ChunkingResult:
    """Ordered chunks plus aggregate metadata."""
    chunks: list[Chunk]
    strategy: str
    overlap_chars: int

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    @property
    def avg_chunk_size(self) -> float:
        if not self.chunks:
            return 0.0
        return sum(len(c.content) for c in self.chunks) / len(self.chunks)

    @property
    def metadata(self) -> dict:
        return {
            "total_chunks": self.total_chunks,
            "avg_chunk_size": round(self.avg_chunk_size, 1),
            "strategy": self.strategy,
            "overlap_chars": self.overlap_chars,
        }


class Chunker:
    """
    Splits text into overlapping, span-addressed chunks.

    Usage:
        chunker = Chunker(ChunkConfig(strategy="paragraph"))
        result = chunker.chunk(text, document_id, language="ar")
    """

    def __init__(
        self,
        config: Optional[ChunkConfig] = None,
        embed_fn: Optional[Callable[[list[str]], list[list[float]]]] = None,
        normalizer: Optional[ArabicTextNormalizer] = None,
    ):
        """
        Initialize chunker.

        Args:
            config: Chunking parameters
            embed_fn: Batch embedding function used by the semantic strategy.
                Without it, semantic chunking packs sentences by size only.
            normalizer: Text normalizer used for per-chunk language detection
        """
        self.config = config or ChunkConfig()
        self._embed_fn = embed_fn
        self._normalizer = normalizer or ArabicTextNormalizer()

    def chunk(
        self,
        text: str,
        document_id: str,
        language: str = "ar",
        strategy: Optional[str] = None,
        overlap_chars: Optional[int] = None,
        page_offsets: Optional[list[int]] = None,
    ) -> ChunkingResult:
        """
        Split text into chunks.

        Args:
            text: Normalized document text
            document_id: Owning document
            language: Document language, used as the default chunk language
            strategy: Overrides the configured strategy
            overlap_chars: Overrides the configured overlap window
            page_offsets: Character offset of each page start, for page numbers

        Returns:
            ChunkingResult with chunks in index order

        Raises:
            ChunkingError: Empty text, unknown strategy or invalid overlap
        """
        strategy = strategy or self.config.strategy
        overlap = self.config.overlap_chars if overlap_chars is None else overlap_chars

        if not text or not text.strip():
            raise ChunkingError("Cannot chunk empty text")
        if strategy not in STRATEGIES:
            raise ChunkingError(f"Unknown chunking strategy: {strategy}")
        if overlap < 0:
            raise ChunkingError(f"Overlap must be non-negative, got {overlap}")
        if overlap >= self.config.max_chunk_chars:
            raise ChunkingError(
                f"Overlap {overlap} must be smaller than max chunk size {self.config.max_chunk_chars}"
            )

        if strategy == "paragraph":
            units = self._split_units(text, PARAGRAPH_BOUNDARY)
        else:
            units = self._split_units(text, SENTENCE_BOUNDARY)
        units = self._split_oversized(text, units)

        if strategy == "semantic" and self._embed_fn is not None and len(units) > 1:
            try:
                boundaries = self._semantic_boundaries(text, units)
            except EmbeddingError as e:
                logger.warning(f"Semantic boundaries unavailable for {document_id}, packing by size: {e}")
                boundaries = self._packed_boundaries(units)
        else:
            boundaries = self._packed_boundaries(units)

        chunks = self._build_chunks(text, boundaries, document_id, language, overlap, page_offsets)
        logger.info(
            f"Chunked document {document_id} into {len(chunks)} chunks "
            f"(strategy={strategy}, overlap={overlap})"
        )
        return ChunkingResult(chunks=chunks, strategy=strategy, overlap_chars=overlap)

    # =========================================================================
    # Boundary selection
    # =========================================================================

    def _split_units(self, text: str, boundary: re.Pattern) -> list[tuple[int, int]]:
        """Partition text into contiguous spans ending after each boundary match."""
        units = []
        start = 0
        for match in boundary.finditer(text):
            end = match.end()
            if end > start and text[start:end].strip():
                units.append((start, end))
                start = end
        if start < len(text):
            if units and not text[start:].strip():
                units[-1] = (units[-1][0], len(text))
            else:
                units.append((start, len(text)))
        return units

    def _split_oversized(self, text: str, units: list[tuple[int, int]]) -> list[tuple[int, int]]:
        """Break units longer than the maximum at sentence, then word, boundaries."""
        limit = self.config.max_chunk_chars
        result = []
        for start, end in units:
            if end - start <= limit:
                result.append((start, end))
                continue
            pieces = [
                (start + s, start + e)
                for s, e in self._split_units(text[start:end], SENTENCE_BOUNDARY)
            ]
            for piece_start, piece_end in pieces:
                while piece_end - piece_start > limit:
                    cut = text.rfind(" ", piece_start + 1, piece_start + limit)
                    if cut <= piece_start:
                        cut = piece_start + limit
                    else:
                        cut += 1
                    result.append((piece_start, cut))
                    piece_start = cut
                result.append((piece_start, piece_end))
        return result

    def _packed_boundaries(self, units: list[tuple[int, int]]) -> list[int]:
        """Greedily pack consecutive units up to the maximum chunk size."""
        boundaries = [units[0][0]]
        chunk_start = units[0][0]
        for start, end in units[1:]:
            if end - chunk_start > self.config.max_chunk_chars:
                boundaries.append(start)
                chunk_start = start
        return boundaries

    def _semantic_boundaries(self, text: str, units: list[tuple[int, int]]) -> list[int]:
        """Break where neighbouring sentence embeddings diverge, within size limits."""
        vectors = np.array(self._embed_fn([text[s:e] for s, e in units]), dtype=float)
        norms = np.linalg.norm(vectors, axis=1)
        norms[norms == 0] = 1.0
        vectors = vectors / norms[:, None]
        similarities = np.sum(vectors[:-1] * vectors[1:], axis=1)

        boundaries = [units[0][0]]
        chunk_start = units[0][0]
        for i, (start, end) in enumerate(units[1:]):
            size_exceeded = end - chunk_start > self.config.max_chunk_chars
            topic_shift = (
                similarities[i] < self.config.semantic_threshold
                and start - chunk_start >= self.config.min_chunk_chars
            )
            if size_exceeded or topic_shift:
                boundaries.append(start)
                chunk_start = start
        return boundaries

    # =========================================================================
    # Chunk assembly
    # =========================================================================

    def _build_chunks(
        self,
        text: str,
        boundaries: list[int],
        document_id: str,
        language: str,
        overlap: int,
        page_offsets: Optional[list[int]],
    ) -> list[Chunk]:
        # First segment always starts at 0 so leading whitespace is covered
        boundaries = [0] + [b for b in boundaries if b > 0]
        ends = boundaries[1:] + [len(text)]
        headings = self._find_headings(text)
        chars_per_token = SUPPORTED_LANGUAGES.get(language, SUPPORTED_LANGUAGES["ar"])["chars_per_token"]

        chunks = []
        for index, (seg_start, seg_end) in enumerate(zip(boundaries, ends)):
            start = seg_start
            if index > 0 and overlap:
                prev_start = boundaries[index - 1]
                start = self._overlap_start(text, seg_start, max(prev_start, seg_start - overlap))

            content = text[start:seg_end]
            chunks.append(Chunk(
                chunk_id=str(uuid.uuid4()),
                document_id=document_id,
                chunk_index=index,
                content=content,
                start_char=start,
                end_char=seg_end,
                language=self._normalizer.detect_language(content, default=language),
                token_count=max(1, len(content) // chars_per_token),
                section_title=self._section_for(headings, seg_start, seg_end),
                page_numbers=self._pages_for(page_offsets, start, seg_end, len(text)),
                overlap_chars=seg_start - start,
            ))
        return chunks

    def _overlap_start(self, text: str, seg_start: int, window_start: int) -> int:
        """Move the overlap start forward to the next word start inside the window."""
        if window_start >= seg_start:
            return seg_start
        if window_start == 0 or text[window_start - 1].isspace():
            return window_start
        space = text.find(" ", window_start, seg_start)
        if space == -1:
            return window_start
        return space + 1

    def _find_headings(self, text: str) -> list[tuple[int, str]]:
        headings = []
        for pattern in HEADING_PATTERNS:
            for match in pattern.finditer(text):
                headings.append((match.start(1), match.group(1).strip()[:200]))
        headings.sort()
        return headings

    def _section_for(self, headings: list[tuple[int, str]], start: int, end: int) -> str:
        title = ""
        for position, heading in headings:
            if position >= end:
                break
            title = heading
        return title

    def _pages_for(
        self,
        page_offsets: Optional[list[int]],
        start: int,
        end: int,
        text_length: int,
    ) -> list[int]:
        if not page_offsets:
            return []
        pages = []
        for i, page_start in enumerate(page_offsets):
            page_end = page_offsets[i + 1] if i + 1 < len(page_offsets) else text_length
            if page_start < end and page_end > start:
                pages.append(i + 1)
        return pages
