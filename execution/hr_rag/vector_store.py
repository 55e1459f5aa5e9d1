"""
Corpus Stores: Capability Interfaces, In-Memory Index and pgvector

Retrieval depends only on the capability interfaces:
- VectorStore.search(embedding, corpus, filters, threshold, limit)
- LexicalStore.search(text, corpus, language_config, limit, filters)
- DocumentStore CRUD for documents, chunks, embeddings, articles, scenarios

Vector contract: cosine similarity in [-1, 1], only hits with
similarity >= threshold are returned, results are scoped to one corpus,
and every stored or queried vector has exactly `dimensions` components.

Two implementations ship here: InMemoryStore (numpy, used by tests and
small deployments) and PgVectorStore (PostgreSQL + pgvector + FTS).
"""

import os
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import numpy as np

from .arabic_text import ArabicTextNormalizer
from .language_config import OrganizationLanguageConfig, VALID_FTS_CONFIGS
from .models import Article, Document, DocumentStatus, ScenarioMapping

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)

CORPUS_DOCUMENTS = "company_documents"
CORPUS_LABOR_LAW = "labor_law"
CORPUS_SCENARIOS = "scenarios"
CORPORA = (CORPUS_DOCUMENTS, CORPUS_LABOR_LAW, CORPUS_SCENARIOS)


@dataclass
class SearchFilters:
    """Filters applied inside a corpus search."""
    organization_id: Optional[str] = None
    document_ids: Optional[list[str]] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None

    def to_dict(self) -> dict:
        return {
            "organization_id": self.organization_id,
            "document_ids": sorted(self.document_ids) if self.document_ids else None,
            "category": self.category,
            "tags": sorted(self.tags) if self.tags else None,
        }


@dataclass
class RetrievalHit:
    """A single search hit. Ephemeral, never persisted."""
    corpus: str
    document_id: str  # document id, article id or scenario id
    chunk_id: str
    content: str
    title: str = ""
    vector_similarity: Optional[float] = None
    lexical_score: Optional[float] = None
    fused_score: float = 0.0
    language: str = "ar"
    created_at: Optional[datetime] = None
    section_title: str = ""
    page_numbers: list[int] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "corpus": self.corpus,
            "document_id": self.document_id,
            "chunk_id": self.chunk_id,
            "title": self.title,
            "vector_similarity": self.vector_similarity,
            "lexical_score": self.lexical_score,
            "fused_score": self.fused_score,
            "language": self.language,
        }


class VectorStore(ABC):
    """Vector similarity search over one corpus at a time."""

    dimensions: int = 1024

    @abstractmethod
    def search(
        self,
        embedding: list[float],
        corpus: str,
        filters: Optional[SearchFilters],
        threshold: float,
        limit: int,
    ) -> list[RetrievalHit]:
        """Return hits with cosine similarity >= threshold, best first."""


class LexicalStore(ABC):
    """Full-text search over one corpus at a time."""

    @abstractmethod
    def search(
        self,
        text: str,
        corpus: str,
        language_config: OrganizationLanguageConfig,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[RetrievalHit]:
        """Return hits with a lexical score in (0, 1], best first."""


class DocumentStore(ABC):
    """Persistence for documents, chunks, embeddings and the article corpus."""

    @abstractmethod
    def save_document(self, document: Document) -> None:
        """Upsert the document record (status, metadata, history)."""

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def list_documents(
        self,
        organization_id: Optional[str] = None,
        status: Optional[DocumentStatus] = None,
    ) -> list[Document]:
        ...

    @abstractmethod
    def delete_document(self, document_id: str) -> bool:
        ...

    @abstractmethod
    def replace_chunks(self, document: Document, chunks: list, embeddings: Optional[list]) -> None:
        """Atomically swap a document's searchable chunks and embeddings."""

    @abstractmethod
    def upsert_article(self, article: Article, embeddings: list) -> None:
        ...

    @abstractmethod
    def get_article(self, article_id: str) -> Optional[Article]:
        ...

    @abstractmethod
    def list_articles(self, category: Optional[str] = None) -> list[Article]:
        ...

    @abstractmethod
    def upsert_scenario(self, scenario: ScenarioMapping, embedding: Optional[list[float]]) -> None:
        ...


def _check_dimensions(vector, dimensions: int, label: str) -> None:
    if dimensions and len(vector) != dimensions:
        raise ValueError(f"{label} has {len(vector)} dimensions, store expects {dimensions}")


# =============================================================================
# In-memory implementation
# =============================================================================

@dataclass
class _IndexEntry:
    corpus: str
    key: str
    document_id: str
    content: str
    title: str
    language: str
    created_at: datetime
    organization_id: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    vectors: dict = field(default_factory=dict)  # content_type -> np.ndarray (unit length)
    terms: frozenset = frozenset()
    section_title: str = ""
    page_numbers: list[int] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


class InMemoryStore(DocumentStore):
    """
    Thread-safe in-process store and index.

    Use `vector_index` and `lexical_index` for the search capabilities.
    """

    def __init__(self, dimensions: int = 1024, normalizer: Optional[ArabicTextNormalizer] = None):
        self.dimensions = dimensions
        self._normalizer = normalizer or ArabicTextNormalizer()
        self._lock = threading.RLock()
        self._documents: dict[str, Document] = {}
        self._articles: dict[str, Article] = {}
        self._scenarios: dict[str, ScenarioMapping] = {}
        self._entries: dict[str, dict[str, _IndexEntry]] = {corpus: {} for corpus in CORPORA}
        self.vector_index = InMemoryVectorIndex(self)
        self.lexical_index = InMemoryLexicalIndex(self)

    # -- documents ----------------------------------------------------------

    def save_document(self, document: Document) -> None:
        with self._lock:
            document.updated_at = datetime.now()
            self._documents[document.document_id] = document

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            return self._documents.get(document_id)

    def list_documents(self, organization_id=None, status=None) -> list[Document]:
        with self._lock:
            docs = list(self._documents.values())
        if organization_id:
            docs = [d for d in docs if d.organization_id == organization_id]
        if status:
            docs = [d for d in docs if d.status == status]
        return sorted(docs, key=lambda d: d.created_at)

    def delete_document(self, document_id: str) -> bool:
        with self._lock:
            existed = self._documents.pop(document_id, None) is not None
            entries = self._entries[CORPUS_DOCUMENTS]
            for key in [k for k, e in entries.items() if e.document_id == document_id]:
                del entries[key]
        return existed

    def replace_chunks(self, document: Document, chunks: list, embeddings: Optional[list]) -> None:
        vectors_by_chunk: dict[str, dict] = {}
        for emb in embeddings or []:
            _check_dimensions(emb.vector, self.dimensions, f"Embedding for chunk {emb.owner_id}")
            vectors_by_chunk.setdefault(emb.owner_id, {})[emb.content_type] = _unit(emb.vector)

        new_entries = {}
        for chunk in chunks:
            new_entries[chunk.chunk_id] = _IndexEntry(
                corpus=CORPUS_DOCUMENTS,
                key=chunk.chunk_id,
                document_id=document.document_id,
                content=chunk.content,
                title=document.filename,
                language=chunk.language,
                created_at=document.created_at,
                organization_id=document.organization_id,
                category=document.category,
                tags=list(document.tags),
                vectors=vectors_by_chunk.get(chunk.chunk_id, {}),
                terms=frozenset(self._normalizer.stems(chunk.content)),
                section_title=chunk.section_title,
                page_numbers=list(chunk.page_numbers),
                metadata={"chunk_index": chunk.chunk_index},
            )

        with self._lock:
            entries = self._entries[CORPUS_DOCUMENTS]
            for key in [k for k, e in entries.items() if e.document_id == document.document_id]:
                del entries[key]
            entries.update(new_entries)

    # -- articles and scenarios ---------------------------------------------

    def upsert_article(self, article: Article, embeddings: list) -> None:
        vectors = {}
        for emb in embeddings:
            _check_dimensions(emb.vector, self.dimensions, f"Embedding for article {article.article_number}")
            vectors[emb.content_type] = _unit(emb.vector)

        text = " ".join([article.title_ar, article.content_ar, article.title_en,
                         article.content_en, " ".join(article.keywords)])
        entry = _IndexEntry(
            corpus=CORPUS_LABOR_LAW,
            key=article.article_id,
            document_id=article.article_id,
            content=article.content_ar,
            title=article.title_ar,
            language="ar",
            created_at=article.created_at,
            category=article.category,
            vectors=vectors,
            terms=frozenset(self._normalizer.stems(text)),
            metadata={
                "article_number": article.article_number,
                "law_source": article.law_source,
                "title_en": article.title_en,
                "content_en": article.content_en,
                "subcategory": article.subcategory,
                "version": article.version,
            },
        )
        with self._lock:
            self._articles[article.article_id] = article
            self._entries[CORPUS_LABOR_LAW][article.article_id] = entry

    def get_article(self, article_id: str) -> Optional[Article]:
        with self._lock:
            return self._articles.get(article_id)

    def find_article(self, article_number: str) -> Optional[Article]:
        with self._lock:
            for article in self._articles.values():
                if article.article_number == article_number:
                    return article
        return None

    def list_articles(self, category: Optional[str] = None) -> list[Article]:
        with self._lock:
            articles = list(self._articles.values())
        if category:
            articles = [a for a in articles if a.category == category]
        return articles

    def upsert_scenario(self, scenario: ScenarioMapping, embedding: Optional[list[float]]) -> None:
        vectors = {}
        if embedding is not None:
            _check_dimensions(embedding, self.dimensions, f"Embedding for scenario {scenario.name_en}")
            vectors["combined"] = _unit(embedding)
        text = " ".join([scenario.name_ar, scenario.name_en, scenario.description, " ".join(scenario.keywords)])
        entry = _IndexEntry(
            corpus=CORPUS_SCENARIOS,
            key=scenario.scenario_id,
            document_id=scenario.scenario_id,
            content=scenario.description,
            title=scenario.name_ar,
            language=self._normalizer.detect_language(scenario.description, default="ar"),
            created_at=scenario.created_at,
            category=scenario.category,
            vectors=vectors,
            terms=frozenset(self._normalizer.stems(text)),
            metadata={
                "name_en": scenario.name_en,
                "article_numbers": list(scenario.article_numbers),
                "priority": scenario.priority,
            },
        )
        with self._lock:
            self._scenarios[scenario.scenario_id] = scenario
            self._entries[CORPUS_SCENARIOS][scenario.scenario_id] = entry

    # -- search support -----------------------------------------------------

    def _candidates(self, corpus: str, filters: Optional[SearchFilters]) -> list[_IndexEntry]:
        if corpus not in self._entries:
            raise ValueError(f"Unknown corpus: {corpus}")
        with self._lock:
            entries = list(self._entries[corpus].values())
        if not filters:
            return entries
        result = []
        for entry in entries:
            if corpus == CORPUS_DOCUMENTS:
                if filters.organization_id and entry.organization_id != filters.organization_id:
                    continue
                if filters.document_ids and entry.document_id not in filters.document_ids:
                    continue
                if filters.tags and not set(filters.tags) & set(entry.tags):
                    continue
            elif filters.category and entry.category != filters.category:
                continue
            result.append(entry)
        return result


class InMemoryVectorIndex(VectorStore):
    """Cosine similarity over the in-memory entries (numpy)."""

    def __init__(self, store: InMemoryStore):
        self._store = store
        self.dimensions = store.dimensions

    def search(self, embedding, corpus, filters, threshold, limit) -> list[RetrievalHit]:
        _check_dimensions(embedding, self.dimensions, "Query embedding")
        query = _unit(embedding)
        scored = []
        for entry in self._store._candidates(corpus, filters):
            if not entry.vectors:
                continue
            content_type, similarity = max(
                ((ct, float(np.dot(query, vec))) for ct, vec in entry.vectors.items()),
                key=lambda item: item[1],
            )
            if similarity >= threshold:
                scored.append((similarity, content_type, entry))

        scored.sort(key=lambda item: (-item[0], item[2].key))
        return [
            _hit_from_entry(entry, vector_similarity=similarity, matched=content_type)
            for similarity, content_type, entry in scored[:limit]
        ]


class InMemoryLexicalIndex(LexicalStore):
    """Stem-overlap scoring: share of query terms found in the entry."""

    def __init__(self, store: InMemoryStore):
        self._store = store

    def search(self, text, corpus, language_config, limit, filters=None) -> list[RetrievalHit]:
        terms = set(self._store._normalizer.stems(text))
        if not terms:
            return []
        scored = []
        for entry in self._store._candidates(corpus, filters):
            matched = len(terms & entry.terms)
            if matched:
                scored.append((matched / len(terms), entry))

        scored.sort(key=lambda item: (-item[0], item[1].key))
        return [_hit_from_entry(entry, lexical_score=score) for score, entry in scored[:limit]]


def _unit(vector) -> np.ndarray:
    arr = np.asarray(vector, dtype=float)
    norm = np.linalg.norm(arr)
    return arr / norm if norm else arr


def _hit_from_entry(entry: _IndexEntry, vector_similarity=None, lexical_score=None, matched=None) -> RetrievalHit:
    metadata = dict(entry.metadata)
    if entry.category:
        metadata["category"] = entry.category
    if matched:
        metadata["matched_content_type"] = matched
    return RetrievalHit(
        corpus=entry.corpus,
        document_id=entry.document_id,
        chunk_id=entry.key,
        content=entry.content,
        title=entry.title,
        vector_similarity=vector_similarity,
        lexical_score=lexical_score,
        language=entry.language,
        created_at=entry.created_at,
        section_title=entry.section_title,
        page_numbers=list(entry.page_numbers),
        metadata=metadata,
    )


# =============================================================================
# PostgreSQL + pgvector implementation
# =============================================================================

@dataclass
class VectorStoreConfig:
    """Configuration for the PostgreSQL store."""
    connection_string: Optional[str] = None
    embedding_dimensions: int = 1024
    pool_min_connections: int = 2
    pool_max_connections: int = 20


SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS documents (
    id UUID PRIMARY KEY,
    organization_id TEXT NOT NULL,
    record JSONB NOT NULL,
    status TEXT NOT NULL,
    filename TEXT NOT NULL,
    category TEXT,
    tags TEXT[] DEFAULT '{{}}',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS document_chunks (
    id UUID PRIMARY KEY,
    document_id UUID NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    chunk_index INT NOT NULL,
    content TEXT NOT NULL,
    start_char INT NOT NULL,
    end_char INT NOT NULL,
    language TEXT NOT NULL,
    section_title TEXT DEFAULT '',
    page_numbers INT[] DEFAULT '{{}}',
    tsv TSVECTOR,
    UNIQUE (document_id, chunk_index)
);
CREATE INDEX IF NOT EXISTS idx_chunks_tsv ON document_chunks USING GIN (tsv);

CREATE TABLE IF NOT EXISTS chunk_embeddings (
    chunk_id UUID NOT NULL REFERENCES document_chunks(id) ON DELETE CASCADE,
    content_type TEXT NOT NULL,
    model TEXT,
    embedding vector({dims}) NOT NULL,
    PRIMARY KEY (chunk_id, content_type)
);
CREATE INDEX IF NOT EXISTS idx_chunk_embeddings_hnsw
    ON chunk_embeddings USING hnsw (embedding vector_cosine_ops);

CREATE TABLE IF NOT EXISTS law_articles (
    id UUID PRIMARY KEY,
    article_number TEXT UNIQUE NOT NULL,
    record JSONB NOT NULL,
    category TEXT,
    content_ar TEXT NOT NULL,
    title_ar TEXT NOT NULL,
    version INT NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL,
    tsv TSVECTOR
);
CREATE INDEX IF NOT EXISTS idx_articles_tsv ON law_articles USING GIN (tsv);

CREATE TABLE IF NOT EXISTS article_embeddings (
    article_id UUID NOT NULL REFERENCES law_articles(id) ON DELETE CASCADE,
    content_type TEXT NOT NULL,
    model TEXT,
    embedding vector({dims}) NOT NULL,
    PRIMARY KEY (article_id, content_type)
);

CREATE TABLE IF NOT EXISTS scenario_mappings (
    id UUID PRIMARY KEY,
    record JSONB NOT NULL,
    category TEXT,
    description TEXT NOT NULL,
    name_ar TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    embedding vector({dims}),
    tsv TSVECTOR
);

CREATE TABLE IF NOT EXISTS response_cache (
    cache_key TEXT PRIMARY KEY,
    payload JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    expires_at TIMESTAMPTZ NOT NULL
);
"""

# Per-corpus SQL fragments: (select list, from clause, vector column, tsv column)
CORPUS_SQL = {
    CORPUS_DOCUMENTS: {
        "select": "c.id::text AS key, c.document_id::text AS document_id, c.content, d.filename AS title, "
                  "c.language, d.created_at, c.section_title, c.page_numbers, d.category",
        "vector_from": "chunk_embeddings e JOIN document_chunks c ON c.id = e.chunk_id "
                       "JOIN documents d ON d.id = c.document_id",
        "lexical_from": "document_chunks c JOIN documents d ON d.id = c.document_id",
        "tsv": "c.tsv",
    },
    CORPUS_LABOR_LAW: {
        "select": "a.id::text AS key, a.id::text AS document_id, a.content_ar AS content, a.title_ar AS title, "
                  "'ar' AS language, a.created_at, '' AS section_title, '{}'::int[] AS page_numbers, a.category, "
                  "a.record",
        "vector_from": "article_embeddings e JOIN law_articles a ON a.id = e.article_id",
        "lexical_from": "law_articles a",
        "tsv": "a.tsv",
    },
    CORPUS_SCENARIOS: {
        "select": "s.id::text AS key, s.id::text AS document_id, s.description AS content, s.name_ar AS title, "
                  "'ar' AS language, s.created_at, '' AS section_title, '{}'::int[] AS page_numbers, s.category, "
                  "s.record",
        "vector_from": "scenario_mappings s",
        "lexical_from": "scenario_mappings s",
        "tsv": "s.tsv",
    },
}


class PgVectorStore(DocumentStore):
    """
    PostgreSQL + pgvector store.

    Uses a ThreadedConnectionPool so concurrent ingestion workers and
    parallel corpus searches each get their own connection. All writes are
    upserts keyed by stable identifiers.
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        self.config = config or VectorStoreConfig()
        self.dimensions = self.config.embedding_dimensions
        self._connection_string = self.config.connection_string or os.getenv("DATABASE_URL")
        self._pool = None
        self.vector_index = PgVectorIndex(self)
        self.lexical_index = PgLexicalIndex(self)

    def connect(self) -> None:
        """Create the connection pool."""
        if psycopg2 is None:
            raise ImportError("psycopg2 not installed. Run: pip install psycopg2-binary")
        if not self._connection_string:
            raise ValueError("DATABASE_URL is not configured")
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=self.config.pool_min_connections,
            maxconn=self.config.pool_max_connections,
            dsn=self._connection_string,
        )
        logger.info(
            f"Connection pool initialized (min={self.config.pool_min_connections}, "
            f"max={self.config.pool_max_connections})"
        )

    def initialize_schema(self) -> None:
        sql = SCHEMA_SQL.format(dims=self.dimensions)

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql)
            conn.commit()

        self._execute_with_retry(_op, "initialize_schema")

    def close(self) -> None:
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on a stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.
        """
        if self._pool is None:
            self.connect()
        for attempt in range(2):
            conn = self._pool.getconn()
            try:
                result = operation(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, retrying: {e}")
                    self._pool.putconn(conn, close=True)
                    conn = None
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                raise
            finally:
                if conn is not None:
                    self._pool.putconn(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    # -- documents ----------------------------------------------------------

    def save_document(self, document: Document) -> None:
        document.updated_at = datetime.now()
        record = document.to_dict(include_text=True)
        record.pop("chunks", None)
        record.pop("embeddings", None)
        record["processing_history"] = [r.to_dict() for r in document.processing_history]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO documents (id, organization_id, record, status, filename, category,
                                           tags, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, now())
                    ON CONFLICT (id) DO UPDATE SET
                        record = EXCLUDED.record, status = EXCLUDED.status,
                        category = EXCLUDED.category, tags = EXCLUDED.tags, updated_at = now()
                    """,
                    (document.document_id, document.organization_id, json.dumps(record),
                     document.status.value, document.filename, document.category,
                     document.tags, document.created_at),
                )
            conn.commit()

        self._execute_with_retry(_op, "save_document")

    def get_document(self, document_id: str) -> Optional[Document]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT record FROM documents WHERE id = %s", (document_id,))
                row = cur.fetchone()
            return _document_from_record(row[0]) if row else None

        return self._execute_with_retry(_op, "get_document")

    def list_documents(self, organization_id=None, status=None) -> list[Document]:
        clauses, params = [], []
        if organization_id:
            clauses.append("organization_id = %s")
            params.append(organization_id)
        if status:
            clauses.append("status = %s")
            params.append(DocumentStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"SELECT record FROM documents {where} ORDER BY created_at", params)
                return [_document_from_record(row[0]) for row in cur.fetchall()]

        return self._execute_with_retry(_op, "list_documents")

    def delete_document(self, document_id: str) -> bool:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("DELETE FROM documents WHERE id = %s", (document_id,))
                deleted = cur.rowcount > 0
            conn.commit()
            return deleted

        return self._execute_with_retry(_op, "delete_document")

    def replace_chunks(self, document: Document, chunks: list, embeddings: Optional[list]) -> None:
        for emb in embeddings or []:
            _check_dimensions(emb.vector, self.dimensions, f"Embedding for chunk {emb.owner_id}")
        fts = {c.chunk_id: OrganizationLanguageConfig.for_language(c.language).fts_language for c in chunks}

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("DELETE FROM document_chunks WHERE document_id = %s", (document.document_id,))
                psycopg2.extras.execute_batch(cur, """
                    INSERT INTO document_chunks (id, document_id, chunk_index, content, start_char,
                        end_char, language, section_title, page_numbers, tsv)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, to_tsvector(%s::regconfig, %s))
                """, [
                    (c.chunk_id, document.document_id, c.chunk_index, c.content, c.start_char,
                     c.end_char, c.language, c.section_title, c.page_numbers, fts[c.chunk_id], c.content)
                    for c in chunks
                ])
                if embeddings:
                    psycopg2.extras.execute_batch(cur, """
                        INSERT INTO chunk_embeddings (chunk_id, content_type, model, embedding)
                        VALUES (%s, %s, %s, %s::vector)
                    """, [(e.owner_id, e.content_type, e.model, e.vector) for e in embeddings])
            conn.commit()

        self._execute_with_retry(_op, "replace_chunks")

    # -- articles and scenarios ---------------------------------------------

    def upsert_article(self, article: Article, embeddings: list) -> None:
        for emb in embeddings:
            _check_dimensions(emb.vector, self.dimensions, f"Embedding for article {article.article_number}")
        lexical_text = " ".join([article.title_ar, article.content_ar, " ".join(article.keywords)])
        english_text = " ".join([article.title_en, article.content_en])

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO law_articles (id, article_number, record, category, content_ar, title_ar,
                                              version, created_at, tsv)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s,
                            to_tsvector('arabic', %s) || to_tsvector('english', %s))
                    ON CONFLICT (id) DO UPDATE SET
                        record = EXCLUDED.record, category = EXCLUDED.category,
                        content_ar = EXCLUDED.content_ar, title_ar = EXCLUDED.title_ar,
                        version = EXCLUDED.version, tsv = EXCLUDED.tsv
                    """,
                    (article.article_id, article.article_number, json.dumps(article.to_dict()),
                     article.category, article.content_ar, article.title_ar, article.version,
                     article.created_at, lexical_text, english_text),
                )
                cur.execute("DELETE FROM article_embeddings WHERE article_id = %s", (article.article_id,))
                psycopg2.extras.execute_batch(cur, """
                    INSERT INTO article_embeddings (article_id, content_type, model, embedding)
                    VALUES (%s, %s, %s, %s::vector)
                """, [(article.article_id, e.content_type, e.model, e.vector) for e in embeddings])
            conn.commit()

        self._execute_with_retry(_op, "upsert_article")

    def get_article(self, article_id: str) -> Optional[Article]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT record FROM law_articles WHERE id = %s", (article_id,))
                row = cur.fetchone()
            return _article_from_record(row[0]) if row else None

        return self._execute_with_retry(_op, "get_article")

    def list_articles(self, category: Optional[str] = None) -> list[Article]:
        def _op(conn):
            with conn.cursor() as cur:
                if category:
                    cur.execute("SELECT record FROM law_articles WHERE category = %s", (category,))
                else:
                    cur.execute("SELECT record FROM law_articles")
                return [_article_from_record(row[0]) for row in cur.fetchall()]

        return self._execute_with_retry(_op, "list_articles")

    def upsert_scenario(self, scenario: ScenarioMapping, embedding: Optional[list[float]]) -> None:
        if embedding is not None:
            _check_dimensions(embedding, self.dimensions, f"Embedding for scenario {scenario.name_en}")
        lexical_text = " ".join([scenario.name_ar, scenario.description, " ".join(scenario.keywords)])
        english_text = scenario.name_en

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO scenario_mappings (id, record, category, description, name_ar, created_at,
                                                   embedding, tsv)
                    VALUES (%s, %s, %s, %s, %s, %s, %s::vector,
                            to_tsvector('arabic', %s) || to_tsvector('english', %s))
                    ON CONFLICT (id) DO UPDATE SET
                        record = EXCLUDED.record, category = EXCLUDED.category,
                        description = EXCLUDED.description, name_ar = EXCLUDED.name_ar,
                        embedding = EXCLUDED.embedding, tsv = EXCLUDED.tsv
                    """,
                    (scenario.scenario_id, json.dumps(scenario.to_dict()), scenario.category,
                     scenario.description, scenario.name_ar, scenario.created_at, embedding, lexical_text, english_text),
                )
            conn.commit()

        self._execute_with_retry(_op, "upsert_scenario")

    # -- search support -----------------------------------------------------

    def _filter_sql(self, corpus: str, filters: Optional[SearchFilters]) -> tuple[str, list]:
        clauses, params = [], []
        if filters:
            if corpus == CORPUS_DOCUMENTS:
                if filters.organization_id:
                    clauses.append("d.organization_id = %s")
                    params.append(filters.organization_id)
                if filters.document_ids:
                    clauses.append("c.document_id = ANY(%s::uuid[])")
                    params.append(list(filters.document_ids))
                if filters.tags:
                    clauses.append("d.tags && %s")
                    params.append(list(filters.tags))
            elif filters.category:
                alias = "a" if corpus == CORPUS_LABOR_LAW else "s"
                clauses.append(f"{alias}.category = %s")
                params.append(filters.category)
        return "".join(f" AND {c}" for c in clauses), params

    def _fetch_hits(self, sql: str, params: list, corpus: str, score_field: str) -> list[RetrievalHit]:
        def _op(conn):
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [_hit_from_row(corpus, dict(row), score_field) for row in rows]

        return self._execute_with_retry(_op, f"{corpus}_{score_field}_search")


class PgVectorIndex(VectorStore):
    """pgvector cosine search (`<=>` distance, similarity = 1 - distance)."""

    def __init__(self, store: PgVectorStore):
        self._store = store
        self.dimensions = store.dimensions

    def search(self, embedding, corpus, filters, threshold, limit) -> list[RetrievalHit]:
        _check_dimensions(embedding, self.dimensions, "Query embedding")
        parts = CORPUS_SQL[corpus]
        where, filter_params = self._store._filter_sql(corpus, filters)
        vector_col = "s.embedding" if corpus == CORPUS_SCENARIOS else "e.embedding"
        content_type = "'combined'" if corpus == CORPUS_SCENARIOS else "e.content_type"
        # Articles carry one embedding per content type; keep the closest per key
        sql = f"""
            SELECT * FROM (
                SELECT DISTINCT ON (key) {parts['select']}, {content_type} AS matched_content_type,
                       1 - ({vector_col} <=> %s::vector) AS vector_similarity
                FROM {parts['vector_from']}
                WHERE {vector_col} IS NOT NULL{where}
                  AND 1 - ({vector_col} <=> %s::vector) >= %s
                ORDER BY key, {vector_col} <=> %s::vector
            ) best
            ORDER BY vector_similarity DESC, key
            LIMIT %s
        """
        params = [embedding] + filter_params + [embedding, threshold, embedding, limit]
        return self._store._fetch_hits(sql, params, corpus, "vector_similarity")


class PgLexicalIndex(LexicalStore):
    """PostgreSQL FTS with ts_rank_cd normalized into [0, 1)."""

    def __init__(self, store: PgVectorStore):
        self._store = store

    def search(self, text, corpus, language_config, limit, filters=None) -> list[RetrievalHit]:
        fts_language = language_config.fts_language
        # Validate fts_language against whitelist to prevent SQL injection
        if fts_language not in VALID_FTS_CONFIGS:
            logger.warning(f"Invalid FTS language '{fts_language}', falling back to 'arabic'")
            fts_language = "arabic"

        parts = CORPUS_SQL[corpus]
        where, filter_params = self._store._filter_sql(corpus, filters)
        # Normalization flag 32 maps rank to rank / (rank + 1)
        sql = f"""
            SELECT {parts['select']},
                   ts_rank_cd({parts['tsv']}, plainto_tsquery('{fts_language}', %s), 32) AS lexical_score
            FROM {parts['lexical_from']}
            WHERE {parts['tsv']} @@ plainto_tsquery('{fts_language}', %s){where}
            ORDER BY lexical_score DESC
            LIMIT %s
        """
        params = [text, text] + filter_params + [limit]
        return self._store._fetch_hits(sql, params, corpus, "lexical_score")


def _hit_from_row(corpus: str, row: dict, score_field: str) -> RetrievalHit:
    record = row.pop("record", None) or {}
    if isinstance(record, str):
        record = json.loads(record)
    metadata = {"category": row.get("category")}
    if row.get("matched_content_type"):
        metadata["matched_content_type"] = row["matched_content_type"]
    if corpus == CORPUS_LABOR_LAW:
        metadata.update({
            "article_number": record.get("article_number"),
            "law_source": record.get("law_source"),
            "title_en": record.get("title_en"),
            "content_en": record.get("content_en"),
            "subcategory": record.get("subcategory"),
            "version": record.get("version"),
        })
    elif corpus == CORPUS_SCENARIOS:
        metadata.update({
            "name_en": record.get("name_en"),
            "article_numbers": record.get("article_numbers", []),
            "priority": record.get("priority"),
        })
    score = float(row[score_field])
    return RetrievalHit(
        corpus=corpus,
        document_id=row["document_id"],
        chunk_id=row["key"],
        content=row["content"],
        title=row.get("title") or "",
        vector_similarity=score if score_field == "vector_similarity" else None,
        lexical_score=score if score_field == "lexical_score" else None,
        language=row.get("language") or "ar",
        created_at=row.get("created_at"),
        section_title=row.get("section_title") or "",
        page_numbers=list(row.get("page_numbers") or []),
        metadata=metadata,
    )


def _document_from_record(record) -> Document:
    if isinstance(record, str):
        record = json.loads(record)
    from .models import ProcessingRecord, StageRecord

    history = []
    for item in record.get("processing_history", []):
        history.append(ProcessingRecord(
            entry_status=item["entry_status"],
            record_id=item["record_id"],
            started_at=datetime.fromisoformat(item["started_at"]),
            completed_at=datetime.fromisoformat(item["completed_at"]) if item.get("completed_at") else None,
            final_status=item.get("final_status"),
            stages=[
                StageRecord(stage=s["stage"], outcome=s["outcome"], duration_ms=s["duration_ms"],
                            started_at=datetime.fromisoformat(s["started_at"]), detail=s.get("detail", ""))
                for s in item.get("stages", [])
            ],
            error=item.get("error"),
        ))
    return Document(
        document_id=record["document_id"],
        organization_id=record["organization_id"],
        filename=record["filename"],
        mime_type=record["mime_type"],
        size_bytes=record["size_bytes"],
        uploaded_by=record.get("uploaded_by", ""),
        language=record.get("language", "ar"),
        category=record.get("category", "general"),
        tags=record.get("tags", []),
        status=DocumentStatus(record["status"]),
        storage_path=record.get("storage_path", ""),
        created_at=datetime.fromisoformat(record["created_at"]),
        updated_at=datetime.fromisoformat(record["updated_at"]),
        text=record.get("text", ""),
        metadata=record.get("metadata", {}),
        processing_history=history,
        error=record.get("error"),
    )


def _article_from_record(record) -> Article:
    if isinstance(record, str):
        record = json.loads(record)
    from .models import ArticleRevision

    return Article(
        article_id=record["article_id"],
        article_number=record["article_number"],
        title_ar=record["title_ar"],
        title_en=record["title_en"],
        content_ar=record["content_ar"],
        content_en=record["content_en"],
        category=record.get("category", "general"),
        subcategory=record.get("subcategory", ""),
        law_source=record.get("law_source", ""),
        keywords=record.get("keywords", []),
        version=record.get("version", 1),
        created_at=datetime.fromisoformat(record["created_at"]),
        revisions=[
            ArticleRevision(version=r["version"], changed_fields=r["changed_fields"],
                            updated_at=datetime.fromisoformat(r["updated_at"]), note=r.get("note", ""))
            for r in record.get("revisions", [])
        ],
    )
