"""
Pipeline Construction

Builds every service once, from environment settings, and hands each
orchestrator its collaborators. The ingestion and retrieval orchestrators
share the store, quota manager, metrics collector and response cache of
the Pipeline that created them; nothing is cached in module state.

Environment (loaded through python-dotenv):
    DATABASE_URL                 PostgreSQL + pgvector DSN; in-memory store when unset
    EMBEDDING_PROVIDER           voyage | cohere | local
    LLM_MODEL, LLM_BASE_URL      OpenAI-compatible chat endpoint
    RESPONSE_CACHE_TTL_SECONDS   Response cache TTL
    MAX_UPLOAD_MB                Security screen size ceiling
    INGESTION_WORKERS            Concurrent documents
    RETRIEVAL_TIMEOUT_SECONDS    Per-request retrieval fan-out timeout
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .arabic_text import ArabicTextNormalizer
from .articles import ArticleIngestor
from .cache import CacheConfig, InMemoryCacheBackend, PgCacheBackend, ResponseCache
from .chunker import ChunkConfig, Chunker
from .document_parser import TextExtractor
from .embeddings import ARTICLE_POLICY, DOCUMENT_POLICY, EmbeddingGenerator, get_embedding_service
from .generation import GeneratorConfig, OpenAIGenerator
from .ingestion import IngestionConfig, IngestionOrchestrator
from .metrics import MetricsCollector
from .orchestrator import RetrievalOrchestrator
from .query_analyzer import QueryAnalyzer
from .quotas import QuotaManager
from .ranker import ResultRanker
from .retriever import HybridRetriever, RetrievalConfig
from .security import SecurityConfig, SecurityValidator
from .vector_store import InMemoryStore, PgVectorStore, VectorStoreConfig

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class PipelineSettings:
    """Deployment settings for the whole pipeline."""
    database_url: Optional[str] = None
    embedding_provider: str = "voyage"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: Optional[str] = None
    response_cache_ttl_seconds: int = 3600
    max_upload_mb: float = 50
    ingestion_workers: int = 4
    retrieval_timeout_seconds: float = 10.0
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    chunking: ChunkConfig = field(default_factory=ChunkConfig)

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        load_dotenv()
        settings = cls(
            database_url=os.getenv("DATABASE_URL") or None,
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "voyage"),
            llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            llm_base_url=os.getenv("LLM_BASE_URL") or None,
            response_cache_ttl_seconds=_env_int("RESPONSE_CACHE_TTL_SECONDS", 3600),
            max_upload_mb=_env_float("MAX_UPLOAD_MB", 50),
            ingestion_workers=_env_int("INGESTION_WORKERS", 4),
            retrieval_timeout_seconds=_env_float("RETRIEVAL_TIMEOUT_SECONDS", 10.0),
        )
        settings.retrieval.timeout_seconds = settings.retrieval_timeout_seconds
        return settings


@dataclass
class Pipeline:
    """Shared services plus the orchestrators built on them."""
    store: object
    embedding_service: object
    quota_manager: QuotaManager
    metrics: MetricsCollector
    response_cache: ResponseCache
    ingestion: IngestionOrchestrator
    articles: ArticleIngestor
    retrieval: RetrievalOrchestrator

    def close(self):
        if hasattr(self.store, "close"):
            self.store.close()


def build_store(settings: PipelineSettings, dimensions: int):
    """PgVectorStore when DATABASE_URL is configured, otherwise the in-memory store."""
    if settings.database_url:
        store = PgVectorStore(VectorStoreConfig(
            connection_string=settings.database_url,
            embedding_dimensions=dimensions,
        ))
        store.connect()
        store.initialize_schema()
        logger.info("Using PostgreSQL + pgvector store")
        return store
    logger.info("DATABASE_URL not set, using in-memory store")
    return InMemoryStore(dimensions=dimensions)


def build_pipeline(
    settings: Optional[PipelineSettings] = None,
    embedding_service=None,
    generator=None,
    store=None,
) -> Pipeline:
    """
    Construct every service and both orchestrators.

    Args:
        settings: Pipeline settings (defaults to PipelineSettings.from_env())
        embedding_service: Pre-built embedding provider (skips the factory)
        generator: Pre-built answer generator (skips the OpenAI generator)
        store: Pre-built store (skips build_store)

    Returns:
        Pipeline
    """
    settings = settings or PipelineSettings.from_env()
    normalizer = ArabicTextNormalizer()

    embedding_service = embedding_service or get_embedding_service(provider=settings.embedding_provider)
    store = store or build_store(settings, embedding_service.dimensions)

    quota_manager = QuotaManager(document_store=store)
    metrics = MetricsCollector()
    cache_config = CacheConfig(ttl_seconds=settings.response_cache_ttl_seconds)
    cache_backend = (
        PgCacheBackend(store) if isinstance(store, PgVectorStore)
        else InMemoryCacheBackend(max_entries=cache_config.max_entries)
    )
    response_cache = ResponseCache(cache_backend, cache_config)

    document_embedder = EmbeddingGenerator(embedding_service, DOCUMENT_POLICY)
    ingestion = IngestionOrchestrator(
        store=store,
        validator=SecurityValidator(SecurityConfig(max_file_size_mb=settings.max_upload_mb)),
        extractor=TextExtractor(),
        chunker=Chunker(settings.chunking, embed_fn=document_embedder.embed_texts, normalizer=normalizer),
        embedder=document_embedder,
        config=IngestionConfig(max_workers=settings.ingestion_workers),
        quota_manager=quota_manager,
        metrics=metrics,
        response_cache=response_cache,
        normalizer=normalizer,
    )

    articles = ArticleIngestor(store, EmbeddingGenerator(embedding_service, ARTICLE_POLICY))

    generator_config = GeneratorConfig(model=settings.llm_model, base_url=settings.llm_base_url)
    retrieval = RetrievalOrchestrator(
        analyzer=QueryAnalyzer(normalizer),
        embedder=document_embedder,
        retriever=HybridRetriever(store.vector_index, store.lexical_index, settings.retrieval),
        ranker=ResultRanker(),
        generator=generator or OpenAIGenerator(generator_config),
        cache=response_cache,
        quota_manager=quota_manager,
        metrics=metrics,
        generator_config=generator_config,
    )

    return Pipeline(
        store=store,
        embedding_service=embedding_service,
        quota_manager=quota_manager,
        metrics=metrics,
        response_cache=response_cache,
        ingestion=ingestion,
        articles=articles,
        retrieval=retrieval,
    )


def build_ingestion_orchestrator(settings: Optional[PipelineSettings] = None) -> IngestionOrchestrator:
    return build_pipeline(settings).ingestion


def build_article_ingestor(settings: Optional[PipelineSettings] = None) -> ArticleIngestor:
    return build_pipeline(settings).articles


def build_retrieval_orchestrator(settings: Optional[PipelineSettings] = None) -> RetrievalOrchestrator:
    return build_pipeline(settings).retrieval


# CLI for testing
if __name__ == "__main__":
    import json

    logging.basicConfig(level=logging.INFO)
    settings = PipelineSettings.from_env()
    pipeline = build_pipeline(settings)
    print(f"Store: {type(pipeline.store).__name__}")
    print(f"Embeddings: {type(pipeline.embedding_service).__name__} ({pipeline.embedding_service.dimensions} dims)")
    print(json.dumps(pipeline.metrics.get_metrics_dict(), indent=2, default=str))
    pipeline.close()
