"""
Embedding Service for the HR RAG Pipeline

Provides embeddings via Voyage AI (voyage-multilingual-2), Cohere
(embed-multilingual-v3.0) or a local sentence-transformers model.
Supports batching with inter-batch throttling, caching, cancellation and
different input types (documents vs queries).

Architecture:
    BaseEmbeddingService  -- shared caching, batching, embed_documents, embed_query
        CohereEmbeddingService    -- Cohere embed-multilingual-v3.0 provider
        VoyageEmbeddingService    -- Voyage AI voyage-multilingual-2 provider
    LocalEmbeddingService -- local sentence-transformers (no caching needed)
    EmbeddingGenerator    -- per-chunk / per-content-type vectors under a policy
"""

import os
import json
import time
import uuid
import hashlib
import logging
import threading
from typing import Optional, Union
from dataclasses import dataclass, field
from pathlib import Path

from .errors import EmbeddingError, OperationCancelled

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "voyage"  # "voyage", "cohere" or "local"
    model: str = "voyage-multilingual-2"
    dimensions: int = 1024
    batch_size: int = 64
    max_tokens_per_batch: int = 100000  # Conservative limit (Voyage max: 120K)
    chars_per_token: float = 1.5  # Voyage tokenizes Arabic aggressively
    batch_delay_seconds: float = 0.1  # Pause between batches (rate limits)
    cache_dir: Optional[str] = None
    use_cache: bool = True


class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Provides shared functionality:
    - Batched embedding with progress logging and inter-batch delay
    - Cooperative cancellation between batches
    - Memory and file-based caching
    - Document vs query input type distinction

    Subclasses only need to implement:
    - _init_client(): Initialize the provider-specific API client

    And set these class attributes:
    - _provider_name: Human-readable provider name for error messages
    - _env_var_name: Environment variable name for the API key
    - _doc_input_type: Input type string for document embeddings
    - _query_input_type: Input type string for query embeddings
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""
    _doc_input_type: str = "document"
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None, client=None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
            client: Pre-built provider client (skips environment lookup)
        """
        self.config = config or EmbeddingConfig()
        self._client = client
        self._cache = {}
        self._cache_lock = threading.Lock()

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        if self._client is None:
            self._init_client()

    def _init_client(self):
        """Initialize the provider-specific API client. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _create_batches(self, texts: list[str]) -> list[list[str]]:
        """Split texts into batches respecting both item count and token limits."""
        batches = []
        current_batch = []
        current_tokens = 0
        cpt = self.config.chars_per_token

        for text in texts:
            est_tokens = len(text) / cpt
            if current_batch and (
                len(current_batch) >= self.config.batch_size
                or current_tokens + est_tokens > self.config.max_tokens_per_batch
            ):
                batches.append(current_batch)
                current_batch = []
                current_tokens = 0
            current_batch.append(text)
            current_tokens += est_tokens

        if current_batch:
            batches.append(current_batch)

        return batches

    def embed_documents(
        self,
        texts: list[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> list[list[float]]:
        """
        Generate embeddings for document chunks.

        Args:
            texts: List of text strings to embed
            cancel_event: Checked before every batch; set it to abort

        Returns:
            List of embedding vectors

        Raises:
            OperationCancelled: cancel_event was set between batches
        """
        if not texts:
            return []

        if not self._client:
            raise RuntimeError(
                f"{self._provider_name} client not initialized. "
                f"Check {self._env_var_name}."
            )

        batches = self._create_batches(texts)

        logger.info(
            f"Embedding {len(texts)} documents in {len(batches)} batches"
            f" with {self._provider_name}"
        )

        embeddings = []
        for batch_idx, batch in enumerate(batches):
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled("Embedding cancelled")

            if batch_idx > 0 and self.config.batch_delay_seconds > 0:
                if cancel_event is not None:
                    if cancel_event.wait(self.config.batch_delay_seconds):
                        raise OperationCancelled("Embedding cancelled")
                else:
                    time.sleep(self.config.batch_delay_seconds)

            batch_embeddings = self._embed_batch(batch, input_type=self._doc_input_type)
            embeddings.extend(batch_embeddings)

            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{len(batches)}")

        return embeddings

    def embed_query(self, query: str) -> list[float]:
        """
        Generate embedding for a search query.

        Uses different input_type for better query-document matching.

        Args:
            query: Search query string

        Returns:
            Embedding vector
        """
        if not self._client:
            raise RuntimeError(
                f"{self._provider_name} client not initialized. "
                f"Check {self._env_var_name}."
            )

        cache_key = self._get_cache_key(query, "query")
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        result = self._embed_batch([query], input_type=self._query_input_type)

        if result:
            self._set_cached(cache_key, result[0])
            return result[0]

        return []

    def _embed_batch(
        self,
        texts: list[str],
        input_type: str = "document"
    ) -> list[list[float]]:
        """Embed a batch of texts using the provider API."""
        results = []
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cache_key = self._get_cache_key(text, input_type)
            cached = self._get_cached(cache_key)
            if cached is not None:
                results.append((i, cached))
            else:
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            try:
                response = self._client.embed(
                    texts=uncached_texts,
                    model=self.config.model,
                    input_type=input_type,
                )

                for idx, embedding in zip(uncached_indices, response.embeddings):
                    text = texts[idx]
                    cache_key = self._get_cache_key(text, input_type)
                    self._set_cached(cache_key, embedding)
                    results.append((idx, embedding))

            except Exception as e:
                logger.error(f"{self._provider_name} embedding failed: {e}")
                raise

        results.sort(key=lambda x: x[0])
        return [emb for _, emb in results]

    def _get_cache_key(self, text: str, input_type: str) -> str:
        """Generate cache key for text."""
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        """Get cached embedding."""
        if not self.config.use_cache:
            return None

        with self._cache_lock:
            if key in self._cache:
                return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                    with self._cache_lock:
                        self._cache[key] = embedding
                    return embedding
                except (OSError, ValueError) as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        """Cache an embedding."""
        if not self.config.use_cache:
            return

        with self._cache_lock:
            self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, 'w') as f:
                    json.dump(embedding, f)
            except OSError as e:
                logger.warning(f"Failed to cache embedding: {e}")

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


class CohereEmbeddingService(BaseEmbeddingService):
    """
    Generates embeddings using Cohere's embed-multilingual-v3.0 model.

    - 1024-dimensional embeddings
    - Different input types for documents vs queries
    - Arabic is among the supported languages
    """

    _provider_name = "Cohere"
    _env_var_name = "COHERE_API_KEY"
    _doc_input_type = "search_document"
    _query_input_type = "search_query"

    def _init_client(self):
        """Initialize the Cohere client."""
        api_key = os.getenv("COHERE_API_KEY")

        if not api_key:
            logger.warning(
                "COHERE_API_KEY not found. Embeddings will fail. "
                "Set the environment variable or use a different provider."
            )
            return

        try:
            import cohere
            self._client = cohere.Client(api_key)
            logger.info(f"Cohere client initialized with model {self.config.model}")
        except ImportError:
            logger.error("Cohere package not installed. Run: pip install cohere")
            raise


class VoyageEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using Voyage AI's voyage-multilingual-2 model.

    - 1024-dimensional embeddings
    - Strong retrieval quality on Arabic and mixed Arabic/English text
    - Different input types for documents vs queries
    """

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"
    _doc_input_type = "document"
    _query_input_type = "query"

    def _init_client(self):
        """Initialize the Voyage AI client."""
        api_key = os.getenv("VOYAGE_API_KEY")

        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Embeddings will fail. "
                "Get your API key at https://dash.voyageai.com/"
            )
            return

        try:
            import voyageai
            self._client = voyageai.Client(api_key=api_key)
            logger.info(f"Voyage AI client initialized with model {self.config.model}")
        except ImportError:
            logger.error("voyageai package not installed. Run: pip install voyageai")
            raise


class LocalEmbeddingService:
    """
    Alternative embedding service using local models.

    Uses sentence-transformers with BGE-M3 (multilingual, Arabic-capable)
    for cost-free embeddings. Good for development or bulk reprocessing.
    """

    def __init__(self, model_name: str = "BAAI/bge-m3"):
        """Initialize with a local model."""
        try:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(model_name)
            self._dimensions = self._model.get_sentence_embedding_dimension()
            logger.info(f"Local embedding model loaded: {model_name}")
        except ImportError:
            raise ImportError(
                "sentence-transformers not installed. "
                "Run: pip install sentence-transformers"
            )

    def embed_documents(
        self,
        texts: list[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> list[list[float]]:
        """Embed documents using local model."""
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled("Embedding cancelled")
        embeddings = self._model.encode(texts, show_progress_bar=False)
        return embeddings.tolist()

    def embed_query(self, query: str) -> list[float]:
        """Embed a query using local model."""
        embedding = self._model.encode([query])
        return embedding[0].tolist()

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self._dimensions


def get_embedding_service(
    provider: str = "voyage",
    language_config=None,
    batch_delay_seconds: float = 0.1,
) -> Union[VoyageEmbeddingService, CohereEmbeddingService, LocalEmbeddingService]:
    """
    Factory function to get appropriate embedding service.

    Args:
        provider: "voyage" (default), "cohere" or "local"
        language_config: Optional OrganizationLanguageConfig supplying the model
        batch_delay_seconds: Pause between batches

    Returns:
        Configured embedding service
    """
    if provider == "local":
        return LocalEmbeddingService()

    if language_config is not None:
        model = language_config.embedding_model
        provider = language_config.embedding_provider or provider
    else:
        model = None

    if provider == "voyage":
        config = EmbeddingConfig(
            provider="voyage",
            model=model or "voyage-multilingual-2",
            dimensions=1024,
            batch_size=64,
            chars_per_token=1.5,
            batch_delay_seconds=batch_delay_seconds,
        )
        return VoyageEmbeddingService(config)

    config = EmbeddingConfig(
        provider="cohere",
        model="embed-multilingual-v3.0",
        dimensions=1024,
        batch_size=96,
        chars_per_token=2.0,
        batch_delay_seconds=batch_delay_seconds,
    )
    return CohereEmbeddingService(config)


# =============================================================================
# Per-chunk embedding generation
# =============================================================================

@dataclass(frozen=True)
class EmbeddingPolicy:
    """Content types that must be embedded once per chunk or article."""
    content_types: tuple = ("content",)


DOCUMENT_POLICY = EmbeddingPolicy(("content",))
ARTICLE_POLICY = EmbeddingPolicy(("title_ar", "content_ar", "title_en", "content_en", "combined"))


@dataclass
class Embedding:
    """A vector for one content type of one chunk or article."""
    owner_id: str
    content_type: str
    vector: list[float]
    model: str = ""
    owner_type: str = "chunk"  # "chunk" or "article"
    embedding_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    def to_dict(self) -> dict:
        return {
            "embedding_id": self.embedding_id,
            "owner_id": self.owner_id,
            "owner_type": self.owner_type,
            "content_type": self.content_type,
            "model": self.model,
            "dimensions": self.dimensions,
        }


class EmbeddingGenerator:
    """
    Produces policy-complete embeddings for chunks and articles.

    Wraps an embedding service, validates that every requested text got a
    vector of the declared dimension, and converts provider failures into
    EmbeddingError so the ingestion orchestrator can classify them.
    """

    def __init__(self, service, policy: EmbeddingPolicy = DOCUMENT_POLICY):
        self.service = service
        self.policy = policy

    @property
    def dimensions(self) -> int:
        return self.service.dimensions

    @property
    def model(self) -> str:
        config = getattr(self.service, "config", None)
        return getattr(config, "model", type(self.service).__name__)

    def embed_texts(
        self,
        texts: list[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> list[list[float]]:
        """Embed texts in batches and validate count and dimensions."""
        try:
            vectors = self.service.embed_documents(texts, cancel_event=cancel_event)
        except (OperationCancelled, EmbeddingError):
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding provider failed: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        expected = self.dimensions
        for vector in vectors:
            if expected and len(vector) != expected:
                raise EmbeddingError(
                    f"Embedding dimension {len(vector)} does not match declared {expected}"
                )
        return [list(v) for v in vectors]

    def embed_query(self, text: str) -> list[float]:
        try:
            return list(self.service.embed_query(text))
        except Exception as e:
            raise EmbeddingError(f"Query embedding failed: {e}") from e

    def embed_records(
        self,
        records: list[tuple[str, dict[str, str]]],
        owner_type: str = "chunk",
        cancel_event: Optional[threading.Event] = None,
    ) -> list[Embedding]:
        """
        Embed every policy content type of every record.

        Args:
            records: (owner_id, {content_type: text}) pairs
            owner_type: "chunk" or "article"
            cancel_event: Propagated to the batched provider calls

        Returns:
            One Embedding per record per policy content type
        """
        owners = []
        texts = []
        for owner_id, variants in records:
            missing = [ct for ct in self.policy.content_types if ct not in variants]
            if missing:
                raise EmbeddingError(f"{owner_type} {owner_id} is missing content types {missing}")
            for content_type in self.policy.content_types:
                owners.append((owner_id, content_type))
                texts.append(variants[content_type] or " ")

        vectors = self.embed_texts(texts, cancel_event=cancel_event)
        model = self.model
        return [
            Embedding(owner_id=owner_id, content_type=content_type, vector=vector,
                      model=model, owner_type=owner_type)
            for (owner_id, content_type), vector in zip(owners, vectors)
        ]

    def embed_chunks(self, chunks: list, cancel_event: Optional[threading.Event] = None) -> list[Embedding]:
        """Embed document chunks under the active policy."""
        records = [(chunk.chunk_id, self._chunk_variants(chunk)) for chunk in chunks]
        return self.embed_records(records, owner_type="chunk", cancel_event=cancel_event)

    def _chunk_variants(self, chunk) -> dict[str, str]:
        title = chunk.section_title or chunk.content[:200]
        return {
            "content": chunk.content,
            "title": title,
            "combined": f"{chunk.section_title}\n{chunk.content}".strip(),
        }


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    provider = os.getenv("EMBEDDING_PROVIDER", "voyage")
    print(f"Using embedding provider: {provider}")

    service = get_embedding_service(provider=provider)

    if len(sys.argv) > 1:
        query = " ".join(sys.argv[1:])
    else:
        query = "ما هي أحكام الإجازة السنوية؟"

    print(f"Query: {query}")
    embedding = service.embed_query(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
