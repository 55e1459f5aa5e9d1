"""
HR RAG - Bilingual Retrieval for HR Documents and Saudi Labour Law

This module provides:
- Secure ingestion of Arabic/English HR documents (PDF, DOCX, text)
- Arabic-aware normalization and chunking with page tracking
- Hybrid vector + full-text retrieval across company documents,
  labour-law articles and HR scenarios
- Grounded, cited answers with confidence scoring and response caching

build_pipeline() wires every service from environment settings; the
ingestion and retrieval orchestrators are the two entry points.
"""

from .arabic_text import ArabicTextNormalizer
from .security import SecurityValidator
from .document_parser import TextExtractor
from .chunker import Chunker
from .embeddings import EmbeddingGenerator
from .vector_store import InMemoryStore, PgVectorStore
from .ingestion import IngestionOrchestrator
from .articles import ArticleIngestor
from .retriever import HybridRetriever
from .ranker import ResultRanker
from .orchestrator import RetrievalOrchestrator
from .pipeline import Pipeline, PipelineSettings, build_pipeline

__all__ = [
    "ArabicTextNormalizer",
    "SecurityValidator",
    "TextExtractor",
    "Chunker",
    "EmbeddingGenerator",
    "InMemoryStore",
    "PgVectorStore",
    "IngestionOrchestrator",
    "ArticleIngestor",
    "HybridRetriever",
    "ResultRanker",
    "RetrievalOrchestrator",
    "Pipeline",
    "PipelineSettings",
    "build_pipeline",
]

__version__ = "0.1.0"
