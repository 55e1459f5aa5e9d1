"""
Shared fixtures and test utilities for HR RAG pipeline tests.

Provides deterministic mock services, sample Arabic/English HR documents
and a small labour-law dataset so that every test runs without API keys,
databases or network access.
"""

import sys
import hashlib
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

TEST_DIMENSIONS = 512

# ---------------------------------------------------------------------------
# Sample HR documents
# ---------------------------------------------------------------------------
SAMPLE_POLICY_AR = """دليل سياسات الموارد البشرية

المادة 1 الإجازة السنوية
يستحق الموظف إجازة سنوية مدفوعة الأجر مدتها واحد وعشرون يوماً، تزاد إلى ثلاثين يوماً بعد خمس سنوات من الخدمة.
يجب تقديم طلب الإجازة قبل أسبوعين على الأقل من تاريخ بدايتها.

المادة 2 الإجازة المرضية
يستحق الموظف إجازة مرضية بأجر كامل لمدة ثلاثين يوماً خلال السنة الواحدة بناءً على تقرير طبي معتمد.

المادة 3 ساعات العمل
ساعات العمل ثمان ساعات يومياً من الأحد إلى الخميس، وتخفض إلى ست ساعات خلال شهر رمضان.

المادة 4 الرواتب
تصرف الرواتب في اليوم الخامس والعشرين من كل شهر ميلادي عن طريق التحويل البنكي.
"""

SAMPLE_POLICY_EN = """Employee Handbook

Section 1 Annual Leave
Employees are entitled to twenty one days of paid annual leave, rising to thirty days after five years of service.

Section 2 Remote Work
Employees may work remotely two days per week with manager approval.
"""

# ---------------------------------------------------------------------------
# Sample labour-law dataset
# ---------------------------------------------------------------------------
LABOR_LAW_DATASET = {
    "articles": [
        {
            "articleNumber": "109",
            "titleAr": "الإجازة السنوية",
            "titleEn": "Annual Leave",
            "contentAr": "يستحق العامل عن كل عام إجازة سنوية لا تقل مدتها عن واحد وعشرين يوماً، "
                         "تزاد إلى مدة لا تقل عن ثلاثين يوماً إذا أمضى العامل في خدمة صاحب العمل خمس سنوات متصلة.",
            "contentEn": "A worker is entitled to annual leave of not less than twenty one days, "
                         "increased to thirty days after five consecutive years of service.",
            "category": "leave",
            "subcategory": "annual",
            "lawSource": "نظام العمل",
            "keywords": ["إجازة", "سنوية", "annual leave"],
        },
        {
            "articleNumber": "117",
            "titleAr": "الإجازة المرضية",
            "titleEn": "Sick Leave",
            "contentAr": "للعامل الذي يثبت مرضه الحق في إجازة مرضية بأجر كامل عن الثلاثين يوماً الأولى.",
            "contentEn": "A worker whose illness is proven is entitled to sick leave with full pay for the first thirty days.",
            "category": "leave",
            "subcategory": "sick",
            "keywords": ["مرضية", "sick leave"],
        },
        {
            "articleNumber": "80",
            "titleAr": "إنهاء العقد دون مكافأة",
            "titleEn": "Termination without award",
            "contentAr": "لا يجوز لصاحب العمل فسخ العقد دون مكافأة أو إشعار العامل أو تعويضه إلا في حالات محددة.",
            "contentEn": "The employer may not terminate the contract without award, notice or compensation except in specific cases.",
            "category": "termination",
            "keywords": ["فسخ", "termination"],
        },
    ],
    "commonScenarios": [
        {
            "scenarioName": "Annual leave request",
            "scenarioNameAr": "طلب إجازة سنوية",
            "scenarioDescriptionAr": "موظف يطلب إجازته السنوية",
            "scenarioDescriptionEn": "An employee requests annual leave",
            "keywords": ["إجازة", "annual leave"],
            "relatedArticles": ["109", "999"],
            "category": "leave",
        },
    ],
}


# ---------------------------------------------------------------------------
# Mock embedding services
# ---------------------------------------------------------------------------

class _ServiceConfig:
    model = "hashing-test"


class HashingEmbeddingService:
    """Deterministic bag-of-stems embedding -- never calls external APIs.

    Texts sharing stems get similar vectors, so retrieval behaves like a
    (very small) real model.
    """

    def __init__(self, dimensions=TEST_DIMENSIONS):
        from execution.hr_rag.arabic_text import ArabicTextNormalizer
        self._dimensions = dimensions
        self._normalizer = ArabicTextNormalizer()
        self.config = _ServiceConfig()
        self.document_calls = 0
        self.query_calls = 0

    def _vector(self, text):
        vector = [0.0] * self._dimensions
        stems = self._normalizer.stems(text) or ["<empty>"]
        for stem in stems:
            index = int(hashlib.sha256(stem.encode("utf-8")).hexdigest()[:8], 16) % self._dimensions
            vector[index] += 1.0
        return vector

    def embed_documents(self, texts, cancel_event=None):
        self.document_calls += 1
        return [self._vector(t) for t in texts]

    def embed_query(self, query):
        self.query_calls += 1
        return self._vector(query)

    @property
    def dimensions(self):
        return self._dimensions


class FailingEmbeddingService(HashingEmbeddingService):
    """Embedding provider that is always down."""

    def embed_documents(self, texts, cancel_event=None):
        self.document_calls += 1
        raise RuntimeError("embedding provider unavailable")

    def embed_query(self, query):
        self.query_calls += 1
        raise RuntimeError("embedding provider unavailable")


@pytest.fixture
def embedding_service():
    return HashingEmbeddingService()


@pytest.fixture
def failing_embedding_service():
    return FailingEmbeddingService()


# ---------------------------------------------------------------------------
# Mock generators
# ---------------------------------------------------------------------------

def _generator_classes():
    from execution.hr_rag.generation import GenerationResult, Generator

    class FakeGenerator(Generator):
        """Echoes the question and counts calls."""

        def __init__(self):
            self.calls = []

        def complete(self, grounding_context, query, language="ar", response_style="balanced", max_tokens=None):
            self.calls.append({
                "context": grounding_context,
                "query": query,
                "language": language,
                "response_style": response_style,
                "max_tokens": max_tokens,
            })
            return GenerationResult(text=f"answer: {query}", tokens_used=100, model="fake-llm")

    class FailingGenerator(Generator):
        def complete(self, grounding_context, query, language="ar", response_style="balanced", max_tokens=None):
            raise RuntimeError("generation endpoint unavailable")

    return FakeGenerator, FailingGenerator


@pytest.fixture
def fake_generator():
    fake_cls, _ = _generator_classes()
    return fake_cls()


@pytest.fixture
def failing_generator():
    _, failing_cls = _generator_classes()
    return failing_cls()


# ---------------------------------------------------------------------------
# Stores and pipelines
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    from execution.hr_rag.vector_store import InMemoryStore
    return InMemoryStore(dimensions=TEST_DIMENSIONS)


def make_pipeline(embedding_service, generator, store=None):
    """Full pipeline on the in-memory store with test-sized chunks."""
    from execution.hr_rag.chunker import ChunkConfig
    from execution.hr_rag.pipeline import PipelineSettings, build_pipeline
    from execution.hr_rag.vector_store import InMemoryStore

    settings = PipelineSettings(
        chunking=ChunkConfig(strategy="paragraph", max_chunk_chars=400, overlap_chars=40),
    )
    return build_pipeline(
        settings,
        embedding_service=embedding_service,
        generator=generator,
        store=store or InMemoryStore(dimensions=embedding_service.dimensions),
    )


@pytest.fixture
def pipeline(embedding_service, fake_generator):
    return make_pipeline(embedding_service, fake_generator)


@pytest.fixture
def loaded_pipeline(pipeline):
    """Pipeline with the labour-law dataset and one Arabic policy document."""
    pipeline.articles.load_dataset(LABOR_LAW_DATASET)
    pipeline.ingestion.ingest(
        SAMPLE_POLICY_AR.encode("utf-8"), "hr_policy.txt", "text/plain", "org-1",
        uploaded_by="hr-admin", category="policy",
    )
    return pipeline


@pytest.fixture
def sample_policy_ar():
    return SAMPLE_POLICY_AR


@pytest.fixture
def sample_policy_en():
    return SAMPLE_POLICY_EN


@pytest.fixture
def labor_law_dataset():
    return LABOR_LAW_DATASET
