"""
Tests for execution/hr_rag/articles.py

Covers: dataset loading (camelCase and snake_case), article versioning and
        revision history, scenario loading with missing related articles,
        embedding policy enforcement and file loading.
"""

import copy
import json

import pytest

from tests.conftest import LABOR_LAW_DATASET


@pytest.fixture
def ingestor(store, embedding_service):
    from execution.hr_rag.articles import ArticleIngestor
    from execution.hr_rag.embeddings import EmbeddingGenerator
    return ArticleIngestor(store, EmbeddingGenerator(embedding_service))


# ---------------------------------------------------------------------------
# Dataset loading
# ---------------------------------------------------------------------------

class TestLoadDataset:
    """Tests for load_dataset."""

    def test_summary(self, ingestor):
        summary = ingestor.load_dataset(LABOR_LAW_DATASET)
        assert summary == {"created": 3, "updated": 0, "unchanged": 0, "scenarios": 1}

    def test_articles_stored(self, ingestor, store):
        ingestor.load_dataset(LABOR_LAW_DATASET)
        article = store.find_article("109")
        assert article.title_en == "Annual Leave"
        assert article.category == "leave"
        assert article.subcategory == "annual"
        assert article.version == 1
        assert {a.article_number for a in store.list_articles(category="leave")} == {"109", "117"}

    def test_default_law_source(self, ingestor, store):
        ingestor.load_dataset(LABOR_LAW_DATASET)
        assert store.find_article("117").law_source == "نظام العمل"

    def test_reload_is_unchanged(self, ingestor, store):
        ingestor.load_dataset(LABOR_LAW_DATASET)
        summary = ingestor.load_dataset(LABOR_LAW_DATASET)
        assert summary == {"created": 0, "updated": 0, "unchanged": 3, "scenarios": 1}
        assert len(store.list_articles()) == 3

    def test_snake_case_keys(self, ingestor, store):
        ingestor.load_dataset({"articles": [{
            "article_number": 84,
            "title_ar": "مكافأة نهاية الخدمة",
            "content_ar": "إذا انتهت علاقة العمل وجب على صاحب العمل أن يدفع للعامل مكافأة.",
            "keywords": ["مكافأة"],
        }]})
        article = store.find_article("84")
        assert article is not None
        assert article.title_en == ""
        assert article.category == "general"

    def test_missing_required_fields(self, ingestor):
        from execution.hr_rag.errors import ValidationError
        with pytest.raises(ValidationError):
            ingestor.load_dataset({"articles": [{"articleNumber": "1", "titleAr": "عنوان"}]})

    def test_load_dataset_file(self, ingestor, store, tmp_path):
        path = tmp_path / "saudi_labor_law.json"
        path.write_text(json.dumps(LABOR_LAW_DATASET, ensure_ascii=False), encoding="utf-8")
        summary = ingestor.load_dataset_file(path)
        assert summary["created"] == 3


# ---------------------------------------------------------------------------
# Versioning
# ---------------------------------------------------------------------------

class TestArticleVersioning:
    """Tests for article replacement and revision history."""

    def test_update_bumps_version(self, ingestor, store):
        ingestor.load_dataset(LABOR_LAW_DATASET)
        original = store.find_article("109")

        dataset = copy.deepcopy(LABOR_LAW_DATASET)
        dataset["articles"][0]["contentEn"] = "Amended: thirty days of annual leave."
        dataset["articles"][0]["keywords"] = ["إجازة"]
        summary = ingestor.load_dataset(dataset)

        assert summary["updated"] == 1
        assert summary["unchanged"] == 2
        article = store.find_article("109")
        assert article.version == 2
        assert article.article_id == original.article_id
        assert article.created_at == original.created_at
        assert article.content_en.startswith("Amended")
        assert len(article.revisions) == 1
        assert article.revisions[0].version == 2
        assert article.revisions[0].changed_fields == ["content_en", "keywords"]

    def test_revision_note(self, ingestor, store):
        from dataclasses import replace

        ingestor.load_dataset(LABOR_LAW_DATASET)
        article = replace(store.find_article("80"), title_en="Termination")
        stored, outcome = ingestor.upsert_article(article, note="2024 amendment")
        assert outcome == "updated"
        assert stored.revisions[-1].note == "2024 amendment"
        assert stored.to_dict()["revisions"][0]["changed_fields"] == ["title_en"]

    def test_updated_article_searchable_with_new_text(self, ingestor, store):
        from execution.hr_rag.vector_store import CORPUS_LABOR_LAW

        ingestor.load_dataset(LABOR_LAW_DATASET)
        dataset = copy.deepcopy(LABOR_LAW_DATASET)
        dataset["articles"][2]["contentEn"] = "Probation period rules."
        ingestor.load_dataset(dataset)

        hits = store.lexical_index.search("probation", CORPUS_LABOR_LAW, None, 10)
        assert [h.metadata["article_number"] for h in hits] == ["80"]


# ---------------------------------------------------------------------------
# Scenarios and embeddings
# ---------------------------------------------------------------------------

class TestScenarios:
    """Tests for scenario loading."""

    def test_missing_related_articles_dropped(self, ingestor):
        ingestor.load_dataset({"articles": LABOR_LAW_DATASET["articles"]})
        scenario = ingestor.upsert_scenario(
            ingestor.scenario_from_dict(LABOR_LAW_DATASET["commonScenarios"][0])
        )
        assert scenario.article_numbers == ["109"]

    def test_scenario_fields(self, ingestor):
        scenario = ingestor.scenario_from_dict(LABOR_LAW_DATASET["commonScenarios"][0])
        assert scenario.name_en == "Annual leave request"
        assert scenario.name_ar == "طلب إجازة سنوية"
        assert scenario.description == "An employee requests annual leave / موظف يطلب إجازته السنوية"
        assert scenario.priority == 5

    def test_stable_scenario_id(self, ingestor):
        raw = LABOR_LAW_DATASET["commonScenarios"][0]
        assert ingestor.scenario_from_dict(raw).scenario_id == ingestor.scenario_from_dict(raw).scenario_id

    def test_reload_does_not_duplicate(self, ingestor, store):
        from execution.hr_rag.vector_store import CORPUS_SCENARIOS

        ingestor.load_dataset(LABOR_LAW_DATASET)
        ingestor.load_dataset(LABOR_LAW_DATASET)
        hits = store.lexical_index.search("annual leave", CORPUS_SCENARIOS, None, 10)
        assert len(hits) == 1

    def test_scenario_requires_name(self, ingestor):
        from execution.hr_rag.errors import ValidationError
        with pytest.raises(ValidationError):
            ingestor.scenario_from_dict({"scenarioDescriptionAr": "وصف"})


class TestArticleEmbeddings:
    """Tests for the article embedding policy."""

    def test_every_content_type_embedded(self, store, embedding_service):
        from execution.hr_rag.articles import ArticleIngestor
        from execution.hr_rag.embeddings import ARTICLE_POLICY, DOCUMENT_POLICY, EmbeddingGenerator

        ingestor = ArticleIngestor(store, EmbeddingGenerator(embedding_service, DOCUMENT_POLICY))
        assert ingestor.embedder.policy == ARTICLE_POLICY

        ingestor.load_dataset({"articles": LABOR_LAW_DATASET["articles"][:1]})
        entry = store._entries["labor_law"][store.find_article("109").article_id]
        assert set(entry.vectors) == set(ARTICLE_POLICY.content_types)

    def test_unchanged_article_not_reembedded(self, ingestor, embedding_service):
        ingestor.load_dataset({"articles": LABOR_LAW_DATASET["articles"]})
        calls = embedding_service.document_calls
        ingestor.load_dataset({"articles": LABOR_LAW_DATASET["articles"]})
        assert embedding_service.document_calls == calls

    def test_embedding_failure_raises(self, store, failing_embedding_service):
        from execution.hr_rag.articles import ArticleIngestor
        from execution.hr_rag.embeddings import EmbeddingGenerator
        from execution.hr_rag.errors import EmbeddingError

        ingestor = ArticleIngestor(store, EmbeddingGenerator(failing_embedding_service))
        with pytest.raises(EmbeddingError):
            ingestor.load_dataset(LABOR_LAW_DATASET)
        assert store.list_articles() == []
