"""
Labour-Law Article and Scenario Ingestion

Loads the bilingual article corpus and HR scenario mappings into the
store. Articles are reference data: an update replaces the whole record,
bumps its version and appends to its revision log. Every article is
embedded once per content type of the article policy.

Dataset format (JSON), camelCase or snake_case keys:
    {
      "articles": [{"articleNumber", "titleAr", "titleEn", "contentAr",
                    "contentEn", "category", "subcategory", "lawSource",
                    "keywords"}],
      "commonScenarios": [{"scenarioName", "scenarioDescriptionAr",
                           "scenarioDescriptionEn", "keywords",
                           "relatedArticles"}]
    }
"""

import json
import uuid
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from .embeddings import ARTICLE_POLICY, EmbeddingGenerator
from .errors import ValidationError
from .models import Article, ArticleRevision, ScenarioMapping

logger = logging.getLogger(__name__)

DEFAULT_SCENARIO_PRIORITY = 5


def _field(raw: dict, snake: str, camel: str, default=None):
    value = raw.get(snake, raw.get(camel))
    return default if value is None else value


class ArticleIngestor:
    """
    Loads articles and scenarios with their embeddings.

    Usage:
        ingestor = ArticleIngestor(store, EmbeddingGenerator(service, ARTICLE_POLICY))
        summary = ingestor.load_dataset_file("saudi_labor_law.json")
    """

    def __init__(self, store, embedder: EmbeddingGenerator):
        if embedder.policy != ARTICLE_POLICY:
            embedder = EmbeddingGenerator(embedder.service, ARTICLE_POLICY)
        self.store = store
        self.embedder = embedder

    def load_dataset_file(self, path: Union[str, Path]) -> dict:
        with open(path, encoding="utf-8") as f:
            return self.load_dataset(json.load(f))

    def load_dataset(self, dataset: dict) -> dict:
        """
        Load every article, then every scenario.

        Returns:
            Counts of created, updated and unchanged articles and loaded scenarios
        """
        summary = {"created": 0, "updated": 0, "unchanged": 0, "scenarios": 0}
        for raw in dataset.get("articles", []):
            _, outcome = self.upsert_article(self.article_from_dict(raw))
            summary[outcome] += 1

        for raw in _field(dataset, "common_scenarios", "commonScenarios", []):
            self.upsert_scenario(self.scenario_from_dict(raw))
            summary["scenarios"] += 1

        logger.info(
            f"Loaded labour-law dataset: {summary['created']} created, {summary['updated']} updated, "
            f"{summary['unchanged']} unchanged, {summary['scenarios']} scenarios"
        )
        return summary

    def article_from_dict(self, raw: dict) -> Article:
        number = str(_field(raw, "article_number", "articleNumber", "")).strip()
        title_ar = _field(raw, "title_ar", "titleAr", "")
        content_ar = _field(raw, "content_ar", "contentAr", "")
        if not number or not title_ar or not content_ar:
            raise ValidationError("Article requires article_number, title_ar and content_ar")
        return Article(
            article_number=number,
            title_ar=title_ar,
            title_en=_field(raw, "title_en", "titleEn", ""),
            content_ar=content_ar,
            content_en=_field(raw, "content_en", "contentEn", ""),
            category=_field(raw, "category", "category", "general"),
            subcategory=_field(raw, "subcategory", "subcategory", ""),
            law_source=_field(raw, "law_source", "lawSource", "نظام العمل"),
            keywords=list(_field(raw, "keywords", "keywords", [])),
        )

    def scenario_from_dict(self, raw: dict) -> ScenarioMapping:
        name = _field(raw, "scenario_name", "scenarioName", "")
        description_ar = _field(raw, "description_ar", "scenarioDescriptionAr", "")
        description_en = _field(raw, "description_en", "scenarioDescriptionEn", "")
        if not name:
            raise ValidationError("Scenario requires scenario_name")
        description = " / ".join(d for d in (description_en, description_ar) if d)
        return ScenarioMapping(
            name_ar=_field(raw, "name_ar", "scenarioNameAr", description_ar or name),
            name_en=name,
            description=description or name,
            keywords=list(_field(raw, "keywords", "keywords", [])),
            article_numbers=[str(n) for n in _field(raw, "related_articles", "relatedArticles", [])],
            category=_field(raw, "category", "category", "general"),
            priority=int(_field(raw, "priority", "priority", DEFAULT_SCENARIO_PRIORITY)),
            # Stable id so reloading a dataset replaces scenarios instead of duplicating them
            scenario_id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"hr-scenario:{name}")),
        )

    # =========================================================================
    # Articles
    # =========================================================================

    def find_article(self, article_number: str) -> Optional[Article]:
        for article in self.store.list_articles():
            if article.article_number == article_number:
                return article
        return None

    def upsert_article(self, article: Article, note: str = "") -> tuple[Article, str]:
        """
        Insert a new article or replace an existing one with the same number.

        Returns:
            (stored article, "created" | "updated" | "unchanged")
        """
        existing = self.find_article(article.article_number)
        if existing is not None:
            changed = [f for f in Article.CONTENT_FIELDS if getattr(existing, f) != getattr(article, f)]
            if not changed:
                return existing, "unchanged"
            version = existing.version + 1
            article = replace(
                article,
                article_id=existing.article_id,
                created_at=existing.created_at,
                version=version,
                revisions=existing.revisions + [
                    ArticleRevision(version=version, changed_fields=changed, updated_at=datetime.now(), note=note),
                ],
            )
            outcome = "updated"
            logger.info(f"Article {article.article_number} updated to v{version}: {', '.join(changed)}")
        else:
            outcome = "created"

        embeddings = self.embedder.embed_records(
            [(article.article_id, self._article_variants(article))], owner_type="article",
        )
        self.store.upsert_article(article, embeddings)
        return article, outcome

    def _article_variants(self, article: Article) -> dict[str, str]:
        return {
            "title_ar": article.title_ar,
            "content_ar": article.content_ar,
            "title_en": article.title_en,
            "content_en": article.content_en,
            "combined": "\n\n".join(p for p in (
                article.title_ar, article.content_ar, article.title_en, article.content_en,
            ) if p),
        }

    # =========================================================================
    # Scenarios
    # =========================================================================

    def upsert_scenario(self, scenario: ScenarioMapping) -> ScenarioMapping:
        """Store a scenario; related articles that do not exist are dropped with a warning."""
        known = {a.article_number for a in self.store.list_articles()}
        missing = [n for n in scenario.article_numbers if n not in known]
        if missing:
            logger.warning(f"Articles {missing} not found for scenario {scenario.name_en}")
            scenario = replace(scenario, article_numbers=[n for n in scenario.article_numbers if n in known])

        text = "\n".join([scenario.name_ar, scenario.name_en, scenario.description, " ".join(scenario.keywords)])
        vector = self.embedder.embed_texts([text])[0]
        self.store.upsert_scenario(scenario, vector)
        return scenario


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    from .pipeline import PipelineSettings, build_article_ingestor

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) < 2:
        print("Usage: python -m execution.hr_rag.articles <dataset.json>")
        sys.exit(1)

    ingestor = build_article_ingestor(PipelineSettings.from_env())
    print(ingestor.load_dataset_file(sys.argv[1]))
