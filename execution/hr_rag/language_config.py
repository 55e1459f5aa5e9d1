"""
Language Configuration for the Bilingual HR RAG Pipeline

Provides per-organization language configuration for Arabic and English.
Each organization can have different settings for embeddings, generation
and full-text search.
"""

from dataclasses import dataclass


# Supported languages with their PostgreSQL FTS config names and token ratios
SUPPORTED_LANGUAGES = {
    "ar": {
        "name": "Arabic",
        "fts_config": "arabic",
        "chars_per_token": 3,
        "direction": "rtl",
    },
    "en": {
        "name": "English",
        "fts_config": "english",
        "chars_per_token": 4,
        "direction": "ltr",
    },
}

# Whitelist of valid FTS language configs (for SQL injection prevention)
VALID_FTS_CONFIGS = frozenset(lang["fts_config"] for lang in SUPPORTED_LANGUAGES.values())

DEFAULT_LANGUAGE = "ar"


@dataclass
class OrganizationLanguageConfig:
    """Per-organization language and model configuration."""
    language: str = "ar"
    embedding_model: str = "voyage-multilingual-2"
    embedding_provider: str = "voyage"
    llm_model: str = "gpt-4o-mini"
    fts_language: str = "arabic"
    chars_per_token: int = 3

    @classmethod
    def for_language(cls, language: str) -> "OrganizationLanguageConfig":
        """
        Factory method returning defaults for a given language.

        "mixed" and unknown codes fall back to Arabic, the primary
        language of the corpora.

        Args:
            language: ISO 639-1 code ("ar" or "en")

        Returns:
            OrganizationLanguageConfig with appropriate defaults
        """
        if language == "en":
            return cls(
                language="en",
                embedding_model="voyage-multilingual-2",
                embedding_provider="voyage",
                llm_model="gpt-4o-mini",
                fts_language="english",
                chars_per_token=4,
            )

        return cls(
            language="ar",
            embedding_model="voyage-multilingual-2",
            embedding_provider="voyage",
            llm_model="gpt-4o-mini",
            fts_language="arabic",
            chars_per_token=3,
        )

    def validate_fts_language(self) -> bool:
        """Check that fts_language is in the whitelist."""
        return self.fts_language in VALID_FTS_CONFIGS

    @property
    def direction(self) -> str:
        return SUPPORTED_LANGUAGES.get(self.language, SUPPORTED_LANGUAGES[DEFAULT_LANGUAGE])["direction"]
