"""
Tests for execution/hr_rag/language_config.py

Covers: SUPPORTED_LANGUAGES, OrganizationLanguageConfig.for_language,
        FTS whitelist validation and text direction.
"""

import pytest


class TestSupportedLanguages:
    """Tests for the language table."""

    def test_languages(self):
        from execution.hr_rag.language_config import SUPPORTED_LANGUAGES
        assert set(SUPPORTED_LANGUAGES) == {"ar", "en"}

    def test_fts_whitelist(self):
        from execution.hr_rag.language_config import VALID_FTS_CONFIGS
        assert VALID_FTS_CONFIGS == frozenset({"arabic", "english"})


class TestOrganizationLanguageConfig:
    """Tests for per-language defaults."""

    def test_arabic(self):
        from execution.hr_rag.language_config import OrganizationLanguageConfig
        config = OrganizationLanguageConfig.for_language("ar")
        assert config.fts_language == "arabic"
        assert config.chars_per_token == 3
        assert config.direction == "rtl"

    def test_english(self):
        from execution.hr_rag.language_config import OrganizationLanguageConfig
        config = OrganizationLanguageConfig.for_language("en")
        assert config.fts_language == "english"
        assert config.chars_per_token == 4
        assert config.direction == "ltr"

    @pytest.mark.parametrize("language", ["mixed", "fr", ""])
    def test_other_codes_fall_back_to_arabic(self, language):
        from execution.hr_rag.language_config import OrganizationLanguageConfig
        assert OrganizationLanguageConfig.for_language(language).language == "ar"

    def test_validate_fts_language(self):
        from execution.hr_rag.language_config import OrganizationLanguageConfig
        assert OrganizationLanguageConfig().validate_fts_language()
        assert not OrganizationLanguageConfig(fts_language="english; DROP TABLE x").validate_fts_language()
