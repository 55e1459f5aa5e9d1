"""
Arabic Text Normalization and Analysis

Pure string transforms used by ingestion and retrieval:
- Normalization (diacritics, letter variants, whitespace/punctuation runs)
- Tokenization that keeps numerals and date-like tokens intact
- Light stemming to a shared key for lexical grouping
- Language, direction and sentiment detection
- Entity and keyword extraction

None of the public methods raise on malformed input; empty or missing
input yields an empty result.
"""

import re
import logging
import unicodedata
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Union

from .language_patterns import STOP_WORDS, SENTIMENT_WORDS, ENTITY_PATTERNS

logger = logging.getLogger(__name__)

ARABIC_CHAR = re.compile(r"[\u0600-\u06FF\u0750-\u077F\u08A0-\u08FF\uFB50-\uFDFF\uFE70-\uFEFC]")
LATIN_CHAR = re.compile(r"[A-Za-z\u00C0-\u024F]")
DIACRITICS = re.compile(r"[\u064B-\u065F\u0670\u06D6-\u06ED]")
TATWEEL = "\u0640"
ZERO_WIDTH = re.compile(r"[\u200B-\u200F\u202A-\u202E\u2060-\u2069\uFEFF]")
REPEATED_PUNCTUATION = re.compile(r"([^\w\s])\1+")
HORIZONTAL_SPACE = re.compile(r"[^\S\n]+")
EXTRA_NEWLINES = re.compile(r"\n{3,}")

LETTER_VARIANTS = str.maketrans({
    "أ": "ا",
    "إ": "ا",
    "آ": "ا",
    "ٱ": "ا",
    "ة": "ه",
    "ى": "ي",
})

# Date-like tokens first, then numbers (Western or native digits), then words
TOKEN_PATTERN = re.compile(
    r"\d{1,4}(?:[/\-.]\d{1,4}){2}"
    r"|\d+(?:[.,]\d+)*"
    r"|[^\W\d_]+"
)

ARABIC_PREFIXES = ("وال", "بال", "كال", "فال", "لل", "ال")
ARABIC_SUFFIXES = ("ات", "ون", "ين", "ان", "ها", "هم", "هن", "نا", "كم", "يه", "ه", "ي")
MIN_STEM_LENGTH = 3


@dataclass
class SentimentResult:
    """Sentiment label with confidence and the languages seen in the text."""
    label: str = "neutral"
    confidence: float = 0.5
    languages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "confidence": round(self.confidence, 3),
            "languages": self.languages,
        }


def _coerce(text: Union[str, bytes, None]) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        return text.decode("utf-8", errors="replace")
    return text if isinstance(text, str) else str(text)


class ArabicTextNormalizer:
    """
    Arabic-aware text normalizer.

    Features:
    - Strips diacritics, tatweel and zero-width/bidi control characters
    - Unifies hamza-bearing alif forms, taa marbuta and alif maksura
    - Collapses whitespace and repeated punctuation
    - Idempotent: normalize(normalize(x)) == normalize(x)
    """

    def normalize(self, text: Union[str, bytes, None], preserve_newlines: bool = False) -> str:
        """
        Normalize text for indexing and comparison.

        Args:
            text: Input text (None and empty input return "")
            preserve_newlines: Keep paragraph breaks (used for document text
                that will be chunked); otherwise all whitespace collapses to
                single spaces.

        Returns:
            Normalized text
        """
        text = _coerce(text)
        if not text:
            return ""

        text = ZERO_WIDTH.sub("", text)
        text = unicodedata.normalize("NFKC", text)
        text = DIACRITICS.sub("", text).replace(TATWEEL, "")
        text = text.translate(LETTER_VARIANTS)
        text = REPEATED_PUNCTUATION.sub(r"\1", text)

        if preserve_newlines:
            text = text.replace("\r\n", "\n").replace("\r", "\n")
            text = HORIZONTAL_SPACE.sub(" ", text)
            text = "\n".join(line.strip() for line in text.split("\n"))
            text = EXTRA_NEWLINES.sub("\n\n", text)
            return text.strip()

        return re.sub(r"\s+", " ", text).strip()

    def tokenize(self, text: Union[str, bytes, None], remove_stop_words: bool = False) -> list[str]:
        """
        Split normalized text into word, number and date tokens.

        Latin tokens are lower-cased. Numerals in either digit form stay
        whole, and date-like tokens such as 15/03/2024 are a single token.
        """
        normalized = self.normalize(text)
        if not normalized:
            return []

        tokens = [tok.lower() for tok in TOKEN_PATTERN.findall(normalized)]
        if remove_stop_words:
            stop_words = _normalized_stop_words()
            tokens = [tok for tok in tokens if tok not in stop_words]
        return tokens

    def stem(self, token: Optional[str]) -> str:
        """
        Map an inflected Arabic word to a shared key.

        Strips at most one definite-article prefix and one pronoun/plural
        suffix while keeping at least three letters. Non-Arabic tokens pass
        through unchanged.
        """
        token = _coerce(token)
        if not token or not ARABIC_CHAR.search(token):
            return token

        word = self.normalize(token)
        for prefix in ARABIC_PREFIXES:
            if word.startswith(prefix) and len(word) - len(prefix) >= MIN_STEM_LENGTH:
                word = word[len(prefix):]
                break
        for suffix in ARABIC_SUFFIXES:
            if word.endswith(suffix) and len(word) - len(suffix) >= MIN_STEM_LENGTH:
                word = word[:-len(suffix)]
                break
        return word

    def stems(self, text: Union[str, bytes, None], remove_stop_words: bool = True) -> list[str]:
        """Tokenize and stem in one pass (lexical index terms)."""
        return [self.stem(tok) for tok in self.tokenize(text, remove_stop_words=remove_stop_words)]

    # =========================================================================
    # Detection
    # =========================================================================

    def arabic_ratio(self, text: Union[str, bytes, None]) -> float:
        """Share of Arabic letters among all letters."""
        text = _coerce(text)
        arabic = len(ARABIC_CHAR.findall(text))
        latin = len(LATIN_CHAR.findall(text))
        total = arabic + latin
        return arabic / total if total else 0.0

    def detect_language(self, text: Union[str, bytes, None], default: str = "en") -> str:
        """Return "ar", "en" or "mixed" from the Arabic letter ratio."""
        text = _coerce(text)
        if not ARABIC_CHAR.search(text) and not LATIN_CHAR.search(text):
            return default
        ratio = self.arabic_ratio(text)
        if ratio > 0.7:
            return "ar"
        if ratio > 0.3:
            return "mixed"
        return "en"

    def _token_scripts(self, text: str) -> list[str]:
        scripts = []
        for token in _coerce(text).split():
            arabic = len(ARABIC_CHAR.findall(token))
            latin = len(LATIN_CHAR.findall(token))
            if arabic == 0 and latin == 0:
                continue
            scripts.append("ar" if arabic >= latin else "en")
        return scripts

    def detect_direction(self, text: Union[str, bytes, None]) -> str:
        """
        Classify text as "rtl" or "ltr" by majority vote over per-token scripts.

        Ties go to the script of the first strong token; text with no
        letters is "ltr".
        """
        scripts = self._token_scripts(_coerce(text))
        if not scripts:
            return "ltr"
        arabic = scripts.count("ar")
        latin = len(scripts) - arabic
        if arabic == latin:
            return "rtl" if scripts[0] == "ar" else "ltr"
        return "rtl" if arabic > latin else "ltr"

    def analyze_sentiment(self, text: Union[str, bytes, None]) -> SentimentResult:
        """
        Lexicon-based sentiment over every language present in the text.

        Confidence is the margin between positive and negative hits; text
        with no lexicon hits is neutral at 0.5.
        """
        text = _coerce(text)
        languages = sorted(set(self._token_scripts(text)))
        if not languages:
            return SentimentResult()

        tokens = set(self.tokenize(text))
        stems = {self.stem(tok) for tok in tokens}
        positive = negative = 0
        for lang in languages:
            lexicon = _normalized_sentiment(lang)
            positive += sum(1 for word in lexicon["positive"] if word in tokens or word in stems)
            negative += sum(1 for word in lexicon["negative"] if word in tokens or word in stems)

        hits = positive + negative
        if hits == 0 or positive == negative:
            return SentimentResult("neutral", 0.5, languages)

        confidence = abs(positive - negative) / hits
        label = "positive" if positive > negative else "negative"
        return SentimentResult(label, confidence, languages)

    # =========================================================================
    # Extraction
    # =========================================================================

    def extract_entities(self, text: Union[str, bytes, None]) -> dict[str, list[str]]:
        """Find law references, monetary amounts and dates."""
        text = ZERO_WIDTH.sub("", _coerce(text))
        entities = {}
        for entity_type, patterns in ENTITY_PATTERNS.items():
            found = []
            for pattern in patterns:
                for match in re.findall(pattern, text):
                    value = match.strip()
                    if value and value not in found:
                        found.append(value)
            entities[entity_type] = found
        return entities

    def extract_keywords(self, text: Union[str, bytes, None], limit: int = 10) -> list[str]:
        """Distinct non-stop-word tokens longer than two characters, in order."""
        keywords = []
        for token in self.tokenize(text, remove_stop_words=True):
            if len(token) <= 2 or token.isdigit() or token in keywords:
                continue
            keywords.append(token)
            if len(keywords) >= limit:
                break
        return keywords

    def contains_term(self, normalized_text: str, term: str) -> bool:
        """Whole-word (or whole-phrase) match of a term against normalized text."""
        needle = normalize_term(term)
        if not needle:
            return False
        pattern = r"(?<!\w)" + re.escape(needle) + r"(?!\w)"
        if re.search(pattern, normalized_text.lower()):
            return True
        # Arabic terms also match after clitic/article stripping
        if ARABIC_CHAR.search(needle) and " " not in needle:
            stem = self.stem(needle)
            return any(self.stem(tok) == stem for tok in self.tokenize(normalized_text))
        return False


_default_normalizer = ArabicTextNormalizer()


@lru_cache(maxsize=4096)
def normalize_term(term: str) -> str:
    """Normalized, lower-cased form of a lexicon term."""
    return _default_normalizer.normalize(term).lower()


@lru_cache(maxsize=None)
def _normalized_stop_words() -> frozenset:
    words = set()
    for lang_words in STOP_WORDS.values():
        words.update(normalize_term(w) for w in lang_words)
    return frozenset(words)


@lru_cache(maxsize=None)
def _normalized_sentiment(language: str) -> dict:
    lexicon = SENTIMENT_WORDS.get(language, SENTIMENT_WORDS["en"])
    return {
        label: frozenset(
            _default_normalizer.stem(normalize_term(w)) if ARABIC_CHAR.search(w) else normalize_term(w)
            for w in words
        )
        for label, words in lexicon.items()
    }


# CLI for testing
if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)
    normalizer = ArabicTextNormalizer()
    sample = " ".join(sys.argv[1:]) or "ما هي أحكامُ الإجازةِ السنويّة؟؟ في المادة ١٠٩"
    print(f"Normalized: {normalizer.normalize(sample)}")
    print(f"Tokens:     {normalizer.tokenize(sample, remove_stop_words=True)}")
    print(f"Stems:      {normalizer.stems(sample)}")
    print(f"Language:   {normalizer.detect_language(sample)}")
    print(f"Direction:  {normalizer.detect_direction(sample)}")
    print(f"Entities:   {normalizer.extract_entities(sample)}")
