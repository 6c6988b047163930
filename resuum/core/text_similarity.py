"""Text normalization and similarity helpers for bullet comparison.

Provides:
- word_overlap_similarity(): Jaccard overlap of normalized content words
- create_fingerprint(): case/diacritic/number-masked form for exact-duplicate checks
- are_duplicates(): fingerprint match or very high word overlap
- analyze_features(): structural quality flags stored on each bullet
"""

from __future__ import annotations

import re
import unicodedata

from resuum.core.models import BulletFeatures

STOP_WORDS = frozenset(
    {
        "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
        "by", "from", "up", "about", "into", "through", "during", "before",
        "after", "above", "below", "was", "were", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "may", "might",
        "must", "can", "shall", "this", "that", "these", "those",
    }
)

DUPLICATE_OVERLAP = 0.8

_PUNCT_RE = re.compile(r"[^\w\s]")
_NUM_RE = re.compile(r"\d+")
_WS_RE = re.compile(r"\s+")
_DIGIT_RE = re.compile(r"\d")
_FEATURE_VERB_RE = re.compile(
    r"^(led|managed|developed|created|built|achieved|analyzed|designed|implemented)",
    re.IGNORECASE,
)


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_words(text: str) -> list[str]:
    """Lowercased content words longer than two characters, stop words removed."""
    cleaned = _PUNCT_RE.sub(" ", text.lower())
    return [w for w in cleaned.split() if len(w) > 2 and w not in STOP_WORDS]


def word_overlap_similarity(text1: str, text2: str) -> float:
    words1 = set(normalize_words(text1))
    words2 = set(normalize_words(text2))
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def create_fingerprint(text: str) -> str:
    """Normalized form for exact/near-exact duplicate detection.

    Case-folded, diacritics removed, punctuation stripped, every run of digits
    replaced by <NUM>, whitespace collapsed.
    """
    text = strip_diacritics(text).lower()
    text = _PUNCT_RE.sub("", text)
    text = _NUM_RE.sub("<NUM>", text)
    return _WS_RE.sub(" ", text).strip()


def are_duplicates(text1: str, text2: str, overlap_threshold: float = DUPLICATE_OVERLAP) -> bool:
    if create_fingerprint(text1) == create_fingerprint(text2):
        return True
    return word_overlap_similarity(text1, text2) > overlap_threshold


def has_quantified_result(text: str) -> bool:
    return bool(_DIGIT_RE.search(text))


def analyze_features(text: str) -> BulletFeatures:
    word_count = len(text.split())
    return BulletFeatures(
        has_numbers=has_quantified_result(text),
        action_verb=bool(_FEATURE_VERB_RE.match(text.strip())),
        length_ok=5 <= word_count <= 22,
    )
