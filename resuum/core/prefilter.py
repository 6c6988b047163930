"""Lexical prefilter (BM25) that bounds how many bullets reach remote scoring.

Scoring is deterministic: ties are broken by bullet id, and idf is kept
non-negative so that sharing more job terms never lowers a bullet's score.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass

from resuum.core.models import Bullet, JobAnalysis, Role

logger = logging.getLogger(__name__)

BM25_K1 = 1.5
BM25_B = 0.75

DEFAULT_PER_ROLE_CAP = 60
DEFAULT_TOTAL_CAP = 240

SKILL_EXPANSIONS: dict[str, list[str]] = {
    "sql": ["database", "queries"],
    "js": ["javascript"],
    "ai": ["artificial intelligence", "machine learning"],
    "ml": ["machine learning"],
    "pm": ["product management", "project management"],
}

_QUANTIFIED_RE = re.compile(
    r"\d+[%$]|\d+\s*(percent|million|billion|thousand)|\$\d+|\d+x",
    re.IGNORECASE,
)
_ACTION_VERB_RE = re.compile(
    r"^(led|managed|developed|created|implemented|optimized|increased|reduced|built|designed)",
    re.IGNORECASE,
)


def skill_variants(skill: str) -> list[str]:
    """Lowercased spellings of a skill: compacted, alphanumeric-only, acronym, expansions."""
    lower = skill.lower().strip()
    if not lower:
        return []
    variants = [lower, re.sub(r"\s+", "", lower), re.sub(r"[^a-z0-9]", "", lower)]

    words = lower.split()
    if len(words) > 1:
        acronym = "".join(w[0] for w in words)
        if len(acronym) > 1:
            variants.append(acronym)

    variants.extend(SKILL_EXPANSIONS.get(lower, []))
    return [v for v in variants if v]


def extract_search_terms(analysis: JobAnalysis) -> list[str]:
    """Ordered, de-duplicated search terms from title, skills and requirements."""
    terms: dict[str, None] = {}

    for word in analysis.title.lower().split():
        if len(word) > 2:
            terms[word] = None

    for skill in analysis.skills:
        for variant in skill_variants(skill):
            terms[variant] = None

    for requirement in analysis.requirements:
        for word in requirement.lower().split():
            if len(word) > 3:
                terms[word] = None

    return list(terms)


def quality_bonus(text: str) -> float:
    bonus = 0.0
    if _QUANTIFIED_RE.search(text):
        bonus += 0.3
    if _ACTION_VERB_RE.match(text):
        bonus += 0.2
    if 10 <= len(text.split()) <= 30:
        bonus += 0.1
    return bonus


@dataclass
class _Corpus:
    texts: list[str]
    avg_length: float

    @classmethod
    def build(cls, bullets: list[Bullet]) -> _Corpus:
        texts = [b.text.lower() for b in bullets]
        total = sum(len(t.split()) for t in texts)
        return cls(texts=texts, avg_length=total / len(texts) if texts else 0.0)

    def document_frequency(self, term: str) -> int:
        return sum(1 for t in self.texts if term in t)


def bm25_score(text: str, terms: list[str], corpus: _Corpus, df_cache: dict[str, int]) -> float:
    doc_words = text.lower().split()
    doc_length = len(doc_words)
    n = len(corpus.texts)
    score = 0.0

    for term in terms:
        tf = sum(1 for w in doc_words if term in w)
        if tf == 0:
            continue
        if term not in df_cache:
            df_cache[term] = corpus.document_frequency(term)
        df = df_cache[term]
        idf = math.log(1 + (n - df + 0.5) / (df + 0.5))
        length_ratio = doc_length / corpus.avg_length if corpus.avg_length else 1.0
        tf_component = (tf * (BM25_K1 + 1)) / (tf + BM25_K1 * (1 - BM25_B + BM25_B * length_ratio))
        score += idf * tf_component

    return score + quality_bonus(text)


class LexicalPrefilter:
    """Shrinks each role's bullets to its top-K by BM25 relevance to the job."""

    def __init__(
        self,
        per_role_cap: int = DEFAULT_PER_ROLE_CAP,
        total_cap: int = DEFAULT_TOTAL_CAP,
    ) -> None:
        self.per_role_cap = per_role_cap
        self.total_cap = total_cap

    def rank(self, analysis: JobAnalysis, bullets: list[Bullet], limit: int) -> list[tuple[Bullet, float]]:
        """Top `limit` bullets with their scores, best first, ties by bullet id."""
        if not bullets or limit <= 0:
            return []
        terms = extract_search_terms(analysis)
        corpus = _Corpus.build(bullets)
        df_cache: dict[str, int] = {}
        scored = [(b, bm25_score(b.text, terms, corpus, df_cache)) for b in bullets]
        scored.sort(key=lambda item: (-item[1], item[0].id))
        return scored[:limit]

    def filter(
        self,
        analysis: JobAnalysis,
        roles: list[Role],
        bullets: list[Bullet],
    ) -> dict[str, list[Bullet]]:
        """Per-role candidate lists, bounded by the per-role and global caps.

        Roles are visited in display order; once the global cap is used up the
        remaining roles get no candidates.
        """
        by_role: dict[str, list[Bullet]] = {}
        for bullet in bullets:
            by_role.setdefault(bullet.role_id, []).append(bullet)

        result: dict[str, list[Bullet]] = {}
        remaining = self.total_cap
        for role in sorted(roles, key=lambda r: (r.order_index, r.id)):
            role_bullets = by_role.get(role.id, [])
            if not role_bullets:
                continue
            if remaining <= 0:
                logger.info(f"Global candidate cap reached, skipping role {role.id}")
                break
            limit = min(self.per_role_cap, remaining)
            ranked = self.rank(analysis, role_bullets, limit)
            result[role.id] = [b for b, _ in ranked]
            remaining -= len(ranked)
            logger.debug(f"Prefilter role {role.id}: {len(role_bullets)} -> {len(ranked)}")

        return result
