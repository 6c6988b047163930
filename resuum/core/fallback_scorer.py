"""Local heuristic scoring used when remote scoring is unavailable.

Every result carries the "fallback" flag so callers can tell it apart from
model scores.
"""

from __future__ import annotations

import logging
import re

from resuum.core.models import Bullet, JobAnalysis, ScoredBullet

logger = logging.getLogger(__name__)

RELEVANCE_WEIGHT = 0.4
QUALITY_WEIGHT = 0.3
IMPACT_WEIGHT = 0.3
MIN_NORMALIZED = 0.1
MAX_NORMALIZED = 0.95
MAX_SKILL_HITS = 5

# (keywords, weight per match, cap)
KEYWORD_GROUPS: list[tuple[tuple[str, ...], float, float]] = [
    (("product", "roadmap", "strategy", "feature", "requirements", "stakeholder", "user", "customer"), 0.08, 0.3),
    (("engineering", "technical", "integration", "workflow", "system", "process"), 0.07, 0.2),
    (("teams", "alignment", "collaboration", "cross-functional", "stakeholder"), 0.05, 0.1),
]

STRONG_VERBS = (
    "designed", "built", "created", "developed", "implemented", "launched",
    "led", "managed", "drove", "delivered", "achieved", "increased",
    "improved", "optimized", "established", "defined", "aligned", "validated",
)
PROFESSIONAL_TERMS = ("analysis", "strategy", "framework", "methodology", "requirements")
WEAK_TERMS = ("helped", "assisted", "participated", "involved", "responsible for")
STRATEGY_KEYWORDS = ("strategy", "roadmap", "revenue", "pilot", "expansion")

_MAJOR_MONEY = re.compile(r"\$\d{2,3}M\+?|\$\d+\s*million", re.IGNORECASE)
_MONEY_UNIT = re.compile(r"\$\d+[MK]", re.IGNORECASE)
_MONEY = re.compile(r"\$\d+")
_TEAMS = re.compile(r"(\d+)\s*teams", re.IGNORECASE)
_RESEARCH = re.compile(r"analysis|research|conjoint|primary", re.IGNORECASE)


def find_skill_hits(text: str, skills: list[str]) -> list[str]:
    lower = text.lower()
    return [s for s in skills if s and s.lower() in lower][:MAX_SKILL_HITS]


def relevance_score(text: str, skills: list[str]) -> float:
    lower = text.lower()
    matched = [s for s in skills if s and s.lower() in lower]
    score = min(0.4, len(matched) * 0.1)
    for keywords, per_match, cap in KEYWORD_GROUPS:
        hits = sum(1 for k in keywords if k in lower)
        score += min(cap, hits * per_match)
    return min(1.0, score)


def quality_score(text: str) -> float:
    lower = text.lower()
    score = 0.0

    if lower.startswith(STRONG_VERBS):
        score += 0.4

    word_count = len(text.split())
    if 15 <= word_count <= 30:
        score += 0.3
    elif 10 <= word_count <= 35:
        score += 0.2

    score += min(0.2, sum(1 for t in PROFESSIONAL_TERMS if t in lower) * 0.05)

    if not any(t in lower for t in WEAK_TERMS):
        score += 0.1

    return min(1.0, score)


def impact_score(text: str) -> float:
    score = 0.0

    if _MAJOR_MONEY.search(text):
        score += 0.9
    elif _MONEY_UNIT.search(text):
        score += 0.5
    elif _MONEY.search(text):
        score += 0.3

    teams = _TEAMS.search(text)
    if teams:
        count = int(teams.group(1))
        if count >= 10:
            score += 0.4
        elif count >= 5:
            score += 0.3
        else:
            score += 0.2

    lower = text.lower()
    score += min(0.3, sum(1 for k in STRATEGY_KEYWORDS if k in lower) * 0.1)

    if re.search(r"\d", text):
        score += 0.1

    if _RESEARCH.search(text):
        score += 0.2

    return min(1.0, score)


def score_bullet(bullet: Bullet, skills: list[str]) -> ScoredBullet:
    relevance = relevance_score(bullet.text, skills)
    quality = quality_score(bullet.text)
    impact = impact_score(bullet.text)

    total = relevance * RELEVANCE_WEIGHT + quality * QUALITY_WEIGHT + impact * IMPACT_WEIGHT
    skill_hits = find_skill_hits(bullet.text, skills)

    reasons = "Fallback relevance scoring"
    if impact > 0.7:
        reasons += ", major business impact"
    if skill_hits:
        reasons += f", {len(skill_hits)} skill matches"
    if quality > 0.7:
        reasons += ", high quality"

    return ScoredBullet(
        bullet_id=bullet.id,
        text=bullet.text,
        role_id=bullet.role_id,
        project_id=bullet.project_id,
        score=total * 10,
        normalized_score=max(MIN_NORMALIZED, min(MAX_NORMALIZED, total)),
        reasons=reasons,
        skill_hits=skill_hits,
        flags=["fallback"],
    )


def fallback_scores(analysis: JobAnalysis, bullets: list[Bullet]) -> list[ScoredBullet]:
    """Score every bullet locally, ordered by normalized score descending then id."""
    logger.warning(f"Using fallback scoring for {len(bullets)} bullets")
    scored = [score_bullet(b, analysis.skills) for b in bullets]
    scored.sort(key=lambda s: (-s.normalized_score, s.bullet_id))
    return scored
