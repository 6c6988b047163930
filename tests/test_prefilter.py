"""Tests for the BM25 lexical prefilter."""

import pytest

from resuum.core.models import Bullet, JobAnalysis, Role
from resuum.core.prefilter import LexicalPrefilter, extract_search_terms, quality_bonus, skill_variants


def _analysis(**kwargs):
    defaults = {
        "title": "Senior Data Engineer",
        "description": "Build pipelines",
        "skills": ["Python", "SQL"],
        "requirements": ["Experience with streaming systems"],
    }
    defaults.update(kwargs)
    return JobAnalysis(**defaults)


def _bullet(bullet_id, text, role_id="role_1"):
    return Bullet(id=bullet_id, role_id=role_id, project_id=f"project_{role_id}", text=text)


def test_skill_variants():
    """Test spelling variants, acronyms and expansions."""
    assert skill_variants("Machine Learning") == ["machine learning", "machinelearning", "machinelearning", "ml"]
    assert "database" in skill_variants("SQL")
    assert skill_variants("  ") == []


def test_extract_search_terms_dedupes_in_order():
    terms = extract_search_terms(_analysis(skills=["Python", "python"]))
    assert terms[:3] == ["senior", "data", "engineer"]
    assert terms.count("python") == 1
    assert "experience" in terms
    assert "with" in terms


def test_quality_bonus():
    assert quality_bonus("Reduced costs by 30% across twelve regional warehouses in one year") == pytest.approx(0.6)
    assert quality_bonus("stuff") == 0.0


def test_rank_prefers_matching_bullets():
    """Test that bullets sharing job terms rank first."""
    bullets = [
        _bullet("bullet_a", "Organized the office holiday party"),
        _bullet("bullet_b", "Wrote Python and SQL jobs for streaming data"),
        _bullet("bullet_c", "Maintained Python scripts"),
    ]

    ranked = LexicalPrefilter().rank(_analysis(), bullets, limit=3)

    assert [b.id for b, _ in ranked] == ["bullet_b", "bullet_c", "bullet_a"]
    assert ranked[0][1] > ranked[1][1] > ranked[2][1]


def test_rank_ties_break_by_id():
    bullets = [_bullet("bullet_b", "Same text here"), _bullet("bullet_a", "Same text here")]
    ranked = LexicalPrefilter().rank(_analysis(), bullets, limit=2)
    assert [b.id for b, _ in ranked] == ["bullet_a", "bullet_b"]


def test_rank_empty_or_zero_limit():
    assert LexicalPrefilter().rank(_analysis(), [], limit=5) == []
    assert LexicalPrefilter().rank(_analysis(), [_bullet("bullet_a", "Python")], limit=0) == []


def test_filter_applies_per_role_and_total_caps():
    """Test that roles are visited in display order until the global cap is used up."""
    roles = [
        Role(id="role_2", title="Analyst", order_index=1),
        Role(id="role_1", title="Engineer", order_index=0),
        Role(id="role_3", title="Intern", order_index=2),
    ]
    bullets = [
        _bullet(f"bullet_{role_id}_{i}", f"Python pipeline number {i}", role_id)
        for role_id in ("role_1", "role_2", "role_3")
        for i in range(3)
    ]

    result = LexicalPrefilter(per_role_cap=2, total_cap=3).filter(_analysis(), roles, bullets)

    assert list(result) == ["role_1", "role_2"]
    assert len(result["role_1"]) == 2
    assert len(result["role_2"]) == 1


def test_filter_skips_roles_without_bullets():
    roles = [Role(id="role_1", title="Engineer"), Role(id="role_2", title="Analyst", order_index=1)]
    result = LexicalPrefilter().filter(_analysis(), roles, [_bullet("bullet_1", "Python", "role_2")])
    assert list(result) == ["role_2"]


def test_filter_is_deterministic():
    roles = [Role(id="role_1", title="Engineer")]
    bullets = [_bullet(f"bullet_{i}", f"Built SQL report {i}") for i in range(10)]
    prefilter = LexicalPrefilter(per_role_cap=4)

    first = prefilter.filter(_analysis(), roles, bullets)
    second = prefilter.filter(_analysis(), roles, list(reversed(bullets)))
    assert [b.id for b in first["role_1"]] == [b.id for b in second["role_1"]]
