"""Tests for rule-based bullet selection."""

import copy

from resuum.core.bullet_selector import BulletSelector, sort_deterministically
from resuum.core.models import Role, ScoredBullet

_DIGITS_TO_LETTERS = str.maketrans("0123456789_", "abcdefghijk")


def _scored(bullet_id, score, text=None, role_id="role_1", project_id="project_a"):
    return ScoredBullet(
        bullet_id=bullet_id,
        text=text or f"Delivered item{bullet_id.translate(_DIGITS_TO_LETTERS)} initiative",
        role_id=role_id,
        project_id=project_id,
        score=score * 10,
        normalized_score=score,
    )


def _ids(bullets):
    return [b.bullet_id for b in bullets]


def _two_projects():
    return [
        _scored("a1", 0.9, "Shipped checkout redesign lifting conversion", project_id="project_a"),
        _scored("a2", 0.8, "Automated release pipeline for mobile apps", project_id="project_a"),
        _scored("a3", 0.7, "Mentored four junior engineers", project_id="project_a"),
        _scored("b1", 0.6, "Negotiated vendor contracts for cloud hosting", project_id="project_b"),
        _scored("b2", 0.5, "Introduced quarterly security reviews", project_id="project_b"),
        _scored("b3", 0.4, "Rebuilt analytics dashboards in Looker", project_id="project_b"),
    ]


def test_project_diversity_before_score():
    """Test that each project contributes one bullet before any second one is taken."""
    roles = [Role(id="role_1", title="Engineer", bullets_limit=2)]

    selected = BulletSelector().select(_two_projects(), roles)

    assert _ids(selected) == ["a1", "b1"]


def test_remaining_quota_filled_by_score():
    roles = [Role(id="role_1", title="Engineer", bullets_limit=3)]

    selected = BulletSelector().select(_two_projects(), roles)

    assert _ids(selected) == ["a1", "a2", "b1"]


def test_default_quota_when_limit_unset():
    roles = [Role(id="role_1", title="Engineer", bullets_limit=0)]
    assert len(BulletSelector().select(_two_projects(), roles)) == 3


def test_unknown_role_gets_default_quota():
    scored = [_scored(f"x{i}", 0.5 - i * 0.01, role_id="role_x") for i in range(5)]
    selected = BulletSelector().select(scored, roles=[])
    assert len(selected) == 3


def test_fingerprint_duplicates_rejected():
    """Test that the same accomplishment with different figures is kept once."""
    scored = [
        _scored("a1", 0.9, "Increased revenue by 20%", project_id="project_a"),
        _scored("b1", 0.8, "increased revenue by 35%!", project_id="project_b"),
        _scored("b2", 0.7, "Hired and onboarded a support team", project_id="project_b"),
    ]
    roles = [Role(id="role_1", title="Engineer", bullets_limit=3)]

    assert _ids(BulletSelector().select(scored, roles)) == ["a1", "b2"]


def test_high_word_overlap_rejected():
    """Test that near-identical wording above the overlap threshold is suppressed."""
    scored = [
        _scored("a1", 0.9, "Designed scalable data pipeline architecture supporting analytics platform migration"),
        _scored("a2", 0.8, "Designed scalable data pipeline architecture supporting analytics platform migrations"),
        _scored("a3", 0.7, "Ran customer interviews for pricing research"),
    ]
    roles = [Role(id="role_1", title="Engineer", bullets_limit=3)]

    assert _ids(BulletSelector().select(scored, roles)) == ["a1", "a3"]


def test_overlap_rejection_spans_roles():
    scored = [
        _scored("a1", 0.9, "Increased revenue by 20%", role_id="role_1"),
        _scored("b1", 0.8, "Increased revenue by 40%", role_id="role_2"),
    ]
    roles = [Role(id="role_1", title="Engineer"), Role(id="role_2", title="Manager", order_index=1)]

    assert _ids(BulletSelector().select(scored, roles)) == ["a1"]


def test_embedding_redundancy_rejected():
    """Test that semantically redundant bullets are dropped when both have vectors."""
    scored = [
        _scored("a1", 0.9, "Cut cloud spend through reserved instances"),
        _scored("a2", 0.8, "Lowered AWS bill with capacity planning"),
    ]
    roles = [Role(id="role_1", title="Engineer", bullets_limit=3)]
    vectors = {"a1": [1.0, 0.0, 0.0], "a2": [0.98, 0.1, 0.0]}

    assert _ids(BulletSelector().select(scored, roles, vectors)) == ["a1"]
    assert _ids(BulletSelector().select(scored, roles)) == ["a1", "a2"]
    assert _ids(BulletSelector().select(scored, roles, {"a1": [1.0, 0.0, 0.0]})) == ["a1", "a2"]


def test_thresholds_are_configurable():
    """Test that selector thresholds drive both the wording and the embedding checks."""
    scored = [
        _scored("a1", 0.9, "Cut cloud spend through reserved instances"),
        _scored("a2", 0.8, "Cut cloud spend through capacity planning"),
        _scored("a3", 0.7, "Hired a platform team", project_id="project_b"),
    ]
    roles = [Role(id="role_1", title="Engineer", bullets_limit=3)]
    vectors = {"a1": [1.0, 0.0, 0.0], "a2": [0.0, 1.0, 0.0], "a3": [0.98, 0.1, 0.0]}

    assert _ids(BulletSelector().select(scored, roles, vectors)) == ["a1", "a2"]
    assert _ids(BulletSelector(overlap_threshold=0.4).select(scored, roles, vectors)) == ["a1"]
    assert _ids(BulletSelector(redundancy_threshold=0.999).select(scored, roles, vectors)) == ["a1", "a2", "a3"]


def test_vectors_of_other_dimension_not_compared():
    scored = [_scored("a1", 0.9, "Cut cloud spend"), _scored("a2", 0.8, "Hired a platform team")]
    roles = [Role(id="role_1", title="Engineer", bullets_limit=3)]
    vectors = {"a1": [1.0, 0.0, 0.0], "a2": [1.0, 0.0]}

    assert _ids(BulletSelector().select(scored, roles, vectors)) == ["a1", "a2"]


def test_global_cap():
    scored = [
        _scored(f"{role_id}_{i}", 0.9 - i * 0.1, role_id=role_id)
        for role_id in ("role_1", "role_2")
        for i in range(3)
    ]
    roles = [Role(id="role_1", title="Engineer"), Role(id="role_2", title="Manager", order_index=1)]

    selected = BulletSelector(max_total=4).select(scored, roles)

    assert len(selected) == 4
    assert sum(1 for b in selected if b.role_id == "role_1") == 3


def test_select_is_pure_and_deterministic():
    """Test that select() leaves its inputs untouched and repeats exactly."""
    scored = _two_projects()
    roles = [Role(id="role_1", title="Engineer", bullets_limit=3)]
    before = copy.deepcopy(scored)
    selector = BulletSelector()

    first = selector.select(scored, roles)
    second = selector.select(list(reversed(scored)), roles)

    assert scored == before
    assert _ids(first) == _ids(second)


def test_sort_prefers_quantified_within_epsilon():
    """Test tie handling: quantified first, then id."""
    bullets = [
        _scored("b", 0.5, "Improved onboarding"),
        _scored("c", 0.5005, "Improved onboarding by 30%"),
        _scored("a", 0.5, "Improved reporting"),
        _scored("z", 0.9, "Top bullet"),
    ]

    assert _ids(sort_deterministically(bullets)) == ["z", "c", "a", "b"]
