"""Rule-based final selection: role quotas, project diversity, duplicate suppression.

select() is a pure function of its inputs; identical inputs produce identical,
identically ordered output.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from functools import cmp_to_key

from resuum.core.models import Role, ScoredBullet
from resuum.core.text_similarity import are_duplicates, has_quantified_result
from resuum.core.vector_math import REDUNDANCY_THRESHOLD, is_redundant

logger = logging.getLogger(__name__)

DEFAULT_ROLE_QUOTA = 3
MAX_SELECTED = 50
OVERLAP_THRESHOLD = 0.75
SCORE_EPSILON = 0.001


def _compare(a: ScoredBullet, b: ScoredBullet) -> int:
    if abs(a.normalized_score - b.normalized_score) > SCORE_EPSILON:
        return -1 if a.normalized_score > b.normalized_score else 1

    a_quantified = has_quantified_result(a.text)
    b_quantified = has_quantified_result(b.text)
    if a_quantified != b_quantified:
        return -1 if a_quantified else 1

    if a.bullet_id == b.bullet_id:
        return 0
    return -1 if a.bullet_id < b.bullet_id else 1


def sort_deterministically(bullets: list[ScoredBullet]) -> list[ScoredBullet]:
    """Score descending (within SCORE_EPSILON), then quantified first, then bullet id."""
    return sorted(bullets, key=cmp_to_key(_compare))


def _rank_key(bullet: ScoredBullet) -> tuple[float, str]:
    return (-bullet.normalized_score, bullet.bullet_id)


class BulletSelector:
    def __init__(
        self,
        max_total: int = MAX_SELECTED,
        overlap_threshold: float = OVERLAP_THRESHOLD,
        redundancy_threshold: float = REDUNDANCY_THRESHOLD,
    ) -> None:
        self.max_total = max_total
        self.overlap_threshold = overlap_threshold
        self.redundancy_threshold = redundancy_threshold

    def select(
        self,
        scored: list[ScoredBullet],
        roles: list[Role],
        vectors: dict[str, list[float]] | None = None,
    ) -> list[ScoredBullet]:
        """Pick the final bullets.

        Per role: phase 1 takes the best acceptable bullet from each project,
        phase 2 fills the remaining quota from the pooled rest by score. A
        candidate is rejected across the whole selection if it overlaps an
        already selected bullet by more than overlap_threshold, shares its
        fingerprint, or (when both have embeddings) is at least
        redundancy_threshold cosine-similar to it.
        """
        vectors = vectors or {}
        quotas = {r.id: r.bullets_limit or DEFAULT_ROLE_QUOTA for r in roles}
        role_order = [r.id for r in sorted(roles, key=lambda r: (r.order_index, r.id))]

        by_role: dict[str, list[ScoredBullet]] = defaultdict(list)
        for bullet in scored:
            by_role[bullet.role_id].append(bullet)
        role_order += sorted(rid for rid in by_role if rid not in quotas)

        selected: list[ScoredBullet] = []
        selected_vectors: list[list[float]] = []

        def acceptable(candidate: ScoredBullet) -> bool:
            if any(are_duplicates(candidate.text, e.text, self.overlap_threshold) for e in selected):
                return False
            candidate_vector = vectors.get(candidate.bullet_id)
            return not (
                candidate_vector and is_redundant(candidate_vector, selected_vectors, self.redundancy_threshold)
            )

        def take(bullet: ScoredBullet) -> None:
            selected.append(bullet)
            selected_vectors.append(vectors.get(bullet.bullet_id) or [])
            taken.add(bullet.bullet_id)

        for role_id in role_order:
            candidates = by_role.get(role_id)
            if not candidates:
                continue
            quota = quotas.get(role_id, DEFAULT_ROLE_QUOTA)
            taken: set[str] = set()

            by_project: dict[str, list[ScoredBullet]] = defaultdict(list)
            for bullet in candidates:
                by_project[bullet.project_id].append(bullet)
            projects = [sorted(members, key=_rank_key) for members in by_project.values()]
            projects.sort(key=lambda members: _rank_key(members[0]))

            # Phase 1: one bullet per project
            for members in projects:
                if len(taken) >= quota or len(selected) >= self.max_total:
                    break
                for bullet in members:
                    if acceptable(bullet):
                        take(bullet)
                        break

            # Phase 2: fill from everything left in the role
            pool = sorted((b for b in candidates if b.bullet_id not in taken), key=_rank_key)
            for bullet in pool:
                if len(taken) >= quota or len(selected) >= self.max_total:
                    break
                if acceptable(bullet):
                    take(bullet)

            if len(selected) >= self.max_total:
                logger.info(f"Selection reached global cap of {self.max_total} bullets")
                break

        return sort_deterministically(selected)
