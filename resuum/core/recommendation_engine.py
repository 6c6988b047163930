"""Recommendation pipeline: analyze -> prefilter -> score -> select.

Progress is reported as (stage message, fraction) at each stage boundary:
0.1 analyze, 0.2 prefilter, 0.3 scoring, 0.3-0.8 per scored batch,
0.7 fallback, 0.9 select, 1.0 done.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from resuum.core.batch_scorer import ScoringError
from resuum.core.bullet_selector import BulletSelector
from resuum.core.fallback_scorer import fallback_scores
from resuum.core.job_analyzer import JobAnalysisError
from resuum.core.models import RecommendationResult, RoleResult, ScoredBullet
from resuum.core.prefilter import LexicalPrefilter
from resuum.core.storage import StorageError

if TYPE_CHECKING:
    from resuum.core.batch_scorer import BatchScorer
    from resuum.core.job_analyzer import JobAnalyzer
    from resuum.core.library import Library, LibraryService

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]

EMPTY_LIBRARY_MESSAGE = (
    "You must add experience first. Please add roles and bullet points "
    "before generating recommendations."
)
NO_CANDIDATES_MESSAGE = "No relevant bullet points found for this job description"


class RecommendationError(Exception):
    """A recommendation run failed. The message is the one shown to the user."""


class RecommendationEngine:
    def __init__(
        self,
        library: LibraryService,
        analyzer: JobAnalyzer,
        scorer: BatchScorer,
        prefilter: LexicalPrefilter | None = None,
        selector: BulletSelector | None = None,
        fallback_to_heuristic: bool = True,
    ) -> None:
        self._library = library
        self._analyzer = analyzer
        self._scorer = scorer
        self._prefilter = prefilter or LexicalPrefilter()
        self._selector = selector or BulletSelector()
        self.fallback_to_heuristic = fallback_to_heuristic

    async def recommend(
        self,
        job_title: str,
        job_description: str,
        on_progress: ProgressCallback | None = None,
    ) -> RecommendationResult:
        """Run the full pipeline against the current library.

        Raises:
            RecommendationError: On empty input, an empty library (checked before
                any remote call), no candidates, or any stage failure that
                fallback scoring cannot absorb.
        """
        start = time.monotonic()

        def progress(stage: str, fraction: float) -> None:
            if on_progress is not None:
                on_progress(stage, fraction)

        if not job_title.strip() or not job_description.strip():
            raise RecommendationError("Job title and description are required")

        try:
            library = await self._library.load_library()
        except StorageError as e:
            raise RecommendationError(f"Could not load your experience: {e}") from e
        if library.is_empty:
            raise RecommendationError(EMPTY_LIBRARY_MESSAGE)

        progress("Analyzing job description...", 0.1)
        try:
            analysis = await self._analyzer.analyze(job_title, job_description)
        except JobAnalysisError as e:
            raise RecommendationError(str(e)) from e

        progress("Filtering bullet points...", 0.2)
        candidates_by_role = self._prefilter.filter(analysis, library.roles, library.bullets)
        candidates = [b for role_bullets in candidates_by_role.values() for b in role_bullets]
        if not candidates:
            raise RecommendationError(NO_CANDIDATES_MESSAGE)

        progress("Scoring bullet points...", 0.3)
        try:
            scored = await self._scorer.score(analysis, candidates, on_progress=on_progress)
            # Batches that could not be parsed carry neutral fallback scores
            degraded = any(s.is_fallback for s in scored)
        except ScoringError as e:
            if not self.fallback_to_heuristic:
                raise RecommendationError(str(e)) from e
            logger.warning(f"Remote scoring failed, falling back to heuristic: {e}")
            progress("Using fallback ranking...", 0.7)
            scored = fallback_scores(analysis, candidates)
            degraded = True

        progress("Selecting optimal set...", 0.9)
        selected = self._selector.select(scored, library.roles, library.vectors)

        role_results = self.group_by_role(selected, library)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        progress("Done", 1.0)
        logger.info(
            f"Recommended {len(selected)} bullets across {len(role_results)} roles "
            f"for '{analysis.title}' in {elapsed_ms}ms (degraded={degraded})"
        )
        return RecommendationResult(
            job_title=job_title.strip(),
            total_bullets=len(selected),
            processing_time_ms=elapsed_ms,
            role_results=role_results,
            degraded=degraded,
        )

    @staticmethod
    def group_by_role(selected: list[ScoredBullet], library: Library) -> list[RoleResult]:
        """Per-role groups, most relevant first, ties in role display order."""
        project_names = {p.id: p.name for p in library.projects}
        results: list[tuple[int, RoleResult]] = []

        for position, role in enumerate(library.roles):
            bullets = [b for b in selected if b.role_id == role.id]
            if not bullets:
                continue
            projects_used: list[str] = []
            for bullet in bullets:
                name = project_names.get(bullet.project_id, bullet.project_id)
                if name not in projects_used:
                    projects_used.append(name)
            results.append(
                (
                    position,
                    RoleResult(
                        role_id=role.id,
                        role_title=role.display_title,
                        selected_bullets=bullets,
                        projects_used=projects_used,
                        avg_relevance=sum(b.normalized_score for b in bullets) / len(bullets),
                    ),
                )
            )

        results.sort(key=lambda item: (-item[1].avg_relevance, item[0]))
        return [result for _, result in results]
