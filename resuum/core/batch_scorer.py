"""Remote relevance scoring of prefiltered bullets in token-bounded batches.

Provides:
- create_batches(): pack bullets by count and estimated token budget
- repair_results(): one well-formed result per submitted bullet id
- normalize_scores(): min-max normalization plus a capped skill coverage bonus
- BatchScorer: small worker pool with pacing and a single retry per batch
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from resuum.core.llm_providers import LLMError, parse_json_content
from resuum.core.models import Bullet, JobAnalysis, ScoredBullet
from resuum.core.prompts import get_prompt, render_prompt

if TYPE_CHECKING:
    from resuum.core.llm_providers import LLMProvider

logger = logging.getLogger(__name__)

# ==================== Batching ====================

MAX_TOKENS_PER_BATCH = 2500
MIN_BATCH_SIZE = 8
MAX_BATCH_SIZE = 12
TOKENS_PER_CHAR = 0.25
TOKENS_PER_BULLET = 50
SYSTEM_PROMPT_TOKENS = 250
MAX_JD_CHARS = 800
MAX_PROMPT_SKILLS = 8
MAX_BULLET_CHARS = 150

# ==================== Requests ====================

CONCURRENCY = 2
BATCH_PACING = 2.0  # seconds before every batch after the first
RETRY_DELAY = 5.0  # seconds before the single retry
REQUEST_TIMEOUT = 25.0  # seconds

# ==================== Scores ====================

MIN_SCORE = 1.0
MAX_SCORE = 10.0
NEUTRAL_SCORE = 5.0
COVERAGE_BONUS_PER_SKILL = 0.02
MAX_COVERAGE_BONUS = 0.06

ProgressCallback = Callable[[str, float], None]


class ScoringError(Exception):
    """A batch could not be scored, even after its retry."""


def estimate_base_tokens(analysis: JobAnalysis) -> float:
    title = len(analysis.title) * TOKENS_PER_CHAR
    description = min(len(analysis.description), MAX_JD_CHARS) * TOKENS_PER_CHAR
    skills = len(",".join(analysis.skills)) * TOKENS_PER_CHAR
    return title + description + skills + SYSTEM_PROMPT_TOKENS


def estimate_bullet_tokens(bullet: Bullet) -> float:
    return len(bullet.text) * TOKENS_PER_CHAR + TOKENS_PER_BULLET


def create_batches(analysis: JobAnalysis, bullets: list[Bullet]) -> list[list[Bullet]]:
    """Split bullets into batches, preserving input order.

    A new batch only starts once the current one holds MIN_BATCH_SIZE bullets and
    adding the next would exceed the token budget or MAX_BATCH_SIZE.
    """
    base = estimate_base_tokens(analysis)
    batches: list[list[Bullet]] = []
    current: list[Bullet] = []
    tokens = base

    for bullet in bullets:
        cost = estimate_bullet_tokens(bullet)
        if len(current) >= MIN_BATCH_SIZE and (
            tokens + cost > MAX_TOKENS_PER_BATCH or len(current) >= MAX_BATCH_SIZE
        ):
            batches.append(current)
            current = [bullet]
            tokens = base + cost
        else:
            current.append(bullet)
            tokens += cost

    if current:
        batches.append(current)
    return batches


def build_messages(analysis: JobAnalysis, batch: list[Bullet]) -> list[dict[str, str]]:
    listing = "\n\n".join(
        f"{i}. ID: {b.id}\n   {b.text[:MAX_BULLET_CHARS]}" for i, b in enumerate(batch, start=1)
    )
    user = render_prompt(
        "batch_scoring",
        title=analysis.title,
        skills=", ".join(analysis.skills[:MAX_PROMPT_SKILLS]),
        description=analysis.description[:MAX_JD_CHARS],
        bullets=listing,
        count=str(len(batch)),
    )
    return [
        {"role": "system", "content": render_prompt("batch_scoring_system")},
        {"role": "user", "content": user},
    ]


def max_tokens_for(batch_size: int) -> int:
    return min(400, 50 + batch_size * 18)


def _extract_json(content: str) -> Any:
    try:
        return parse_json_content(content)
    except ValueError:
        match = re.search(r"\{.*\}", content, re.DOTALL)
        if match is None:
            raise
        return json.loads(match.group(0))


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def _neutral(bullet: Bullet, reason: str) -> ScoredBullet:
    return ScoredBullet(
        bullet_id=bullet.id,
        text=bullet.text,
        role_id=bullet.role_id,
        project_id=bullet.project_id,
        score=NEUTRAL_SCORE,
        normalized_score=0.0,
        reasons=reason,
        flags=["fallback"],
    )


def repair_results(entries: Any, batch: list[Bullet]) -> list[ScoredBullet]:
    """Map response entries back onto the batch, one result per bullet in batch order.

    Entries with an unknown id are ignored. Bullets without a usable entry get a
    neutral score and the "fallback" flag. Scores are clamped to 1.0-10.0.
    """
    by_id: dict[str, dict] = {}
    if isinstance(entries, list):
        for entry in entries:
            if isinstance(entry, dict) and "id" in entry:
                by_id.setdefault(str(entry["id"]), entry)

    results = []
    missing = 0
    for bullet in batch:
        entry = by_id.get(bullet.id)
        score = entry.get("score") if entry else None
        if isinstance(score, str):
            try:
                score = float(score)
            except ValueError:
                score = None
        if entry is None or isinstance(score, bool) or not isinstance(score, (int, float)):
            missing += 1
            results.append(_neutral(bullet, "Missing from response"))
            continue

        results.append(
            ScoredBullet(
                bullet_id=bullet.id,
                text=bullet.text,
                role_id=bullet.role_id,
                project_id=bullet.project_id,
                score=max(MIN_SCORE, min(MAX_SCORE, float(score))),
                normalized_score=0.0,
                reasons=str(entry.get("reasoning") or "Model scoring"),
                skill_hits=_str_list(entry.get("skill_matches")),
                flags=_str_list(entry.get("quality_flags")),
            )
        )

    if missing:
        logger.warning(f"Scoring response covered {len(batch) - missing}/{len(batch)} bullets, filled the rest")
    return results


def normalize_scores(scored: list[ScoredBullet]) -> list[ScoredBullet]:
    """Min-max normalize raw scores into 0.1-0.9 and add the skill coverage bonus.

    Bullets are visited by raw score descending (ties by id); each earns
    COVERAGE_BONUS_PER_SKILL per skill no earlier bullet hit, capped at
    MAX_COVERAGE_BONUS. Returns the bullets in that visiting order.
    """
    if not scored:
        return []

    low = min(s.score for s in scored)
    high = max(s.score for s in scored)
    spread = high - low

    covered: set[str] = set()
    ordered = sorted(scored, key=lambda s: (-s.score, s.bullet_id))
    for bullet in ordered:
        base = 0.1 + 0.8 * (bullet.score - low) / spread if spread > 0 else 0.5
        new_skills = {h.lower() for h in bullet.skill_hits} - covered
        covered |= new_skills
        bonus = min(MAX_COVERAGE_BONUS, len(new_skills) * COVERAGE_BONUS_PER_SKILL)
        bullet.normalized_score = min(1.0, base + bonus)
    return ordered


class BatchScorer:
    """Scores bullets against a job analysis with a remote chat model."""

    def __init__(
        self,
        llm: LLMProvider,
        concurrency: int = CONCURRENCY,
        pacing_delay: float = BATCH_PACING,
        retry_delay: float = RETRY_DELAY,
        request_timeout: float = REQUEST_TIMEOUT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._llm = llm
        self.concurrency = max(1, concurrency)
        self.pacing_delay = pacing_delay
        self.retry_delay = retry_delay
        self.request_timeout = request_timeout
        self._sleep = sleep

    async def score(
        self,
        analysis: JobAnalysis,
        bullets: list[Bullet],
        on_progress: ProgressCallback | None = None,
    ) -> list[ScoredBullet]:
        """Score and normalize all bullets.

        Raises:
            ScoringError: If any batch fails twice. Remaining batches are cancelled.
        """
        if not bullets:
            return []

        batches = create_batches(analysis, bullets)
        results: list[list[ScoredBullet] | None] = [None] * len(batches)
        next_index = 0
        completed = 0

        async def worker() -> None:
            nonlocal next_index, completed
            while next_index < len(batches):
                index = next_index
                next_index += 1
                if index > 0 and self.pacing_delay > 0:
                    await self._sleep(self.pacing_delay)

                results[index] = await self._score_with_retry(analysis, batches[index], index)
                completed += 1
                if on_progress is not None:
                    on_progress(
                        f"Scoring (batch {completed}/{len(batches)})...",
                        0.3 + 0.5 * completed / len(batches),
                    )

        tasks = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(batches)))]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        scored = [s for batch_result in results if batch_result for s in batch_result]
        logger.info(f"Scored {len(scored)} bullets in {len(batches)} batches")
        return normalize_scores(scored)

    async def _score_with_retry(self, analysis: JobAnalysis, batch: list[Bullet], index: int) -> list[ScoredBullet]:
        try:
            return await self.score_batch(analysis, batch)
        except LLMError as e:
            if not e.retriable:
                raise ScoringError(f"Batch scoring failed: {e.user_message}") from e
            logger.warning(f"Batch {index + 1} failed, retrying: {e}")
        except (ValueError, asyncio.TimeoutError) as e:
            logger.warning(f"Batch {index + 1} failed, retrying: {str(e) or type(e).__name__}")

        await self._sleep(self.retry_delay)
        try:
            return await self.score_batch(analysis, batch)
        except ValueError as e:
            logger.warning(f"Batch {index + 1} response unparseable after retry, using neutral scores: {e}")
            return [_neutral(b, "Parse error fallback") for b in batch]
        except LLMError as e:
            raise ScoringError(f"Batch scoring failed: {e.user_message}") from e
        except asyncio.TimeoutError as e:
            raise ScoringError(f"Batch scoring failed: timeout after {self.request_timeout}s") from e

    async def score_batch(self, analysis: JobAnalysis, batch: list[Bullet]) -> list[ScoredBullet]:
        """Score one batch with a single request.

        Raises LLMError, asyncio.TimeoutError, or ValueError when the response is not JSON.
        """
        prompt = get_prompt("batch_scoring")
        assert prompt is not None
        response = await asyncio.wait_for(
            self._llm.chat(
                messages=build_messages(analysis, batch),
                temperature=prompt.temperature,
                max_tokens=max_tokens_for(len(batch)),
                json_mode=True,
                timeout=self.request_timeout,
                max_attempts=1,
            ),
            timeout=self.request_timeout,
        )
        if not response.content.strip():
            raise ValueError("Empty scoring response")

        data = _extract_json(response.content)
        entries = data.get("bullets") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            logger.warning("Scoring response missing bullets array, using neutral scores")
        return repair_results(entries, batch)
