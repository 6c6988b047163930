"""Tests for batched remote scoring."""

import json

import pytest
from conftest import ScriptedLLM, bullet_ids_in, score_reply

from resuum.core.batch_scorer import (
    MAX_COVERAGE_BONUS,
    NEUTRAL_SCORE,
    BatchScorer,
    ScoringError,
    create_batches,
    max_tokens_for,
    normalize_scores,
    repair_results,
)
from resuum.core.llm_providers import LLMError
from resuum.core.models import Bullet, JobAnalysis, ScoredBullet
from resuum.core.provider_errors import ProviderErrorCode

ANALYSIS = JobAnalysis(title="PM", description="d" * 100, skills=[])


def _bullets(count, length=20, prefix="bullet"):
    return [
        Bullet(id=f"{prefix}_{i:02d}", role_id="role_1", project_id="project_1", text="x" * length)
        for i in range(count)
    ]


def _scored(bullet_id, score, skills=()):
    return ScoredBullet(
        bullet_id=bullet_id,
        text=bullet_id,
        role_id="role_1",
        project_id="project_1",
        score=score,
        normalized_score=0.0,
        skill_hits=list(skills),
    )


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _scorer(llm, **kwargs):
    kwargs.setdefault("sleep", SleepRecorder())
    return BatchScorer(llm, **kwargs)


# ==================== Batching ====================


def test_batches_capped_by_count():
    """Test that short bullets are packed twelve to a batch."""
    batches = create_batches(ANALYSIS, _bullets(20))
    assert [len(b) for b in batches] == [12, 8]


def test_batches_capped_by_tokens():
    """Test that the token budget closes a batch once the minimum size is reached."""
    batches = create_batches(ANALYSIS, _bullets(15, length=600))
    assert [len(b) for b in batches] == [11, 4]


def test_batches_keep_minimum_size():
    """Test that a batch never closes below the minimum size, even over budget."""
    batches = create_batches(ANALYSIS, _bullets(10, length=2000))
    assert [len(b) for b in batches] == [8, 2]


def test_batches_preserve_order():
    bullets = _bullets(20)
    batches = create_batches(ANALYSIS, bullets)
    assert [b.id for batch in batches for b in batch] == [b.id for b in bullets]


def test_max_tokens_for_batch():
    assert max_tokens_for(1) == 68
    assert max_tokens_for(12) == 266
    assert max_tokens_for(30) == 400


# ==================== Repair & normalization ====================


def test_repair_results():
    """Test that each submitted bullet gets exactly one well-formed result."""
    batch = _bullets(5)
    entries = [
        {"id": "bullet_00", "score": "7.5", "reasoning": "good", "skill_matches": ["SQL", 3, None]},
        {"id": "bullet_01", "score": 15},
        {"id": "bullet_02", "score": 0},
        {"id": "bullet_03", "score": True},
        {"id": "unknown", "score": 9},
        "garbage",
    ]

    results = repair_results(entries, batch)

    assert [r.bullet_id for r in results] == [b.id for b in batch]
    assert [r.score for r in results] == [7.5, 10.0, 1.0, NEUTRAL_SCORE, NEUTRAL_SCORE]
    assert results[0].reasons == "good"
    assert results[0].skill_hits == ["SQL", "3"]
    assert results[0].flags == []
    assert results[3].flags == ["fallback"]
    assert results[4].flags == ["fallback"]


def test_repair_results_without_entries():
    results = repair_results(None, _bullets(2))
    assert all(r.is_fallback and r.score == NEUTRAL_SCORE for r in results)


def test_normalize_scores_with_coverage_bonus():
    """Test min-max normalization plus the capped new-skill bonus."""
    scored = [
        _scored("low", 2, skills=["Go", "Rust", "Java", "C++"]),
        _scored("high", 10, skills=["SQL", "Python"]),
        _scored("mid", 6, skills=["sql"]),
    ]

    result = normalize_scores(scored)

    assert [s.bullet_id for s in result] == ["high", "mid", "low"]
    assert result[0].normalized_score == pytest.approx(0.9 + 0.04)
    assert result[1].normalized_score == pytest.approx(0.5)
    assert result[2].normalized_score == pytest.approx(0.1 + MAX_COVERAGE_BONUS)


def test_normalize_equal_scores():
    result = normalize_scores([_scored("a", 7), _scored("b", 7)])
    assert [s.normalized_score for s in result] == [0.5, 0.5]


def test_normalize_stays_in_range():
    result = normalize_scores([_scored("a", 10, skills=["a", "b", "c"]), _scored("b", 1)])
    assert result[0].normalized_score == pytest.approx(0.96)
    assert all(0.0 <= s.normalized_score <= 1.0 for s in result)


# ==================== Scoring ====================


@pytest.mark.asyncio
async def test_score_empty():
    assert await _scorer(ScriptedLLM()).score(ANALYSIS, []) == []


@pytest.mark.asyncio
async def test_score_all_batches():
    """Test that every bullet is scored once and results are normalized."""
    bullets = _bullets(20)
    llm = ScriptedLLM([score_reply({"bullet_03": 9, "bullet_15": 2}), score_reply({"bullet_03": 9, "bullet_15": 2})])
    progress = []

    result = await _scorer(llm).score(ANALYSIS, bullets, on_progress=lambda msg, frac: progress.append(frac))

    assert sorted(s.bullet_id for s in result) == [b.id for b in bullets]
    assert result[0].bullet_id == "bullet_03"
    assert result[0].normalized_score == pytest.approx(0.9)
    assert result[-1].bullet_id == "bullet_15"
    assert result[-1].normalized_score == pytest.approx(0.1)
    assert progress == [pytest.approx(0.55), pytest.approx(0.8)]
    assert all(call["json_mode"] and call["max_attempts"] == 1 for call in llm.calls)


@pytest.mark.asyncio
async def test_batches_after_first_are_paced():
    sleep = SleepRecorder()
    llm = ScriptedLLM([score_reply(), score_reply()])

    await _scorer(llm, concurrency=1, pacing_delay=2.0, sleep=sleep).score(ANALYSIS, _bullets(20))

    assert sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_unparseable_response_retried_once():
    """Test that a parse failure is retried and the retry's scores are used."""
    sleep = SleepRecorder()
    llm = ScriptedLLM(["not json at all", score_reply(default=8)])

    result = await _scorer(llm, retry_delay=5.0, sleep=sleep).score(ANALYSIS, _bullets(3))

    assert len(llm.calls) == 2
    assert sleep.delays == [5.0]
    assert all(not s.is_fallback and s.score == 8 for s in result)


@pytest.mark.asyncio
async def test_unparseable_twice_uses_neutral_scores():
    llm = ScriptedLLM(["not json", "still not json"])

    result = await _scorer(llm).score(ANALYSIS, _bullets(3))

    assert len(result) == 3
    assert all(s.is_fallback and s.score == NEUTRAL_SCORE for s in result)


@pytest.mark.asyncio
async def test_json_embedded_in_prose_is_extracted():
    def reply(messages):
        payload = {"bullets": [{"id": i, "score": 6} for i in bullet_ids_in(messages)]}
        return "Here you go: " + json.dumps(payload) + " Hope that helps."

    result = await _scorer(ScriptedLLM([reply])).score(ANALYSIS, _bullets(2))

    assert [s.score for s in result] == [6, 6]


@pytest.mark.asyncio
async def test_partial_response_is_repaired():
    """Test that bullets missing from a reply get neutral fallback scores."""
    result = await _scorer(ScriptedLLM([score_reply()])).score(ANALYSIS, _bullets(2))
    assert all(not s.is_fallback for s in result)

    def partial(messages):
        first = bullet_ids_in(messages)[0]
        return json.dumps({"bullets": [{"id": first, "score": 9}]})

    result = await _scorer(ScriptedLLM([partial])).score(ANALYSIS, _bullets(2))
    by_id = {s.bullet_id: s for s in result}
    assert by_id["bullet_00"].score == 9
    assert by_id["bullet_01"].is_fallback


@pytest.mark.asyncio
async def test_transport_failure_twice_raises():
    """Test that a batch failing on both attempts aborts scoring."""
    error = LLMError("503", provider="openai", code=ProviderErrorCode.SERVER_ERROR)
    llm = ScriptedLLM([error, error])

    with pytest.raises(ScoringError, match="OpenAI server error"):
        await _scorer(llm).score(ANALYSIS, _bullets(3))
    assert len(llm.calls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "code",
    [ProviderErrorCode.KEY_INVALID, ProviderErrorCode.NO_KEY, ProviderErrorCode.BAD_REQUEST],
)
async def test_permanent_failure_not_retried(code):
    """Test that a permanent provider error aborts scoring on the first call."""
    sleep = SleepRecorder()
    llm = ScriptedLLM([LLMError("rejected", provider="openai", code=code), score_reply()])

    with pytest.raises(ScoringError):
        await _scorer(llm, concurrency=1, sleep=sleep).score(ANALYSIS, _bullets(3))

    assert len(llm.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_exhausted_quota_not_retried():
    error = LLMError("quota", provider="openai", code=ProviderErrorCode.RATE_LIMIT, retriable=False)
    llm = ScriptedLLM([error, score_reply()])

    with pytest.raises(ScoringError, match="Rate limit"):
        await _scorer(llm).score(ANALYSIS, _bullets(3))
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_transport_failure_then_success():
    error = LLMError("429", provider="openai", code=ProviderErrorCode.RATE_LIMIT)
    llm = ScriptedLLM([error, score_reply(default=7)])

    result = await _scorer(llm).score(ANALYSIS, _bullets(3))

    assert all(s.score == 7 for s in result)
