"""Job analysis: one cached LLM call that turns a posting into skills and requirements."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from resuum.core.llm_providers import LLMError, parse_json_content
from resuum.core.models import JobAnalysis, RoleLevel
from resuum.core.prompts import PROMPT_VERSION, get_prompt, render_prompt

if TYPE_CHECKING:
    from resuum.core.llm_providers import LLMProvider

logger = logging.getLogger(__name__)

CACHE_TTL = 600.0  # seconds
MAX_CACHE_ENTRIES = 32
MAX_INPUT_LENGTH = 8000  # chars
MAX_ATTEMPTS = 3
PARSE_RETRY_DELAY = 1.0  # seconds
MAX_SKILLS = 12
MAX_REQUIREMENTS = 8
REQUEST_TIMEOUT = 30.0  # seconds

_SECTION_HEADING = re.compile(
    r"^[ \t#*-]*(requirements|qualifications|responsibilities|skills|experience)\b",
    re.IGNORECASE | re.MULTILINE,
)


class JobAnalysisError(Exception):
    """Job analysis could not be produced. The message is shown to the user."""


def truncate_description(description: str, max_length: int = MAX_INPUT_LENGTH) -> str:
    """Cap the description length, preferring to start at the first requirements-like heading."""
    description = description.strip()
    if len(description) <= max_length:
        return description

    match = _SECTION_HEADING.search(description)
    start = match.start() if match else 0
    if len(description) - start <= max_length:
        return description[start:]
    return description[start : start + max_length - 3].rstrip() + "..."


def _clean_list(values: Any, limit: int) -> list[str]:
    if not isinstance(values, list):
        return []
    seen: set[str] = set()
    result = []
    for value in values:
        if not isinstance(value, str):
            continue
        value = value.strip()
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        result.append(value)
        if len(result) >= limit:
            break
    return result


def _coerce_role_level(value: Any) -> RoleLevel:
    try:
        return RoleLevel(str(value).strip().lower())
    except ValueError:
        return RoleLevel.MID


def parse_analysis(content: str, title: str, description: str) -> JobAnalysis:
    """Validate a model response into a JobAnalysis.

    Raises ValueError on malformed JSON or a response missing required fields.
    """
    data = parse_json_content(content)
    if not isinstance(data, dict):
        raise ValueError("Analysis response is not a JSON object")
    for key in ("extractedSkills", "keyRequirements", "roleLevel"):
        if key not in data:
            raise ValueError(f"Analysis response missing '{key}'")

    company_context = data.get("companyContext")
    return JobAnalysis(
        title=title,
        description=description,
        skills=_clean_list(data.get("extractedSkills"), MAX_SKILLS),
        requirements=_clean_list(data.get("keyRequirements"), MAX_REQUIREMENTS),
        role_level=_coerce_role_level(data.get("roleLevel")),
        function_type=str(data.get("functionType") or "General").strip(),
        company_context=str(company_context).strip() if company_context else None,
    )


@dataclass
class _CacheEntry:
    analysis: JobAnalysis
    expires_at: float


class JobAnalyzer:
    """Analyzes job postings with an LLM and caches results for CACHE_TTL seconds."""

    def __init__(
        self,
        llm: LLMProvider,
        ttl: float = CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._llm = llm
        self.ttl = ttl
        self._clock = clock
        self._cache: dict[tuple[str, str, str, str], _CacheEntry] = {}

    def cache_key(self, title: str, description: str) -> tuple[str, str, str, str]:
        return (self._llm.model_id, PROMPT_VERSION, title.strip(), truncate_description(description))

    def clear_cache(self) -> None:
        self._cache.clear()

    def _cached(self, key: tuple[str, str, str, str]) -> JobAnalysis | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._cache[key]
            return None
        return entry.analysis

    def _store(self, key: tuple[str, str, str, str], analysis: JobAnalysis) -> None:
        now = self._clock()
        for stale in [k for k, e in self._cache.items() if e.expires_at <= now]:
            del self._cache[stale]
        while len(self._cache) >= MAX_CACHE_ENTRIES:
            oldest = min(self._cache, key=lambda k: self._cache[k].expires_at)
            del self._cache[oldest]
        self._cache[key] = _CacheEntry(analysis=analysis, expires_at=now + self.ttl)

    async def analyze(self, title: str, description: str) -> JobAnalysis:
        """Return the structured analysis for a posting.

        Raises:
            JobAnalysisError: On empty input, provider failure or a response
                that stays malformed after MAX_ATTEMPTS tries.
        """
        if not title.strip() or not description.strip():
            raise JobAnalysisError("Job title and description are required")

        key = self.cache_key(title, description)
        cached = self._cached(key)
        if cached is not None:
            logger.debug(f"Job analysis cache hit for '{key[2]}'")
            return cached

        try:
            analysis = await self._analyze(key[2], key[3])
        except LLMError as e:
            raise JobAnalysisError(f"Job analysis failed: {e.user_message}") from e

        self._store(key, analysis)
        logger.info(
            f"Analyzed job '{analysis.title}': {len(analysis.skills)} skills, "
            f"{len(analysis.requirements)} requirements, level={analysis.role_level.value}"
        )
        return analysis

    async def _analyze(self, title: str, description: str) -> JobAnalysis:
        prompt = get_prompt("job_analysis")
        assert prompt is not None
        messages = [
            {"role": "system", "content": render_prompt("job_analysis_system")},
            {"role": "user", "content": prompt.render(title=title, description=description)},
        ]

        last_error: ValueError | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            response = await self._llm.chat(
                messages=messages,
                temperature=prompt.temperature,
                max_tokens=prompt.max_tokens,
                json_mode=True,
                timeout=REQUEST_TIMEOUT,
                max_attempts=MAX_ATTEMPTS,
            )
            try:
                return parse_analysis(response.content, title, description)
            except ValueError as e:
                last_error = e
                logger.warning(f"Malformed job analysis response (attempt {attempt}/{MAX_ATTEMPTS}): {e}")
                if attempt < MAX_ATTEMPTS:
                    await asyncio.sleep(PARSE_RETRY_DELAY)

        raise JobAnalysisError(f"Job analysis failed: {last_error}")
