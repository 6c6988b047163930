"""Shared fixtures: in-memory database and scripted model providers."""

import asyncio
import json
import re
from datetime import datetime, timedelta, timezone

import pytest

from resuum.core import storage
from resuum.core.embedding_providers import EmbeddingProvider, HealthCheckResult
from resuum.core.llm_providers import ChatResponse, LLMProvider
from resuum.core.storage import DB


@pytest.fixture
def db():
    """Fresh in-memory database with sqlite-vec loaded."""
    database = DB(conn=storage.connect(":memory:"))
    database.init()
    yield database
    database.conn.close()


class Clock:
    """Settable UTC clock for the embedding state machine."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock()


class FakeEmbeddingProvider(EmbeddingProvider):
    """Returns a fixed vector per text; unknown texts get a unit vector."""

    def __init__(self, vectors=None, dims=3, error=None, delay=0.0, on_embed=None):
        self.vectors = vectors or {}
        self._dims = dims
        self.error = error
        self.delay = delay
        self.on_embed = on_embed
        self.calls = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def model_id(self) -> str:
        return "fake-embed"

    @property
    def dimensions(self) -> int:
        return self._dims

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.on_embed is not None:
            await self.on_embed(texts)
        return [self.vectors.get(t, [1.0] + [0.0] * (self._dims - 1)) for t in texts]

    async def health_check(self):
        return HealthCheckResult(healthy=True, provider=self.name, model=self.model_id, message="Connected")


class ScriptedLLM(LLMProvider):
    """Chat provider that replays scripted replies.

    Each reply is a string, an exception to raise, or a callable that builds
    the content from the request messages.
    """

    def __init__(self, replies=(), model="fake-chat"):
        self.replies = list(replies)
        self._model = model
        self.calls = []

    @property
    def name(self) -> str:
        return "scripted"

    @property
    def model_id(self) -> str:
        return self._model

    async def chat(
        self,
        messages,
        temperature=0.7,
        max_tokens=None,
        json_mode=False,
        timeout=None,
        max_attempts=None,
    ):
        self.calls.append(
            {
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "json_mode": json_mode,
                "max_attempts": max_attempts,
            }
        )
        if not self.replies:
            raise AssertionError("unexpected chat call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(messages)
        return ChatResponse(
            content=reply,
            model=self._model,
            tokens_input=0,
            tokens_output=0,
            finish_reason="stop",
            latency_ms=1,
        )

    async def health_check(self):
        return HealthCheckResult(healthy=True, provider=self.name, model=self._model, message="Connected")


def bullet_ids_in(messages) -> list[str]:
    """Bullet ids listed in a scoring request."""
    return re.findall(r"ID: (\S+)", messages[-1]["content"])


def score_reply(scores=None, default=5, skills=None):
    """Build a scoring reply callable: every listed bullet gets its score from `scores`."""
    scores = scores or {}
    skills = skills or {}

    def _reply(messages):
        return json.dumps(
            {
                "bullets": [
                    {
                        "id": bullet_id,
                        "score": scores.get(bullet_id, default),
                        "reasoning": "matches the role",
                        "skill_matches": skills.get(bullet_id, []),
                        "quality_flags": [],
                    }
                    for bullet_id in bullet_ids_in(messages)
                ]
            }
        )

    return _reply
