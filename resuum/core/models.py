"""Core records for the bullet library, the embedding lifecycle and ranking runs.

Persisted records (Role, Project, Bullet, Embedding, EmbedQueueItem) are plain
dataclasses; storage.py maps them to SQLite rows. ScoredBullet and the result
types only live for the duration of a ranking run.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class EmbeddingState(str, Enum):
    """Lifecycle state of a bullet's embedding."""

    PENDING = "pending"
    READY = "ready"
    STALE = "stale"
    FAILED = "failed"


class QueuePriority(IntEnum):
    """Embedding queue priority. Lower values are drained first."""

    HIGH = 1
    NORMAL = 2
    LOW = 3


class RoleLevel(str, Enum):
    ENTRY = "entry"
    MID = "mid"
    SENIOR = "senior"
    EXECUTIVE = "executive"


@dataclass
class Role:
    id: str
    title: str
    company: str = ""
    order_index: int = 0
    bullets_limit: int = 3
    start_date: str | None = None
    end_date: str | None = None

    @property
    def display_title(self) -> str:
        if self.company:
            return f"{self.title} at {self.company}"
        return self.title

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "company": self.company,
            "order_index": self.order_index,
            "bullets_limit": self.bullets_limit,
            "start_date": self.start_date,
            "end_date": self.end_date,
        }


@dataclass
class Project:
    """A group of bullets within a role.

    The centroid is a derived cache: the mean of all member embeddings,
    rewritten by the embedding processor whenever a member is (re)embedded.
    """

    id: str
    role_id: str
    name: str
    description: str = ""
    centroid: list[float] | None = None
    vector_dimensions: int = 0
    bullet_count: int = 0
    embedding_version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role_id": self.role_id,
            "name": self.name,
            "description": self.description,
            "vector_dimensions": self.vector_dimensions,
            "bullet_count": self.bullet_count,
            "embedding_version": self.embedding_version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class BulletFeatures:
    """Cheap structural quality flags computed from the bullet text."""

    has_numbers: bool = False
    action_verb: bool = False
    length_ok: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "has_numbers": self.has_numbers,
            "action_verb": self.action_verb,
            "length_ok": self.length_ok,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BulletFeatures:
        return cls(
            has_numbers=bool(data.get("has_numbers", False)),
            action_verb=bool(data.get("action_verb", False)),
            length_ok=bool(data.get("length_ok", False)),
        )


@dataclass
class Bullet:
    id: str
    role_id: str
    project_id: str
    text: str
    fingerprint: str = ""
    features: BulletFeatures = field(default_factory=BulletFeatures)
    embedding_state: EmbeddingState = EmbeddingState.PENDING
    retry_count: int = 0
    last_embedded_at: datetime | None = None
    source: str = "manual"
    created_at: datetime = field(default_factory=utcnow)
    last_modified: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role_id": self.role_id,
            "project_id": self.project_id,
            "text": self.text,
            "fingerprint": self.fingerprint,
            "features": self.features.to_dict(),
            "embedding_state": self.embedding_state.value,
            "retry_count": self.retry_count,
            "last_embedded_at": self.last_embedded_at.isoformat() if self.last_embedded_at else None,
            "source": self.source,
            "created_at": self.created_at.isoformat(),
            "last_modified": self.last_modified.isoformat(),
        }


@dataclass
class Embedding:
    """Vector for one bullet. Replaced wholesale on re-embedding."""

    bullet_id: str
    vector: list[float]
    vendor: str
    model: str
    dims: int
    version: int
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EmbedQueueItem:
    """Pending embedding work for one bullet.

    created_at doubles as the "not eligible before" timestamp once a retry
    has been scheduled.
    """

    id: str
    bullet_id: str
    priority: int = QueuePriority.NORMAL
    created_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bullet_id": self.bullet_id,
            "priority": int(self.priority),
            "created_at": self.created_at.isoformat(),
            "retry_count": self.retry_count,
        }


@dataclass
class JobAnalysis:
    title: str
    description: str
    skills: list[str] = field(default_factory=list)
    requirements: list[str] = field(default_factory=list)
    role_level: RoleLevel = RoleLevel.MID
    function_type: str = ""
    company_context: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "skills": list(self.skills),
            "requirements": list(self.requirements),
            "role_level": self.role_level.value,
            "function_type": self.function_type,
            "company_context": self.company_context,
        }


@dataclass
class ScoredBullet:
    bullet_id: str
    text: str
    role_id: str
    project_id: str
    score: float
    normalized_score: float
    reasons: str = ""
    skill_hits: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)

    @property
    def is_fallback(self) -> bool:
        return "fallback" in self.flags

    def to_dict(self) -> dict[str, Any]:
        return {
            "bullet_id": self.bullet_id,
            "text": self.text,
            "role_id": self.role_id,
            "project_id": self.project_id,
            "score": round(self.score, 3),
            "relevance": round(self.normalized_score, 4),
            "reasons": self.reasons,
            "skill_hits": list(self.skill_hits),
            "flags": list(self.flags),
        }


@dataclass
class RoleResult:
    role_id: str
    role_title: str
    selected_bullets: list[ScoredBullet]
    projects_used: list[str]
    avg_relevance: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "role_id": self.role_id,
            "role_title": self.role_title,
            "selected_bullets": [b.to_dict() for b in self.selected_bullets],
            "projects_used": list(self.projects_used),
            "avg_relevance": round(self.avg_relevance, 4),
        }


@dataclass
class RecommendationResult:
    job_title: str
    total_bullets: int
    processing_time_ms: int
    role_results: list[RoleResult]
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_title": self.job_title,
            "total_bullets": self.total_bullets,
            "processing_time_ms": self.processing_time_ms,
            "degraded": self.degraded,
            "role_results": [r.to_dict() for r in self.role_results],
        }
