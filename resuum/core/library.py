"""Library service: roles, projects and bullets, wired into the embedding lifecycle.

Every bullet write recomputes its fingerprint and features. New bullets are
queued at high priority; text edits go through mark_changed so the old
embedding is replaced. Deleting a role or project takes its bullets, their
embeddings and their queue items with it.

export_library() and import_library() move the library as a versioned JSON
document without embeddings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from resuum.core.embedding_processor import recompute_project_centroid
from resuum.core.models import (
    Bullet,
    EmbeddingState,
    Project,
    QueuePriority,
    Role,
    new_id,
    utcnow,
)
from resuum.core.storage import READONLY, READWRITE, NotFoundError, Transaction
from resuum.core.text_similarity import analyze_features, create_fingerprint

if TYPE_CHECKING:
    from resuum.core.embedding_state import EmbeddingStateMachine
    from resuum.core.storage import DB

logger = logging.getLogger(__name__)

CASCADE_COLLECTIONS = ("roles", "projects", "bullets", "embeddings", "embed_queue")
EXPORT_VERSION = 1


@dataclass
class Library:
    """Snapshot of the library used for one ranking run.

    vectors only holds embeddings of bullets that are currently ready.
    """

    roles: list[Role] = field(default_factory=list)
    projects: list[Project] = field(default_factory=list)
    bullets: list[Bullet] = field(default_factory=list)
    vectors: dict[str, list[float]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.roles or not self.bullets


def _clean_text(text: str) -> str:
    text = " ".join(text.split())
    if not text:
        raise ValueError("Bullet text must not be empty")
    return text


def _require(tx: Transaction, collection: str, key: str):
    record = tx.get(collection, key)
    if record is None:
        raise NotFoundError(collection, key)
    return record


def _delete_bullet_records(tx: Transaction, bullet_id: str) -> None:
    tx.delete("bullets", bullet_id)
    tx.delete("embeddings", bullet_id)
    for item in tx.find("embed_queue", "bullet_id", bullet_id):
        tx.delete("embed_queue", item.id)


# ==================== Import parsing ====================


def _text_field(record: Any, name: str, collection: str) -> str:
    value = record.get(name) if isinstance(record, dict) else None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Import {collection} record is missing '{name}'")
    return value.strip()


def _int_field(record: dict[str, Any], name: str, default: int) -> int:
    value = record.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Import field '{name}' must be an integer")
    return value


def _role_from_export(record: Any) -> Role:
    role = Role(id=_text_field(record, "id", "roles"), title=_text_field(record, "title", "roles"))
    role.company = str(record.get("company") or "").strip()
    role.order_index = _int_field(record, "order_index", 0)
    role.bullets_limit = _int_field(record, "bullets_limit", 3)
    if role.bullets_limit < 1:
        raise ValueError(f"Role {role.id} has an invalid bullet limit")
    role.start_date = str(record["start_date"]) if record.get("start_date") else None
    role.end_date = str(record["end_date"]) if record.get("end_date") else None
    return role


def _project_from_export(record: Any) -> Project:
    return Project(
        id=_text_field(record, "id", "projects"),
        role_id=_text_field(record, "role_id", "projects"),
        name=_text_field(record, "name", "projects"),
        description=str(record.get("description") or "").strip(),
    )


def _bullet_from_export(record: Any) -> Bullet:
    text = _clean_text(_text_field(record, "text", "bullets"))
    return Bullet(
        id=_text_field(record, "id", "bullets"),
        role_id=_text_field(record, "role_id", "bullets"),
        project_id=_text_field(record, "project_id", "bullets"),
        text=text,
        fingerprint=create_fingerprint(text),
        features=analyze_features(text),
        embedding_state=EmbeddingState.PENDING,
        source=str(record.get("source") or "import"),
    )


class LibraryService:
    def __init__(self, db: DB, state: EmbeddingStateMachine) -> None:
        self._db = db
        self._state = state

    # ==================== Roles & Projects ====================

    async def create_role(
        self,
        title: str,
        company: str = "",
        bullets_limit: int = 3,
        order_index: int | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> Role:
        if not title.strip():
            raise ValueError("Role title must not be empty")

        def _create(tx: Transaction) -> Role:
            role = Role(
                id=new_id("role"),
                title=title.strip(),
                company=company.strip(),
                order_index=tx.count("roles") if order_index is None else order_index,
                bullets_limit=bullets_limit,
                start_date=start_date,
                end_date=end_date,
            )
            tx.put("roles", role)
            return role

        role = await self._db.run("roles", READWRITE, _create)
        logger.info(f"Created role {role.id}: {role.display_title}")
        return role

    async def list_roles(self) -> list[Role]:
        return await self._db.run("roles", READONLY, lambda tx: tx.scan("roles", "order"))

    async def update_role(
        self,
        role_id: str,
        title: str | None = None,
        company: str | None = None,
        bullets_limit: int | None = None,
        order_index: int | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> Role:
        """Change the given fields of a role; None leaves a field as it is."""
        if title is not None and not title.strip():
            raise ValueError("Role title must not be empty")
        if bullets_limit is not None and bullets_limit < 1:
            raise ValueError("Bullet limit must be at least 1")

        def _update(tx: Transaction) -> Role:
            role = _require(tx, "roles", role_id)
            if title is not None:
                role.title = title.strip()
            if company is not None:
                role.company = company.strip()
            if bullets_limit is not None:
                role.bullets_limit = bullets_limit
            if order_index is not None:
                role.order_index = order_index
            if start_date is not None:
                role.start_date = start_date
            if end_date is not None:
                role.end_date = end_date
            tx.put("roles", role)
            return role

        return await self._db.run("roles", READWRITE, _update)

    async def delete_role(self, role_id: str) -> dict[str, int]:
        """Remove a role with all of its projects and bullets.

        Returns the number of deleted projects and bullets.
        """

        def _delete(tx: Transaction) -> dict[str, int]:
            _require(tx, "roles", role_id)
            bullets = tx.find("bullets", "role_id", role_id)
            for bullet in bullets:
                _delete_bullet_records(tx, bullet.id)
            projects = tx.find("projects", "role_id", role_id)
            for project in projects:
                tx.delete("projects", project.id)
            tx.delete("roles", role_id)
            return {"projects": len(projects), "bullets": len(bullets)}

        counts = await self._db.run(CASCADE_COLLECTIONS, READWRITE, _delete)
        logger.info(f"Deleted role {role_id} ({counts['projects']} projects, {counts['bullets']} bullets)")
        return counts

    async def create_project(self, role_id: str, name: str, description: str = "") -> Project:
        if not name.strip():
            raise ValueError("Project name must not be empty")

        def _create(tx: Transaction) -> Project:
            _require(tx, "roles", role_id)
            project = Project(
                id=new_id("project"),
                role_id=role_id,
                name=name.strip(),
                description=description.strip(),
            )
            tx.put("projects", project)
            return project

        return await self._db.run(("roles", "projects"), READWRITE, _create)

    async def list_projects(self, role_id: str | None = None) -> list[Project]:
        def _list(tx: Transaction) -> list[Project]:
            if role_id is None:
                return tx.get_all("projects")
            return tx.find("projects", "role_id", role_id)

        return await self._db.run("projects", READONLY, _list)

    async def update_project(
        self,
        project_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Project:
        if name is not None and not name.strip():
            raise ValueError("Project name must not be empty")

        def _update(tx: Transaction) -> Project:
            project = _require(tx, "projects", project_id)
            if name is not None:
                project.name = name.strip()
            if description is not None:
                project.description = description.strip()
            project.updated_at = utcnow()
            tx.put("projects", project)
            return project

        return await self._db.run("projects", READWRITE, _update)

    async def delete_project(self, project_id: str) -> int:
        """Remove a project with its bullets. Returns the number of deleted bullets."""

        def _delete(tx: Transaction) -> int:
            _require(tx, "projects", project_id)
            bullets = tx.find("bullets", "project_id", project_id)
            for bullet in bullets:
                _delete_bullet_records(tx, bullet.id)
            tx.delete("projects", project_id)
            return len(bullets)

        deleted = await self._db.run(CASCADE_COLLECTIONS, READWRITE, _delete)
        logger.info(f"Deleted project {project_id} with {deleted} bullets")
        return deleted

    # ==================== Bullets ====================

    async def get_bullet(self, bullet_id: str) -> Bullet:
        bullet = await self._db.run("bullets", READONLY, lambda tx: tx.get("bullets", bullet_id))
        if bullet is None:
            raise NotFoundError("bullets", bullet_id)
        return bullet

    async def list_bullets(self, role_id: str | None = None, project_id: str | None = None) -> list[Bullet]:
        def _list(tx: Transaction) -> list[Bullet]:
            if project_id is not None:
                bullets = tx.find("bullets", "project_id", project_id)
            elif role_id is not None:
                bullets = tx.find("bullets", "role_id", role_id)
            else:
                bullets = tx.get_all("bullets")
            if role_id is not None:
                bullets = [b for b in bullets if b.role_id == role_id]
            return bullets

        return await self._db.run("bullets", READONLY, _list)

    async def create_bullet(self, role_id: str, project_id: str, text: str, source: str = "manual") -> Bullet:
        """Store a new pending bullet and queue it for embedding at high priority."""
        text = _clean_text(text)

        def _create(tx: Transaction) -> Bullet:
            _require(tx, "roles", role_id)
            project = _require(tx, "projects", project_id)
            if project.role_id != role_id:
                raise ValueError(f"Project {project_id} does not belong to role {role_id}")
            bullet = Bullet(
                id=new_id("bullet"),
                role_id=role_id,
                project_id=project_id,
                text=text,
                fingerprint=create_fingerprint(text),
                features=analyze_features(text),
                embedding_state=EmbeddingState.PENDING,
                source=source,
            )
            tx.put("bullets", bullet)
            return bullet

        bullet = await self._db.run(("roles", "projects", "bullets"), READWRITE, _create)
        await self._state.enqueue(bullet.id, QueuePriority.HIGH)
        return await self.get_bullet(bullet.id)

    async def update_bullet(
        self,
        bullet_id: str,
        text: str | None = None,
        project_id: str | None = None,
    ) -> Bullet:
        """Edit a bullet's text and/or move it to another project of the same role.

        A text change re-embeds the bullet. A move recomputes both project centroids.
        """
        new_text = _clean_text(text) if text is not None else None

        def _update(tx: Transaction) -> tuple[bool, EmbeddingState]:
            bullet = _require(tx, "bullets", bullet_id)
            previous_state = bullet.embedding_state
            text_changed = new_text is not None and new_text != bullet.text
            now = utcnow()

            if text_changed:
                bullet.text = new_text
                bullet.fingerprint = create_fingerprint(new_text)
                bullet.features = analyze_features(new_text)

            old_project = bullet.project_id
            if project_id is not None and project_id != old_project:
                target = _require(tx, "projects", project_id)
                if target.role_id != bullet.role_id:
                    raise ValueError(f"Project {project_id} does not belong to role {bullet.role_id}")
                bullet.project_id = project_id

            bullet.last_modified = now
            tx.put("bullets", bullet)
            if bullet.project_id != old_project:
                recompute_project_centroid(tx, old_project, now)
                recompute_project_centroid(tx, bullet.project_id, now)
            return text_changed, previous_state

        text_changed, previous_state = await self._db.run(
            ("bullets", "embeddings", "projects"), READWRITE, _update
        )

        if text_changed:
            if previous_state == EmbeddingState.PENDING:
                await self._state.enqueue(bullet_id, QueuePriority.NORMAL)
            else:
                await self._state.mark_changed(bullet_id, QueuePriority.NORMAL)
            logger.info(f"Bullet {bullet_id} text changed, queued for re-embedding")
        return await self.get_bullet(bullet_id)

    async def delete_bullet(self, bullet_id: str) -> None:
        """Remove a bullet with its embedding and queue items, then refresh its project centroid."""

        def _delete(tx: Transaction) -> None:
            bullet = _require(tx, "bullets", bullet_id)
            _delete_bullet_records(tx, bullet_id)
            recompute_project_centroid(tx, bullet.project_id)

        await self._db.run(("bullets", "embeddings", "embed_queue", "projects"), READWRITE, _delete)
        logger.info(f"Deleted bullet {bullet_id}")

    # ==================== Export & Import ====================

    async def export_library(self) -> dict[str, Any]:
        """Roles, projects and bullets as a versioned JSON-ready document.

        Embeddings and queue state are left out; an import re-embeds every bullet.
        """

        def _export(tx: Transaction) -> dict[str, Any]:
            return {
                "roles": [r.to_dict() for r in tx.scan("roles", "order")],
                "projects": [p.to_dict() for p in tx.get_all("projects")],
                "bullets": [b.to_dict() for b in tx.get_all("bullets")],
            }

        data = await self._db.run(("roles", "projects", "bullets"), READONLY, _export)
        return {"version": EXPORT_VERSION, "exported_at": utcnow().isoformat(), "data": data}

    async def import_library(self, document: Any) -> dict[str, int]:
        """Add the records of an exported library.

        Records whose id already exists are skipped. Imported bullets start
        pending and are queued for embedding. A malformed document raises
        ValueError and imports nothing.
        """
        if not isinstance(document, dict) or not isinstance(document.get("data"), dict):
            raise ValueError("Invalid file format")
        if document.get("version") != EXPORT_VERSION:
            raise ValueError(f"Unsupported export version: {document.get('version')}")
        data = document["data"]
        for collection in ("roles", "projects", "bullets"):
            if not isinstance(data.get(collection, []), list):
                raise ValueError(f"Import {collection} must be a list")

        def _import(tx: Transaction) -> tuple[dict[str, int], list[str]]:
            counts = {"roles": 0, "projects": 0, "bullets": 0, "skipped": 0}
            for record in data.get("roles", []):
                role = _role_from_export(record)
                if tx.get("roles", role.id) is not None:
                    counts["skipped"] += 1
                    continue
                tx.put("roles", role)
                counts["roles"] += 1

            for record in data.get("projects", []):
                project = _project_from_export(record)
                if tx.get("projects", project.id) is not None:
                    counts["skipped"] += 1
                    continue
                if tx.get("roles", project.role_id) is None:
                    raise ValueError(f"Project {project.id} references unknown role {project.role_id}")
                tx.put("projects", project)
                counts["projects"] += 1

            imported = []
            for record in data.get("bullets", []):
                bullet = _bullet_from_export(record)
                if tx.get("bullets", bullet.id) is not None:
                    counts["skipped"] += 1
                    continue
                project = tx.get("projects", bullet.project_id)
                if project is None or project.role_id != bullet.role_id:
                    raise ValueError(f"Bullet {bullet.id} references unknown project {bullet.project_id}")
                tx.put("bullets", bullet)
                imported.append(bullet.id)
            counts["bullets"] = len(imported)
            return counts, imported

        counts, imported = await self._db.run(("roles", "projects", "bullets"), READWRITE, _import)
        for bullet_id in imported:
            await self._state.enqueue(bullet_id, QueuePriority.NORMAL)
        logger.info(
            f"Imported {counts['roles']} roles, {counts['projects']} projects, "
            f"{counts['bullets']} bullets ({counts['skipped']} already present)"
        )
        return counts

    # ==================== Ranking snapshot ====================

    async def load_library(self) -> Library:
        def _load(tx: Transaction) -> Library:
            bullets = tx.get_all("bullets")
            vectors = {}
            for bullet in bullets:
                if bullet.embedding_state != EmbeddingState.READY:
                    continue
                embedding = tx.get("embeddings", bullet.id)
                if embedding is not None:
                    vectors[bullet.id] = embedding.vector
            return Library(
                roles=tx.scan("roles", "order"),
                projects=tx.get_all("projects"),
                bullets=bullets,
                vectors=vectors,
            )

        return await self._db.run(("roles", "projects", "bullets", "embeddings"), READONLY, _load)
