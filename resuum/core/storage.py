from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import struct
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, TypeVar

import sqlite_vec

from resuum.core.models import (
    Bullet,
    BulletFeatures,
    EmbedQueueItem,
    Embedding,
    EmbeddingState,
    Project,
    Role,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

READONLY = "readonly"
READWRITE = "readwrite"


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS roles (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  company TEXT NOT NULL DEFAULT '',
  order_index INTEGER NOT NULL DEFAULT 0,
  bullets_limit INTEGER NOT NULL DEFAULT 3,
  start_date TEXT,
  end_date TEXT
);

CREATE TABLE IF NOT EXISTS projects (
  id TEXT PRIMARY KEY,
  role_id TEXT NOT NULL,
  name TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  centroid BLOB,
  vector_dimensions INTEGER NOT NULL DEFAULT 0,
  bullet_count INTEGER NOT NULL DEFAULT 0,
  embedding_version INTEGER NOT NULL DEFAULT 1,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_projects_role_id ON projects(role_id);

CREATE TABLE IF NOT EXISTS bullets (
  id TEXT PRIMARY KEY,
  role_id TEXT NOT NULL,
  project_id TEXT NOT NULL,
  text TEXT NOT NULL,
  fingerprint TEXT NOT NULL DEFAULT '',
  features TEXT NOT NULL DEFAULT '{}',
  embedding_state TEXT NOT NULL DEFAULT 'pending',
  retry_count INTEGER NOT NULL DEFAULT 0,
  last_embedded_at TEXT,
  source TEXT NOT NULL DEFAULT 'manual',
  created_at TEXT NOT NULL,
  last_modified TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_bullets_role_id ON bullets(role_id);
CREATE INDEX IF NOT EXISTS idx_bullets_project_id ON bullets(project_id);
CREATE INDEX IF NOT EXISTS idx_bullets_embedding_state ON bullets(embedding_state);

-- One embedding per bullet, replaced on re-embedding
CREATE TABLE IF NOT EXISTS embeddings (
  bullet_id TEXT PRIMARY KEY,
  vector BLOB NOT NULL,
  vendor TEXT NOT NULL,
  model TEXT NOT NULL,
  dims INTEGER NOT NULL,
  version INTEGER NOT NULL,
  created_at TEXT NOT NULL
);

-- created_at is also the "not eligible before" time for delayed retries
CREATE TABLE IF NOT EXISTS embed_queue (
  id TEXT PRIMARY KEY,
  bullet_id TEXT NOT NULL,
  priority INTEGER NOT NULL DEFAULT 2,
  created_at TEXT NOT NULL,
  retry_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_embed_queue_bullet_id ON embed_queue(bullet_id);
CREATE INDEX IF NOT EXISTS idx_embed_queue_priority_created ON embed_queue(priority, created_at);
"""


class StorageError(Exception):
    """Error raised by a storage transaction."""

    def __init__(self, message: str, collection: str | None = None):
        super().__init__(message)
        self.collection = collection


class NotFoundError(StorageError):
    """A keyed record required by an operation does not exist."""

    def __init__(self, collection: str, key: str):
        super().__init__(f"{collection} record not found: {key}", collection=collection)
        self.key = key


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


def _ts(value: datetime | None) -> str | None:
    # Fixed-width timestamps so that ORDER BY created_at is chronological
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


# ==================== Row Codecs ====================


def _role_to_row(role: Role) -> dict[str, Any]:
    return {
        "id": role.id,
        "title": role.title,
        "company": role.company,
        "order_index": role.order_index,
        "bullets_limit": role.bullets_limit,
        "start_date": role.start_date,
        "end_date": role.end_date,
    }


def _role_from_row(row: sqlite3.Row) -> Role:
    return Role(
        id=row["id"],
        title=row["title"],
        company=row["company"],
        order_index=row["order_index"],
        bullets_limit=row["bullets_limit"],
        start_date=row["start_date"],
        end_date=row["end_date"],
    )


def _project_to_row(project: Project) -> dict[str, Any]:
    return {
        "id": project.id,
        "role_id": project.role_id,
        "name": project.name,
        "description": project.description,
        "centroid": serialize_f32(project.centroid) if project.centroid else None,
        "vector_dimensions": project.vector_dimensions,
        "bullet_count": project.bullet_count,
        "embedding_version": project.embedding_version,
        "created_at": _ts(project.created_at),
        "updated_at": _ts(project.updated_at),
    }


def _project_from_row(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        role_id=row["role_id"],
        name=row["name"],
        description=row["description"],
        centroid=deserialize_f32(row["centroid"]) if row["centroid"] else None,
        vector_dimensions=row["vector_dimensions"],
        bullet_count=row["bullet_count"],
        embedding_version=row["embedding_version"],
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
    )


def _bullet_to_row(bullet: Bullet) -> dict[str, Any]:
    return {
        "id": bullet.id,
        "role_id": bullet.role_id,
        "project_id": bullet.project_id,
        "text": bullet.text,
        "fingerprint": bullet.fingerprint,
        "features": json.dumps(bullet.features.to_dict()),
        "embedding_state": bullet.embedding_state.value,
        "retry_count": bullet.retry_count,
        "last_embedded_at": _ts(bullet.last_embedded_at),
        "source": bullet.source,
        "created_at": _ts(bullet.created_at),
        "last_modified": _ts(bullet.last_modified),
    }


def _bullet_from_row(row: sqlite3.Row) -> Bullet:
    return Bullet(
        id=row["id"],
        role_id=row["role_id"],
        project_id=row["project_id"],
        text=row["text"],
        fingerprint=row["fingerprint"],
        features=BulletFeatures.from_dict(json.loads(row["features"] or "{}")),
        embedding_state=EmbeddingState(row["embedding_state"]),
        retry_count=row["retry_count"],
        last_embedded_at=_dt(row["last_embedded_at"]),
        source=row["source"],
        created_at=_dt(row["created_at"]),
        last_modified=_dt(row["last_modified"]),
    )


def _embedding_to_row(embedding: Embedding) -> dict[str, Any]:
    return {
        "bullet_id": embedding.bullet_id,
        "vector": serialize_f32(embedding.vector),
        "vendor": embedding.vendor,
        "model": embedding.model,
        "dims": embedding.dims,
        "version": embedding.version,
        "created_at": _ts(embedding.created_at),
    }


def _embedding_from_row(row: sqlite3.Row) -> Embedding:
    return Embedding(
        bullet_id=row["bullet_id"],
        vector=deserialize_f32(row["vector"]),
        vendor=row["vendor"],
        model=row["model"],
        dims=row["dims"],
        version=row["version"],
        created_at=_dt(row["created_at"]),
    )


def _queue_item_to_row(item: EmbedQueueItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "bullet_id": item.bullet_id,
        "priority": int(item.priority),
        "created_at": _ts(item.created_at),
        "retry_count": item.retry_count,
    }


def _queue_item_from_row(row: sqlite3.Row) -> EmbedQueueItem:
    return EmbedQueueItem(
        id=row["id"],
        bullet_id=row["bullet_id"],
        priority=row["priority"],
        created_at=_dt(row["created_at"]),
        retry_count=row["retry_count"],
    )


@dataclass(frozen=True)
class Collection:
    """Maps a logical collection onto a table, its key and its secondary indexes."""

    table: str
    key: str
    indexes: dict[str, tuple[str, ...]]
    to_row: Callable[[Any], dict[str, Any]]
    from_row: Callable[[sqlite3.Row], Any]


COLLECTIONS: dict[str, Collection] = {
    "roles": Collection(
        table="roles",
        key="id",
        indexes={"order": ("order_index", "id")},
        to_row=_role_to_row,
        from_row=_role_from_row,
    ),
    "projects": Collection(
        table="projects",
        key="id",
        indexes={"role_id": ("role_id",)},
        to_row=_project_to_row,
        from_row=_project_from_row,
    ),
    "bullets": Collection(
        table="bullets",
        key="id",
        indexes={
            "role_id": ("role_id",),
            "project_id": ("project_id",),
            "state": ("embedding_state",),
        },
        to_row=_bullet_to_row,
        from_row=_bullet_from_row,
    ),
    "embeddings": Collection(
        table="embeddings",
        key="bullet_id",
        indexes={},
        to_row=_embedding_to_row,
        from_row=_embedding_from_row,
    ),
    "embed_queue": Collection(
        table="embed_queue",
        key="id",
        indexes={
            "bullet_id": ("bullet_id",),
            "priority_created": ("priority", "created_at"),
        },
        to_row=_queue_item_to_row,
        from_row=_queue_item_from_row,
    ),
}


class Transaction:
    """Keyed access to the collections declared for one transaction."""

    def __init__(self, conn: sqlite3.Connection, collections: Iterable[str], mode: str) -> None:
        self._conn = conn
        self._collections = frozenset(collections)
        self.mode = mode

    def _collection(self, name: str, write: bool = False) -> Collection:
        if name not in COLLECTIONS:
            raise StorageError(f"Unknown collection: {name}", collection=name)
        if name not in self._collections:
            raise StorageError(
                f"Collection '{name}' not declared for this transaction",
                collection=name,
            )
        if write and self.mode != READWRITE:
            raise StorageError(f"Cannot write to '{name}' in a readonly transaction", collection=name)
        return COLLECTIONS[name]

    def _index(self, coll: Collection, index: str) -> tuple[str, ...]:
        if index not in coll.indexes:
            raise StorageError(f"Unknown index '{index}' on {coll.table}", collection=coll.table)
        return coll.indexes[index]

    def get(self, collection: str, key: str) -> Any | None:
        coll = self._collection(collection)
        cur = self._conn.execute(
            f"SELECT * FROM {coll.table} WHERE {coll.key} = ?",
            (key,),
        )
        row = cur.fetchone()
        return coll.from_row(row) if row else None

    def get_all(self, collection: str) -> list[Any]:
        coll = self._collection(collection)
        cur = self._conn.execute(f"SELECT * FROM {coll.table} ORDER BY {coll.key}")
        return [coll.from_row(row) for row in cur.fetchall()]

    def find(self, collection: str, index: str, value: Any) -> list[Any]:
        """Equality lookup on a single-column secondary index."""
        coll = self._collection(collection)
        columns = self._index(coll, index)
        if len(columns) != 1:
            raise StorageError(f"Index '{index}' is composite; use scan()", collection=collection)
        cur = self._conn.execute(
            f"SELECT * FROM {coll.table} WHERE {columns[0]} = ? ORDER BY {coll.key}",
            (value,),
        )
        return [coll.from_row(row) for row in cur.fetchall()]

    def scan(self, collection: str, index: str) -> list[Any]:
        """All records ordered by the given index (then by key)."""
        coll = self._collection(collection)
        columns = self._index(coll, index)
        order = ", ".join([*columns, coll.key])
        cur = self._conn.execute(f"SELECT * FROM {coll.table} ORDER BY {order}")
        return [coll.from_row(row) for row in cur.fetchall()]

    def count(self, collection: str) -> int:
        coll = self._collection(collection)
        cur = self._conn.execute(f"SELECT COUNT(*) FROM {coll.table}")
        return cur.fetchone()[0]

    def put(self, collection: str, record: Any) -> None:
        """Insert or fully replace a record."""
        coll = self._collection(collection, write=True)
        row = coll.to_row(record)
        columns = list(row.keys())
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != coll.key)
        self._conn.execute(
            f"""
            INSERT INTO {coll.table} ({", ".join(columns)}) VALUES ({placeholders})
            ON CONFLICT({coll.key}) DO UPDATE SET {updates}
            """,
            [row[c] for c in columns],
        )

    def delete(self, collection: str, key: str) -> bool:
        coll = self._collection(collection, write=True)
        cur = self._conn.execute(f"DELETE FROM {coll.table} WHERE {coll.key} = ?", (key,))
        return cur.rowcount > 0


@dataclass
class DB:
    conn: sqlite3.Connection
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def init(self) -> None:
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    async def run(
        self,
        collections: str | Iterable[str],
        mode: str,
        fn: Callable[[Transaction], T],
    ) -> T:
        """Run fn inside one atomic transaction over the named collections.

        fn receives a Transaction and must be synchronous. On success the
        transaction commits and fn's return value is passed through; on any
        exception everything is rolled back. sqlite errors are re-raised as
        StorageError, other exceptions propagate unchanged.
        """
        names = [collections] if isinstance(collections, str) else list(collections)
        if mode not in (READONLY, READWRITE):
            raise StorageError(f"Unknown transaction mode: {mode}")
        for name in names:
            if name not in COLLECTIONS:
                raise StorageError(f"Unknown collection: {name}", collection=name)

        async with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE" if mode == READWRITE else "BEGIN")
            except sqlite3.Error as e:
                raise StorageError(f"Could not open transaction: {e}") from e

            try:
                result = fn(Transaction(self.conn, names, mode))
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error(f"Transaction on {names} rolled back: {e}")
                raise StorageError(
                    f"Transaction on {', '.join(names)} failed: {e}",
                    collection=names[0] if len(names) == 1 else None,
                ) from e
            except BaseException:
                self.conn.rollback()
                raise

            try:
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StorageError(f"Commit failed: {e}") from e
            return result

    def get_stats(self) -> dict[str, Any]:
        cur = self.conn.execute("SELECT COUNT(*) FROM roles")
        roles = cur.fetchone()[0]
        cur = self.conn.execute("SELECT COUNT(*) FROM projects")
        projects = cur.fetchone()[0]
        cur = self.conn.execute(
            "SELECT embedding_state, COUNT(*) FROM bullets GROUP BY embedding_state"
        )
        by_state = {state.value: 0 for state in EmbeddingState}
        for state, count in cur.fetchall():
            by_state[state] = count
        cur = self.conn.execute("SELECT COUNT(*) FROM embeddings")
        embeddings = cur.fetchone()[0]
        return {
            "roles": roles,
            "projects": projects,
            "bullets": sum(by_state.values()),
            "bullets_by_state": by_state,
            "embeddings": embeddings,
        }

    def find_similar_bullets(self, bullet_id: str, limit: int = 5) -> list[dict[str, Any]]:
        """Nearest bullets to the given one by cosine distance of their embeddings.

        Returns an empty list if the bullet has no embedding yet.
        """
        cur = self.conn.execute(
            """
            SELECT e.bullet_id,
                   vec_distance_cosine(e.vector, t.vector) AS distance,
                   b.text, b.role_id, b.project_id
            FROM embeddings t
            JOIN embeddings e ON e.bullet_id != t.bullet_id AND e.dims = t.dims
            JOIN bullets b ON b.id = e.bullet_id
            WHERE t.bullet_id = ?
            ORDER BY distance, e.bullet_id
            LIMIT ?
            """,
            (bullet_id, limit),
        )
        return [
            {
                "bullet_id": row[0],
                "distance": row[1],
                "similarity": 1.0 - row[1],
                "text": row[2],
                "role_id": row[3],
                "project_id": row[4],
            }
            for row in cur.fetchall()
        ]


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with sqlite-vec loaded."""
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # sqlite-vec must be loaded into this connection
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn


def open_db(db_path: str) -> DB:
    db = DB(conn=connect(db_path))
    db.init()
    logger.info(f"Opened database at {db_path}")
    return db
