"""Embedding lifecycle state machine and durable priority queue.

Every bullet moves through pending -> ready, or pending -> (retry with backoff)
-> failed. Each transition runs in one readwrite transaction over bullets and
embed_queue, so state and queue never disagree after a crash.

At most one live queue item per bullet id.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

from resuum.core.models import (
    Bullet,
    EmbedQueueItem,
    EmbeddingState,
    QueuePriority,
    new_id,
    utcnow,
)
from resuum.core.storage import READONLY, READWRITE, NotFoundError, Transaction

if TYPE_CHECKING:
    from resuum.core.storage import DB

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
BACKOFF_BASE = 1.0  # seconds
BACKOFF_MULTIPLIER = 2

_COLLECTIONS = ("bullets", "embed_queue")


def backoff_delay(retry_count: int) -> float:
    """Delay in seconds before the retry that follows the retry_count-th failure."""
    return BACKOFF_BASE * BACKOFF_MULTIPLIER ** (retry_count - 1)


def _get_bullet(tx: Transaction, bullet_id: str) -> Bullet:
    bullet = tx.get("bullets", bullet_id)
    if bullet is None:
        raise NotFoundError("bullets", bullet_id)
    return bullet


def _queue_items(tx: Transaction, bullet_id: str) -> list[EmbedQueueItem]:
    return tx.find("embed_queue", "bullet_id", bullet_id)


class EmbeddingStateMachine:
    """Transitions for bullet embedding state, backed by the embed_queue collection."""

    def __init__(self, db: DB, clock: Callable[[], datetime] = utcnow) -> None:
        self._db = db
        self._clock = clock

    # ==================== Transitions ====================

    async def enqueue(self, bullet_id: str, priority: int = QueuePriority.NORMAL) -> bool:
        """Set the bullet pending and queue it unless a live queue item already exists.

        Returns True if a new queue item was created.
        """

        def _enqueue(tx: Transaction) -> bool:
            bullet = _get_bullet(tx, bullet_id)
            now = self._clock()
            if bullet.embedding_state == EmbeddingState.FAILED:
                # Explicit requeue of a terminal bullet starts a fresh retry budget
                bullet.retry_count = 0
            bullet.embedding_state = EmbeddingState.PENDING
            bullet.last_modified = now
            tx.put("bullets", bullet)

            if _queue_items(tx, bullet_id):
                return False
            tx.put(
                "embed_queue",
                EmbedQueueItem(
                    id=new_id("embed_queue"),
                    bullet_id=bullet_id,
                    priority=int(priority),
                    created_at=now,
                    retry_count=0,
                ),
            )
            return True

        created = await self._db.run(_COLLECTIONS, READWRITE, _enqueue)
        if created:
            logger.debug(f"Queued bullet {bullet_id} for embedding (priority {int(priority)})")
        return created

    async def mark_ready(self, bullet_id: str) -> None:
        await self._db.run(_COLLECTIONS, READWRITE, lambda tx: self.mark_ready_in(tx, bullet_id))

    def mark_ready_in(self, tx: Transaction, bullet_id: str) -> None:
        """mark_ready inside a caller-owned transaction over bullets + embed_queue."""
        bullet = _get_bullet(tx, bullet_id)
        now = self._clock()
        bullet.embedding_state = EmbeddingState.READY
        bullet.retry_count = 0
        bullet.last_embedded_at = now
        bullet.last_modified = now
        tx.put("bullets", bullet)
        for item in _queue_items(tx, bullet_id):
            tx.delete("embed_queue", item.id)

    async def mark_stale(self, bullet_id: str) -> None:
        """Flag the bullet's embedding as outdated. The queue is left untouched."""

        def _mark(tx: Transaction) -> None:
            bullet = _get_bullet(tx, bullet_id)
            bullet.embedding_state = EmbeddingState.STALE
            bullet.last_modified = self._clock()
            tx.put("bullets", bullet)

        await self._db.run("bullets", READWRITE, _mark)

    async def mark_failed(self, bullet_id: str) -> EmbeddingState:
        """Record a failed embedding attempt.

        Below the retry cap the queue item is pushed back by the backoff delay and
        the bullet stays pending; past it the item is dropped and the bullet is failed.
        Returns the resulting state.
        """

        def _mark(tx: Transaction) -> EmbeddingState:
            bullet = _get_bullet(tx, bullet_id)
            now = self._clock()
            retry_count = bullet.retry_count + 1
            bullet.retry_count = retry_count
            bullet.last_modified = now
            items = _queue_items(tx, bullet_id)

            if retry_count <= MAX_RETRIES:
                bullet.embedding_state = EmbeddingState.PENDING
                eligible_at = now + timedelta(seconds=backoff_delay(retry_count))
                item = items[0] if items else EmbedQueueItem(
                    id=new_id("embed_queue"),
                    bullet_id=bullet_id,
                    priority=int(QueuePriority.NORMAL),
                )
                item.retry_count = retry_count
                item.created_at = eligible_at
                tx.put("embed_queue", item)
                for extra in items[1:]:
                    tx.delete("embed_queue", extra.id)
            else:
                bullet.embedding_state = EmbeddingState.FAILED
                for item in items:
                    tx.delete("embed_queue", item.id)

            tx.put("bullets", bullet)
            return bullet.embedding_state

        state = await self._db.run(_COLLECTIONS, READWRITE, _mark)
        if state == EmbeddingState.FAILED:
            logger.error(f"Embedding for bullet {bullet_id} failed permanently after {MAX_RETRIES} retries")
        else:
            logger.warning(f"Embedding for bullet {bullet_id} failed, retry scheduled")
        return state

    async def mark_changed(self, bullet_id: str, priority: int = QueuePriority.NORMAL) -> None:
        """Bullet text was edited: mark the old embedding stale and queue a re-embed."""
        await self.mark_stale(bullet_id)
        await self.enqueue(bullet_id, priority)

    # ==================== Queue Reads ====================

    def _eligible(self, tx: Transaction) -> list[EmbedQueueItem]:
        now = self._clock()
        items = [i for i in tx.scan("embed_queue", "priority_created") if i.created_at <= now]
        items.sort(key=lambda i: (i.priority, i.created_at, i.id))
        return items

    async def dequeue_next(self) -> EmbedQueueItem | None:
        """Highest-priority, oldest item that is currently eligible. Never mutates."""
        items = await self._db.run("embed_queue", READONLY, self._eligible)
        return items[0] if items else None

    async def eligible_items(self, limit: int | None = None, exclude: set[str] | None = None) -> list[EmbedQueueItem]:
        """Eligible items in drain order, skipping bullet ids in `exclude`."""
        items = await self._db.run("embed_queue", READONLY, self._eligible)
        if exclude:
            items = [i for i in items if i.bullet_id not in exclude]
        return items[:limit] if limit is not None else items

    async def queue_size(self) -> int:
        return await self._db.run("embed_queue", READONLY, lambda tx: tx.count("embed_queue"))

    async def queue_stats(self) -> dict[str, Any]:
        items: list[EmbedQueueItem] = await self._db.run(
            "embed_queue", READONLY, lambda tx: tx.scan("embed_queue", "priority_created")
        )
        by_priority: dict[int, int] = {}
        for item in items:
            by_priority[item.priority] = by_priority.get(item.priority, 0) + 1
        oldest = min((i.created_at for i in items), default=None)
        return {
            "total": len(items),
            "by_priority": by_priority,
            "oldest_item": oldest.isoformat() if oldest else None,
            "avg_retry_count": sum(i.retry_count for i in items) / len(items) if items else 0.0,
        }

    # ==================== Maintenance ====================

    async def coalesce(self) -> int:
        """Remove duplicate queue items per bullet, keeping the first in drain order."""

        def _coalesce(tx: Transaction) -> int:
            seen: set[str] = set()
            removed = 0
            for item in tx.scan("embed_queue", "priority_created"):
                if item.bullet_id in seen:
                    tx.delete("embed_queue", item.id)
                    removed += 1
                else:
                    seen.add(item.bullet_id)
            return removed

        removed = await self._db.run("embed_queue", READWRITE, _coalesce)
        if removed:
            logger.info(f"Coalesced embed queue, removed {removed} duplicate items")
        return removed

    async def requeue_stale(self, priority: int = QueuePriority.LOW) -> int:
        stale = await self._db.run(
            "bullets", READONLY, lambda tx: tx.find("bullets", "state", EmbeddingState.STALE.value)
        )
        for bullet in stale:
            await self.enqueue(bullet.id, priority)
        if stale:
            logger.info(f"Requeued {len(stale)} stale bullets")
        return len(stale)

    async def clear_failed_queue(self) -> int:
        """Drop queue items whose bullet is failed or no longer exists."""

        def _clear(tx: Transaction) -> int:
            cleared = 0
            for item in tx.get_all("embed_queue"):
                bullet = tx.get("bullets", item.bullet_id)
                if bullet is None or bullet.embedding_state == EmbeddingState.FAILED:
                    tx.delete("embed_queue", item.id)
                    cleared += 1
            return cleared

        return await self._db.run(_COLLECTIONS, READWRITE, _clear)
