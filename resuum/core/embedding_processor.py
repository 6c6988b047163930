"""Background embedding processor.

Provides:
- EmbeddingProcessor: polling loop that drains the embed queue with bounded
  concurrency and a hard timeout per item
- recompute_project_centroid(): centroid maintenance inside a transaction

Embedding row, bullet state and project centroid are written in one
transaction, so a failure never leaves a ready bullet without its embedding
or a centroid that disagrees with its bullet_count.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from resuum.core.models import Embedding, utcnow
from resuum.core.storage import READONLY, READWRITE, NotFoundError, StorageError, Transaction
from resuum.core.vector_math import calculate_centroid

if TYPE_CHECKING:
    from resuum.core.embedding_providers import EmbeddingProvider
    from resuum.core.embedding_state import EmbeddingStateMachine
    from resuum.core.models import EmbedQueueItem
    from resuum.core.storage import DB

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3
POLL_INTERVAL = 2.0  # seconds
MAX_PROCESSING_TIME = 30.0  # seconds per item
STOP_TIMEOUT = 5.0  # seconds
CURRENT_EMBEDDING_VERSION = 1

PERSIST_COLLECTIONS = ("bullets", "embeddings", "embed_queue", "projects")


def recompute_project_centroid(
    tx: Transaction,
    project_id: str,
    now: datetime | None = None,
) -> list[float] | None:
    """Rewrite a project's centroid from its members' current embeddings.

    The centroid is the plain arithmetic mean (no renormalization). Only
    vectors with the dimension of the newest member embedding count, so a
    project keeps a centroid while old-model vectors wait to be re-embedded.
    A project whose members have no embeddings gets its centroid cleared.
    """
    project = tx.get("projects", project_id)
    if project is None:
        logger.warning(f"Project not found for centroid update: {project_id}")
        return None

    embeddings = []
    for bullet in tx.find("bullets", "project_id", project_id):
        embedding = tx.get("embeddings", bullet.id)
        if embedding is not None and embedding.vector:
            embeddings.append(embedding)

    vectors = []
    if embeddings:
        dims = len(max(embeddings, key=lambda e: e.created_at).vector)
        vectors = [e.vector for e in embeddings if len(e.vector) == dims]
        skipped = len(embeddings) - len(vectors)
        if skipped:
            logger.info(f"Project {project_id} centroid ignores {skipped} vectors of other dimensions than {dims}")

    centroid = calculate_centroid(vectors)
    project.centroid = centroid
    project.vector_dimensions = len(centroid) if centroid else 0
    project.bullet_count = len(vectors)
    project.embedding_version += 1
    project.updated_at = now or utcnow()
    tx.put("projects", project)
    return centroid


class EmbeddingProcessor:
    """Drains the embedding queue in the background."""

    def __init__(
        self,
        db: DB,
        state: EmbeddingStateMachine,
        provider: EmbeddingProvider,
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval: float = POLL_INTERVAL,
        item_timeout: float = MAX_PROCESSING_TIME,
        stop_timeout: float = STOP_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._state = state
        self._provider = provider
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.item_timeout = item_timeout
        self.stop_timeout = stop_timeout
        self._clock = clock

        self._in_flight: dict[str, asyncio.Task] = {}
        self._loop_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._processed = 0
        self._failed = 0
        self._started_at = time.monotonic()

    @property
    def is_processing(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> set[str]:
        return set(self._in_flight)

    async def start(self) -> None:
        if self.is_processing:
            logger.warning("Embedding processor already running")
            return

        self._stop_event = asyncio.Event()
        self._processed = 0
        self._failed = 0
        self._started_at = time.monotonic()

        # Pick up work left behind by edits or an earlier shutdown
        await self._state.coalesce()
        await self._state.requeue_stale()

        self._loop_task = asyncio.create_task(self._run())
        logger.info(
            f"Embedding processor started (concurrency={self.concurrency}, poll={self.poll_interval}s)"
        )

    async def stop(self) -> None:
        """Stop polling, then wait for in-flight items up to stop_timeout."""
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        self._stop_event.set()

        drained = await self.wait_idle(timeout=self.stop_timeout)
        if not drained:
            logger.warning(
                f"Stop timeout after {self.stop_timeout}s, cancelling {len(self._in_flight)} in-flight items"
            )
            for task in list(self._in_flight.values()):
                task.cancel()
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        logger.info("Embedding processor stopped")

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until no item is in flight. Returns False if the timeout elapsed first."""
        tasks = list(self._in_flight.values())
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    async def _run(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.process_once()
            except StorageError as e:
                logger.error(f"Error in embedding loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def process_once(self) -> int:
        """Start tasks for eligible queue items while capacity remains.

        Returns the number of items started. Nothing starts once stop() was called.
        """
        slots = self.concurrency - len(self._in_flight)
        if slots <= 0 or self._stopping():
            return 0

        items = await self._state.eligible_items(limit=slots, exclude=self.in_flight)
        # stop() can land while the queue read is pending
        if self._stopping():
            return 0
        for item in items:
            task = asyncio.create_task(self._process_item(item))
            self._in_flight[item.bullet_id] = task
            task.add_done_callback(lambda _t, bullet_id=item.bullet_id: self._in_flight.pop(bullet_id, None))
        return len(items)

    async def _process_item(self, item: EmbedQueueItem) -> None:
        bullet_id = item.bullet_id
        try:
            done = await asyncio.wait_for(self.process_bullet(bullet_id), timeout=self.item_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                reason = f"timeout after {self.item_timeout}s"
            else:
                reason = str(e) or type(e).__name__
            logger.error(f"Failed to embed bullet {bullet_id}: {reason}")
            self._failed += 1
            try:
                await self._state.mark_failed(bullet_id)
            except NotFoundError:
                logger.info(f"Bullet {bullet_id} was deleted while embedding")
            return

        if done:
            self._processed += 1
            logger.debug(f"Embedded bullet {bullet_id}")

    async def process_bullet(self, bullet_id: str) -> bool:
        """Embed one bullet and persist the result.

        Returns False (leaving the queue item in place) if the bullet text
        changed while the remote call was in flight.
        """
        bullet = await self._db.run("bullets", READONLY, lambda tx: tx.get("bullets", bullet_id))
        if bullet is None:
            raise NotFoundError("bullets", bullet_id)

        vector = await self._provider.embed_single(bullet.text)

        def _persist(tx: Transaction) -> bool:
            current = tx.get("bullets", bullet_id)
            if current is None:
                raise NotFoundError("bullets", bullet_id)
            if current.text != bullet.text:
                logger.info(f"Bullet {bullet_id} changed during embedding, will re-embed")
                return False

            now = self._clock()
            tx.put(
                "embeddings",
                Embedding(
                    bullet_id=bullet_id,
                    vector=vector,
                    vendor=self._provider.name,
                    model=self._provider.model_id,
                    dims=len(vector),
                    version=CURRENT_EMBEDDING_VERSION,
                    created_at=now,
                ),
            )
            self._state.mark_ready_in(tx, bullet_id)
            recompute_project_centroid(tx, current.project_id, now)
            return True

        return await self._db.run(PERSIST_COLLECTIONS, READWRITE, _persist)

    async def get_stats(self) -> dict[str, Any]:
        return {
            "is_processing": self.is_processing,
            "processed": self._processed,
            "failed": self._failed,
            "in_flight": len(self._in_flight),
            "queue_size": await self._state.queue_size(),
            "uptime": round(time.monotonic() - self._started_at, 1),
        }

