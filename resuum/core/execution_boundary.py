"""Execution boundary: runs the recommendation worker with crash recovery and timeouts.

Provides:
- ExecutionBoundary: request/response channel to one RecommendationWorker task
  with per-call timeouts, a concurrency cap, periodic health checks and one
  bounded auto-restart after a crash
- WorkerError family for every way a call can fail at the boundary
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from resuum.core.recommendation_engine import RecommendationError
from resuum.core.worker import (
    ErrorCode,
    MessageType,
    RecommendationWorker,
    WorkerRequest,
    WorkerResponse,
)

logger = logging.getLogger(__name__)

RESTART_DELAY_BASE = 0.2  # seconds
MAX_RESTART_ATTEMPTS = 1
HEALTH_CHECK_INTERVAL = 30.0  # seconds
HEALTH_CHECK_TIMEOUT = 2.0  # seconds
MESSAGE_TIMEOUT = 60.0  # seconds
MAX_CONCURRENT_OPERATIONS = 3


# ==================== Errors ====================


class WorkerError(Exception):
    """Base class for failures at the execution boundary."""


class WorkerUnavailableError(WorkerError):
    """No healthy worker and no restart left."""


class WorkerBusyError(WorkerError):
    """The worker is already running a recommendation."""


class WorkerOverloadedError(WorkerError):
    """Too many operations in flight; the call was rejected without queueing."""


class WorkerTimeoutError(WorkerError):
    pass


class WorkerCrashedError(WorkerError):
    pass


class WorkerTerminatedError(WorkerError):
    pass


# ==================== Boundary ====================


class ExecutionBoundary:
    def __init__(
        self,
        worker_factory: Callable[[], RecommendationWorker],
        message_timeout: float = MESSAGE_TIMEOUT,
        health_interval: float = HEALTH_CHECK_INTERVAL,
        health_timeout: float = HEALTH_CHECK_TIMEOUT,
        max_concurrent: int = MAX_CONCURRENT_OPERATIONS,
        enable_health_checks: bool = True,
        enable_crash_recovery: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._worker_factory = worker_factory
        self.message_timeout = message_timeout
        self.health_interval = health_interval
        self.health_timeout = health_timeout
        self.max_concurrent = max_concurrent
        self.enable_health_checks = enable_health_checks
        self.enable_crash_recovery = enable_crash_recovery
        self._sleep = sleep

        self._worker: RecommendationWorker | None = None
        self._worker_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._healthy = False
        self._terminated = False
        self.restart_attempts = 0
        self.last_health_check: datetime | None = None

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        self._terminated = False
        self._spawn()
        await self.health_check()
        if self.enable_health_checks and self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop())
        logger.info("Execution boundary started")

    async def terminate(self) -> None:
        """Stop health checks, cancel the worker and reject everything pending."""
        self._terminated = True
        for task in (self._health_task, self._restart_task):
            if task is not None:
                task.cancel()
        self._health_task = None
        self._restart_task = None
        await self._stop_worker()
        self._reject_pending(WorkerTerminatedError("Worker terminated"))
        self._healthy = False
        self.restart_attempts = 0
        self.last_health_check = None
        logger.info("Execution boundary terminated")

    def _spawn(self) -> None:
        self._worker = self._worker_factory()
        self._worker_task = asyncio.create_task(self._worker.run())
        self._worker_task.add_done_callback(self._on_worker_done)
        self._healthy = True

    async def _stop_worker(self) -> None:
        task = self._worker_task
        self._worker_task = None
        self._worker = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _on_worker_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task is not self._worker_task:
            return
        error = task.exception() or RuntimeError("worker exited")
        self._handle_crash(error)

    def _handle_crash(self, error: BaseException) -> None:
        logger.error(f"Worker crash detected: {error!r}")
        self._healthy = False
        self._worker_task = None
        self._worker = None
        self._reject_pending(WorkerCrashedError(f"Worker crashed: {error}"))

        if self.enable_crash_recovery and self._can_restart() and not self._terminated:
            logger.info("Attempting worker restart...")
            self._restart_task = asyncio.create_task(self._restart())

    def _reject_pending(self, error: WorkerError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    def _can_restart(self) -> bool:
        return self.restart_attempts < MAX_RESTART_ATTEMPTS

    async def _restart(self) -> None:
        self.restart_attempts += 1
        delay = RESTART_DELAY_BASE * 2 ** (self.restart_attempts - 1)
        logger.info(f"Restarting worker in {delay:.1f}s (attempt {self.restart_attempts}/{MAX_RESTART_ATTEMPTS})")
        await self._sleep(delay)
        await self._stop_worker()
        self._reject_pending(WorkerUnavailableError("Worker restarted"))
        self._spawn()
        logger.info("Worker restarted successfully")

    def _is_available(self) -> bool:
        return (
            self._healthy
            and self._worker is not None
            and self._worker_task is not None
            and not self._worker_task.done()
        )

    async def _ensure_worker(self, health_check: bool = False) -> RecommendationWorker:
        """Return a usable worker, restarting a dead or unhealthy one if allowed.

        A health check may reach a live worker that is marked unhealthy,
        so a successful check can restore it without a restart.
        """
        if self._terminated:
            raise WorkerTerminatedError("Worker terminated")
        worker_alive = self._worker is not None and self._worker_task is not None and not self._worker_task.done()
        if health_check and worker_alive:
            return self._worker
        if not self._is_available():
            if self._restart_task is None or self._restart_task.done():
                if not (self.enable_crash_recovery and self._can_restart()):
                    raise WorkerUnavailableError("Worker not available")
                self._restart_task = asyncio.create_task(self._restart())
            await asyncio.shield(self._restart_task)
        if not self._is_available():
            raise WorkerUnavailableError("Worker not available")
        assert self._worker is not None
        return self._worker

    # ==================== Messaging ====================

    async def send(
        self,
        message_type: MessageType,
        payload: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> WorkerResponse:
        """Send one request and wait for its response.

        Raises:
            WorkerOverloadedError: max_concurrent operations already pending.
            WorkerTimeoutError: no response within the timeout.
            WorkerCrashedError: the worker crashed while the request was pending.
            WorkerUnavailableError / WorkerTerminatedError: no worker to send to.
        """
        worker = await self._ensure_worker(health_check=message_type == MessageType.HEALTH_CHECK)
        if len(self._pending) >= self.max_concurrent:
            raise WorkerOverloadedError(f"Too many concurrent operations (max: {self.max_concurrent})")

        timeout = timeout or self.message_timeout
        request = WorkerRequest(
            type=message_type,
            id=f"msg_{int(time.time() * 1000)}_{next(self._ids)}",
            payload=payload or {},
        )
        reply: asyncio.Future = asyncio.get_running_loop().create_future()
        try:
            worker.mailbox.put_nowait((request.to_dict(), reply))
        except asyncio.QueueFull as e:
            raise WorkerOverloadedError("Worker mailbox full") from e
        self._pending[request.id] = reply

        try:
            return await asyncio.wait_for(reply, timeout=timeout)
        except asyncio.TimeoutError as e:
            worker.cancel(request.id)
            raise WorkerTimeoutError(f"Operation timeout after {timeout}s: {message_type.value}") from e
        finally:
            self._pending.pop(request.id, None)

    async def recommend(self, job_title: str, job_description: str, timeout: float | None = None) -> dict[str, Any]:
        """Run a recommendation in the worker and return the result dict.

        Raises RecommendationError for pipeline failures and WorkerBusyError when
        another recommendation is running, besides the send() errors.
        """
        response = await self.send(
            MessageType.RECOMMEND,
            {"job_title": job_title, "job_description": job_description},
            timeout=timeout,
        )
        if response.success:
            return response.data
        if response.error_code == ErrorCode.BUSY:
            raise WorkerBusyError(response.error)
        raise RecommendationError(response.error or "Recommendation failed")

    async def reset_performance(self) -> None:
        await self.send(MessageType.PERFORMANCE_RESET)

    async def health_check(self) -> bool:
        try:
            response = await self.send(MessageType.HEALTH_CHECK, timeout=self.health_timeout)
        except WorkerError as e:
            logger.warning(f"Health check failed: {e}")
            self._healthy = False
            return False

        self._healthy = response.success
        self.last_health_check = datetime.now(timezone.utc)
        if self._healthy:
            self.restart_attempts = 0
        return self._healthy

    async def _health_loop(self) -> None:
        while True:
            await self._sleep(self.health_interval)
            await self.health_check()

    def status(self) -> dict[str, Any]:
        return {
            "healthy": self._healthy,
            "pending_operations": len(self._pending),
            "restart_attempts": self.restart_attempts,
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "busy": self._worker.is_busy if self._worker else False,
        }
