"""Worker side of the execution boundary.

The worker reads (message, reply) pairs from a bounded mailbox and answers
each reply future with a WorkerResponse. Messages are plain dicts, validated
into a WorkerRequest on arrival; a malformed one gets an invalid error. Only one recommend runs at a time;
a second one is answered with a busy error while health checks and
performance resets are still served.

An exception other than RecommendationError escaping a recommend ends run()
with that exception. The manager treats this as a crash.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from resuum.core.recommendation_engine import RecommendationError

if TYPE_CHECKING:
    from resuum.core.recommendation_engine import RecommendationEngine

logger = logging.getLogger(__name__)

MAILBOX_SIZE = 8


class MessageType(str, Enum):
    RECOMMEND = "recommend"
    HEALTH_CHECK = "health_check"
    PERFORMANCE_RESET = "performance_reset"


class ErrorCode(str, Enum):
    BUSY = "busy"
    INVALID = "invalid"
    FAILED = "failed"


@dataclass
class RecommendPayload:
    job_title: str
    job_description: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecommendPayload:
        title = data.get("job_title")
        description = data.get("job_description")
        if not isinstance(title, str) or not isinstance(description, str):
            raise ValueError("recommend payload requires job_title and job_description strings")
        return cls(job_title=title, job_description=description)


@dataclass
class WorkerRequest:
    type: MessageType
    id: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> WorkerRequest:
        """Validate a raw message. Raises ValueError on anything malformed."""
        if not isinstance(data, dict):
            raise ValueError("Invalid message format")
        request_id = data.get("id")
        if not isinstance(request_id, str) or not request_id:
            raise ValueError("Message id is required")
        try:
            message_type = MessageType(data.get("type"))
        except ValueError as e:
            raise ValueError(f"Unknown message type: {data.get('type')}") from e
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError("Message payload must be an object")
        return cls(type=message_type, id=request_id, payload=payload)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "id": self.id, "payload": self.payload}


@dataclass
class WorkerResponse:
    type: MessageType | None
    id: str
    success: bool
    data: Any = None
    error: str | None = None
    error_code: ErrorCode | None = None
    elapsed_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.type.value if self.type else None,
            "id": self.id,
            "success": self.success,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.success:
            result["data"] = self.data
        else:
            result["error"] = self.error
            result["error_code"] = self.error_code.value if self.error_code else None
        return result


@dataclass
class PerformanceCounters:
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    total_processing_ms: int = 0

    @property
    def avg_processing_ms(self) -> float:
        if not self.total_operations:
            return 0.0
        return self.total_processing_ms / self.total_operations

    def record(self, success: bool, elapsed_ms: int) -> None:
        self.total_operations += 1
        self.total_processing_ms += elapsed_ms
        if success:
            self.successful_operations += 1
        else:
            self.failed_operations += 1

    def reset(self) -> None:
        self.total_operations = 0
        self.successful_operations = 0
        self.failed_operations = 0
        self.total_processing_ms = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_operations": self.total_operations,
            "successful_operations": self.successful_operations,
            "failed_operations": self.failed_operations,
            "avg_processing_ms": round(self.avg_processing_ms, 1),
        }


Mail = tuple[Any, asyncio.Future]


def _reply(reply: asyncio.Future, response: WorkerResponse) -> None:
    logger.debug(f"Worker reply: {response.to_dict()}")
    # The caller may have timed out and cancelled its future
    if not reply.done():
        reply.set_result(response)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class RecommendationWorker:
    def __init__(self, engine: RecommendationEngine, mailbox_size: int = MAILBOX_SIZE) -> None:
        self._engine = engine
        self.mailbox: asyncio.Queue[Mail] = asyncio.Queue(maxsize=mailbox_size)
        self.counters = PerformanceCounters()
        self._current: asyncio.Task | None = None
        self._current_id: str | None = None

    @property
    def is_busy(self) -> bool:
        return self._current is not None and not self._current.done()

    def cancel(self, request_id: str) -> bool:
        """Cancel the running recommend if it belongs to request_id."""
        if self.is_busy and self._current_id == request_id:
            assert self._current is not None
            self._current.cancel()
            return True
        return False

    async def run(self) -> None:
        get_task: asyncio.Task | None = None
        try:
            while True:
                if get_task is None:
                    get_task = asyncio.create_task(self.mailbox.get())
                waiters: set[asyncio.Task] = {get_task}
                if self._current is not None:
                    waiters.add(self._current)

                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

                if self._current is not None and self._current in done:
                    current, self._current, self._current_id = self._current, None, None
                    if not current.cancelled():
                        # Re-raises an unexpected failure and ends the worker
                        current.result()

                if get_task in done:
                    message, reply = get_task.result()
                    get_task = None
                    self._dispatch(message, reply)
        finally:
            if get_task is not None:
                get_task.cancel()
            if self._current is not None:
                self._current.cancel()

    def _dispatch(self, message: Any, reply: asyncio.Future) -> None:
        start = time.monotonic()
        try:
            request = WorkerRequest.from_dict(message)
        except ValueError as e:
            logger.warning(f"Rejected worker message: {e}")
            raw_id = message.get("id") if isinstance(message, dict) else None
            _reply(
                reply,
                WorkerResponse(
                    type=None,
                    id=raw_id if isinstance(raw_id, str) else "",
                    success=False,
                    error=str(e),
                    error_code=ErrorCode.INVALID,
                    elapsed_ms=_elapsed_ms(start),
                ),
            )
            return

        if request.type == MessageType.RECOMMEND:
            if self.is_busy:
                _reply(
                    reply,
                    WorkerResponse(
                        type=request.type,
                        id=request.id,
                        success=False,
                        error=f"Worker busy with {MessageType.RECOMMEND.value}",
                        error_code=ErrorCode.BUSY,
                        elapsed_ms=_elapsed_ms(start),
                    ),
                )
                return
            self._current = asyncio.create_task(self._recommend(request, reply))
            self._current_id = request.id
            return

        if request.type == MessageType.HEALTH_CHECK:
            data = {
                "status": "healthy",
                "timestamp": time.time(),
                "busy": self.is_busy,
                "metrics": self.counters.to_dict(),
            }
        else:
            self.counters.reset()
            data = {"status": "reset_complete", "timestamp": time.time()}
        _reply(
            reply,
            WorkerResponse(type=request.type, id=request.id, success=True, data=data, elapsed_ms=_elapsed_ms(start)),
        )

    async def _recommend(self, request: WorkerRequest, reply: asyncio.Future) -> None:
        start = time.monotonic()
        try:
            payload = RecommendPayload.from_dict(request.payload)
        except ValueError as e:
            _reply(
                reply,
                WorkerResponse(
                    type=request.type,
                    id=request.id,
                    success=False,
                    error=str(e),
                    error_code=ErrorCode.INVALID,
                ),
            )
            return

        try:
            result = await self._engine.recommend(payload.job_title, payload.job_description)
        except RecommendationError as e:
            elapsed = _elapsed_ms(start)
            self.counters.record(False, elapsed)
            _reply(
                reply,
                WorkerResponse(
                    type=request.type,
                    id=request.id,
                    success=False,
                    error=str(e),
                    error_code=ErrorCode.FAILED,
                    elapsed_ms=elapsed,
                ),
            )
            return
        except asyncio.CancelledError:
            self.counters.record(False, _elapsed_ms(start))
            logger.warning(f"Recommend {request.id} cancelled")
            raise
        except Exception:
            self.counters.record(False, _elapsed_ms(start))
            raise

        elapsed = _elapsed_ms(start)
        self.counters.record(True, elapsed)
        _reply(
            reply,
            WorkerResponse(
                type=request.type,
                id=request.id,
                success=True,
                data=result.to_dict(),
                elapsed_ms=elapsed,
            ),
        )
