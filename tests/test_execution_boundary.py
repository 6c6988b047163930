"""Tests for the recommendation worker and its execution boundary."""

import asyncio

import pytest

from resuum.core.execution_boundary import (
    RESTART_DELAY_BASE,
    ExecutionBoundary,
    WorkerBusyError,
    WorkerCrashedError,
    WorkerOverloadedError,
    WorkerTerminatedError,
    WorkerTimeoutError,
    WorkerUnavailableError,
)
from resuum.core.models import RecommendationResult
from resuum.core.recommendation_engine import RecommendationError
from resuum.core.worker import (
    ErrorCode,
    MessageType,
    PerformanceCounters,
    RecommendationWorker,
    WorkerRequest,
    WorkerResponse,
)


class FakeEngine:
    """Stands in for RecommendationEngine; can block, fail or crash on demand."""

    def __init__(self):
        self.release = asyncio.Event()
        self.block = False
        self.fail_with = None
        self.cancelled = False
        self.calls = 0

    async def recommend(self, job_title, job_description):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if self.block:
            try:
                await self.release.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        return RecommendationResult(job_title=job_title, total_bullets=0, processing_time_ms=0, role_results=[])


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


async def _start(engine, **kwargs):
    kwargs.setdefault("enable_health_checks", False)
    kwargs.setdefault("sleep", SleepRecorder())
    boundary = ExecutionBoundary(lambda: RecommendationWorker(engine), **kwargs)
    await boundary.start()
    return boundary


async def _wait_for(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


# ==================== Messages ====================


def test_worker_request_validation():
    """Test that malformed messages are rejected."""
    request = WorkerRequest.from_dict({"type": "recommend", "id": "msg_1", "payload": {"job_title": "x"}})
    assert request.type == MessageType.RECOMMEND
    assert request.to_dict() == {"type": "recommend", "id": "msg_1", "payload": {"job_title": "x"}}

    with pytest.raises(ValueError, match="format"):
        WorkerRequest.from_dict("recommend")
    with pytest.raises(ValueError, match="id"):
        WorkerRequest.from_dict({"type": "recommend"})
    with pytest.raises(ValueError, match="Unknown message type"):
        WorkerRequest.from_dict({"type": "reboot", "id": "msg_1"})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message, expected_id",
    [
        ("recommend", ""),
        ({"type": "recommend"}, ""),
        ({"type": "reboot", "id": "msg_9"}, "msg_9"),
        ({"type": "recommend", "id": "msg_8", "payload": ["x"]}, "msg_8"),
    ],
)
async def test_worker_answers_malformed_message_as_invalid(message, expected_id):
    """Test that a malformed mailbox message is answered instead of crashing the worker."""
    worker = RecommendationWorker(FakeEngine())
    task = asyncio.create_task(worker.run())
    try:
        reply = asyncio.get_running_loop().create_future()
        await worker.mailbox.put((message, reply))
        response = await asyncio.wait_for(reply, timeout=1)

        assert response.success is False
        assert response.error_code == ErrorCode.INVALID
        assert response.id == expected_id
        assert response.to_dict()["type"] is None

        healthy = asyncio.get_running_loop().create_future()
        await worker.mailbox.put(({"type": "health_check", "id": "msg_10"}, healthy))
        assert (await asyncio.wait_for(healthy, timeout=1)).success is True
        assert not task.done()
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_recommend_payload_checked_in_worker():
    engine = FakeEngine()
    boundary = await _start(engine)
    try:
        response = await boundary.send(MessageType.RECOMMEND, {"job_title": "Data Engineer"})
        assert response.error_code == ErrorCode.INVALID
        assert engine.calls == 0
    finally:
        await boundary.terminate()


def test_worker_response_to_dict():
    ok = WorkerResponse(type=MessageType.HEALTH_CHECK, id="msg_1", success=True, data={"status": "healthy"})
    failed = WorkerResponse(
        type=MessageType.RECOMMEND, id="msg_2", success=False, error="busy", error_code=ErrorCode.BUSY
    )
    assert ok.to_dict()["data"] == {"status": "healthy"}
    assert failed.to_dict()["error_code"] == "busy"
    assert "data" not in failed.to_dict()


def test_performance_counters():
    counters = PerformanceCounters()
    counters.record(True, 100)
    counters.record(False, 300)
    assert counters.to_dict() == {
        "total_operations": 2,
        "successful_operations": 1,
        "failed_operations": 1,
        "avg_processing_ms": 200.0,
    }
    counters.reset()
    assert counters.avg_processing_ms == 0.0


# ==================== Boundary ====================


@pytest.mark.asyncio
async def test_recommend_round_trip():
    engine = FakeEngine()
    boundary = await _start(engine)
    try:
        data = await boundary.recommend("Data Engineer", "Python")
        assert data["job_title"] == "Data Engineer"
        assert boundary.status()["healthy"] is True
    finally:
        await boundary.terminate()


@pytest.mark.asyncio
async def test_pipeline_error_is_reported_not_crashed():
    """Test that RecommendationError is a normal failure reply."""
    engine = FakeEngine()
    engine.fail_with = RecommendationError("You must add experience first.")
    boundary = await _start(engine)
    try:
        with pytest.raises(RecommendationError, match="add experience"):
            await boundary.recommend("Data Engineer", "Python")
        assert boundary.status()["healthy"] is True
        assert boundary.restart_attempts == 0
    finally:
        await boundary.terminate()


@pytest.mark.asyncio
async def test_invalid_payload_rejected():
    boundary = await _start(FakeEngine())
    try:
        response = await boundary.send(MessageType.RECOMMEND, {"job_title": "x"})
        assert response.success is False
        assert response.error_code == ErrorCode.INVALID
    finally:
        await boundary.terminate()


@pytest.mark.asyncio
async def test_second_recommend_is_busy():
    """Test that only one recommendation runs at a time."""
    engine = FakeEngine()
    engine.block = True
    boundary = await _start(engine)
    try:
        first = asyncio.create_task(boundary.recommend("Data Engineer", "Python"))
        await _wait_for(lambda: boundary.status()["busy"])

        with pytest.raises(WorkerBusyError):
            await boundary.recommend("Data Engineer", "Python")

        # Health checks are still answered while busy
        assert await boundary.health_check() is True

        engine.release.set()
        assert (await first)["job_title"] == "Data Engineer"
    finally:
        await boundary.terminate()


@pytest.mark.asyncio
async def test_overloaded_when_too_many_pending():
    engine = FakeEngine()
    engine.block = True
    boundary = await _start(engine, max_concurrent=1)
    try:
        first = asyncio.create_task(boundary.recommend("Data Engineer", "Python"))
        await _wait_for(lambda: boundary.status()["pending_operations"] == 1)

        with pytest.raises(WorkerOverloadedError):
            await boundary.recommend("Data Engineer", "Python")

        engine.release.set()
        await first
    finally:
        await boundary.terminate()


@pytest.mark.asyncio
async def test_timeout_cancels_worker_operation():
    """Test that a timed-out recommendation is cancelled inside the worker."""
    engine = FakeEngine()
    engine.block = True
    boundary = await _start(engine, message_timeout=0.05)
    try:
        with pytest.raises(WorkerTimeoutError):
            await boundary.recommend("Data Engineer", "Python")

        await _wait_for(lambda: engine.cancelled)
        await _wait_for(lambda: not boundary.status()["busy"])
        assert boundary.status()["pending_operations"] == 0
    finally:
        await boundary.terminate()


@pytest.mark.asyncio
async def test_crash_rejects_pending_and_restarts():
    """Test crash recovery: pending work fails, then one restart after the base delay."""
    engine = FakeEngine()
    engine.fail_with = RuntimeError("segfault")
    sleep = SleepRecorder()
    boundary = await _start(engine, sleep=sleep)
    try:
        with pytest.raises(WorkerCrashedError):
            await boundary.recommend("Data Engineer", "Python")

        await _wait_for(lambda: boundary.status()["healthy"])
        assert boundary.restart_attempts == 1
        assert sleep.delays == [RESTART_DELAY_BASE]

        engine.fail_with = None
        assert (await boundary.recommend("Data Engineer", "Python"))["job_title"] == "Data Engineer"
    finally:
        await boundary.terminate()


@pytest.mark.asyncio
async def test_restart_budget_exhausted():
    """Test that a second crash without a healthy check leaves the worker unavailable."""
    engine = FakeEngine()
    engine.fail_with = RuntimeError("segfault")
    boundary = await _start(engine)
    try:
        with pytest.raises(WorkerCrashedError):
            await boundary.recommend("Data Engineer", "Python")
        await _wait_for(lambda: boundary.status()["healthy"])

        with pytest.raises(WorkerCrashedError):
            await boundary.recommend("Data Engineer", "Python")

        assert boundary.status()["healthy"] is False
        with pytest.raises(WorkerUnavailableError):
            await boundary.recommend("Data Engineer", "Python")
    finally:
        await boundary.terminate()


@pytest.mark.asyncio
async def test_health_check_resets_restart_attempts():
    engine = FakeEngine()
    engine.fail_with = RuntimeError("segfault")
    boundary = await _start(engine)
    try:
        with pytest.raises(WorkerCrashedError):
            await boundary.recommend("Data Engineer", "Python")
        await _wait_for(lambda: boundary.status()["healthy"])
        assert boundary.restart_attempts == 1

        assert await boundary.health_check() is True
        assert boundary.restart_attempts == 0
        assert boundary.status()["last_health_check"] is not None
    finally:
        await boundary.terminate()


@pytest.mark.asyncio
async def test_terminate_rejects_pending():
    """Test that terminate fails in-flight work and refuses new requests."""
    engine = FakeEngine()
    engine.block = True
    boundary = await _start(engine)
    pending = asyncio.create_task(boundary.recommend("Data Engineer", "Python"))
    await _wait_for(lambda: boundary.status()["busy"])

    await boundary.terminate()

    with pytest.raises(WorkerTerminatedError):
        await pending
    with pytest.raises(WorkerTerminatedError):
        await boundary.recommend("Data Engineer", "Python")
    assert boundary.status() == {
        "healthy": False,
        "pending_operations": 0,
        "restart_attempts": 0,
        "last_health_check": None,
        "busy": False,
    }


@pytest.mark.asyncio
async def test_performance_reset():
    engine = FakeEngine()
    boundary = await _start(engine)
    try:
        await boundary.recommend("Data Engineer", "Python")
        health = await boundary.send(MessageType.HEALTH_CHECK)
        assert health.data["metrics"]["total_operations"] == 1

        await boundary.reset_performance()
        health = await boundary.send(MessageType.HEALTH_CHECK)
        assert health.data["metrics"]["total_operations"] == 0
        assert health.data["busy"] is False
    finally:
        await boundary.terminate()
