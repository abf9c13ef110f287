"""
Scheduled action queue tests
"""
import asyncio
import pytest
from datetime import timedelta

from clinic_automation.core.action_queue import RetryPolicy, DrainResult
from clinic_automation.exceptions import (
    NotFoundError, StateTransitionError, NotifierTransientError, UnknownConditionField
)
from clinic_automation.models import ActionStatus, ScheduledAction


class Recorder:
    """Handler that records calls and optionally raises"""

    def __init__(self, error: Exception = None):
        self.calls = []
        self.error = error

    async def __call__(self, action: ScheduledAction):
        self.calls.append((action.id, action.attempts))
        await asyncio.sleep(0)
        if self.error:
            raise self.error


@pytest.fixture
def queue(engine):
    return engine.queue


class TestDrain:
    """drain() and the retry state machine"""

    @pytest.mark.asyncio
    async def test_success(self, queue, clock):
        handler = Recorder()
        queue.register("test", handler)
        action = await queue.schedule("org-1", "test", {"x": 1}, clock.now())

        result = await queue.drain()

        assert (result.processed, result.successful, result.failed) == (1, 1, 0)
        assert handler.calls == [(action.id, 1)]
        stored = await queue.get(action.id)
        assert stored.status == ActionStatus.COMPLETED
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_future_actions_wait(self, queue, clock):
        handler = Recorder()
        queue.register("test", handler)
        await queue.schedule("org-1", "test", {}, clock.now() + timedelta(hours=1))

        result = await queue.drain()

        assert result.processed == 0
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_earliest_first(self, queue, clock):
        handler = Recorder()
        queue.register("test", handler)
        late = await queue.schedule("org-1", "test", {}, clock.now() - timedelta(minutes=1))
        early = await queue.schedule("org-1", "test", {}, clock.now() - timedelta(minutes=10))

        await queue.drain()

        assert [call[0] for call in handler.calls] == [early.id, late.id]

    @pytest.mark.asyncio
    async def test_retries_until_exhausted(self, queue, clock):
        handler = Recorder(error=RuntimeError("boom"))
        queue.register("test", handler)
        action = await queue.schedule("org-1", "test", {}, clock.now())

        first = await queue.drain()
        assert first.retried == 1
        stored = await queue.get(action.id)
        assert stored.status == ActionStatus.PENDING
        assert stored.attempts == 1
        assert stored.scheduled_for == clock.now() + timedelta(minutes=5)
        assert stored.last_error == "RuntimeError: boom"

        # not due again until the retry interval elapses
        assert (await queue.drain()).processed == 0

        clock.advance(timedelta(minutes=5))
        assert (await queue.drain()).retried == 1

        clock.advance(timedelta(minutes=5))
        last = await queue.drain()
        assert (last.failed, last.retried) == (1, 0)

        stored = await queue.get(action.id)
        assert stored.status == ActionStatus.FAILED
        assert stored.attempts == 3
        assert [attempt for _, attempt in handler.calls] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_transient_notifier_error_is_retried(self, queue, clock):
        queue.register("test", Recorder(error=NotifierTransientError("provider down")))
        action = await queue.schedule("org-1", "test", {}, clock.now())

        await queue.drain()

        assert (await queue.get(action.id)).status == ActionStatus.PENDING

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self, queue, clock):
        handler = Recorder(error=UnknownConditionField("check", "favorite_color"))
        queue.register("test", handler)
        action = await queue.schedule("org-1", "test", {}, clock.now())

        result = await queue.drain()

        assert (result.failed, result.retried) == (1, 0)
        stored = await queue.get(action.id)
        assert stored.status == ActionStatus.FAILED
        assert stored.attempts == 1
        assert stored.last_error.startswith("UnknownConditionField")

    @pytest.mark.asyncio
    async def test_unregistered_kind_fails(self, queue, clock):
        action = await queue.schedule("org-1", "publish_post", {"post_id": "p1"}, clock.now())

        result = await queue.drain()

        assert result.failed == 1
        stored = await queue.get(action.id)
        assert stored.status == ActionStatus.FAILED
        assert "No handler registered" in stored.last_error

    @pytest.mark.asyncio
    async def test_custom_retry_policy(self, engine, clock):
        engine.queue.retry_policy = RetryPolicy(interval_seconds=60, max_attempts=2)
        engine.queue.register("test", Recorder(error=RuntimeError("boom")))
        action = await engine.queue.schedule("org-1", "test", {}, clock.now(), max_attempts=1)

        await engine.queue.drain()

        assert (await engine.queue.get(action.id)).status == ActionStatus.FAILED


class TestExclusivity:
    """A due action is executed by exactly one worker"""

    @pytest.mark.asyncio
    async def test_claim_once(self, engine, queue, clock):
        action = await queue.schedule("org-1", "test", {}, clock.now())

        first = await engine.actions.claim(action.id, clock.now())
        second = await engine.actions.claim(action.id, clock.now())

        assert first is not None and first.status == ActionStatus.RUNNING
        assert second is None

    @pytest.mark.asyncio
    async def test_concurrent_drains(self, queue, clock):
        handler = Recorder()
        queue.register("test", handler)
        await queue.schedule("org-1", "test", {}, clock.now())

        results = await asyncio.gather(queue.drain(), queue.drain())

        assert sum(r.successful for r in results) == 1
        assert len(handler.calls) == 1

    @pytest.mark.asyncio
    async def test_claim_requires_due(self, engine, queue, clock):
        action = await queue.schedule("org-1", "test", {}, clock.now() + timedelta(minutes=1))
        assert await engine.actions.claim(action.id, clock.now()) is None
        assert await engine.actions.claim("missing", clock.now()) is None


class TestAdministration:
    """cancel(), reschedule() and stats()"""

    @pytest.mark.asyncio
    async def test_cancel_pending(self, queue, clock):
        action = await queue.schedule("org-1", "test", {}, clock.now() + timedelta(hours=1))

        assert await queue.cancel(action.id) is True
        assert await queue.cancel(action.id) is False

        stored = await queue.get(action.id)
        assert stored.status == ActionStatus.CANCELLED
        assert stored.last_error == "Cancelled by administrator"

    @pytest.mark.asyncio
    async def test_cancel_running(self, engine, queue, clock):
        action = await queue.schedule("org-1", "test", {}, clock.now())
        await engine.actions.claim(action.id, clock.now())

        with pytest.raises(StateTransitionError):
            await queue.cancel(action.id)

    @pytest.mark.asyncio
    async def test_cancel_missing(self, queue):
        with pytest.raises(NotFoundError):
            await queue.cancel("missing")

    @pytest.mark.asyncio
    async def test_reschedule_failed(self, queue, clock):
        queue.register("test", Recorder(error=UnknownConditionField("check", "x")))
        action = await queue.schedule("org-1", "test", {}, clock.now())
        await queue.drain()

        later = clock.now() + timedelta(days=1)
        assert await queue.reschedule(action.id, later) is True

        stored = await queue.get(action.id)
        assert stored.status == ActionStatus.PENDING
        assert stored.attempts == 0
        assert stored.last_error is None
        assert stored.scheduled_for == later

    @pytest.mark.asyncio
    async def test_reschedule_completed(self, queue, clock):
        queue.register("test", Recorder())
        action = await queue.schedule("org-1", "test", {}, clock.now())
        await queue.drain()

        with pytest.raises(StateTransitionError):
            await queue.reschedule(action.id, clock.now() + timedelta(days=1))

    @pytest.mark.asyncio
    async def test_stats(self, queue, clock):
        await queue.schedule("org-1", "test", {}, clock.now() - timedelta(minutes=1))
        await queue.schedule("org-1", "test", {}, clock.now() + timedelta(hours=1))
        cancelled = await queue.schedule("org-1", "test", {}, clock.now() + timedelta(hours=1))
        await queue.cancel(cancelled.id)
        await queue.schedule("org-2", "test", {}, clock.now() - timedelta(minutes=1))

        stats = await queue.stats("org-1")

        assert stats == {
            "pending": 2,
            "running": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 1,
            "total": 3,
            "overdue": 1,
        }
        assert (await queue.stats())["total"] == 4


def test_drain_result_counts_retries_as_failures():
    result = DrainResult()
    for outcome in ("completed", "retried", "failed", "skipped"):
        result.merge(outcome)

    assert (result.processed, result.successful, result.failed, result.retried, result.skipped) == (3, 1, 2, 1, 1)
