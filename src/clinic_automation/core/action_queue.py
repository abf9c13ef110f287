"""
Scheduled action queue

Durable, at-least-once execution of time-delayed work with bounded retry.
State machine: pending -> running -> completed | pending (retry) | failed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, Callable, Awaitable, Optional

from ..clock import Clock, SystemClock
from ..exceptions import (
    NotFoundError, SchedulingError, StateTransitionError, WorkflowEngineError,
    is_retryable
)
from ..models.scheduling import ScheduledAction, ActionStatus
from ..storage.repository import ScheduledActionRepository


logger = logging.getLogger(__name__)

ActionHandler = Callable[[ScheduledAction], Awaitable[Any]]


@dataclass
class RetryPolicy:
    """Fixed-interval retry"""
    interval_seconds: float = 300
    max_attempts: int = 3

    def next_attempt_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.interval_seconds)

    def should_retry(self, action: ScheduledAction, error: Exception) -> bool:
        return is_retryable(error) and action.attempts < action.max_attempts


@dataclass
class DrainResult:
    """Outcome of one drain pass"""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0

    def merge(self, outcome: str):
        if outcome == "skipped":
            self.skipped += 1
            return
        self.processed += 1
        if outcome == "completed":
            self.successful += 1
        elif outcome == "retried":
            self.retried += 1
            self.failed += 1
        else:
            self.failed += 1


class ScheduledActionQueue:
    """Drains due scheduled actions through registered handlers"""

    def __init__(
        self,
        actions: ScheduledActionRepository,
        clock: Clock = None,
        retry_policy: RetryPolicy = None,
        batch_size: int = 100
    ):
        self.actions = actions
        self.clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.handlers: Dict[str, ActionHandler] = {}

    def register(self, kind: str, handler: ActionHandler):
        """Register the handler for an action kind"""
        self.handlers[kind] = handler

    async def schedule(
        self,
        org_id: str,
        kind: str,
        args: Dict[str, Any],
        scheduled_for: datetime,
        max_attempts: int = None
    ) -> ScheduledAction:
        now = self.clock.now()
        action = ScheduledAction(
            org_id=org_id,
            kind=kind,
            args=dict(args),
            scheduled_for=scheduled_for,
            max_attempts=max_attempts or self.retry_policy.max_attempts,
            created_at=now,
            updated_at=now
        )
        await self.actions.save(action)
        logger.debug(f"Scheduled {kind} action {action.id} for {scheduled_for.isoformat()}")
        return action

    async def drain(self, now: datetime = None) -> DrainResult:
        """Process every pending action due at ``now``"""
        now = now or self.clock.now()
        result = DrainResult()

        due = await self.actions.list_due(now, limit=self.batch_size)
        for action in due:
            result.merge(await self.process(action.id, now))

        if result.processed:
            logger.info(
                f"Drained {result.processed} actions: {result.successful} succeeded, "
                f"{result.retried} retrying, {result.failed - result.retried} failed"
            )
        return result

    async def process(self, action_id: str, now: datetime) -> str:
        """
        Claim and run one action.

        Returns:
            "completed", "retried", "failed" or "skipped" (claim lost)
        """
        action = await self.actions.claim(action_id, now)
        if action is None:
            logger.debug(f"Action {action_id} was claimed elsewhere or is not due")
            return "skipped"

        handler = self.handlers.get(action.kind)
        try:
            if handler is None:
                raise SchedulingError(f"No handler registered for action kind '{action.kind}'")
            await handler(action)
        except Exception as e:
            return await self._handle_failure(action, e, now)

        await self.actions.transition(
            action.id,
            [ActionStatus.RUNNING],
            {"status": ActionStatus.COMPLETED, "updated_at": self.clock.now()}
        )
        logger.debug(
            f"Action {action.id} ({action.kind}) completed on attempt {action.attempts}",
            extra={"action_id": action.id}
        )
        return "completed"

    async def _handle_failure(self, action: ScheduledAction, error: Exception, now: datetime) -> str:
        message = f"{type(error).__name__}: {error}"

        if self.retry_policy.should_retry(action, error):
            retry_at = self.retry_policy.next_attempt_at(now)
            await self.actions.transition(
                action.id,
                [ActionStatus.RUNNING],
                {
                    "status": ActionStatus.PENDING,
                    "scheduled_for": retry_at,
                    # handlers may re-point a retry
                    "args": action.args,
                    "last_error": message,
                    "updated_at": now,
                }
            )
            logger.warning(
                f"Action {action.id} failed (attempt {action.attempts}/{action.max_attempts}), "
                f"retrying at {retry_at.isoformat()}: {message}",
                extra={"action_id": action.id}
            )
            return "retried"

        await self.actions.transition(
            action.id,
            [ActionStatus.RUNNING],
            {"status": ActionStatus.FAILED, "last_error": message, "updated_at": now}
        )
        logger.error(
            f"Action {action.id} failed permanently after {action.attempts} attempts: {message}",
            extra={"action_id": action.id},
            exc_info=not isinstance(error, WorkflowEngineError)
        )
        return "failed"

    async def cancel(self, action_id: str) -> bool:
        """Cancel a pending action; False if it already finished"""
        action = await self.actions.get(action_id)
        if action is None:
            raise NotFoundError("ScheduledAction", action_id)
        if action.status == ActionStatus.RUNNING:
            raise StateTransitionError(
                action.status.value, ActionStatus.CANCELLED.value, "action is running"
            )
        return await self.actions.transition(
            action_id,
            [ActionStatus.PENDING],
            {"status": ActionStatus.CANCELLED, "last_error": "Cancelled by administrator"}
        )

    async def reschedule(self, action_id: str, scheduled_for: datetime) -> bool:
        """Put an action back in the queue with a fresh attempt budget"""
        action = await self.actions.get(action_id)
        if action is None:
            raise NotFoundError("ScheduledAction", action_id)
        if action.status in (ActionStatus.RUNNING, ActionStatus.COMPLETED):
            raise StateTransitionError(action.status.value, ActionStatus.PENDING.value)

        return await self.actions.transition(
            action_id,
            [ActionStatus.PENDING, ActionStatus.FAILED, ActionStatus.CANCELLED],
            {
                "status": ActionStatus.PENDING,
                "scheduled_for": scheduled_for,
                "attempts": 0,
                "last_error": None,
            }
        )

    async def stats(self, org_id: str = None, now: datetime = None) -> Dict[str, int]:
        now = now or self.clock.now()
        counts = await self.actions.count_by_status(org_id)
        stats = {status.value: counts.get(status.value, 0) for status in ActionStatus}
        stats["total"] = sum(stats.values())
        stats["overdue"] = await self.actions.count_overdue(now, org_id)
        return stats

    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        return await self.actions.get(action_id)
