"""
Scheduler loop: the periodic driver of trigger detection and action draining
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional

from ..clock import Clock, SystemClock
from ..integrations.clients import OrgStore
from .action_queue import ScheduledActionQueue, DrainResult
from .triggers import TriggerDetector, DetectionResult


logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """Outcome of one scheduler tick"""
    started_at: datetime
    detections: List[DetectionResult] = field(default_factory=list)
    drain: DrainResult = field(default_factory=DrainResult)
    errors: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def triggered(self) -> int:
        return sum(d.triggered for d in self.detections)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "orgs": len(self.detections) + len(self.errors),
            "appointments_processed": sum(d.processed for d in self.detections),
            "enrollments_triggered": self.triggered,
            "actions_processed": self.drain.processed,
            "actions_successful": self.drain.successful,
            "actions_failed": self.drain.failed,
            "actions_skipped": self.drain.skipped,
            "errors": dict(self.errors),
        }


class SchedulerLoop:
    """Runs detection for every active org, then drains due actions"""

    def __init__(
        self,
        orgs: OrgStore,
        detector: TriggerDetector,
        queue: ScheduledActionQueue,
        clock: Clock = None,
        interval_seconds: float = 60
    ):
        self.orgs = orgs
        self.detector = detector
        self.queue = queue
        self.clock = clock or SystemClock()
        self.interval_seconds = interval_seconds

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.tick_count = 0
        self.last_result: Optional[TickResult] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now: datetime = None) -> TickResult:
        """One pass: per-org detection concurrently, then one drain"""
        started = self.clock.now()
        result = TickResult(started_at=started)

        orgs = await self.orgs.list_active()
        outcomes = await asyncio.gather(
            *(self.detector.detect(org.id) for org in orgs),
            return_exceptions=True
        )
        for org, outcome in zip(orgs, outcomes):
            if isinstance(outcome, BaseException):
                # one org's failure must not block the others
                logger.error(
                    f"Trigger detection failed for org {org.id}: {outcome}",
                    exc_info=outcome,
                    extra={"org_id": org.id}
                )
                result.errors[org.id] = f"{type(outcome).__name__}: {outcome}"
            else:
                result.detections.append(outcome)

        result.drain = await self.queue.drain(now or self.clock.now())
        result.duration_seconds = (self.clock.now() - started).total_seconds()

        self.tick_count += 1
        self.last_result = result
        return result

    async def start(self):
        """Start the periodic loop"""
        if self._task:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scheduler started (interval {self.interval_seconds}s)")

    async def stop(self):
        """Stop after the current tick"""
        if not self._task:
            return

        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Scheduler stopped")

    async def run_forever(self):
        await self.start()
        await self._task

    async def _loop(self):
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "tick_count": self.tick_count,
            "last_tick": self.last_result.to_dict() if self.last_result else None,
        }
