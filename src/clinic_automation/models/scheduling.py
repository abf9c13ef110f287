"""
Scheduled action model: durable time-delayed continuation
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from enum import Enum
from uuid import uuid4
from datetime import datetime

from ..clock import utcnow


class ActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ActionKind(str, Enum):
    CONTINUE_WORKFLOW = "continue_workflow"
    SEND_SCHEDULED_MESSAGE = "send_scheduled_message"
    PUBLISH_POST = "publish_post"


@dataclass
class ScheduledAction:
    """Deferred unit of work drained by the scheduler"""
    id: str = field(default_factory=lambda: str(uuid4()))
    org_id: str = ""
    kind: str = ActionKind.CONTINUE_WORKFLOW.value
    args: Dict[str, Any] = field(default_factory=dict)
    scheduled_for: datetime = field(default_factory=utcnow)
    status: ActionStatus = ActionStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_due(self, now: datetime) -> bool:
        return self.status == ActionStatus.PENDING and self.scheduled_for <= now

    def is_terminal_state(self) -> bool:
        return self.status in (
            ActionStatus.COMPLETED,
            ActionStatus.FAILED,
            ActionStatus.CANCELLED
        )

    @property
    def enrollment_id(self) -> Optional[str]:
        return self.args.get("enrollment_id")


@dataclass
class TriggerCursor:
    """Per-org high-water mark of processed appointment creations"""
    org_id: str
    last_created_at: datetime
    updated_at: datetime = field(default_factory=utcnow)
