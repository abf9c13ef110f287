"""
Storage repository interfaces

Every status change goes through a conditional patch (compare-and-set on
``status``) so concurrent writers never both win the same transition.
"""
import copy
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable

from ..clock import utcnow
from ..models.workflow import Workflow
from ..models.enrollment import Enrollment, EnrollmentStatus
from ..models.scheduling import ScheduledAction, ActionStatus, TriggerCursor
from ..models.execution_log import ExecutionLog


class WorkflowRepository(ABC):
    """Workflow definition store"""

    @abstractmethod
    async def save(self, workflow: Workflow) -> str:
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[Workflow]:
        pass

    @abstractmethod
    async def list(
        self,
        org_id: str = None,
        enabled: bool = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[Workflow]:
        pass

    @abstractmethod
    async def list_enabled_for_triggers(self, org_id: str, triggers: Iterable[str]) -> List[Workflow]:
        """Enabled workflows of an org whose trigger is one of ``triggers``"""
        pass

    @abstractmethod
    async def update(self, workflow: Workflow) -> bool:
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        pass


class EnrollmentRepository(ABC):
    """Enrollment store"""

    @abstractmethod
    async def save(self, enrollment: Enrollment) -> str:
        pass

    @abstractmethod
    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        pass

    @abstractmethod
    async def find_recent(
        self,
        workflow_id: str,
        client_id: str,
        since: datetime
    ) -> Optional[Enrollment]:
        """Any enrollment of the client in the workflow with enrolled_at >= since"""
        pass

    @abstractmethod
    async def list(
        self,
        org_id: str = None,
        workflow_id: str = None,
        client_id: str = None,
        status: EnrollmentStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[Enrollment]:
        pass

    @abstractmethod
    async def patch(
        self,
        enrollment_id: str,
        changes: Dict[str, Any],
        expected_statuses: Iterable[EnrollmentStatus] = None,
        expected_step_id: str = None
    ) -> bool:
        """
        Conditionally apply field changes

        Args:
            enrollment_id: enrollment to patch
            changes: field name -> new value
            expected_statuses: only patch while status is one of these
            expected_step_id: only patch while current_step_id equals this

        Returns:
            True if the preconditions held and the patch was applied
        """
        pass

    @abstractmethod
    async def count_by_status(self, workflow_id: str) -> Dict[str, int]:
        pass


class ScheduledActionRepository(ABC):
    """Scheduled action store"""

    @abstractmethod
    async def save(self, action: ScheduledAction) -> str:
        pass

    @abstractmethod
    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> List[ScheduledAction]:
        """Pending actions with scheduled_for <= now, earliest first"""
        pass

    @abstractmethod
    async def list(
        self,
        org_id: str = None,
        status: ActionStatus = None,
        kind: str = None,
        enrollment_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ScheduledAction]:
        pass

    @abstractmethod
    async def claim(self, action_id: str, now: datetime) -> Optional[ScheduledAction]:
        """
        Move a due action pending -> running and count the attempt.

        Returns the claimed action, or None when another worker won the claim
        or the action is no longer due.
        """
        pass

    @abstractmethod
    async def transition(
        self,
        action_id: str,
        expected_statuses: Iterable[ActionStatus],
        changes: Dict[str, Any]
    ) -> bool:
        """Apply changes only while status is one of expected_statuses"""
        pass

    @abstractmethod
    async def count_by_status(self, org_id: str = None) -> Dict[str, int]:
        pass

    @abstractmethod
    async def count_overdue(self, now: datetime, org_id: str = None) -> int:
        pass


class ExecutionLogRepository(ABC):
    """Append-only execution log"""

    @abstractmethod
    async def append(self, log: ExecutionLog) -> str:
        pass

    @abstractmethod
    async def list(
        self,
        org_id: str = None,
        workflow_id: str = None,
        enrollment_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ExecutionLog]:
        """Entries in execution order"""
        pass

    @abstractmethod
    async def count_by_outcome(self, workflow_id: str) -> Dict[str, int]:
        pass


class TriggerCursorRepository(ABC):
    """Per-org trigger detection high-water marks"""

    @abstractmethod
    async def get(self, org_id: str) -> Optional[TriggerCursor]:
        pass

    @abstractmethod
    async def save(self, cursor: TriggerCursor) -> None:
        pass


def _matches(value, expected) -> bool:
    return expected is None or value == expected


# In-memory implementations (tests, single-process deployments)
class InMemoryWorkflowRepository(WorkflowRepository):
    """In-memory workflow repository"""

    def __init__(self):
        self.workflows: Dict[str, Workflow] = {}

    async def save(self, workflow: Workflow) -> str:
        self.workflows[workflow.id] = copy.deepcopy(workflow)
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        workflow = self.workflows.get(workflow_id)
        return copy.deepcopy(workflow) if workflow else None

    async def list(
        self,
        org_id: str = None,
        enabled: bool = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[Workflow]:
        workflows = [
            w for w in self.workflows.values()
            if _matches(w.org_id, org_id) and _matches(w.enabled, enabled)
        ]
        workflows.sort(key=lambda w: w.created_at)
        return [copy.deepcopy(w) for w in workflows[offset:offset + limit]]

    async def list_enabled_for_triggers(self, org_id: str, triggers: Iterable[str]) -> List[Workflow]:
        triggers = set(triggers)
        return [
            copy.deepcopy(w) for w in self.workflows.values()
            if w.org_id == org_id and w.enabled and w.trigger in triggers
        ]

    async def update(self, workflow: Workflow) -> bool:
        if workflow.id in self.workflows:
            workflow.updated_at = utcnow()
            self.workflows[workflow.id] = copy.deepcopy(workflow)
            return True
        return False

    async def delete(self, workflow_id: str) -> bool:
        if workflow_id in self.workflows:
            del self.workflows[workflow_id]
            return True
        return False


class InMemoryEnrollmentRepository(EnrollmentRepository):
    """In-memory enrollment repository"""

    def __init__(self):
        self.enrollments: Dict[str, Enrollment] = {}

    async def save(self, enrollment: Enrollment) -> str:
        self.enrollments[enrollment.id] = copy.deepcopy(enrollment)
        return enrollment.id

    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        enrollment = self.enrollments.get(enrollment_id)
        return copy.deepcopy(enrollment) if enrollment else None

    async def find_recent(
        self,
        workflow_id: str,
        client_id: str,
        since: datetime
    ) -> Optional[Enrollment]:
        for enrollment in self.enrollments.values():
            if (
                enrollment.workflow_id == workflow_id
                and enrollment.client_id == client_id
                and enrollment.enrolled_at >= since
            ):
                return copy.deepcopy(enrollment)
        return None

    async def list(
        self,
        org_id: str = None,
        workflow_id: str = None,
        client_id: str = None,
        status: EnrollmentStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[Enrollment]:
        enrollments = [
            e for e in self.enrollments.values()
            if _matches(e.org_id, org_id)
            and _matches(e.workflow_id, workflow_id)
            and _matches(e.client_id, client_id)
            and _matches(e.status, status)
        ]
        enrollments.sort(key=lambda e: e.enrolled_at)
        return [copy.deepcopy(e) for e in enrollments[offset:offset + limit]]

    async def patch(
        self,
        enrollment_id: str,
        changes: Dict[str, Any],
        expected_statuses: Iterable[EnrollmentStatus] = None,
        expected_step_id: str = None
    ) -> bool:
        enrollment = self.enrollments.get(enrollment_id)
        if enrollment is None:
            return False
        if expected_statuses is not None and enrollment.status not in tuple(expected_statuses):
            return False
        if expected_step_id is not None and enrollment.current_step_id != expected_step_id:
            return False

        for name, value in changes.items():
            setattr(enrollment, name, copy.deepcopy(value))
        enrollment.updated_at = utcnow()
        return True

    async def count_by_status(self, workflow_id: str) -> Dict[str, int]:
        counts = Counter(
            e.status.value for e in self.enrollments.values()
            if e.workflow_id == workflow_id
        )
        return dict(counts)


class InMemoryScheduledActionRepository(ScheduledActionRepository):
    """In-memory scheduled action repository"""

    def __init__(self):
        self.actions: Dict[str, ScheduledAction] = {}

    async def save(self, action: ScheduledAction) -> str:
        self.actions[action.id] = copy.deepcopy(action)
        return action.id

    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        action = self.actions.get(action_id)
        return copy.deepcopy(action) if action else None

    async def list_due(self, now: datetime, limit: int = 100) -> List[ScheduledAction]:
        due = [a for a in self.actions.values() if a.is_due(now)]
        due.sort(key=lambda a: a.scheduled_for)
        return [copy.deepcopy(a) for a in due[:limit]]

    async def list(
        self,
        org_id: str = None,
        status: ActionStatus = None,
        kind: str = None,
        enrollment_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ScheduledAction]:
        actions = [
            a for a in self.actions.values()
            if _matches(a.org_id, org_id)
            and _matches(a.status, status)
            and _matches(a.kind, kind)
            and _matches(a.enrollment_id, enrollment_id)
        ]
        actions.sort(key=lambda a: a.scheduled_for)
        return [copy.deepcopy(a) for a in actions[offset:offset + limit]]

    async def claim(self, action_id: str, now: datetime) -> Optional[ScheduledAction]:
        action = self.actions.get(action_id)
        if action is None or not action.is_due(now):
            return None

        action.status = ActionStatus.RUNNING
        action.attempts += 1
        action.last_attempt_at = now
        action.updated_at = now
        return copy.deepcopy(action)

    async def transition(
        self,
        action_id: str,
        expected_statuses: Iterable[ActionStatus],
        changes: Dict[str, Any]
    ) -> bool:
        action = self.actions.get(action_id)
        if action is None or action.status not in tuple(expected_statuses):
            return False

        for name, value in changes.items():
            setattr(action, name, copy.deepcopy(value))
        if "updated_at" not in changes:
            action.updated_at = utcnow()
        return True

    async def count_by_status(self, org_id: str = None) -> Dict[str, int]:
        counts = Counter(
            a.status.value for a in self.actions.values()
            if _matches(a.org_id, org_id)
        )
        return dict(counts)

    async def count_overdue(self, now: datetime, org_id: str = None) -> int:
        return sum(
            1 for a in self.actions.values()
            if _matches(a.org_id, org_id) and a.is_due(now)
        )


class InMemoryExecutionLogRepository(ExecutionLogRepository):
    """In-memory execution log"""

    def __init__(self):
        self.logs: List[ExecutionLog] = []

    async def append(self, log: ExecutionLog) -> str:
        self.logs.append(log)
        return log.id

    async def list(
        self,
        org_id: str = None,
        workflow_id: str = None,
        enrollment_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ExecutionLog]:
        logs = [
            log for log in self.logs
            if _matches(log.org_id, org_id)
            and _matches(log.workflow_id, workflow_id)
            and _matches(log.enrollment_id, enrollment_id)
        ]
        return logs[offset:offset + limit]

    async def count_by_outcome(self, workflow_id: str) -> Dict[str, int]:
        counts = Counter(
            log.outcome.value for log in self.logs
            if log.workflow_id == workflow_id
        )
        return dict(counts)


class InMemoryTriggerCursorRepository(TriggerCursorRepository):
    """In-memory trigger cursors"""

    def __init__(self):
        self.cursors: Dict[str, TriggerCursor] = {}

    async def get(self, org_id: str) -> Optional[TriggerCursor]:
        cursor = self.cursors.get(org_id)
        return copy.deepcopy(cursor) if cursor else None

    async def save(self, cursor: TriggerCursor) -> None:
        self.cursors[cursor.org_id] = copy.deepcopy(cursor)
