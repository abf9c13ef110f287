"""Storage and repository interfaces"""

from .repository import (
    WorkflowRepository,
    EnrollmentRepository,
    ScheduledActionRepository,
    ExecutionLogRepository,
    TriggerCursorRepository,
    InMemoryWorkflowRepository,
    InMemoryEnrollmentRepository,
    InMemoryScheduledActionRepository,
    InMemoryExecutionLogRepository,
    InMemoryTriggerCursorRepository
)

__all__ = [
    "WorkflowRepository",
    "EnrollmentRepository",
    "ScheduledActionRepository",
    "ExecutionLogRepository",
    "TriggerCursorRepository",
    "InMemoryWorkflowRepository",
    "InMemoryEnrollmentRepository",
    "InMemoryScheduledActionRepository",
    "InMemoryExecutionLogRepository",
    "InMemoryTriggerCursorRepository"
]
