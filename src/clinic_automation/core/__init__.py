"""Core automation engine components"""

from .engine import WorkflowEngine
from .parser import WorkflowParser
from .step_executor import StepExecutor, StepResult
from .enrollment import EnrollmentManager, AdvanceResult
from .triggers import TriggerDetector, DetectionResult
from .action_queue import ScheduledActionQueue, RetryPolicy, DrainResult
from .scheduler import SchedulerLoop, TickResult

__all__ = [
    "WorkflowEngine",
    "WorkflowParser",
    "StepExecutor",
    "StepResult",
    "EnrollmentManager",
    "AdvanceResult",
    "TriggerDetector",
    "DetectionResult",
    "ScheduledActionQueue",
    "RetryPolicy",
    "DrainResult",
    "SchedulerLoop",
    "TickResult"
]
