"""
Clinic Workflow Automation - CRM workflow engine
"""

__version__ = "0.1.0"

from .core.engine import WorkflowEngine
from .core.parser import WorkflowParser
from .core.scheduler import SchedulerLoop
from .config import EngineSettings
from .models.workflow import Workflow, Step
from .models.enrollment import Enrollment

__all__ = [
    "WorkflowEngine",
    "WorkflowParser",
    "SchedulerLoop",
    "EngineSettings",
    "Workflow",
    "Step",
    "Enrollment"
]
