"""
Execution log model: append-only audit trail of step attempts
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from enum import Enum
from uuid import uuid4
from datetime import datetime

from ..clock import utcnow


class LogOutcome(str, Enum):
    EXECUTED = "executed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionLog:
    """Audit record; never mutated after insert"""
    org_id: str
    workflow_id: str
    enrollment_id: str
    client_id: str
    step_id: str
    action: str
    outcome: LogOutcome
    message: str = ""
    error: Optional[str] = None
    executed_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
