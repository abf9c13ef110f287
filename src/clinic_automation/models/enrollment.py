"""
Enrollment model: one client's run through one workflow
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from enum import Enum
from uuid import uuid4
from datetime import datetime

from ..clock import utcnow


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class Enrollment:
    """Client membership in a workflow run"""
    id: str = field(default_factory=lambda: str(uuid4()))
    org_id: str = ""
    workflow_id: str = ""
    client_id: str = ""
    enrollment_reason: str = ""
    current_step_id: Optional[str] = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    enrolled_at: datetime = field(default_factory=utcnow)
    next_execution_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    # workflow definition captured at enrollment time
    workflow_snapshot: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == EnrollmentStatus.ACTIVE

    def is_terminal_state(self) -> bool:
        return self.status in (EnrollmentStatus.COMPLETED, EnrollmentStatus.CANCELLED)

    @property
    def appointment_id(self) -> Optional[str]:
        return self.metadata.get("appointment_id")
