"""
API request and response models
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..models.workflow import Workflow
from ..models.enrollment import EnrollmentStatus
from ..models.execution_log import LogOutcome
from ..models.scheduling import ActionStatus


# Workflows

class WorkflowCreateRequest(BaseModel):
    """Create workflow request"""
    org_id: str = Field(..., description="Owning org")
    name: str = Field(..., description="Workflow name")
    trigger: str = Field(..., description="Trigger key")
    steps: List[Dict[str, Any]] = Field(..., description="Step definitions")
    start_step_id: Optional[str] = Field(None, description="First step; defaults to the first listed")
    enabled: bool = Field(False, description="Accept new enrollments")
    prevent_duplicates: bool = Field(True)
    duplicate_prevention_days: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowResponse(BaseModel):
    """Workflow summary"""
    id: str
    org_id: str
    name: str
    trigger: str
    enabled: bool
    step_count: int
    start_step_id: Optional[str] = None
    prevent_duplicates: bool
    duplicate_prevention_days: int
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowResponse":
        return cls(
            id=workflow.id,
            org_id=workflow.org_id,
            name=workflow.name,
            trigger=workflow.trigger,
            enabled=workflow.enabled,
            step_count=len(workflow.steps),
            start_step_id=workflow.start_step_id,
            prevent_duplicates=workflow.prevent_duplicates,
            duplicate_prevention_days=workflow.duplicate_prevention_days,
            description=workflow.description,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at
        )


class WorkflowDetailResponse(WorkflowResponse):
    """Workflow with its full definition"""
    definition: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowDetailResponse":
        summary = WorkflowResponse.from_workflow(workflow)
        return cls(**summary.model_dump(), definition=workflow.to_dict())


class WorkflowStatsResponse(BaseModel):
    workflow_id: str
    total_enrollments: int
    enrollments_by_status: Dict[str, int]
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float


# Enrollments

class EnrollRequest(BaseModel):
    """Manual enrollment request"""
    workflow_id: str
    client_id: str
    reason: str = Field("manual", description="Recorded enrollment reason")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EnrollmentResponse(BaseModel):
    id: str
    org_id: str
    workflow_id: str
    client_id: str
    enrollment_reason: str
    status: EnrollmentStatus
    current_step_id: Optional[str] = None
    enrolled_at: datetime
    next_execution_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


# Execution logs

class ExecutionLogResponse(BaseModel):
    id: str
    org_id: str
    workflow_id: str
    enrollment_id: str
    client_id: str
    step_id: str
    action: str
    outcome: LogOutcome
    message: str
    error: Optional[str] = None
    executed_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


# Scheduled actions

class ScheduledActionResponse(BaseModel):
    id: str
    org_id: str
    kind: str
    args: Dict[str, Any]
    scheduled_for: datetime
    status: ActionStatus
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RescheduleRequest(BaseModel):
    scheduled_for: datetime = Field(..., description="New run time (UTC)")


class ScheduleMessageRequest(BaseModel):
    """Future-dated message to a client"""
    org_id: str
    client_id: str
    message: str
    send_at: datetime
    channel: str = Field("sms", pattern="^(sms|email)$")
    subject: Optional[str] = None


# Common

class SuccessResponse(BaseModel):
    success: bool = True
    message: str
    data: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
    checks: Dict[str, Any]
