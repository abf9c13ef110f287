"""Workflow, enrollment and scheduling models"""

from .workflow import (
    Workflow, Step, StepType, TriggerType, DelayUnit, ConditionField,
    SendSmsConfig, SendEmailConfig, AddTagConfig, RemoveTagConfig,
    DelayConfig, ConditionalConfig, StepConfig
)
from .enrollment import Enrollment, EnrollmentStatus
from .scheduling import ScheduledAction, ActionStatus, ActionKind, TriggerCursor
from .execution_log import ExecutionLog, LogOutcome
from .crm import Org, Client, Appointment, AppointmentStatus, ClientPortalStatus, Message

__all__ = [
    "Workflow",
    "Step",
    "StepType",
    "TriggerType",
    "DelayUnit",
    "ConditionField",
    "SendSmsConfig",
    "SendEmailConfig",
    "AddTagConfig",
    "RemoveTagConfig",
    "DelayConfig",
    "ConditionalConfig",
    "StepConfig",
    "Enrollment",
    "EnrollmentStatus",
    "ScheduledAction",
    "ActionStatus",
    "ActionKind",
    "TriggerCursor",
    "ExecutionLog",
    "LogOutcome",
    "Org",
    "Client",
    "Appointment",
    "AppointmentStatus",
    "ClientPortalStatus",
    "Message",
]
