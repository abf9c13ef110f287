"""
Workflow definition models
"""
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional, Union
from enum import Enum
from uuid import uuid4
from datetime import datetime

from ..clock import utcnow


class TriggerType(str, Enum):
    """Event keys a workflow can be triggered by"""
    APPOINTMENT_SCHEDULED = "appointment_scheduled"
    APPOINTMENT_COMPLETED = "appointment_completed"
    NEW_CLIENT = "new_client"
    MANUAL = "manual"
    # domain sub-triggers derived from the appointment type
    MORPHEUS8 = "morpheus8"
    TOXINS = "toxins"
    FILLER = "filler"
    CONSULTATION = "consultation"


class StepType(str, Enum):
    """Step kinds"""
    SEND_SMS = "send_sms"
    SEND_EMAIL = "send_email"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    DELAY = "delay"
    CONDITIONAL = "conditional"


class DelayUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class ConditionField(str, Enum):
    TAGS = "tags"
    APPOINTMENT_COUNT = "appointment_count"
    APPOINTMENT_TYPE = "appointment_type"
    CLIENT_STATUS = "client_status"
    LAST_APPOINTMENT_DATE = "last_appointment_date"


@dataclass
class SendSmsConfig:
    message: str = ""


@dataclass
class SendEmailConfig:
    subject: str = ""
    body: str = ""


@dataclass
class AddTagConfig:
    tag: str = ""


@dataclass
class RemoveTagConfig:
    tag: Optional[str] = None
    remove_all: bool = False


@dataclass
class DelayConfig:
    value: float = 1
    unit: str = DelayUnit.DAYS.value


@dataclass
class ConditionalConfig:
    field: str = ""
    operator: str = ""
    value: str = ""


StepConfig = Union[
    SendSmsConfig, SendEmailConfig, AddTagConfig,
    RemoveTagConfig, DelayConfig, ConditionalConfig
]

CONFIG_TYPES = {
    StepType.SEND_SMS: SendSmsConfig,
    StepType.SEND_EMAIL: SendEmailConfig,
    StepType.ADD_TAG: AddTagConfig,
    StepType.REMOVE_TAG: RemoveTagConfig,
    StepType.DELAY: DelayConfig,
    StepType.CONDITIONAL: ConditionalConfig,
}


@dataclass
class Step:
    """One unit of work in a workflow graph"""
    id: str
    type: StepType
    config: StepConfig
    name: Optional[str] = None
    next_step_id: Optional[str] = None
    true_step_id: Optional[str] = None   # conditional only
    false_step_id: Optional[str] = None  # conditional only

    def __post_init__(self):
        expected = CONFIG_TYPES.get(self.type)
        if expected and not isinstance(self.config, expected):
            raise ValueError(
                f"Step '{self.id}' of type {self.type.value} needs {expected.__name__}"
            )

    @property
    def is_conditional(self) -> bool:
        return self.type == StepType.CONDITIONAL

    def successor(self, path: Optional[str] = None) -> Optional[str]:
        """Return the next step id; conditionals pick the edge by path"""
        if self.is_conditional:
            return self.true_step_id if path == "true" else self.false_step_id
        return self.next_step_id

    def successors(self) -> List[str]:
        candidates = (
            [self.true_step_id, self.false_step_id]
            if self.is_conditional else [self.next_step_id]
        )
        return [step_id for step_id in candidates if step_id]

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "type": self.type.value,
            "config": asdict(self.config),
        }
        if self.name:
            data["name"] = self.name
        if self.is_conditional:
            data["true_step_id"] = self.true_step_id
            data["false_step_id"] = self.false_step_id
        else:
            data["next_step_id"] = self.next_step_id
        return data


@dataclass
class Workflow:
    """Org-owned automation definition"""
    id: str = field(default_factory=lambda: str(uuid4()))
    org_id: str = ""
    name: str = ""
    trigger: str = TriggerType.MANUAL.value
    steps: Dict[str, Step] = field(default_factory=dict)
    start_step_id: Optional[str] = None
    enabled: bool = False
    prevent_duplicates: bool = True
    duplicate_prevention_days: int = 30
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        if step_id is None:
            return None
        return self.steps.get(step_id)

    @property
    def start_step(self) -> Optional[Step]:
        return self.get_step(self.start_step_id)

    def validate(self) -> List[str]:
        """Check the step graph; returns a list of problems"""
        errors = []

        if not self.org_id:
            errors.append("Workflow must belong to an org")

        if self.steps and self.start_step_id not in self.steps:
            errors.append(f"Start step '{self.start_step_id}' not found in steps")

        for step in self.steps.values():
            for target in step.successors():
                if target not in self.steps:
                    errors.append(f"Step '{step.id}' points to missing step '{target}'")
            if step.is_conditional and not (step.true_step_id or step.false_step_id):
                errors.append(f"Conditional step '{step.id}' has no outgoing edges")

        if self.duplicate_prevention_days < 0:
            errors.append("duplicate_prevention_days must not be negative")

        if not errors and self._has_cycle():
            errors.append("Workflow steps contain a cycle")

        return errors

    def _has_cycle(self) -> bool:
        """Topological sort over the step graph"""
        from collections import defaultdict, deque

        in_degree = {step_id: 0 for step_id in self.steps}
        adj = defaultdict(list)
        for step in self.steps.values():
            for target in step.successors():
                adj[step.id].append(target)
                in_degree[target] += 1

        queue = deque([step_id for step_id, degree in in_degree.items() if degree == 0])
        visited = 0
        while queue:
            step_id = queue.popleft()
            visited += 1
            for neighbor in adj[step_id]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        return visited != len(self.steps)

    def to_dict(self) -> Dict[str, Any]:
        """Definition payload (parseable by WorkflowParser)"""
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "description": self.description,
            "trigger": self.trigger,
            "enabled": self.enabled,
            "prevent_duplicates": self.prevent_duplicates,
            "duplicate_prevention_days": self.duplicate_prevention_days,
            "start_step_id": self.start_step_id,
            "steps": [step.to_dict() for step in self.steps.values()],
            "metadata": self.metadata,
        }
