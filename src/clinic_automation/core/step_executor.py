"""
Step executor: runs one workflow step for one enrolled client
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List

from ..clock import Clock, SystemClock
from ..exceptions import (
    MissingContactInfo, UnknownConditionField, UnknownStepType,
    NotifierTransientError
)
from ..models.workflow import (
    Step, StepType, DelayUnit,
    SendSmsConfig, SendEmailConfig, AddTagConfig, RemoveTagConfig,
    DelayConfig, ConditionalConfig
)
from ..models.enrollment import Enrollment, EnrollmentStatus
from ..models.scheduling import ScheduledAction, ActionKind
from ..models.execution_log import ExecutionLog, LogOutcome
from ..models.crm import Client, Org, Appointment, Message
from ..integrations.notifier import Notifier
from ..integrations.appointments import AppointmentSource
from ..integrations.clients import ClientStore, MessageStore
from ..storage.repository import (
    EnrollmentRepository, ScheduledActionRepository, ExecutionLogRepository
)
from . import conditions
from .variables import RenderContext, render


logger = logging.getLogger(__name__)

DELAY_UNIT_SECONDS = {
    DelayUnit.SECONDS.value: 1,
    DelayUnit.MINUTES.value: 60,
    DelayUnit.HOURS.value: 60 * 60,
    DelayUnit.DAYS.value: 24 * 60 * 60,
    DelayUnit.WEEKS.value: 7 * 24 * 60 * 60,
    # calendar months are approximated as 30 days
    DelayUnit.MONTHS.value: 30 * 24 * 60 * 60,
}


def delay_offset(value: float, unit: str) -> timedelta:
    """Convert a (value, unit) pair; unrecognized units count as days"""
    seconds = DELAY_UNIT_SECONDS.get((unit or "").lower())
    if seconds is None:
        logger.warning(f"Unknown delay unit '{unit}', defaulting to days")
        seconds = DELAY_UNIT_SECONDS[DelayUnit.DAYS.value]
    return timedelta(seconds=float(value) * seconds)


@dataclass
class StepResult:
    """Outcome of one step execution"""
    step_id: str
    action: str
    next_step_id: Optional[str] = None
    # set by delay steps; the enrollment waits until this time
    resume_at: Optional[datetime] = None
    path: Optional[str] = None
    message_id: Optional[str] = None
    scheduled_action_id: Optional[str] = None
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def suspended(self) -> bool:
        return self.resume_at is not None


class StepExecutor:
    """Executes workflow steps against the CRM collaborators"""

    def __init__(
        self,
        notifier: Notifier,
        clients: ClientStore,
        messages: MessageStore,
        appointments: AppointmentSource,
        enrollments: EnrollmentRepository,
        actions: ScheduledActionRepository,
        logs: ExecutionLogRepository,
        clock: Clock = None,
        notifier_timeout: float = 30.0,
        max_attempts: int = 3
    ):
        self.notifier = notifier
        self.clients = clients
        self.messages = messages
        self.appointments = appointments
        self.enrollments = enrollments
        self.actions = actions
        self.logs = logs
        self.clock = clock or SystemClock()
        self.notifier_timeout = notifier_timeout
        self.max_attempts = max_attempts

        self.handlers = {
            StepType.SEND_SMS: self._send_sms,
            StepType.SEND_EMAIL: self._send_email,
            StepType.ADD_TAG: self._add_tag,
            StepType.REMOVE_TAG: self._remove_tag,
            StepType.DELAY: self._delay,
            StepType.CONDITIONAL: self._conditional,
        }

    async def execute(
        self,
        step: Step,
        enrollment: Enrollment,
        client: Client,
        org: Org,
        appointment: Optional[Appointment] = None
    ) -> StepResult:
        """
        Execute one step and append its execution log entry.

        Failures are logged and re-raised; nothing is swallowed here.
        """
        handler = self.handlers.get(step.type)
        action = step.type.value if isinstance(step.type, StepType) else str(step.type)

        try:
            if handler is None:
                raise UnknownStepType(action)
            result = await handler(step, enrollment, client, org, appointment)
        except Exception as e:
            logger.warning(
                f"Step {step.id} ({action}) failed for enrollment {enrollment.id}: {e}",
                extra={"enrollment_id": enrollment.id, "step_id": step.id}
            )
            await self._append_log(
                enrollment, step.id, action, LogOutcome.FAILED,
                message=f"Step failed: {e}",
                error=f"{type(e).__name__}: {e}"
            )
            raise

        await self._append_log(
            enrollment, step.id, action, LogOutcome.EXECUTED,
            message=result.detail,
            metadata=self._log_metadata(result)
        )
        logger.info(
            f"Executed step {step.id} ({action}) for enrollment {enrollment.id}",
            extra={"enrollment_id": enrollment.id, "step_id": step.id}
        )
        return result

    async def _send_sms(self, step, enrollment, client, org, appointment) -> StepResult:
        config: SendSmsConfig = step.config
        phone = client.primary_phone.strip() if client.primary_phone else ""
        if not phone:
            raise MissingContactInfo(step.id, "sms")

        body = render(config.message, RenderContext(client=client, org=org, appointment=appointment))
        ref = await self.call_notifier(self.notifier.send_sms(phone, body))
        message_id = await self.messages.add(Message(
            org_id=enrollment.org_id,
            client_id=client.id,
            channel="sms",
            recipient=phone,
            content=body,
            delivery_ref=ref
        ))
        return StepResult(
            step_id=step.id,
            action=StepType.SEND_SMS.value,
            next_step_id=step.successor(),
            message_id=message_id,
            detail=f"SMS sent to {phone}",
            data={"delivery_ref": ref}
        )

    async def _send_email(self, step, enrollment, client, org, appointment) -> StepResult:
        config: SendEmailConfig = step.config
        email = (client.email or "").strip()
        if not email:
            raise MissingContactInfo(step.id, "email")

        ctx = RenderContext(client=client, org=org, appointment=appointment)
        subject = render(config.subject, ctx)
        body = render(config.body, ctx)
        ref = await self.call_notifier(self.notifier.send_email(email, subject, body))
        message_id = await self.messages.add(Message(
            org_id=enrollment.org_id,
            client_id=client.id,
            channel="email",
            recipient=email,
            content=f"{subject}\n\n{body}",
            delivery_ref=ref
        ))
        return StepResult(
            step_id=step.id,
            action=StepType.SEND_EMAIL.value,
            next_step_id=step.successor(),
            message_id=message_id,
            detail=f"Email sent to {email}",
            data={"delivery_ref": ref}
        )

    async def call_notifier(self, call):
        """Await a notifier call; timeouts and connection errors become NotifierTransientError"""
        try:
            return await asyncio.wait_for(call, timeout=self.notifier_timeout)
        except asyncio.TimeoutError:
            raise NotifierTransientError(
                f"Notifier call timed out after {self.notifier_timeout}s"
            )
        except (ConnectionError, OSError) as e:
            raise NotifierTransientError(f"Notifier unavailable: {e}") from e

    async def _add_tag(self, step, enrollment, client, org, appointment) -> StepResult:
        config: AddTagConfig = step.config
        tags = list(client.tags or [])

        if config.tag in tags:
            return StepResult(
                step_id=step.id,
                action=StepType.ADD_TAG.value,
                next_step_id=step.successor(),
                detail="tag_already_exists",
                data={"tag": config.tag}
            )

        tags.append(config.tag)
        await self.clients.set_tags(client.id, tags)
        client.tags = tags
        return StepResult(
            step_id=step.id,
            action=StepType.ADD_TAG.value,
            next_step_id=step.successor(),
            detail=f"Added tag: {config.tag}",
            data={"tag": config.tag}
        )

    async def _remove_tag(self, step, enrollment, client, org, appointment) -> StepResult:
        config: RemoveTagConfig = step.config
        tags = list(client.tags or [])

        if config.remove_all:
            remaining: List[str] = []
            detail = f"Removed all tags ({len(tags)})"
        else:
            remaining = [tag for tag in tags if tag != config.tag]
            detail = (
                f"Removed tag: {config.tag}" if len(remaining) != len(tags)
                else "tag_not_present"
            )

        if remaining != tags:
            await self.clients.set_tags(client.id, remaining)
            client.tags = remaining
        return StepResult(
            step_id=step.id,
            action=StepType.REMOVE_TAG.value,
            next_step_id=step.successor(),
            detail=detail,
            data={"tag": config.tag, "remove_all": config.remove_all}
        )

    async def _delay(self, step, enrollment, client, org, appointment) -> StepResult:
        config: DelayConfig = step.config
        now = self.clock.now()
        resume_at = now + delay_offset(config.value, config.unit)

        action = ScheduledAction(
            org_id=enrollment.org_id,
            kind=ActionKind.CONTINUE_WORKFLOW.value,
            args={
                "enrollment_id": enrollment.id,
                "workflow_id": enrollment.workflow_id,
                "step_id": step.id,
                "resume": True,
            },
            scheduled_for=resume_at,
            max_attempts=self.max_attempts,
            created_at=now,
            updated_at=now
        )
        await self.actions.save(action)
        await self.enrollments.patch(
            enrollment.id,
            {"next_execution_at": resume_at},
            expected_statuses=[EnrollmentStatus.ACTIVE],
            expected_step_id=step.id
        )
        enrollment.next_execution_at = resume_at

        return StepResult(
            step_id=step.id,
            action=StepType.DELAY.value,
            next_step_id=step.successor(),
            resume_at=resume_at,
            scheduled_action_id=action.id,
            detail=f"Delayed {config.value} {config.unit}",
            data={"resume_at": resume_at.isoformat()}
        )

    async def _conditional(self, step, enrollment, client, org, appointment) -> StepResult:
        config: ConditionalConfig = step.config
        if not conditions.is_known_field(config.field):
            raise UnknownConditionField(step.id, config.field)

        facts = await self._condition_facts(config.field, enrollment, client, appointment)
        matched = conditions.evaluate(
            config.field, config.operator, config.value, facts, self.clock.now()
        )
        path = "true" if matched else "false"
        return StepResult(
            step_id=step.id,
            action=StepType.CONDITIONAL.value,
            next_step_id=step.successor(path),
            path=path,
            detail=f"Condition {config.field} {config.operator} {config.value}: {matched}",
            data={"result": matched}
        )

    async def _condition_facts(
        self,
        field: str,
        enrollment: Enrollment,
        client: Client,
        appointment: Optional[Appointment]
    ) -> Dict[str, Any]:
        if field == "tags":
            return {"tags": list(client.tags or [])}
        if field == "appointment_count":
            return {"appointment_count": await self.appointments.count_for_client(
                enrollment.org_id, client.id
            )}
        if field == "appointment_type":
            appointment_type = (
                appointment.type if appointment is not None
                else enrollment.metadata.get("appointment_type")
            )
            return {"appointment_type": appointment_type}
        if field == "client_status":
            return {"client_status": client.portal_status}
        return {"last_appointment_date": await self.appointments.last_appointment_date(
            enrollment.org_id, client.id
        )}

    def _log_metadata(self, result: StepResult) -> Dict[str, Any]:
        metadata = dict(result.data)
        if result.path:
            metadata["path"] = result.path
        if result.message_id:
            metadata["message_id"] = result.message_id
        if result.scheduled_action_id:
            metadata["scheduled_action_id"] = result.scheduled_action_id
        return metadata

    async def _append_log(
        self,
        enrollment: Enrollment,
        step_id: str,
        action: str,
        outcome: LogOutcome,
        message: str = "",
        error: str = None,
        metadata: Dict[str, Any] = None
    ):
        await self.logs.append(ExecutionLog(
            org_id=enrollment.org_id,
            workflow_id=enrollment.workflow_id,
            enrollment_id=enrollment.id,
            client_id=enrollment.client_id,
            step_id=step_id,
            action=action,
            outcome=outcome,
            message=message,
            error=error,
            executed_at=self.clock.now(),
            metadata=metadata or {}
        ))
