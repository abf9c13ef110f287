"""
Workflow automation engine

Wires the detector, enrollment manager, step executor, action queue and
scheduler loop together and exposes the administrative operations.
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

from ..clock import Clock, SystemClock
from ..config import EngineSettings
from ..exceptions import NotFoundError, MissingContactInfo
from ..models.workflow import Workflow, TriggerType
from ..models.enrollment import Enrollment, EnrollmentStatus
from ..models.scheduling import ScheduledAction, ActionStatus, ActionKind
from ..models.execution_log import ExecutionLog, LogOutcome
from ..models.crm import Message
from ..integrations.notifier import Notifier, LoggingNotifier
from ..integrations.appointments import AppointmentSource, InMemoryAppointmentSource
from ..integrations.clients import (
    ClientStore, OrgStore, MessageStore,
    InMemoryClientStore, InMemoryOrgStore, InMemoryMessageStore
)
from ..storage.repository import (
    WorkflowRepository, EnrollmentRepository, ScheduledActionRepository,
    ExecutionLogRepository, TriggerCursorRepository,
    InMemoryWorkflowRepository, InMemoryEnrollmentRepository,
    InMemoryScheduledActionRepository, InMemoryExecutionLogRepository,
    InMemoryTriggerCursorRepository
)
from .parser import WorkflowParser
from .variables import RenderContext, render
from .step_executor import StepExecutor
from .enrollment import EnrollmentManager
from .triggers import TriggerDetector
from .action_queue import ScheduledActionQueue, RetryPolicy
from .scheduler import SchedulerLoop, TickResult


logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Clinic workflow automation engine"""

    def __init__(
        self,
        workflows: WorkflowRepository,
        enrollments: EnrollmentRepository,
        actions: ScheduledActionRepository,
        logs: ExecutionLogRepository,
        cursors: TriggerCursorRepository,
        clients: ClientStore,
        orgs: OrgStore,
        messages: MessageStore,
        appointments: AppointmentSource,
        notifier: Notifier,
        clock: Clock = None,
        settings: EngineSettings = None
    ):
        self.settings = settings or EngineSettings()
        self.clock = clock or SystemClock()

        self.workflows = workflows
        self.enrollments = enrollments
        self.actions = actions
        self.logs = logs
        self.cursors = cursors
        self.clients = clients
        self.orgs = orgs
        self.messages = messages
        self.appointments = appointments
        self.notifier = notifier

        self.parser = WorkflowParser(self.settings.default_duplicate_prevention_days)
        self.executor = StepExecutor(
            notifier=notifier,
            clients=clients,
            messages=messages,
            appointments=appointments,
            enrollments=enrollments,
            actions=actions,
            logs=logs,
            clock=self.clock,
            notifier_timeout=self.settings.notifier_timeout_seconds,
            max_attempts=self.settings.max_attempts
        )
        self.enrollment_manager = EnrollmentManager(
            workflows=workflows,
            enrollments=enrollments,
            actions=actions,
            logs=logs,
            clients=clients,
            orgs=orgs,
            appointments=appointments,
            executor=self.executor,
            clock=self.clock
        )
        self.detector = TriggerDetector(
            appointments=appointments,
            workflows=workflows,
            cursors=cursors,
            enrollment_manager=self.enrollment_manager,
            clock=self.clock,
            lookback_minutes=self.settings.trigger_lookback_minutes,
            appointment_duration_minutes=self.settings.appointment_duration_minutes,
            retry_interval_seconds=self.settings.retry_interval_seconds
        )
        self.queue = ScheduledActionQueue(
            actions,
            clock=self.clock,
            retry_policy=RetryPolicy(
                interval_seconds=self.settings.retry_interval_seconds,
                max_attempts=self.settings.max_attempts
            ),
            batch_size=self.settings.drain_batch_size
        )
        self.queue.register(ActionKind.CONTINUE_WORKFLOW.value, self._continue_workflow)
        self.queue.register(ActionKind.SEND_SCHEDULED_MESSAGE.value, self._send_scheduled_message)

        self.scheduler = SchedulerLoop(
            orgs=orgs,
            detector=self.detector,
            queue=self.queue,
            clock=self.clock,
            interval_seconds=self.settings.tick_interval_seconds
        )

    @classmethod
    def in_memory(
        cls,
        notifier: Notifier = None,
        clock: Clock = None,
        settings: EngineSettings = None
    ) -> "WorkflowEngine":
        """Engine backed entirely by in-memory stores"""
        return cls(
            workflows=InMemoryWorkflowRepository(),
            enrollments=InMemoryEnrollmentRepository(),
            actions=InMemoryScheduledActionRepository(),
            logs=InMemoryExecutionLogRepository(),
            cursors=InMemoryTriggerCursorRepository(),
            clients=InMemoryClientStore(),
            orgs=InMemoryOrgStore(),
            messages=InMemoryMessageStore(),
            appointments=InMemoryAppointmentSource(),
            notifier=notifier or LoggingNotifier(),
            clock=clock,
            settings=settings
        )

    # Scheduler

    async def tick(self, now: datetime = None) -> TickResult:
        return await self.scheduler.tick(now)

    async def start(self):
        await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()

    async def _continue_workflow(self, action: ScheduledAction):
        enrollment_id = action.args.get("enrollment_id")
        if not enrollment_id:
            raise NotFoundError("Enrollment", "<missing from action args>")
        try:
            await self.enrollment_manager.advance(
                enrollment_id,
                expected_step_id=action.args.get("step_id"),
                resume=bool(action.args.get("resume", False))
            )
        except Exception:
            # a retry must pick up where this attempt stopped
            await self.enrollment_manager.retarget_continuation(action)
            raise

    async def _send_scheduled_message(self, action: ScheduledAction):
        args = action.args
        client = await self.clients.get(args.get("client_id", ""))
        if client is None:
            raise NotFoundError("Client", args.get("client_id", ""))
        org = await self.orgs.get(action.org_id)
        if org is None:
            raise NotFoundError("Org", action.org_id)

        channel = args.get("channel", "sms")
        ctx = RenderContext(client=client, org=org)
        body = render(args.get("message", ""), ctx)

        if channel == "email":
            recipient = (client.email or "").strip()
            if not recipient:
                raise MissingContactInfo(action.id, "email")
            subject = render(args.get("subject", ""), ctx)
            ref = await self.executor.call_notifier(self.notifier.send_email(recipient, subject, body))
            content = f"{subject}\n\n{body}"
        else:
            recipient = (client.primary_phone or "").strip()
            if not recipient:
                raise MissingContactInfo(action.id, "sms")
            ref = await self.executor.call_notifier(self.notifier.send_sms(recipient, body))
            content = body

        await self.messages.add(Message(
            org_id=action.org_id,
            client_id=client.id,
            channel=channel,
            recipient=recipient,
            content=content,
            delivery_ref=ref
        ))

    # Workflows

    async def create_workflow(
        self,
        definition: Union[str, Path, Dict[str, Any]],
        org_id: str = None
    ) -> Workflow:
        """Parse, validate and store a workflow definition"""
        workflow = self.parser.parse(definition, org_id)

        if await self.orgs.get(workflow.org_id) is None:
            raise NotFoundError("Org", workflow.org_id)

        now = self.clock.now()
        workflow.created_at = now
        workflow.updated_at = now
        await self.workflows.save(workflow)
        logger.info(f"Created workflow {workflow.id} ({workflow.name}) for org {workflow.org_id}")
        return workflow

    async def update_workflow(self, workflow_id: str, definition: Dict[str, Any]) -> Workflow:
        """Replace a workflow's definition; in-flight enrollments keep their snapshot"""
        current = await self.get_workflow(workflow_id)
        data = dict(definition.get("workflow", definition))
        data["id"] = workflow_id
        workflow = self.parser.parse_dict(data, current.org_id)
        workflow.created_at = current.created_at
        await self.workflows.update(workflow)
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.workflows.get(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    async def list_workflows(
        self,
        org_id: str = None,
        enabled: bool = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[Workflow]:
        return await self.workflows.list(org_id=org_id, enabled=enabled, offset=offset, limit=limit)

    async def delete_workflow(self, workflow_id: str) -> bool:
        await self.get_workflow(workflow_id)
        return await self.workflows.delete(workflow_id)

    async def enable_workflow(self, workflow_id: str) -> Workflow:
        return await self._set_enabled(workflow_id, True)

    async def disable_workflow(self, workflow_id: str) -> Workflow:
        """Stop new enrollments; running enrollments continue"""
        return await self._set_enabled(workflow_id, False)

    async def _set_enabled(self, workflow_id: str, enabled: bool) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        workflow.enabled = enabled
        await self.workflows.update(workflow)
        logger.info(f"Workflow {workflow_id} {'enabled' if enabled else 'disabled'}")
        return workflow

    async def pause_workflow(self, workflow_id: str) -> int:
        """Disable the workflow and pause its active enrollments"""
        await self._set_enabled(workflow_id, False)

        paused = 0
        for enrollment in await self._all_enrollments(workflow_id, EnrollmentStatus.ACTIVE):
            if await self.enrollment_manager.pause(enrollment.id):
                paused += 1
        logger.info(f"Paused workflow {workflow_id} ({paused} enrollments)")
        return paused

    async def resume_workflow(self, workflow_id: str) -> int:
        """Re-enable the workflow and resume its paused enrollments"""
        await self._set_enabled(workflow_id, True)

        resumed = 0
        for enrollment in await self._all_enrollments(workflow_id, EnrollmentStatus.PAUSED):
            if await self.enrollment_manager.resume(enrollment.id):
                resumed += 1
        logger.info(f"Resumed workflow {workflow_id} ({resumed} enrollments)")
        return resumed

    async def _all_enrollments(self, workflow_id: str, status: EnrollmentStatus) -> List[Enrollment]:
        result = []
        offset = 0
        while True:
            page = await self.enrollments.list(
                workflow_id=workflow_id, status=status, offset=offset, limit=500
            )
            result.extend(page)
            if len(page) < 500:
                return result
            offset += len(page)

    async def workflow_stats(self, workflow_id: str) -> Dict[str, Any]:
        await self.get_workflow(workflow_id)
        by_status = await self.enrollments.count_by_status(workflow_id)
        by_outcome = await self.logs.count_by_outcome(workflow_id)

        executed = by_outcome.get(LogOutcome.EXECUTED.value, 0)
        failed = by_outcome.get(LogOutcome.FAILED.value, 0)
        total = executed + failed
        return {
            "workflow_id": workflow_id,
            "total_enrollments": sum(by_status.values()),
            "enrollments_by_status": {
                status.value: by_status.get(status.value, 0) for status in EnrollmentStatus
            },
            "total_executions": total,
            "successful_executions": executed,
            "failed_executions": failed,
            "success_rate": round(executed / total * 100, 2) if total else 0.0,
        }

    # Enrollments

    async def enroll_client(
        self,
        workflow_id: str,
        client_id: str,
        reason: str = TriggerType.MANUAL.value,
        metadata: Dict[str, Any] = None
    ) -> Optional[str]:
        """Manually enroll a client and run its first steps"""
        workflow = await self.get_workflow(workflow_id)
        client = await self.clients.get(client_id)
        if client is None or client.org_id != workflow.org_id:
            raise NotFoundError("Client", client_id)

        enrollment_id = await self.enrollment_manager.enroll(
            workflow.org_id,
            workflow,
            client_id,
            reason=reason,
            metadata=metadata,
            log_step_id="enrollment",
            log_message=f"Manually enrolled: {reason}"
        )
        if enrollment_id is not None:
            await self.detector.start_enrollment(enrollment_id)
        return enrollment_id

    async def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = await self.enrollments.get(enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id)
        return enrollment

    async def list_enrollments(
        self,
        org_id: str = None,
        workflow_id: str = None,
        client_id: str = None,
        status: EnrollmentStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[Enrollment]:
        return await self.enrollments.list(
            org_id=org_id, workflow_id=workflow_id, client_id=client_id,
            status=status, offset=offset, limit=limit
        )

    async def cancel_enrollment(self, enrollment_id: str) -> bool:
        return await self.enrollment_manager.cancel(enrollment_id, reason="administrative stop")

    async def list_logs(
        self,
        org_id: str = None,
        workflow_id: str = None,
        enrollment_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ExecutionLog]:
        return await self.logs.list(
            org_id=org_id, workflow_id=workflow_id, enrollment_id=enrollment_id,
            offset=offset, limit=limit
        )

    # Scheduled actions

    async def schedule_message(
        self,
        org_id: str,
        client_id: str,
        message: str,
        send_at: datetime,
        channel: str = "sms",
        subject: str = None
    ) -> ScheduledAction:
        """Queue a future-dated message to a client"""
        client = await self.clients.get(client_id)
        if client is None or client.org_id != org_id:
            raise NotFoundError("Client", client_id)

        args = {"client_id": client_id, "channel": channel, "message": message}
        if subject is not None:
            args["subject"] = subject
        return await self.queue.schedule(
            org_id, ActionKind.SEND_SCHEDULED_MESSAGE.value, args, send_at
        )

    async def list_actions(
        self,
        org_id: str = None,
        status: ActionStatus = None,
        kind: str = None,
        enrollment_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ScheduledAction]:
        return await self.actions.list(
            org_id=org_id, status=status, kind=kind, enrollment_id=enrollment_id,
            offset=offset, limit=limit
        )

    async def action_stats(self, org_id: str = None) -> Dict[str, int]:
        return await self.queue.stats(org_id)

    async def cancel_action(self, action_id: str) -> bool:
        return await self.queue.cancel(action_id)

    async def reschedule_action(self, action_id: str, scheduled_for: datetime) -> bool:
        return await self.queue.reschedule(action_id, scheduled_for)
