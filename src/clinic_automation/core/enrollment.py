"""
Enrollment manager: creates, advances and terminates workflow enrollments
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

from ..clock import Clock, SystemClock
from ..exceptions import NotFoundError, WorkflowEngineError
from ..models.workflow import Workflow, StepType
from ..models.enrollment import Enrollment, EnrollmentStatus
from ..models.scheduling import ScheduledAction, ActionStatus, ActionKind
from ..models.execution_log import ExecutionLog, LogOutcome
from ..integrations.appointments import AppointmentSource
from ..integrations.clients import ClientStore, OrgStore
from ..storage.repository import (
    WorkflowRepository, EnrollmentRepository, ScheduledActionRepository,
    ExecutionLogRepository
)
from .parser import workflow_from_snapshot
from .step_executor import StepExecutor


logger = logging.getLogger(__name__)

ENROLL_ACTION = "enroll_client"


@dataclass
class AdvanceResult:
    """What one advance() call did"""
    enrollment_id: str
    status: EnrollmentStatus
    current_step_id: Optional[str] = None
    steps_executed: int = 0
    next_execution_at: Optional[datetime] = None
    skipped: bool = False
    reason: str = ""


class EnrollmentManager:
    """Owns enrollment lifecycle and duplicate prevention"""

    def __init__(
        self,
        workflows: WorkflowRepository,
        enrollments: EnrollmentRepository,
        actions: ScheduledActionRepository,
        logs: ExecutionLogRepository,
        clients: ClientStore,
        orgs: OrgStore,
        appointments: AppointmentSource,
        executor: StepExecutor,
        clock: Clock = None
    ):
        self.workflows = workflows
        self.enrollments = enrollments
        self.actions = actions
        self.logs = logs
        self.clients = clients
        self.orgs = orgs
        self.appointments = appointments
        self.executor = executor
        self.clock = clock or SystemClock()

    async def enroll(
        self,
        org_id: str,
        workflow: Workflow,
        client_id: str,
        reason: str,
        metadata: Dict[str, Any] = None,
        log_step_id: str = "enrollment",
        log_message: str = None
    ) -> Optional[str]:
        """
        Enroll a client in a workflow.

        Returns:
            The new enrollment id, or None when duplicate prevention skipped it
        """
        now = self.clock.now()

        if workflow.prevent_duplicates:
            since = now - timedelta(days=workflow.duplicate_prevention_days)
            existing = await self.enrollments.find_recent(workflow.id, client_id, since)
            if existing:
                logger.info(
                    f"Skipping duplicate enrollment of client {client_id} in workflow {workflow.id}",
                    extra={"workflow_id": workflow.id, "client_id": client_id}
                )
                return None

        enrollment = Enrollment(
            org_id=org_id,
            workflow_id=workflow.id,
            client_id=client_id,
            enrollment_reason=reason,
            current_step_id=workflow.start_step_id,
            status=EnrollmentStatus.ACTIVE,
            enrolled_at=now,
            workflow_snapshot=workflow.to_dict(),
            metadata=dict(metadata or {}),
            updated_at=now
        )
        await self.enrollments.save(enrollment)

        await self.logs.append(ExecutionLog(
            org_id=org_id,
            workflow_id=workflow.id,
            enrollment_id=enrollment.id,
            client_id=client_id,
            step_id=log_step_id,
            action=ENROLL_ACTION,
            outcome=LogOutcome.EXECUTED,
            message=log_message or f"Enrolled: {reason}",
            executed_at=now,
            metadata=dict(metadata or {})
        ))
        logger.info(
            f"Enrolled client {client_id} in workflow {workflow.id} ({reason})",
            extra={"enrollment_id": enrollment.id, "workflow_id": workflow.id}
        )
        return enrollment.id

    async def advance(
        self,
        enrollment_id: str,
        expected_step_id: str = None,
        resume: bool = False
    ) -> AdvanceResult:
        """
        Run the enrollment's steps until it waits on a delay or completes.

        Args:
            enrollment_id: enrollment to advance
            expected_step_id: only act if the enrollment is still at this step;
                a stale continuation becomes a no-op
            resume: the current step is a delay whose wait has elapsed

        Raises:
            NotFoundError: enrollment, workflow, step, client or org is missing
            WorkflowEngineError: a step failed (already logged)
        """
        enrollment = await self.enrollments.get(enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id)

        if enrollment.status != EnrollmentStatus.ACTIVE:
            return self._skipped(enrollment, f"enrollment is {enrollment.status.value}")

        try:
            workflow = await self._load_workflow(enrollment)
        except NotFoundError as e:
            await self._log_failure(enrollment, enrollment.current_step_id or "advance", e)
            raise

        step_id = enrollment.current_step_id
        resume_past = None
        delay_step = workflow.get_step(expected_step_id or step_id) if resume else None
        if delay_step is not None and delay_step.type == StepType.DELAY:
            if step_id == delay_step.id:
                resume_past = delay_step
            elif step_id != delay_step.successor():
                return self._skipped(enrollment, "enrollment already moved past this step")
            # otherwise an earlier attempt of this continuation already left the delay
        elif expected_step_id is not None and step_id != expected_step_id:
            return self._skipped(enrollment, "enrollment already moved past this step")

        try:
            client = await self.clients.get(enrollment.client_id)
            if client is None:
                raise NotFoundError("Client", enrollment.client_id)
            org = await self.orgs.get(enrollment.org_id)
            if org is None:
                raise NotFoundError("Org", enrollment.org_id)
        except NotFoundError as e:
            await self._log_failure(enrollment, step_id or "advance", e)
            raise

        appointment = None
        if enrollment.appointment_id:
            appointment = await self.appointments.get(enrollment.appointment_id)

        executed = 0

        if resume_past is not None:
            next_step_id = resume_past.successor()
            moved = await self.enrollments.patch(
                enrollment.id,
                {"current_step_id": next_step_id, "next_execution_at": None},
                expected_statuses=[EnrollmentStatus.ACTIVE],
                expected_step_id=step_id
            )
            if not moved:
                return self._skipped(enrollment, "enrollment changed concurrently")
            step_id = next_step_id
            enrollment.current_step_id = step_id
            enrollment.next_execution_at = None

        # a DAG never revisits a step
        for _ in range(len(workflow.steps) + 1):
            if step_id is None:
                return await self._complete(enrollment, executed)

            step = workflow.get_step(step_id)
            if step is None:
                error = NotFoundError("Step", step_id)
                await self._log_failure(enrollment, step_id, error)
                raise error

            result = await self.executor.execute(step, enrollment, client, org, appointment)
            executed += 1

            if result.suspended:
                return AdvanceResult(
                    enrollment_id=enrollment.id,
                    status=EnrollmentStatus.ACTIVE,
                    current_step_id=step_id,
                    steps_executed=executed,
                    next_execution_at=result.resume_at
                )

            moved = await self.enrollments.patch(
                enrollment.id,
                {"current_step_id": result.next_step_id},
                expected_statuses=[EnrollmentStatus.ACTIVE],
                expected_step_id=step_id
            )
            if not moved:
                logger.info(
                    f"Enrollment {enrollment.id} changed while advancing, stopping",
                    extra={"enrollment_id": enrollment.id}
                )
                current = await self.enrollments.get(enrollment.id)
                return AdvanceResult(
                    enrollment_id=enrollment.id,
                    status=current.status if current else enrollment.status,
                    current_step_id=current.current_step_id if current else step_id,
                    steps_executed=executed,
                    reason="enrollment changed concurrently"
                )
            step_id = result.next_step_id
            enrollment.current_step_id = step_id

        raise WorkflowEngineError(f"Enrollment {enrollment.id} exceeded the workflow's step count")

    async def cancel(self, enrollment_id: str, reason: str = "cancelled") -> bool:
        """
        Cancel an enrollment and its pending continuations.

        Idempotent: returns False when the enrollment was not active or paused.
        """
        enrollment = await self.enrollments.get(enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment", enrollment_id)

        now = self.clock.now()
        cancelled = await self.enrollments.patch(
            enrollment_id,
            {
                "status": EnrollmentStatus.CANCELLED,
                "cancelled_at": now,
                "next_execution_at": None,
            },
            expected_statuses=[EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED]
        )
        if not cancelled:
            logger.debug(f"Enrollment {enrollment_id} is {enrollment.status.value}, nothing to cancel")
            return False

        dropped = await self.cancel_pending_actions(enrollment_id, f"Enrollment cancelled: {reason}")
        logger.info(
            f"Cancelled enrollment {enrollment_id} ({reason}), dropped {dropped} pending actions",
            extra={"enrollment_id": enrollment_id}
        )
        return True

    async def pause(self, enrollment_id: str) -> bool:
        """active -> paused; pending continuations are cancelled"""
        now = self.clock.now()
        paused = await self.enrollments.patch(
            enrollment_id,
            {"status": EnrollmentStatus.PAUSED, "paused_at": now},
            expected_statuses=[EnrollmentStatus.ACTIVE]
        )
        if paused:
            await self.cancel_pending_actions(enrollment_id, "Enrollment paused")
        return paused

    async def resume(self, enrollment_id: str) -> bool:
        """
        paused -> active; the pending wait is shifted by the pause duration
        and a fresh continuation is scheduled for it.
        """
        enrollment = await self.enrollments.get(enrollment_id)
        if enrollment is None or enrollment.status != EnrollmentStatus.PAUSED:
            return False

        now = self.clock.now()
        next_execution_at = enrollment.next_execution_at
        if next_execution_at is not None and enrollment.paused_at is not None:
            next_execution_at = max(now, next_execution_at + (now - enrollment.paused_at))

        resumed = await self.enrollments.patch(
            enrollment_id,
            {"status": EnrollmentStatus.ACTIVE, "paused_at": None, "next_execution_at": next_execution_at},
            expected_statuses=[EnrollmentStatus.PAUSED]
        )
        if not resumed:
            return False

        # waiting at a delay resumes past it; anything else re-runs the current step
        await self.schedule_continuation(
            enrollment,
            run_at=next_execution_at or now,
            resume=next_execution_at is not None
        )
        return True

    async def schedule_continuation(
        self,
        enrollment: Enrollment,
        run_at: datetime,
        resume: bool = False,
        max_attempts: int = None
    ) -> str:
        """Queue a continue_workflow action for the enrollment's current step"""
        now = self.clock.now()
        action = ScheduledAction(
            org_id=enrollment.org_id,
            kind=ActionKind.CONTINUE_WORKFLOW.value,
            args={
                "enrollment_id": enrollment.id,
                "workflow_id": enrollment.workflow_id,
                "step_id": enrollment.current_step_id,
                "resume": resume,
            },
            scheduled_for=run_at,
            max_attempts=max_attempts or self.executor.max_attempts,
            created_at=now,
            updated_at=now
        )
        await self.actions.save(action)
        return action.id

    async def retarget_continuation(self, action: ScheduledAction) -> bool:
        """
        Point a failed continuation at the step its enrollment stopped on.

        advance() may run several steps past a delay before one fails; the
        retry then has to re-run that step instead of resuming the delay.
        Only ``action.args`` is changed; the queue persists it on retry.
        """
        enrollment = await self.enrollments.get(action.args.get("enrollment_id", ""))
        if enrollment is None or enrollment.status != EnrollmentStatus.ACTIVE:
            return False
        if enrollment.current_step_id == action.args.get("step_id"):
            return False

        action.args = {
            **action.args,
            "step_id": enrollment.current_step_id,
            "resume": False,
        }
        logger.debug(
            f"Continuation {action.id} now targets step {enrollment.current_step_id}",
            extra={"action_id": action.id, "enrollment_id": enrollment.id}
        )
        return True

    async def cancel_pending_actions(self, enrollment_id: str, reason: str) -> int:
        now = self.clock.now()
        pending = await self.actions.list(
            enrollment_id=enrollment_id, status=ActionStatus.PENDING, limit=1000
        )
        count = 0
        for action in pending:
            if await self.actions.transition(
                action.id,
                [ActionStatus.PENDING],
                {"status": ActionStatus.CANCELLED, "last_error": reason, "updated_at": now}
            ):
                count += 1
        return count

    async def _load_workflow(self, enrollment: Enrollment) -> Workflow:
        workflow = workflow_from_snapshot(enrollment.workflow_snapshot)
        if workflow is None:
            workflow = await self.workflows.get(enrollment.workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", enrollment.workflow_id)
        return workflow

    async def _complete(self, enrollment: Enrollment, executed: int) -> AdvanceResult:
        now = self.clock.now()
        completed = await self.enrollments.patch(
            enrollment.id,
            {
                "status": EnrollmentStatus.COMPLETED,
                "current_step_id": None,
                "completed_at": now,
                "next_execution_at": None,
            },
            expected_statuses=[EnrollmentStatus.ACTIVE]
        )
        if completed:
            logger.info(
                f"Enrollment {enrollment.id} completed",
                extra={"enrollment_id": enrollment.id, "workflow_id": enrollment.workflow_id}
            )
        return AdvanceResult(
            enrollment_id=enrollment.id,
            status=EnrollmentStatus.COMPLETED if completed else enrollment.status,
            steps_executed=executed,
            reason="" if completed else "enrollment changed concurrently"
        )

    def _skipped(self, enrollment: Enrollment, reason: str) -> AdvanceResult:
        logger.debug(f"Not advancing enrollment {enrollment.id}: {reason}")
        return AdvanceResult(
            enrollment_id=enrollment.id,
            status=enrollment.status,
            current_step_id=enrollment.current_step_id,
            next_execution_at=enrollment.next_execution_at,
            skipped=True,
            reason=reason
        )

    async def _log_failure(self, enrollment: Enrollment, step_id: str, error: Exception):
        await self.logs.append(ExecutionLog(
            org_id=enrollment.org_id,
            workflow_id=enrollment.workflow_id,
            enrollment_id=enrollment.id,
            client_id=enrollment.client_id,
            step_id=step_id,
            action="advance",
            outcome=LogOutcome.FAILED,
            message=f"Advance failed: {error}",
            error=f"{type(error).__name__}: {error}",
            executed_at=self.clock.now()
        ))
