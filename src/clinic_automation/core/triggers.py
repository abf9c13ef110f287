"""
Trigger detection: turns appointment activity into workflow enrollments
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from ..clock import Clock, SystemClock
from ..exceptions import is_retryable
from ..models.workflow import TriggerType
from ..models.enrollment import EnrollmentStatus
from ..models.scheduling import TriggerCursor
from ..models.crm import Appointment
from ..integrations.appointments import AppointmentSource
from ..storage.repository import WorkflowRepository, TriggerCursorRepository
from .enrollment import EnrollmentManager


logger = logging.getLogger(__name__)

# first match wins; order matters for types like "Morpheus8 consultation"
TRIGGER_TAXONOMY = [
    (TriggerType.MORPHEUS8.value, ("morpheus8", "morpheus")),
    (TriggerType.TOXINS.value, ("botox", "toxin", "neurotoxin", "wrinkle treatment")),
    (TriggerType.FILLER.value, ("filler", "dermal", "juvederm", "restylane")),
    (TriggerType.CONSULTATION.value, ("consultation", "consult", "initial")),
]


def derive_trigger_key(appointment_type: Optional[str], base_trigger: str) -> str:
    """Map a free-text appointment type to a domain sub-trigger"""
    lowered = (appointment_type or "").lower()
    for key, keywords in TRIGGER_TAXONOMY:
        if any(keyword in lowered for keyword in keywords):
            return key
    return base_trigger


@dataclass
class DetectionResult:
    """Outcome of one detection pass for one org"""
    org_id: str
    processed: int = 0
    triggered: int = 0
    enrollment_ids: List[str] = field(default_factory=list)
    handed_off: int = 0


class TriggerDetector:
    """Polls the appointment source and enrolls matching clients"""

    def __init__(
        self,
        appointments: AppointmentSource,
        workflows: WorkflowRepository,
        cursors: TriggerCursorRepository,
        enrollment_manager: EnrollmentManager,
        clock: Clock = None,
        lookback_minutes: int = 5,
        appointment_duration_minutes: int = 60,
        retry_interval_seconds: int = 300
    ):
        self.appointments = appointments
        self.workflows = workflows
        self.cursors = cursors
        self.enrollment_manager = enrollment_manager
        self.clock = clock or SystemClock()
        self.lookback = timedelta(minutes=lookback_minutes)
        self.appointment_duration = timedelta(minutes=appointment_duration_minutes)
        self.retry_interval = timedelta(seconds=retry_interval_seconds)

    async def detect(self, org_id: str) -> DetectionResult:
        """Run both detection paths for one org"""
        result = DetectionResult(org_id=org_id)
        await self._detect_created(org_id, result)
        await self._detect_completed(org_id, result)

        if result.processed:
            logger.info(
                f"Org {org_id}: processed {result.processed} appointments, "
                f"triggered {result.triggered}",
                extra={"org_id": org_id}
            )
        return result

    async def _detect_created(self, org_id: str, result: DetectionResult):
        now = self.clock.now()
        cursor = await self.cursors.get(org_id)
        since = cursor.last_created_at if cursor else now - self.lookback

        created = await self.appointments.list_created_since(org_id, since, now)
        for appointment in created:
            result.processed += 1
            if await self._trigger(org_id, appointment, TriggerType.APPOINTMENT_SCHEDULED.value, result):
                result.triggered += 1

        # the mark moves only once the whole batch went through
        high_water = max((a.created_at for a in created), default=since)
        if cursor is None or high_water > cursor.last_created_at:
            await self.cursors.save(TriggerCursor(
                org_id=org_id,
                last_created_at=high_water,
                updated_at=now
            ))

    async def _detect_completed(self, org_id: str, result: DetectionResult):
        now = self.clock.now()
        # completion is inferred from an assumed appointment length
        started_before = now - self.appointment_duration
        started_after = started_before - self.lookback

        due = await self.appointments.list_due_for_completion(org_id, started_after, started_before)
        for appointment in due:
            if not await self.appointments.mark_completed(appointment.id):
                # another detector already completed it
                continue
            result.processed += 1
            if await self._trigger(org_id, appointment, TriggerType.APPOINTMENT_COMPLETED.value, result):
                result.triggered += 1

    async def _trigger(
        self,
        org_id: str,
        appointment: Appointment,
        trigger_type: str,
        result: DetectionResult
    ) -> bool:
        """Enroll the appointment's client in every matching workflow"""
        derived = derive_trigger_key(appointment.type, trigger_type)
        workflows = await self.workflows.list_enabled_for_triggers(org_id, {trigger_type, derived})

        enrolled = False
        for workflow in workflows:
            enrollment_id = await self.enrollment_manager.enroll(
                org_id,
                workflow,
                appointment.client_id,
                reason=f"{trigger_type}_{derived}",
                metadata={
                    "appointment_id": appointment.id,
                    "appointment_type": appointment.type,
                    "appointment_date": appointment.date_time.isoformat(),
                    "trigger_type": trigger_type,
                    "derived_trigger": derived,
                },
                log_step_id="auto_trigger",
                log_message=f"Auto-enrolled from {trigger_type}: {appointment.type}"
            )
            if enrollment_id is None:
                continue

            enrolled = True
            result.enrollment_ids.append(enrollment_id)
            if await self.start_enrollment(enrollment_id):
                result.handed_off += 1
        return enrolled

    async def start_enrollment(self, enrollment_id: str) -> bool:
        """
        Run the new enrollment's first steps inline.

        A retryable failure is handed to the action queue as a continuation;
        returns True in that case.
        """
        try:
            await self.enrollment_manager.advance(enrollment_id)
            return False
        except Exception as e:
            if not is_retryable(e):
                logger.error(
                    f"Enrollment {enrollment_id} stopped on a non-retryable error: {e}",
                    extra={"enrollment_id": enrollment_id}
                )
                return False

            enrollment = await self.enrollment_manager.enrollments.get(enrollment_id)
            if enrollment is None or enrollment.status != EnrollmentStatus.ACTIVE:
                return False

            run_at = self.clock.now() + self.retry_interval
            await self.enrollment_manager.schedule_continuation(enrollment, run_at=run_at)
            logger.warning(
                f"Enrollment {enrollment_id} failed at step {enrollment.current_step_id}, "
                f"retrying at {run_at.isoformat()}: {e}",
                extra={"enrollment_id": enrollment_id}
            )
            return True
