"""
Trigger detection tests
"""
import pytest
import pytest_asyncio
from datetime import timedelta

from clinic_automation.core.triggers import derive_trigger_key
from clinic_automation.models import AppointmentStatus, ActionStatus, EnrollmentStatus


@pytest_asyncio.fixture
async def scheduled_workflow(engine, follow_up_definition):
    return await engine.create_workflow(follow_up_definition)


async def create(engine, trigger, enabled=True, tag="toxin_client"):
    return await engine.create_workflow({
        "org_id": "org-1",
        "name": f"{trigger} workflow",
        "trigger": trigger,
        "enabled": enabled,
        "steps": [{"id": "tag", "type": "add_tag", "config": {"tag": tag}}]
    })


@pytest.mark.parametrize("appointment_type, expected", [
    ("Morpheus8 Full Face", "morpheus8"),
    ("Morpheus consultation", "morpheus8"),
    ("Botox Treatment", "toxins"),
    ("Neurotoxin touch-up", "toxins"),
    ("Wrinkle Treatment", "toxins"),
    ("Juvederm lips", "filler"),
    ("Dermal Filler", "filler"),
    ("Restylane", "filler"),
    ("Initial Visit", "consultation"),
    ("Free Consult", "consultation"),
    ("HydraFacial", "appointment_scheduled"),
    ("", "appointment_scheduled"),
    (None, "appointment_scheduled"),
])
def test_derive_trigger_key(appointment_type, expected):
    assert derive_trigger_key(appointment_type, "appointment_scheduled") == expected


class TestCreatedAppointments:
    """appointment_scheduled detection"""

    @pytest.mark.asyncio
    async def test_base_and_sub_trigger_both_enroll(self, engine, scheduled_workflow, add_appointment, notifier):
        toxins = await create(engine, "toxins")
        await create(engine, "filler")
        appointment = add_appointment(date_time=engine.clock.now() + timedelta(days=7))

        result = await engine.detector.detect("org-1")

        assert result.processed == 1
        assert result.triggered == 1
        assert len(result.enrollment_ids) == 2

        enrollments = await engine.list_enrollments(client_id="client-1")
        assert {e.workflow_id for e in enrollments} == {scheduled_workflow.id, toxins.id}
        for enrollment in enrollments:
            assert enrollment.enrollment_reason == "appointment_scheduled_toxins"
            assert enrollment.metadata["appointment_id"] == appointment.id
            assert enrollment.metadata["derived_trigger"] == "toxins"

        # first steps ran inline
        assert len(notifier.sms()) == 1
        assert (await engine.clients.get("client-1")).tags == ["toxin_client"]

        logs = await engine.logs.list(enrollment_id=result.enrollment_ids[0])
        assert logs[0].step_id == "auto_trigger"
        assert logs[0].message == "Auto-enrolled from appointment_scheduled: Botox Treatment"

    @pytest.mark.asyncio
    async def test_appointment_date_renders_in_message(self, engine, scheduled_workflow, add_appointment, notifier):
        add_appointment(date_time=engine.clock.now() + timedelta(days=7))

        await engine.detector.detect("org-1")

        assert notifier.sms()[0].body == "Hi Jane, see you on 3/9/2026!"

    @pytest.mark.asyncio
    async def test_cursor_prevents_retrigger(self, engine, scheduled_workflow, add_appointment, clock):
        add_appointment(date_time=clock.now() + timedelta(days=7))

        first = await engine.detector.detect("org-1")
        clock.advance(timedelta(minutes=1))
        second = await engine.detector.detect("org-1")

        assert first.triggered == 1
        assert second.processed == 0
        cursor = await engine.cursors.get("org-1")
        assert cursor.last_created_at == clock.now() - timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_new_appointment_after_cursor(self, engine, add_appointment, clock):
        await create(engine, "appointment_scheduled", tag="booked")
        await engine.detector.detect("org-1")

        clock.advance(timedelta(minutes=1))
        add_appointment(type="HydraFacial", date_time=clock.now() + timedelta(days=7), created_at=clock.now())
        result = await engine.detector.detect("org-1")

        assert result.triggered == 1

    @pytest.mark.asyncio
    async def test_first_run_only_looks_back_a_few_minutes(self, engine, scheduled_workflow, add_appointment, clock):
        add_appointment(created_at=clock.now() - timedelta(minutes=10),
                        date_time=clock.now() + timedelta(days=7))

        result = await engine.detector.detect("org-1")

        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_disabled_workflows_are_ignored(self, engine, add_appointment, clock):
        await create(engine, "appointment_scheduled", enabled=False)
        add_appointment(date_time=clock.now() + timedelta(days=7))

        result = await engine.detector.detect("org-1")

        assert result.processed == 1
        assert result.triggered == 0
        assert await engine.list_enrollments() == []

    @pytest.mark.asyncio
    async def test_other_orgs_workflows_are_ignored(self, engine, add_appointment, clock):
        await create(engine, "appointment_scheduled")
        add_appointment(org_id="org-2", date_time=clock.now() + timedelta(days=7))

        result = await engine.detector.detect("org-1")

        assert result.processed == 0


class TestCompletedAppointments:
    """appointment_completed detection"""

    @pytest.mark.asyncio
    async def test_completion_inferred_after_duration(self, engine, add_appointment, clock):
        workflow = await create(engine, "appointment_completed", tag="treated")
        appointment = add_appointment(
            date_time=clock.now() - timedelta(minutes=62),
            created_at=clock.now() - timedelta(days=2)
        )

        result = await engine.detector.detect("org-1")

        assert result.triggered == 1
        assert appointment.status == AppointmentStatus.COMPLETED
        enrollments = await engine.list_enrollments(workflow_id=workflow.id)
        assert enrollments[0].enrollment_reason == "appointment_completed_toxins"
        assert enrollments[0].status == EnrollmentStatus.COMPLETED

        again = await engine.detector.detect("org-1")
        assert again.triggered == 0

    @pytest.mark.asyncio
    async def test_appointment_still_in_progress(self, engine, add_appointment, clock):
        await create(engine, "appointment_completed")
        appointment = add_appointment(
            date_time=clock.now() - timedelta(minutes=30),
            created_at=clock.now() - timedelta(days=2)
        )

        result = await engine.detector.detect("org-1")

        assert result.triggered == 0
        assert appointment.status == AppointmentStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_cancelled_appointment_is_not_completed(self, engine, add_appointment, clock):
        await create(engine, "appointment_completed")
        add_appointment(
            date_time=clock.now() - timedelta(minutes=62),
            created_at=clock.now() - timedelta(days=2),
            status=AppointmentStatus.CANCELLED
        )

        result = await engine.detector.detect("org-1")

        assert result.processed == 0


class TestStartEnrollment:
    """Inline start and hand-off to the action queue"""

    @pytest.mark.asyncio
    async def test_retryable_failure_becomes_continuation(
        self, engine, scheduled_workflow, add_appointment, notifier, clock
    ):
        notifier.fail_next()
        add_appointment(date_time=clock.now() + timedelta(days=7))

        result = await engine.detector.detect("org-1")

        assert result.triggered == 1
        assert result.handed_off == 1
        enrollment_id = result.enrollment_ids[0]
        pending = await engine.actions.list(enrollment_id=enrollment_id, status=ActionStatus.PENDING)
        assert len(pending) == 1
        assert pending[0].scheduled_for == clock.now() + timedelta(minutes=5)
        assert pending[0].args["step_id"] == "welcome"
        assert pending[0].args["resume"] is False

        clock.advance(timedelta(minutes=5))
        drained = await engine.queue.drain()

        assert drained.successful == 1
        assert len(notifier.sms()) == 1
        enrollment = await engine.get_enrollment(enrollment_id)
        assert enrollment.current_step_id == "wait"

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_not_handed_off(self, engine, add_appointment, clock):
        workflow = await create(engine, "appointment_scheduled")
        engine.clients.clients.pop("client-1")
        add_appointment(date_time=clock.now() + timedelta(days=7))

        result = await engine.detector.detect("org-1")

        assert result.triggered == 1
        assert result.handed_off == 0
        assert await engine.list_actions() == []
        enrollments = await engine.list_enrollments(workflow_id=workflow.id)
        assert enrollments[0].status == EnrollmentStatus.ACTIVE
