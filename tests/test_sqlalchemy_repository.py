"""
SQLAlchemy repository tests (aiosqlite, in-memory database)
"""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta

from clinic_automation.core import WorkflowEngine, WorkflowParser
from clinic_automation.integrations import (
    InMemoryAppointmentSource, InMemoryClientStore, InMemoryOrgStore, InMemoryMessageStore
)
from clinic_automation.models import (
    Enrollment, EnrollmentStatus, ScheduledAction, ActionStatus, ExecutionLog,
    LogOutcome, TriggerCursor, Org, Client, Appointment
)
from clinic_automation.storage.sqlalchemy_repository import (
    DatabaseManager,
    SQLAlchemyWorkflowRepository,
    SQLAlchemyEnrollmentRepository,
    SQLAlchemyScheduledActionRepository,
    SQLAlchemyExecutionLogRepository,
    SQLAlchemyTriggerCursorRepository
)


NOW = datetime(2026, 3, 2, 15, 0, 0)


@pytest_asyncio.fixture
async def db():
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.initialize()
    yield manager
    await manager.close()


def _log(enrollment_id: str, step_id: str, outcome=LogOutcome.EXECUTED) -> ExecutionLog:
    return ExecutionLog(
        org_id="org-1",
        workflow_id="wf-1",
        enrollment_id=enrollment_id,
        client_id="client-1",
        step_id=step_id,
        action="send_sms",
        outcome=outcome,
        executed_at=NOW
    )


class TestWorkflowRepository:

    @pytest.mark.asyncio
    async def test_round_trip(self, db, linear_definition):
        repo = SQLAlchemyWorkflowRepository(db)
        workflow = WorkflowParser().parse(linear_definition)

        await repo.save(workflow)
        loaded = await repo.get(workflow.id)

        assert loaded.name == "Welcome"
        assert loaded.steps == workflow.steps
        assert loaded.start_step_id == "sms"
        assert await repo.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_enabled_for_triggers(self, db, linear_definition):
        repo = SQLAlchemyWorkflowRepository(db)
        manual = WorkflowParser().parse(linear_definition)
        linear_definition["trigger"] = "toxins"
        toxins = WorkflowParser().parse(linear_definition)
        linear_definition["enabled"] = False
        disabled = WorkflowParser().parse(linear_definition)
        for workflow in (manual, toxins, disabled):
            await repo.save(workflow)

        found = await repo.list_enabled_for_triggers("org-1", ["toxins", "appointment_scheduled"])

        assert [w.id for w in found] == [toxins.id]
        assert await repo.list_enabled_for_triggers("org-2", ["toxins"]) == []

    @pytest.mark.asyncio
    async def test_update_and_delete(self, db, linear_definition):
        repo = SQLAlchemyWorkflowRepository(db)
        workflow = WorkflowParser().parse(linear_definition)
        await repo.save(workflow)

        workflow.enabled = False
        assert await repo.update(workflow) is True
        assert (await repo.get(workflow.id)).enabled is False
        assert await repo.list(enabled=True) == []

        assert await repo.delete(workflow.id) is True
        assert await repo.delete(workflow.id) is False


class TestEnrollmentRepository:

    @pytest.mark.asyncio
    async def test_patch_is_conditional(self, db):
        repo = SQLAlchemyEnrollmentRepository(db)
        enrollment = Enrollment(org_id="org-1", workflow_id="wf-1", client_id="client-1",
                                current_step_id="sms", enrolled_at=NOW)
        await repo.save(enrollment)

        assert await repo.patch(
            enrollment.id, {"current_step_id": "tag"},
            expected_statuses=[EnrollmentStatus.ACTIVE], expected_step_id="sms"
        )
        # the step moved, so a second writer expecting "sms" loses
        assert not await repo.patch(
            enrollment.id, {"current_step_id": "other"},
            expected_statuses=[EnrollmentStatus.ACTIVE], expected_step_id="sms"
        )
        assert not await repo.patch(
            enrollment.id, {"status": EnrollmentStatus.PAUSED},
            expected_statuses=[EnrollmentStatus.PAUSED]
        )

        loaded = await repo.get(enrollment.id)
        assert loaded.current_step_id == "tag"
        assert loaded.status == EnrollmentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_patch_metadata(self, db):
        repo = SQLAlchemyEnrollmentRepository(db)
        enrollment = Enrollment(org_id="org-1", workflow_id="wf-1", client_id="client-1", enrolled_at=NOW)
        await repo.save(enrollment)

        await repo.patch(enrollment.id, {"metadata": {"note": "vip"}, "status": EnrollmentStatus.COMPLETED})

        loaded = await repo.get(enrollment.id)
        assert loaded.metadata == {"note": "vip"}
        assert loaded.status == EnrollmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_find_recent(self, db):
        repo = SQLAlchemyEnrollmentRepository(db)
        await repo.save(Enrollment(org_id="org-1", workflow_id="wf-1", client_id="client-1", enrolled_at=NOW))

        assert await repo.find_recent("wf-1", "client-1", NOW) is not None
        assert await repo.find_recent("wf-1", "client-1", NOW + timedelta(seconds=1)) is None
        assert await repo.find_recent("wf-1", "client-2", NOW - timedelta(days=1)) is None

    @pytest.mark.asyncio
    async def test_list_and_count(self, db):
        repo = SQLAlchemyEnrollmentRepository(db)
        for index, status in enumerate([EnrollmentStatus.ACTIVE, EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED]):
            await repo.save(Enrollment(
                org_id="org-1", workflow_id="wf-1", client_id=f"client-{index}",
                status=status, enrolled_at=NOW + timedelta(minutes=index)
            ))

        assert await repo.count_by_status("wf-1") == {"active": 2, "completed": 1}
        active = await repo.list(workflow_id="wf-1", status=EnrollmentStatus.ACTIVE)
        assert [e.client_id for e in active] == ["client-0", "client-1"]


class TestScheduledActionRepository:

    @pytest.mark.asyncio
    async def test_claim_once(self, db):
        repo = SQLAlchemyScheduledActionRepository(db)
        action = ScheduledAction(org_id="org-1", args={"enrollment_id": "e1"}, scheduled_for=NOW)
        await repo.save(action)

        claimed = await repo.claim(action.id, NOW)

        assert claimed.status == ActionStatus.RUNNING
        assert claimed.attempts == 1
        assert claimed.last_attempt_at == NOW
        assert await repo.claim(action.id, NOW) is None

    @pytest.mark.asyncio
    async def test_claim_requires_due(self, db):
        repo = SQLAlchemyScheduledActionRepository(db)
        action = ScheduledAction(org_id="org-1", scheduled_for=NOW + timedelta(minutes=1))
        await repo.save(action)

        assert await repo.claim(action.id, NOW) is None
        assert await repo.list_due(NOW) == []
        assert [a.id for a in await repo.list_due(NOW + timedelta(minutes=1))] == [action.id]

    @pytest.mark.asyncio
    async def test_transition(self, db):
        repo = SQLAlchemyScheduledActionRepository(db)
        action = ScheduledAction(org_id="org-1", scheduled_for=NOW)
        await repo.save(action)

        assert not await repo.transition(action.id, [ActionStatus.RUNNING], {"status": ActionStatus.COMPLETED})
        assert await repo.transition(action.id, [ActionStatus.PENDING], {
            "status": ActionStatus.CANCELLED, "last_error": "stop"
        })

        loaded = await repo.get(action.id)
        assert loaded.status == ActionStatus.CANCELLED
        assert loaded.last_error == "stop"

    @pytest.mark.asyncio
    async def test_lookup_by_enrollment_and_counts(self, db):
        repo = SQLAlchemyScheduledActionRepository(db)
        await repo.save(ScheduledAction(org_id="org-1", args={"enrollment_id": "e1"}, scheduled_for=NOW))
        await repo.save(ScheduledAction(org_id="org-1", args={"enrollment_id": "e2"},
                                        scheduled_for=NOW + timedelta(days=1)))
        await repo.save(ScheduledAction(org_id="org-2", scheduled_for=NOW))

        assert len(await repo.list(enrollment_id="e1")) == 1
        assert await repo.count_by_status("org-1") == {"pending": 2}
        assert await repo.count_overdue(NOW, "org-1") == 1
        assert await repo.count_overdue(NOW) == 2


class TestLogsAndCursors:

    @pytest.mark.asyncio
    async def test_logs_keep_insertion_order(self, db):
        repo = SQLAlchemyExecutionLogRepository(db)
        for step_id in ("enroll", "sms", "delay"):
            await repo.append(_log("e1", step_id))
        await repo.append(_log("e2", "sms", LogOutcome.FAILED))

        assert [log.step_id for log in await repo.list(enrollment_id="e1")] == ["enroll", "sms", "delay"]
        assert await repo.count_by_outcome("wf-1") == {"executed": 3, "failed": 1}

    @pytest.mark.asyncio
    async def test_cursor_upsert(self, db):
        repo = SQLAlchemyTriggerCursorRepository(db)
        assert await repo.get("org-1") is None

        await repo.save(TriggerCursor(org_id="org-1", last_created_at=NOW))
        await repo.save(TriggerCursor(org_id="org-1", last_created_at=NOW + timedelta(minutes=5)))

        assert (await repo.get("org-1")).last_created_at == NOW + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_engine_on_sqlalchemy_stores(db, clock, notifier, settings, follow_up_definition):
    engine = WorkflowEngine(
        workflows=SQLAlchemyWorkflowRepository(db),
        enrollments=SQLAlchemyEnrollmentRepository(db),
        actions=SQLAlchemyScheduledActionRepository(db),
        logs=SQLAlchemyExecutionLogRepository(db),
        cursors=SQLAlchemyTriggerCursorRepository(db),
        clients=InMemoryClientStore(),
        orgs=InMemoryOrgStore(),
        messages=InMemoryMessageStore(),
        appointments=InMemoryAppointmentSource(),
        notifier=notifier,
        clock=clock,
        settings=settings
    )
    engine.orgs.add(Org(id="org-1", name="Glow Aesthetics"))
    engine.clients.add(Client(id="client-1", org_id="org-1", full_name="Jane Doe", phones=["+15550100"]))
    await engine.create_workflow(follow_up_definition)
    engine.appointments.add(Appointment(
        org_id="org-1", client_id="client-1", type="Botox",
        date_time=NOW + timedelta(days=7), created_at=NOW
    ))

    assert (await engine.tick()).triggered == 1
    clock.advance(timedelta(days=2, minutes=1))
    assert (await engine.tick()).drain.successful == 1

    enrollment = (await engine.list_enrollments())[0]
    assert enrollment.status == EnrollmentStatus.COMPLETED
    logs = await engine.list_logs(enrollment_id=enrollment.id)
    assert [log.action for log in logs] == ["enroll_client", "send_sms", "delay", "add_tag"]
    assert len(notifier.sms()) == 1
