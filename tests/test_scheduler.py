"""
Scheduler loop tests
"""
import asyncio
import pytest
from datetime import timedelta
from unittest.mock import patch

from clinic_automation.models import Org, EnrollmentStatus, ActionStatus


class TestTick:
    """SchedulerLoop.tick()"""

    @pytest.mark.asyncio
    async def test_follow_up_end_to_end(self, engine, follow_up_definition, add_appointment, notifier, clock):
        workflow = await engine.create_workflow(follow_up_definition)
        add_appointment(date_time=clock.now() + timedelta(days=7))

        first = await engine.tick()

        assert first.triggered == 1
        assert first.drain.processed == 0
        assert [m.body for m in notifier.sms()] == ["Hi Jane, see you on 3/9/2026!"]

        enrollment = (await engine.list_enrollments(workflow_id=workflow.id))[0]
        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.current_step_id == "wait"
        assert enrollment.next_execution_at == clock.now() + timedelta(days=2)

        # nothing happens before the wait elapses
        clock.advance(timedelta(days=1))
        assert (await engine.tick()).drain.processed == 0

        clock.advance(timedelta(days=1, minutes=1))
        second = await engine.tick()

        assert second.triggered == 0
        assert second.drain.successful == 1
        assert (await engine.clients.get("client-1")).tags == ["followed_up"]

        enrollment = await engine.get_enrollment(enrollment.id)
        assert enrollment.status == EnrollmentStatus.COMPLETED

        logs = await engine.list_logs(enrollment_id=enrollment.id)
        assert [log.action for log in logs] == ["enroll_client", "send_sms", "delay", "add_tag"]

        actions = await engine.list_actions(enrollment_id=enrollment.id)
        assert [a.status for a in actions] == [ActionStatus.COMPLETED]

        # a later tick does not send anything again
        clock.advance(timedelta(days=1))
        await engine.tick()
        assert len(notifier.sms()) == 1

    @pytest.mark.asyncio
    async def test_completed_appointment_end_to_end(self, engine, add_appointment, notifier, clock):
        await engine.create_workflow({
            "org_id": "org-1",
            "name": "Thank you",
            "trigger": "appointment_completed",
            "enabled": True,
            "steps": [
                {"id": "thanks", "type": "send_sms", "config": {"message": "Thanks for visiting {{business_name}}"}},
                {"id": "wait", "type": "delay", "config": {"value": 1, "unit": "days"}},
                {"id": "tag", "type": "add_tag", "config": {"tag": "followed_up"}}
            ]
        })
        appointment = add_appointment(
            date_time=clock.now() - timedelta(minutes=61),
            created_at=clock.now() - timedelta(days=3)
        )

        first = await engine.tick()

        assert first.triggered == 1
        assert (await engine.appointments.get(appointment.id)).status.value == "completed"
        assert [m.body for m in notifier.sms()] == ["Thanks for visiting Glow Aesthetics"]

        clock.advance(timedelta(days=1))
        second = await engine.tick()

        assert second.triggered == 0
        assert second.drain.successful == 1
        enrollments = await engine.list_enrollments()
        assert len(enrollments) == 1
        assert enrollments[0].status == EnrollmentStatus.COMPLETED
        assert enrollments[0].enrollment_reason == "appointment_completed_toxins"
        assert (await engine.clients.get("client-1")).tags == ["followed_up"]
        assert len(notifier.sms()) == 1

    @pytest.mark.asyncio
    async def test_one_org_failure_does_not_block_others(self, engine, add_appointment, clock):
        engine.orgs.add(Org(id="org-2", name="Other Clinic"))
        await engine.create_workflow({
            "org_id": "org-1",
            "name": "Booked",
            "trigger": "appointment_scheduled",
            "enabled": True,
            "steps": [{"id": "tag", "type": "add_tag", "config": {"tag": "booked"}}]
        })
        add_appointment(date_time=clock.now() + timedelta(days=7))
        scheduled = await engine.schedule_message("org-1", "client-1", "Hello", clock.now())

        original = engine.detector.detect

        async def detect(org_id):
            if org_id == "org-2":
                raise RuntimeError("appointment source unavailable")
            return await original(org_id)

        with patch.object(engine.detector, "detect", side_effect=detect):
            result = await engine.tick()

        assert result.errors == {"org-2": "RuntimeError: appointment source unavailable"}
        assert [d.org_id for d in result.detections] == ["org-1"]
        assert result.triggered == 1
        assert result.drain.successful == 1
        assert (await engine.actions.get(scheduled.id)).status == ActionStatus.COMPLETED
        assert result.to_dict()["orgs"] == 2

    @pytest.mark.asyncio
    async def test_inactive_orgs_are_skipped(self, engine):
        engine.orgs.add(Org(id="org-3", name="Closed", active=False))

        result = await engine.tick()

        assert [d.org_id for d in result.detections] == ["org-1"]

    @pytest.mark.asyncio
    async def test_tick_summary(self, engine):
        result = await engine.tick()

        summary = result.to_dict()
        assert summary["orgs"] == 1
        assert summary["enrollments_triggered"] == 0
        assert summary["actions_processed"] == 0
        assert summary["errors"] == {}
        assert engine.scheduler.stats()["tick_count"] == 1
        assert engine.scheduler.stats()["last_tick"] == summary


class TestLoop:
    """start() / stop()"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        await engine.start()
        assert engine.scheduler.running

        await asyncio.sleep(0.05)
        await engine.stop()

        assert not engine.scheduler.running
        assert engine.scheduler.tick_count >= 1

    @pytest.mark.asyncio
    async def test_tick_error_does_not_stop_loop(self, engine):
        with patch.object(engine.queue, "drain", side_effect=RuntimeError("store down")):
            await engine.start()
            await asyncio.sleep(0.05)
            assert engine.scheduler.running
            await engine.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, engine):
        await engine.stop()
        assert not engine.scheduler.running
