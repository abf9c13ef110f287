"""
Pytest configuration and shared fixtures
"""
import pytest
from datetime import datetime

from clinic_automation.clock import FrozenClock
from clinic_automation.config import EngineSettings
from clinic_automation.core import WorkflowEngine
from clinic_automation.integrations import MockNotifier
from clinic_automation.models import Org, Client, Appointment


pytest_plugins = ('pytest_asyncio',)


NOW = datetime(2026, 3, 2, 15, 0, 0)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def notifier() -> MockNotifier:
    return MockNotifier()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(disable_auth=True, tick_interval_seconds=0.01)


@pytest.fixture
def engine(notifier, clock, settings) -> WorkflowEngine:
    """Engine over in-memory stores with one org and one client"""
    engine = WorkflowEngine.in_memory(notifier=notifier, clock=clock, settings=settings)
    engine.orgs.add(Org(
        id="org-1",
        name="Glow Aesthetics",
        phone="(555) 010-2000",
        booking_link="https://book.glow.example",
        google_review_link="https://g.page/glow"
    ))
    engine.clients.add(Client(
        id="client-1",
        org_id="org-1",
        full_name="Jane Doe",
        phones=["+15550100"],
        email="jane@example.com"
    ))
    return engine


@pytest.fixture
def add_appointment(engine, clock):
    """Factory adding an appointment to the in-memory source"""
    def _add(**overrides) -> Appointment:
        values = {
            "org_id": "org-1",
            "client_id": "client-1",
            "type": "Botox Treatment",
            "date_time": clock.now(),
            "created_at": clock.now(),
        }
        values.update(overrides)
        return engine.appointments.add(Appointment(**values))
    return _add


@pytest.fixture
def follow_up_definition() -> dict:
    """SMS, two-day wait, tag"""
    return {
        "workflow": {
            "org_id": "org-1",
            "name": "Post-treatment follow-up",
            "trigger": "appointment_scheduled",
            "enabled": True,
            "steps": [
                {
                    "id": "welcome",
                    "type": "send_sms",
                    "config": {"message": "Hi {{first_name}}, see you on {{appointment_date}}!"}
                },
                {"id": "wait", "type": "delay", "config": {"value": 2, "unit": "days"}},
                {"id": "tag", "type": "add_tag", "config": {"tag": "followed_up"}}
            ]
        }
    }


@pytest.fixture
def linear_definition() -> dict:
    """SMS then tag, no waits"""
    return {
        "org_id": "org-1",
        "name": "Welcome",
        "trigger": "manual",
        "enabled": True,
        "steps": [
            {"id": "sms", "type": "send_sms", "config": {"message": "Welcome to {{business_name}}"}},
            {"id": "tag", "type": "add_tag", "config": {"tag": "welcomed"}}
        ]
    }
