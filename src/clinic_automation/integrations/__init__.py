"""External system integrations"""

# Notifier
from .notifier import Notifier, LoggingNotifier, MockNotifier, SentMessage

# Appointments
from .appointments import AppointmentSource, InMemoryAppointmentSource

# CRM stores
from .clients import (
    ClientStore,
    OrgStore,
    MessageStore,
    InMemoryClientStore,
    InMemoryOrgStore,
    InMemoryMessageStore
)
from .fixtures import load_crm_fixtures

__all__ = [
    # Notifier
    "Notifier",
    "LoggingNotifier",
    "MockNotifier",
    "SentMessage",

    # Appointments
    "AppointmentSource",
    "InMemoryAppointmentSource",

    # CRM stores
    "ClientStore",
    "OrgStore",
    "MessageStore",
    "InMemoryClientStore",
    "InMemoryOrgStore",
    "InMemoryMessageStore",
    "load_crm_fixtures"
]
