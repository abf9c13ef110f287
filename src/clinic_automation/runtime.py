"""
Assembly of a database-backed engine for the server and the CLI
"""
import logging
from typing import Tuple

from .config import EngineSettings
from .core.engine import WorkflowEngine
from .integrations import (
    Notifier, LoggingNotifier, InMemoryAppointmentSource,
    InMemoryClientStore, InMemoryOrgStore, InMemoryMessageStore, load_crm_fixtures
)
from .storage.sqlalchemy_repository import (
    DatabaseManager,
    SQLAlchemyWorkflowRepository,
    SQLAlchemyEnrollmentRepository,
    SQLAlchemyScheduledActionRepository,
    SQLAlchemyExecutionLogRepository,
    SQLAlchemyTriggerCursorRepository
)


logger = logging.getLogger(__name__)


async def create_engine(
    settings: EngineSettings,
    notifier: Notifier = None
) -> Tuple[WorkflowEngine, DatabaseManager]:
    """
    Connect to the database and wire an engine.

    CRM data (orgs, clients, appointments) lives in in-memory stores,
    optionally seeded from ``settings.crm_fixtures_path``.
    """
    db_manager = DatabaseManager(settings.database_url)
    await db_manager.initialize()

    orgs = InMemoryOrgStore()
    clients = InMemoryClientStore()
    appointments = InMemoryAppointmentSource()
    if settings.crm_fixtures_path:
        load_crm_fixtures(settings.crm_fixtures_path, orgs, clients, appointments)

    engine = WorkflowEngine(
        workflows=SQLAlchemyWorkflowRepository(db_manager),
        enrollments=SQLAlchemyEnrollmentRepository(db_manager),
        actions=SQLAlchemyScheduledActionRepository(db_manager),
        logs=SQLAlchemyExecutionLogRepository(db_manager),
        cursors=SQLAlchemyTriggerCursorRepository(db_manager),
        clients=clients,
        orgs=orgs,
        messages=InMemoryMessageStore(),
        appointments=appointments,
        notifier=notifier or LoggingNotifier(),
        settings=settings
    )
    logger.info(f"Engine ready (database: {db_manager.engine.url.render_as_string(hide_password=True)})")
    return engine, db_manager
