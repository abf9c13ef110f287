"""
SQLAlchemy repository implementations
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable

from sqlalchemy import select, update, delete, func
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ..clock import utcnow
from ..exceptions import PersistenceError
from ..models.workflow import Workflow
from ..models.enrollment import Enrollment, EnrollmentStatus
from ..models.scheduling import ScheduledAction, ActionStatus, TriggerCursor
from ..models.execution_log import ExecutionLog, LogOutcome
from ..core.parser import WorkflowParser
from .repository import (
    WorkflowRepository, EnrollmentRepository, ScheduledActionRepository,
    ExecutionLogRepository, TriggerCursorRepository
)
from .sqlalchemy_models import (
    Base, WorkflowRecord, EnrollmentRecord, ScheduledActionRecord,
    ExecutionLogRecord, TriggerCursorRecord
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """Database engine and session factory"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        """Connect and create tables"""
        engine_kwargs: Dict[str, Any] = {"echo": self.echo}
        url = make_url(self.database_url)
        if url.get_backend_name() == "sqlite":
            if url.database in (None, "", ":memory:"):
                # one shared connection, otherwise each session sees an empty database
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)

        self.engine = create_async_engine(self.database_url, **engine_kwargs)
        self.async_session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """Transactional session; commits on success, rolls back on error"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError(f"Database operation failed: {e}") from e
            except Exception:
                await session.rollback()
                raise


def _column_value(value):
    return value.value if isinstance(value, Enum) else value


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy workflow repository"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager
        self.parser = WorkflowParser()

    async def save(self, workflow: Workflow) -> str:
        async with self.db.get_session() as session:
            session.add(WorkflowRecord(
                id=workflow.id,
                org_id=workflow.org_id,
                name=workflow.name,
                trigger=workflow.trigger,
                enabled=workflow.enabled,
                prevent_duplicates=workflow.prevent_duplicates,
                duplicate_prevention_days=workflow.duplicate_prevention_days,
                description=workflow.description,
                definition=workflow.to_dict(),
                created_at=workflow.created_at,
                updated_at=workflow.updated_at
            ))
            await session.flush()
            return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        async with self.db.get_session() as session:
            record = await session.get(WorkflowRecord, workflow_id)
            return self._to_workflow(record) if record else None

    async def list(
        self,
        org_id: str = None,
        enabled: bool = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[Workflow]:
        async with self.db.get_session() as session:
            query = select(WorkflowRecord)
            if org_id is not None:
                query = query.where(WorkflowRecord.org_id == org_id)
            if enabled is not None:
                query = query.where(WorkflowRecord.enabled == enabled)
            query = query.order_by(WorkflowRecord.created_at).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._to_workflow(r) for r in result.scalars().all()]

    async def list_enabled_for_triggers(self, org_id: str, triggers: Iterable[str]) -> List[Workflow]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowRecord).where(
                    WorkflowRecord.org_id == org_id,
                    WorkflowRecord.enabled.is_(True),
                    WorkflowRecord.trigger.in_(list(triggers))
                )
            )
            return [self._to_workflow(r) for r in result.scalars().all()]

    async def update(self, workflow: Workflow) -> bool:
        workflow.updated_at = utcnow()
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowRecord)
                .where(WorkflowRecord.id == workflow.id)
                .values(
                    org_id=workflow.org_id,
                    name=workflow.name,
                    trigger=workflow.trigger,
                    enabled=workflow.enabled,
                    prevent_duplicates=workflow.prevent_duplicates,
                    duplicate_prevention_days=workflow.duplicate_prevention_days,
                    description=workflow.description,
                    definition=workflow.to_dict(),
                    updated_at=workflow.updated_at
                )
            )
            return result.rowcount > 0

    async def delete(self, workflow_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(WorkflowRecord).where(WorkflowRecord.id == workflow_id)
            )
            return result.rowcount > 0

    def _to_workflow(self, record: WorkflowRecord) -> Workflow:
        workflow = self.parser.parse_dict(dict(record.definition), record.org_id)
        workflow.id = record.id
        workflow.enabled = record.enabled
        workflow.created_at = record.created_at
        workflow.updated_at = record.updated_at
        return workflow


class SQLAlchemyEnrollmentRepository(EnrollmentRepository):
    """SQLAlchemy enrollment repository"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, enrollment: Enrollment) -> str:
        async with self.db.get_session() as session:
            session.add(EnrollmentRecord(
                id=enrollment.id,
                org_id=enrollment.org_id,
                workflow_id=enrollment.workflow_id,
                client_id=enrollment.client_id,
                enrollment_reason=enrollment.enrollment_reason,
                current_step_id=enrollment.current_step_id,
                status=enrollment.status.value,
                enrolled_at=enrollment.enrolled_at,
                next_execution_at=enrollment.next_execution_at,
                paused_at=enrollment.paused_at,
                completed_at=enrollment.completed_at,
                cancelled_at=enrollment.cancelled_at,
                workflow_snapshot=enrollment.workflow_snapshot,
                metadata_=enrollment.metadata,
                updated_at=enrollment.updated_at
            ))
            await session.flush()
            return enrollment.id

    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        async with self.db.get_session() as session:
            record = await session.get(EnrollmentRecord, enrollment_id)
            return self._to_enrollment(record) if record else None

    async def find_recent(
        self,
        workflow_id: str,
        client_id: str,
        since: datetime
    ) -> Optional[Enrollment]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(EnrollmentRecord).where(
                    EnrollmentRecord.workflow_id == workflow_id,
                    EnrollmentRecord.client_id == client_id,
                    EnrollmentRecord.enrolled_at >= since
                ).limit(1)
            )
            record = result.scalar_one_or_none()
            return self._to_enrollment(record) if record else None

    async def list(
        self,
        org_id: str = None,
        workflow_id: str = None,
        client_id: str = None,
        status: EnrollmentStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[Enrollment]:
        async with self.db.get_session() as session:
            query = select(EnrollmentRecord)
            if org_id is not None:
                query = query.where(EnrollmentRecord.org_id == org_id)
            if workflow_id is not None:
                query = query.where(EnrollmentRecord.workflow_id == workflow_id)
            if client_id is not None:
                query = query.where(EnrollmentRecord.client_id == client_id)
            if status is not None:
                query = query.where(EnrollmentRecord.status == _column_value(status))
            query = query.order_by(EnrollmentRecord.enrolled_at).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._to_enrollment(r) for r in result.scalars().all()]

    async def patch(
        self,
        enrollment_id: str,
        changes: Dict[str, Any],
        expected_statuses: Iterable[EnrollmentStatus] = None,
        expected_step_id: str = None
    ) -> bool:
        values = {
            ("metadata_" if name == "metadata" else name): _column_value(value)
            for name, value in changes.items()
        }
        values.setdefault("updated_at", utcnow())

        query = update(EnrollmentRecord).where(EnrollmentRecord.id == enrollment_id)
        if expected_statuses is not None:
            query = query.where(
                EnrollmentRecord.status.in_([_column_value(s) for s in expected_statuses])
            )
        if expected_step_id is not None:
            query = query.where(EnrollmentRecord.current_step_id == expected_step_id)

        async with self.db.get_session() as session:
            result = await session.execute(query.values(**values))
            return result.rowcount == 1

    async def count_by_status(self, workflow_id: str) -> Dict[str, int]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(EnrollmentRecord.status, func.count())
                .where(EnrollmentRecord.workflow_id == workflow_id)
                .group_by(EnrollmentRecord.status)
            )
            return {status: count for status, count in result.all()}

    def _to_enrollment(self, record: EnrollmentRecord) -> Enrollment:
        return Enrollment(
            id=record.id,
            org_id=record.org_id,
            workflow_id=record.workflow_id,
            client_id=record.client_id,
            enrollment_reason=record.enrollment_reason,
            current_step_id=record.current_step_id,
            status=EnrollmentStatus(record.status),
            enrolled_at=record.enrolled_at,
            next_execution_at=record.next_execution_at,
            paused_at=record.paused_at,
            completed_at=record.completed_at,
            cancelled_at=record.cancelled_at,
            workflow_snapshot=record.workflow_snapshot or {},
            metadata=record.metadata_ or {},
            updated_at=record.updated_at
        )


class SQLAlchemyScheduledActionRepository(ScheduledActionRepository):
    """SQLAlchemy scheduled action repository"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, action: ScheduledAction) -> str:
        async with self.db.get_session() as session:
            session.add(ScheduledActionRecord(
                id=action.id,
                org_id=action.org_id,
                kind=action.kind,
                args=action.args,
                enrollment_id=action.enrollment_id,
                scheduled_for=action.scheduled_for,
                status=action.status.value,
                attempts=action.attempts,
                max_attempts=action.max_attempts,
                last_error=action.last_error,
                last_attempt_at=action.last_attempt_at,
                created_at=action.created_at,
                updated_at=action.updated_at
            ))
            await session.flush()
            return action.id

    async def get(self, action_id: str) -> Optional[ScheduledAction]:
        async with self.db.get_session() as session:
            record = await session.get(ScheduledActionRecord, action_id)
            return self._to_action(record) if record else None

    async def list_due(self, now: datetime, limit: int = 100) -> List[ScheduledAction]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ScheduledActionRecord)
                .where(
                    ScheduledActionRecord.status == ActionStatus.PENDING.value,
                    ScheduledActionRecord.scheduled_for <= now
                )
                .order_by(ScheduledActionRecord.scheduled_for)
                .limit(limit)
            )
            return [self._to_action(r) for r in result.scalars().all()]

    async def list(
        self,
        org_id: str = None,
        status: ActionStatus = None,
        kind: str = None,
        enrollment_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ScheduledAction]:
        async with self.db.get_session() as session:
            query = select(ScheduledActionRecord)
            if org_id is not None:
                query = query.where(ScheduledActionRecord.org_id == org_id)
            if status is not None:
                query = query.where(ScheduledActionRecord.status == _column_value(status))
            if kind is not None:
                query = query.where(ScheduledActionRecord.kind == kind)
            if enrollment_id is not None:
                query = query.where(ScheduledActionRecord.enrollment_id == enrollment_id)
            query = query.order_by(ScheduledActionRecord.scheduled_for).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._to_action(r) for r in result.scalars().all()]

    async def claim(self, action_id: str, now: datetime) -> Optional[ScheduledAction]:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ScheduledActionRecord)
                .where(
                    ScheduledActionRecord.id == action_id,
                    ScheduledActionRecord.status == ActionStatus.PENDING.value,
                    ScheduledActionRecord.scheduled_for <= now
                )
                .values(
                    status=ActionStatus.RUNNING.value,
                    attempts=ScheduledActionRecord.attempts + 1,
                    last_attempt_at=now,
                    updated_at=now
                )
            )
            if result.rowcount != 1:
                return None

            record = await session.get(ScheduledActionRecord, action_id, populate_existing=True)
            return self._to_action(record)

    async def transition(
        self,
        action_id: str,
        expected_statuses: Iterable[ActionStatus],
        changes: Dict[str, Any]
    ) -> bool:
        values = {name: _column_value(value) for name, value in changes.items()}
        values.setdefault("updated_at", utcnow())

        async with self.db.get_session() as session:
            result = await session.execute(
                update(ScheduledActionRecord)
                .where(
                    ScheduledActionRecord.id == action_id,
                    ScheduledActionRecord.status.in_([_column_value(s) for s in expected_statuses])
                )
                .values(**values)
            )
            return result.rowcount == 1

    async def count_by_status(self, org_id: str = None) -> Dict[str, int]:
        async with self.db.get_session() as session:
            query = select(ScheduledActionRecord.status, func.count())
            if org_id is not None:
                query = query.where(ScheduledActionRecord.org_id == org_id)
            result = await session.execute(query.group_by(ScheduledActionRecord.status))
            return {status: count for status, count in result.all()}

    async def count_overdue(self, now: datetime, org_id: str = None) -> int:
        async with self.db.get_session() as session:
            query = select(func.count()).select_from(ScheduledActionRecord).where(
                ScheduledActionRecord.status == ActionStatus.PENDING.value,
                ScheduledActionRecord.scheduled_for <= now
            )
            if org_id is not None:
                query = query.where(ScheduledActionRecord.org_id == org_id)
            result = await session.execute(query)
            return result.scalar_one()

    def _to_action(self, record: ScheduledActionRecord) -> ScheduledAction:
        return ScheduledAction(
            id=record.id,
            org_id=record.org_id,
            kind=record.kind,
            args=record.args or {},
            scheduled_for=record.scheduled_for,
            status=ActionStatus(record.status),
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            last_error=record.last_error,
            last_attempt_at=record.last_attempt_at,
            created_at=record.created_at,
            updated_at=record.updated_at
        )


class SQLAlchemyExecutionLogRepository(ExecutionLogRepository):
    """SQLAlchemy execution log"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def append(self, log: ExecutionLog) -> str:
        async with self.db.get_session() as session:
            session.add(ExecutionLogRecord(
                id=log.id,
                org_id=log.org_id,
                workflow_id=log.workflow_id,
                enrollment_id=log.enrollment_id,
                client_id=log.client_id,
                step_id=log.step_id,
                action=log.action,
                outcome=log.outcome.value,
                message=log.message,
                error=log.error,
                executed_at=log.executed_at,
                metadata_=log.metadata
            ))
            await session.flush()
            return log.id

    async def list(
        self,
        org_id: str = None,
        workflow_id: str = None,
        enrollment_id: str = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ExecutionLog]:
        async with self.db.get_session() as session:
            query = select(ExecutionLogRecord)
            if org_id is not None:
                query = query.where(ExecutionLogRecord.org_id == org_id)
            if workflow_id is not None:
                query = query.where(ExecutionLogRecord.workflow_id == workflow_id)
            if enrollment_id is not None:
                query = query.where(ExecutionLogRecord.enrollment_id == enrollment_id)
            query = query.order_by(ExecutionLogRecord.seq).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._to_log(r) for r in result.scalars().all()]

    async def count_by_outcome(self, workflow_id: str) -> Dict[str, int]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionLogRecord.outcome, func.count())
                .where(ExecutionLogRecord.workflow_id == workflow_id)
                .group_by(ExecutionLogRecord.outcome)
            )
            return {outcome: count for outcome, count in result.all()}

    def _to_log(self, record: ExecutionLogRecord) -> ExecutionLog:
        return ExecutionLog(
            id=record.id,
            org_id=record.org_id,
            workflow_id=record.workflow_id,
            enrollment_id=record.enrollment_id,
            client_id=record.client_id,
            step_id=record.step_id,
            action=record.action,
            outcome=LogOutcome(record.outcome),
            message=record.message or "",
            error=record.error,
            executed_at=record.executed_at,
            metadata=record.metadata_ or {}
        )


class SQLAlchemyTriggerCursorRepository(TriggerCursorRepository):
    """SQLAlchemy trigger cursors"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def get(self, org_id: str) -> Optional[TriggerCursor]:
        async with self.db.get_session() as session:
            record = await session.get(TriggerCursorRecord, org_id)
            if record is None:
                return None
            return TriggerCursor(
                org_id=record.org_id,
                last_created_at=record.last_created_at,
                updated_at=record.updated_at
            )

    async def save(self, cursor: TriggerCursor) -> None:
        async with self.db.get_session() as session:
            await session.merge(TriggerCursorRecord(
                org_id=cursor.org_id,
                last_created_at=cursor.last_created_at,
                updated_at=cursor.updated_at
            ))
