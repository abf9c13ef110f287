"""
SQLAlchemy table models
"""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, DateTime, JSON, Index
)
from sqlalchemy.orm import declarative_base

from ..clock import utcnow


Base = declarative_base()


class WorkflowRecord(Base):
    """Workflow definition"""
    __tablename__ = 'workflows'

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    trigger = Column(String(64), nullable=False)
    enabled = Column(Boolean, nullable=False, default=False)
    prevent_duplicates = Column(Boolean, nullable=False, default=True)
    duplicate_prevention_days = Column(Integer, nullable=False, default=30)
    description = Column(Text)
    # full step graph, as produced by Workflow.to_dict()
    definition = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_workflows_org_trigger', 'org_id', 'trigger', 'enabled'),
    )


class EnrollmentRecord(Base):
    """Client enrollment in a workflow"""
    __tablename__ = 'enrollments'

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), nullable=False)
    workflow_id = Column(String(64), nullable=False)
    client_id = Column(String(64), nullable=False)
    enrollment_reason = Column(String(255), nullable=False, default="")
    current_step_id = Column(String(255))
    status = Column(String(20), nullable=False)
    enrolled_at = Column(DateTime, nullable=False)
    next_execution_at = Column(DateTime)
    paused_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    workflow_snapshot = Column(JSON, nullable=False, default=dict)
    metadata_ = Column('metadata', JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_enrollments_workflow_client', 'workflow_id', 'client_id', 'enrolled_at'),
        Index('idx_enrollments_org_status', 'org_id', 'status'),
    )


class ScheduledActionRecord(Base):
    """Durable delayed continuation"""
    __tablename__ = 'scheduled_actions'

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), nullable=False)
    kind = Column(String(64), nullable=False)
    args = Column(JSON, nullable=False, default=dict)
    # denormalized from args for per-enrollment lookups
    enrollment_id = Column(String(64))
    scheduled_for = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text)
    last_attempt_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_scheduled_actions_due', 'status', 'scheduled_for'),
        Index('idx_scheduled_actions_org', 'org_id', 'status'),
        Index('idx_scheduled_actions_enrollment', 'enrollment_id'),
    )


class ExecutionLogRecord(Base):
    """Append-only step audit entry"""
    __tablename__ = 'execution_logs'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), nullable=False, unique=True)
    org_id = Column(String(64), nullable=False)
    workflow_id = Column(String(64), nullable=False)
    enrollment_id = Column(String(64), nullable=False)
    client_id = Column(String(64), nullable=False)
    step_id = Column(String(255), nullable=False)
    action = Column(String(64), nullable=False)
    outcome = Column(String(20), nullable=False)
    message = Column(Text, default="")
    error = Column(Text)
    executed_at = Column(DateTime, nullable=False)
    metadata_ = Column('metadata', JSON, nullable=False, default=dict)

    __table_args__ = (
        Index('idx_execution_logs_workflow', 'workflow_id'),
        Index('idx_execution_logs_enrollment', 'enrollment_id'),
    )


class TriggerCursorRecord(Base):
    """Per-org high-water mark of processed appointment creations"""
    __tablename__ = 'trigger_cursors'

    org_id = Column(String(64), primary_key=True)
    last_created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
