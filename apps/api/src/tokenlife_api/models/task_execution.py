"""Scheduler audit trail and lease models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Index, Integer, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID

from tokenlife_api.db.base import Base

SERVICE_START_TASK_ID = "service_start"


class TaskExecutionStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    ERROR = "error"
    RECOVERED = "recovered"
    SKIPPED = "skipped"


class TaskExecutionRecord(Base):
    """Append-only audit entry for a scheduled task run."""

    __tablename__ = "task_execution_records"
    __table_args__ = (
        Index("ix_task_execution_records_task_recorded", "task_id", "recorded_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    task_id = Column(String(128), nullable=False)
    run_id = Column(UUID(as_uuid=True), nullable=True)
    status = Column(SqlEnum(TaskExecutionStatus, name="task_execution_status"), nullable=False)
    trigger = Column(String(32), nullable=False, server_default="schedule")
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    details = Column(JSONB().with_variant(JSON(), "sqlite"), nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class SchedulerLease(Base):
    """Single-row lease per job guarding scheduled runs across instances."""

    __tablename__ = "scheduler_leases"

    job_id = Column(String(128), primary_key=True)
    owner = Column(String(255), nullable=False)
    locked_until = Column(DateTime(timezone=True), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)


__all__ = [
    "SERVICE_START_TASK_ID",
    "SchedulerLease",
    "TaskExecutionRecord",
    "TaskExecutionStatus",
]
