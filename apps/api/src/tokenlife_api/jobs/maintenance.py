"""Housekeeping for the task execution audit trail."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict

from loguru import logger
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import aliased

from tokenlife_api.core.clock import Clock, ensure_aware, utcnow
from tokenlife_api.core.settings import settings
from tokenlife_api.db.session import SessionFactory, ensure_session
from tokenlife_api.models.task_execution import SERVICE_START_TASK_ID, TaskExecutionRecord


async def prune_task_executions(
    *,
    session_factory: SessionFactory,
    clock: Clock | None = None,
    retention_days: int | None = None,
) -> Dict[str, Any]:
    """Delete execution records older than the retention window.

    The most recent ``service_start`` record is always kept so boot-gap
    recovery still has a reference point.
    """

    if retention_days is None:
        retention_days = settings.task_execution_retention_days
    now = ensure_aware((clock or utcnow)())
    cutoff = now - timedelta(days=max(retention_days, 0))

    session = await ensure_session(session_factory)
    async with session as managed_session:
        stmt = delete(TaskExecutionRecord).where(TaskExecutionRecord.recorded_at < cutoff)
        boot = aliased(TaskExecutionRecord)
        latest_boot = (
            select(boot.id)
            .where(boot.task_id == SERVICE_START_TASK_ID)
            .order_by(boot.recorded_at.desc())
            .limit(1)
            .scalar_subquery()
        )
        stmt = stmt.where(
            or_(TaskExecutionRecord.task_id != SERVICE_START_TASK_ID, TaskExecutionRecord.id != latest_boot)
        ).execution_options(synchronize_session=False)
        try:
            result = await managed_session.execute(stmt)
            await managed_session.commit()
        except Exception:
            await managed_session.rollback()
            raise

    summary = {"deleted": int(result.rowcount or 0), "cutoff": cutoff.isoformat(), "retention_days": retention_days}
    logger.bind(summary=summary).info("Pruned task execution records")
    return summary


__all__ = ["prune_task_executions"]
