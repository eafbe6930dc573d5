from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.core.settings import settings
from tokenlife_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok", "environment": settings.environment}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except SQLAlchemyError as exc:
        logger.warning("Database readiness check failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        status = "error"

    scheduler = getattr(request.app.state, "task_scheduler", None)
    if settings.task_scheduler_enabled and scheduler is not None:
        running = bool(getattr(scheduler, "is_running", False))
        scheduler_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        detail = None if running else "Task scheduler not running"
        snapshot = scheduler.metrics.snapshot()
        failing_jobs = [
            job_id
            for job_id, job in snapshot.jobs.items()
            if job.totals.get("consecutive_failures", 0) > 0
        ]
        if failing_jobs:
            scheduler_status = "error"
            detail = f"Jobs failing: {', '.join(sorted(failing_jobs))}"
            status = "error"
        elif not running:
            status = "degraded" if status != "error" else status
        components["task_scheduler"] = ComponentStatus(status=scheduler_status, detail=detail)
    else:
        components["task_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Task scheduler disabled via settings",
        )

    recovery_worker = getattr(request.app.state, "task_recovery_worker", None)
    if settings.task_scheduler_enabled and settings.task_recovery_enabled and recovery_worker is not None:
        summary = recovery_worker.last_summary
        if summary is None:
            components["task_recovery"] = ComponentStatus(status="starting", detail="Recovery pass pending")
        elif summary.get("failed"):
            components["task_recovery"] = ComponentStatus(
                status="degraded",
                detail=f"{summary['failed']} job(s) failed recovery",
            )
            status = "degraded" if status == "ready" else status
        else:
            components["task_recovery"] = ComponentStatus(
                status="ready",
                detail=f"Recovered {summary.get('recovered', 0)} of {summary.get('checked', 0)} job(s)",
            )
    else:
        components["task_recovery"] = ComponentStatus(
            status="disabled",
            detail="Task recovery disabled via settings",
        )

    return ReadinessPayload(status=status, components=components)
