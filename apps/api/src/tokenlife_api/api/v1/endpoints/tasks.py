"""Admin endpoints for scheduled lifecycle tasks."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from tokenlife_api.api.dependencies.scheduler import get_task_scheduler
from tokenlife_api.api.dependencies.security import require_admin_api_key
from tokenlife_api.api.errors import http_error_from
from tokenlife_api.core.errors import TokenLifecycleError
from tokenlife_api.scheduling.scheduler import TaskExecutionView, TaskRunOutcome, TaskScheduler, TaskStatus


router = APIRouter(prefix="/tasks", tags=["tasks"], dependencies=[Depends(require_admin_api_key)])


class TaskExecutionResponse(BaseModel):
    status: str
    trigger: str
    recordedAt: datetime
    runId: Optional[UUID]
    durationMs: Optional[int]
    errorMessage: Optional[str]
    details: dict[str, Any]


class TaskStatusResponse(BaseModel):
    id: str
    description: str
    cron: str
    timezone: str
    enabled: bool
    running: bool
    recoverable: bool
    nextRunAt: Optional[datetime]
    lastExecution: Optional[TaskExecutionResponse]
    history: List[TaskExecutionResponse]
    metrics: Optional[dict[str, Any]]


class TaskRunResponse(BaseModel):
    id: str
    status: str
    trigger: str
    runId: Optional[UUID]
    durationMs: Optional[int]
    summary: Any
    error: Optional[str]


def _execution_response(view: TaskExecutionView | None) -> TaskExecutionResponse | None:
    if view is None:
        return None
    return TaskExecutionResponse(
        status=view.status,
        trigger=view.trigger,
        recordedAt=view.recorded_at,
        runId=view.run_id,
        durationMs=view.duration_ms,
        errorMessage=view.error_message,
        details=view.details,
    )


def _status_response(task: TaskStatus) -> TaskStatusResponse:
    return TaskStatusResponse(
        id=task.job_id,
        description=task.description,
        cron=task.cron,
        timezone=task.timezone,
        enabled=task.enabled,
        running=task.running,
        recoverable=task.recoverable,
        nextRunAt=task.next_run_at,
        lastExecution=_execution_response(task.last_execution),
        history=[_execution_response(view) for view in task.history],
        metrics=task.metrics,
    )


def _run_response(outcome: TaskRunOutcome) -> TaskRunResponse:
    return TaskRunResponse(
        id=outcome.job_id,
        status=outcome.status,
        trigger=outcome.trigger,
        runId=outcome.run_id,
        durationMs=outcome.duration_ms,
        summary=outcome.summary,
        error=outcome.error,
    )


@router.get("", response_model=List[TaskStatusResponse])
async def list_tasks(scheduler: TaskScheduler = Depends(get_task_scheduler)) -> List[TaskStatusResponse]:
    return [_status_response(task) for task in await scheduler.list_tasks()]


@router.get("/health")
async def scheduler_health(scheduler: TaskScheduler = Depends(get_task_scheduler)) -> dict[str, object]:
    return scheduler.health()


@router.get("/{task_id}", response_model=TaskStatusResponse)
async def get_task(
    task_id: str,
    history: int | None = Query(None, ge=0, le=200),
    scheduler: TaskScheduler = Depends(get_task_scheduler),
) -> TaskStatusResponse:
    try:
        status = await scheduler.get_task_status(task_id, history_limit=history)
    except TokenLifecycleError as exc:
        raise http_error_from(exc) from exc
    return _status_response(status)


@router.post("/{task_id}/trigger", response_model=TaskRunResponse)
async def trigger_task(task_id: str, scheduler: TaskScheduler = Depends(get_task_scheduler)) -> TaskRunResponse:
    try:
        outcome = await scheduler.trigger(task_id)
    except TokenLifecycleError as exc:
        raise http_error_from(exc) from exc
    return _run_response(outcome)


@router.post("/{task_id}/enable", response_model=TaskStatusResponse)
async def enable_task(task_id: str, scheduler: TaskScheduler = Depends(get_task_scheduler)) -> TaskStatusResponse:
    try:
        scheduler.enable(task_id)
        status = await scheduler.get_task_status(task_id, history_limit=0)
    except TokenLifecycleError as exc:
        raise http_error_from(exc) from exc
    return _status_response(status)


@router.post("/{task_id}/disable", response_model=TaskStatusResponse)
async def disable_task(task_id: str, scheduler: TaskScheduler = Depends(get_task_scheduler)) -> TaskStatusResponse:
    try:
        scheduler.disable(task_id)
        status = await scheduler.get_task_status(task_id, history_limit=0)
    except TokenLifecycleError as exc:
        raise http_error_from(exc) from exc
    return _status_response(status)
