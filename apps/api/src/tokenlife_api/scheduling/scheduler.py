"""Cron scheduler for lifecycle jobs with a persistent execution audit trail."""

from __future__ import annotations

import asyncio
import inspect
import json
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from importlib import import_module
from pathlib import Path
from types import ModuleType
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from zoneinfo import ZoneInfo

from tokenlife_api.core.clock import Clock, ensure_aware, isoformat, utcnow
from tokenlife_api.core.errors import HandlerFailureError, RecordNotFoundError, StorageFailureError
from tokenlife_api.db.session import SessionFactory, ensure_session
from tokenlife_api.models.task_execution import SERVICE_START_TASK_ID, TaskExecutionRecord, TaskExecutionStatus
from tokenlife_api.observability.scheduler import TaskSchedulerMetrics
from tokenlife_api.observability.tracing import get_tracer

from .config import JobDefinition, load_job_definitions
from .lease import SchedulerLeaseManager

Handler = Callable[..., Awaitable[Any]]

TRIGGER_SCHEDULE = "schedule"
TRIGGER_MANUAL = "manual"
TRIGGER_RECOVERY = "recovery"


@dataclass
class RegisteredTask:
    definition: JobDefinition
    handler: Handler


@dataclass
class TaskRunOutcome:
    """Result of one pass through the execution path."""

    job_id: str
    status: str
    trigger: str
    run_id: UUID | None = None
    duration_ms: int | None = None
    summary: Any = None
    error: str | None = None


@dataclass
class TaskExecutionView:
    status: str
    trigger: str
    recorded_at: datetime
    run_id: UUID | None
    duration_ms: int | None
    error_message: str | None
    details: dict[str, Any]

    @classmethod
    def from_record(cls, record: TaskExecutionRecord) -> "TaskExecutionView":
        return cls(
            status=TaskExecutionStatus(record.status).value,
            trigger=record.trigger,
            recorded_at=ensure_aware(record.recorded_at),
            run_id=record.run_id,
            duration_ms=record.duration_ms,
            error_message=record.error_message,
            details=dict(record.details or {}),
        )


@dataclass
class TaskStatus:
    job_id: str
    description: str
    cron: str
    timezone: str
    enabled: bool
    running: bool
    recoverable: bool
    next_run_at: datetime | None
    last_execution: TaskExecutionView | None
    history: list[TaskExecutionView] = field(default_factory=list)
    metrics: dict[str, object] | None = None


class TaskScheduler:
    """Register lifecycle jobs on an APScheduler ``AsyncIOScheduler``.

    Runs of the same job never overlap: a tick that fires while the previous
    run is in flight is recorded as ``skipped``. Every run writes a ``started``
    record followed by ``completed`` or ``error``; handler failures are logged
    and recorded but never stop the scheduler.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        clock: Clock | None = None,
        timezone: str = "UTC",
        metrics: TaskSchedulerMetrics | None = None,
        lease: SchedulerLeaseManager | None = None,
        history_limit: int = 20,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or utcnow
        self._timezone = timezone
        self._metrics = metrics or TaskSchedulerMetrics()
        self._lease = lease
        self._history_limit = history_limit
        self._tasks: dict[str, RegisteredTask] = {}
        self._running: set[str] = set()
        self._inflight: set[asyncio.Task] = set()
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running: bool = False
        self.boot_started_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def session_factory(self) -> SessionFactory:
        return self._session_factory

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def metrics(self) -> TaskSchedulerMetrics:
        return self._metrics

    def _now(self) -> datetime:
        return ensure_aware(self._clock())

    def register(
        self,
        job_id: str,
        cron: str,
        handler: Handler,
        *,
        timezone: str | None = None,
        description: str = "",
        enabled: bool = True,
        kwargs: dict[str, Any] | None = None,
        max_attempts: int = 1,
        base_backoff_seconds: float = 5.0,
        backoff_multiplier: float = 2.0,
        max_backoff_seconds: float = 60.0,
        jitter_seconds: float = 1.0,
        recoverable: bool = True,
        recovery_period_seconds: float | None = None,
        task_path: str | None = None,
    ) -> JobDefinition:
        if job_id == SERVICE_START_TASK_ID:
            raise ValueError(f"{SERVICE_START_TASK_ID!r} is a reserved task id")
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Task {job_id} handler must be an async function")

        definition = JobDefinition(
            id=job_id,
            task=task_path or f"{handler.__module__}.{handler.__qualname__}",
            cron=cron,
            description=description,
            enabled=enabled,
            timezone=timezone,
            kwargs=dict(kwargs or {}),
            max_attempts=max(max_attempts, 1),
            base_backoff_seconds=max(base_backoff_seconds, 0.0),
            backoff_multiplier=max(backoff_multiplier, 1.0),
            max_backoff_seconds=max(max_backoff_seconds, 0.0),
            jitter_seconds=max(jitter_seconds, 0.0),
            recoverable=recoverable,
            recovery_period_seconds=recovery_period_seconds,
        )
        trigger = self.build_trigger(definition)
        self._tasks[job_id] = RegisteredTask(definition=definition, handler=handler)

        if self._scheduler is not None:
            self._add_job(self._scheduler, definition, trigger)
        logger.info("Registered scheduled task", job_id=job_id, task=definition.task, cron=cron, enabled=enabled)
        return definition

    def load_config(self, config_path: Path) -> int:
        """Register every job from a TOML schedule file; returns the number registered."""

        config = load_job_definitions(config_path)
        self._timezone = config.timezone
        for job in config.jobs:
            self.register(
                job.id,
                job.cron,
                self._resolve_callable(job),
                timezone=job.timezone,
                description=job.description,
                enabled=job.enabled,
                kwargs=job.kwargs,
                max_attempts=job.max_attempts,
                base_backoff_seconds=job.base_backoff_seconds,
                backoff_multiplier=job.backoff_multiplier,
                max_backoff_seconds=job.max_backoff_seconds,
                jitter_seconds=job.jitter_seconds,
                recoverable=job.recoverable,
                recovery_period_seconds=job.recovery_period_seconds,
                task_path=job.task,
            )
        return len(config.jobs)

    def build_trigger(self, definition: JobDefinition) -> CronTrigger:
        return CronTrigger.from_crontab(definition.cron, timezone=ZoneInfo(definition.timezone or self._timezone))

    def get_definition(self, job_id: str) -> JobDefinition:
        return self._get_task(job_id).definition

    def job_ids(self) -> list[str]:
        return list(self._tasks)

    async def start(self) -> None:
        """Start timers for every registered job and record the process boot."""

        if self._scheduler is not None:
            return

        scheduler = AsyncIOScheduler(timezone=ZoneInfo(self._timezone))
        for task in self._tasks.values():
            self._add_job(scheduler, task.definition, self.build_trigger(task.definition))
        scheduler.start()

        self._scheduler = scheduler
        self._is_running = True
        self.boot_started_at = self._now()
        await self._record(
            SERVICE_START_TASK_ID,
            TaskExecutionStatus.COMPLETED,
            trigger="boot",
            details={"jobs": sorted(self._tasks)},
        )
        logger.info("Task scheduler started", jobs=len(self._tasks), timezone=self._timezone)

    async def stop(self) -> None:
        """Stop all timers and wait for handlers that are still running."""

        if self._scheduler is None:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        self._is_running = False

        pending = [task for task in self._inflight if not task.done()]
        if pending:
            logger.info("Waiting for in-flight tasks", count=len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Task scheduler stopped")

    async def trigger(self, job_id: str) -> TaskRunOutcome:
        """Run a job now through the scheduled execution path.

        Raises ``HandlerFailureError`` when the handler fails; the failure is
        still written to the audit trail first.
        """

        self._get_task(job_id)
        return await self._execute(job_id, TRIGGER_MANUAL, raise_errors=True)

    async def run_recovery(self, job_id: str, *, gap_seconds: float, strategy: str) -> TaskRunOutcome:
        """Run a job once to make up for a missed window; success is recorded as ``recovered``."""

        self._get_task(job_id)
        return await self._execute(
            job_id,
            TRIGGER_RECOVERY,
            raise_errors=False,
            success_status=TaskExecutionStatus.RECOVERED,
            extra_details={"gap_seconds": round(gap_seconds, 3), "strategy": strategy},
        )

    def enable(self, job_id: str) -> None:
        task = self._get_task(job_id)
        task.definition.enabled = True
        if self._scheduler is not None:
            self._scheduler.resume_job(job_id)
        logger.info("Enabled scheduled task", job_id=job_id)

    def disable(self, job_id: str) -> None:
        task = self._get_task(job_id)
        task.definition.enabled = False
        if self._scheduler is not None:
            self._scheduler.pause_job(job_id)
        logger.info("Disabled scheduled task", job_id=job_id)

    async def get_task_status(self, job_id: str, *, history_limit: int | None = None) -> TaskStatus:
        task = self._get_task(job_id)
        limit = self._history_limit if history_limit is None else history_limit
        history = await self._load_history(job_id, limit=max(limit, 1))
        return self._build_status(task, history if limit else [], history[0] if history else None)

    async def list_tasks(self) -> list[TaskStatus]:
        statuses: list[TaskStatus] = []
        for job_id, task in self._tasks.items():
            history = await self._load_history(job_id, limit=1)
            statuses.append(self._build_status(task, [], history[0] if history else None))
        return statuses

    def health(self) -> dict[str, object]:
        """Return scheduler health metadata suitable for diagnostics."""

        snapshot = self._metrics.snapshot()
        jobs: list[dict[str, object]] = []
        for job_id, task in self._tasks.items():
            job = task.definition
            job_metrics = snapshot.jobs.get(job_id)
            jobs.append(
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "running": job_id in self._running,
                    "max_attempts": job.max_attempts,
                    "backoff": {
                        "base_seconds": job.base_backoff_seconds,
                        "multiplier": job.backoff_multiplier,
                        "max_seconds": job.max_backoff_seconds,
                        "jitter_seconds": job.jitter_seconds,
                    },
                    "metrics": job_metrics.as_dict() if job_metrics else None,
                }
            )

        return {
            "running": self._is_running,
            "configured_jobs": len(self._tasks),
            "boot_started_at": isoformat(self.boot_started_at),
            "lease_owner": self._lease.owner if self._lease else None,
            "totals": snapshot.totals,
            "jobs": jobs,
        }

    def _add_job(self, scheduler: AsyncIOScheduler, definition: JobDefinition, trigger: CronTrigger) -> None:
        # Overlap is detected by the running set so skipped ticks reach the audit trail.
        options: dict[str, Any] = {}
        if not definition.enabled:
            options["next_run_time"] = None
        scheduler.add_job(
            self._scheduled_run,
            trigger=trigger,
            args=[definition.id],
            id=definition.id,
            name=definition.description or definition.id,
            replace_existing=True,
            max_instances=3,
            coalesce=True,
            **options,
        )

    async def _scheduled_run(self, job_id: str) -> None:
        current = asyncio.current_task()
        if current is not None:
            self._inflight.add(current)
        try:
            await self._execute(job_id, TRIGGER_SCHEDULE, raise_errors=False)
        except Exception as exc:
            logger.exception("Scheduled task dispatch failed", job_id=job_id, error=str(exc))
        finally:
            if current is not None:
                self._inflight.discard(current)

    async def _execute(
        self,
        job_id: str,
        trigger: str,
        *,
        raise_errors: bool,
        success_status: TaskExecutionStatus = TaskExecutionStatus.COMPLETED,
        extra_details: dict[str, Any] | None = None,
    ) -> TaskRunOutcome:
        task = self._get_task(job_id)
        if job_id in self._running:
            return await self._skip(job_id, trigger, reason="already_running")

        self._running.add(job_id)
        try:
            if self._lease is not None and trigger == TRIGGER_SCHEDULE:
                if not await self._lease.acquire(job_id):
                    return await self._skip(job_id, trigger, reason="lease_held")

            run_id = uuid4()
            await self._record(job_id, TaskExecutionStatus.STARTED, trigger=trigger, run_id=run_id)
            self._metrics.record_dispatch(job_id)
            started_at = time.perf_counter()

            with get_tracer().start_as_current_span(f"task.{job_id}") as span:
                span.set_attribute("task.id", job_id)
                span.set_attribute("task.trigger", trigger)
                span.set_attribute("task.run_id", str(run_id))
                try:
                    summary, attempts = await self._run_with_retry(task)
                except Exception as exc:
                    duration_ms = int((time.perf_counter() - started_at) * 1000)
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    self._metrics.record_run_failure(
                        job_id,
                        runtime_seconds=duration_ms / 1000,
                        attempts=task.definition.max_attempts,
                        error=str(exc),
                    )
                    await self._record(
                        job_id,
                        TaskExecutionStatus.ERROR,
                        trigger=trigger,
                        run_id=run_id,
                        duration_ms=duration_ms,
                        error_message=str(exc),
                        details=dict(extra_details or {}),
                    )
                    logger.exception(
                        "Scheduled task failed",
                        job_id=job_id,
                        trigger=trigger,
                        run_id=str(run_id),
                        error=str(exc),
                    )
                    if raise_errors:
                        raise HandlerFailureError(job_id, str(exc)) from exc
                    return TaskRunOutcome(
                        job_id=job_id,
                        status=TaskExecutionStatus.ERROR.value,
                        trigger=trigger,
                        run_id=run_id,
                        duration_ms=duration_ms,
                        error=str(exc),
                    )

            duration_ms = int((time.perf_counter() - started_at) * 1000)
            self._metrics.record_success(job_id, runtime_seconds=duration_ms / 1000, attempts=attempts)
            details = dict(extra_details or {})
            details["summary"] = _jsonable(summary)
            await self._record(
                job_id,
                success_status,
                trigger=trigger,
                run_id=run_id,
                duration_ms=duration_ms,
                details=details,
            )
            logger.bind(summary=details["summary"]).info(
                "Scheduled task completed",
                job_id=job_id,
                trigger=trigger,
                run_id=str(run_id),
                attempts=attempts,
                duration_ms=duration_ms,
            )
            return TaskRunOutcome(
                job_id=job_id,
                status=success_status.value,
                trigger=trigger,
                run_id=run_id,
                duration_ms=duration_ms,
                summary=summary,
            )
        finally:
            self._running.discard(job_id)

    async def _run_with_retry(self, task: RegisteredTask) -> tuple[Any, int]:
        job = task.definition
        max_attempts = max(job.max_attempts, 1)
        for attempt in range(1, max_attempts + 1):
            try:
                result = await task.handler(
                    session_factory=self._session_factory,
                    clock=self._clock,
                    **job.kwargs,
                )
            except Exception as exc:
                self._metrics.record_attempt_failure(job.id, attempts=attempt, error=str(exc))
                if attempt >= max_attempts:
                    raise

                delay = job.base_backoff_seconds * (job.backoff_multiplier ** (attempt - 1))
                if job.max_backoff_seconds:
                    delay = min(delay, job.max_backoff_seconds)
                if job.jitter_seconds:
                    delay += random.uniform(0, job.jitter_seconds)
                delay = max(delay, 0.0)
                self._metrics.record_retry(job.id, delay_seconds=delay, attempts=attempt + 1)
                logger.warning(
                    "Scheduled task retrying",
                    job_id=job.id,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=str(exc),
                )
                if delay:
                    await asyncio.sleep(delay)
                continue
            return result, attempt
        raise RuntimeError(f"Task {job.id} exhausted its attempts")  # pragma: no cover

    async def _skip(self, job_id: str, trigger: str, *, reason: str) -> TaskRunOutcome:
        self._metrics.record_skip(job_id)
        await self._record(job_id, TaskExecutionStatus.SKIPPED, trigger=trigger, details={"reason": reason})
        logger.warning("Skipped scheduled task", job_id=job_id, trigger=trigger, reason=reason)
        return TaskRunOutcome(job_id=job_id, status=TaskExecutionStatus.SKIPPED.value, trigger=trigger)

    async def _record(
        self,
        job_id: str,
        status: TaskExecutionStatus,
        *,
        trigger: str,
        run_id: UUID | None = None,
        duration_ms: int | None = None,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        session = await ensure_session(self._session_factory)
        async with session as managed_session:
            managed_session.add(
                TaskExecutionRecord(
                    task_id=job_id,
                    run_id=run_id,
                    status=status,
                    trigger=trigger,
                    recorded_at=self._now(),
                    duration_ms=duration_ms,
                    error_message=error_message,
                    details=details or {},
                )
            )
            try:
                await managed_session.commit()
            except SQLAlchemyError as exc:
                await managed_session.rollback()
                logger.exception("Failed to write task execution record", job_id=job_id, status=status.value)
                raise StorageFailureError(f"Task execution record write failed: {exc}") from exc

    async def _load_history(self, job_id: str, *, limit: int) -> list[TaskExecutionView]:
        session = await ensure_session(self._session_factory)
        async with session as managed_session:
            stmt = (
                select(TaskExecutionRecord)
                .where(TaskExecutionRecord.task_id == job_id)
                .order_by(TaskExecutionRecord.recorded_at.desc(), TaskExecutionRecord.created_at.desc())
                .limit(limit)
            )
            records = (await managed_session.execute(stmt)).scalars().all()
            return [TaskExecutionView.from_record(record) for record in records]

    def _build_status(
        self,
        task: RegisteredTask,
        history: list[TaskExecutionView],
        last_execution: TaskExecutionView | None,
    ) -> TaskStatus:
        job = task.definition
        next_run_at: datetime | None = None
        if self._scheduler is not None:
            aps_job = self._scheduler.get_job(job.id)
            if aps_job is not None and aps_job.next_run_time is not None:
                next_run_at = ensure_aware(aps_job.next_run_time)
        metrics = self._metrics.get(job.id)
        return TaskStatus(
            job_id=job.id,
            description=job.description,
            cron=job.cron,
            timezone=job.timezone or self._timezone,
            enabled=job.enabled,
            running=job.id in self._running,
            recoverable=job.recoverable,
            next_run_at=next_run_at,
            last_execution=last_execution,
            history=history,
            metrics=metrics.as_dict() if metrics else None,
        )

    def _get_task(self, job_id: str) -> RegisteredTask:
        task = self._tasks.get(job_id)
        if task is None:
            raise RecordNotFoundError("Task", job_id)
        return task

    def _resolve_callable(self, job: JobDefinition) -> Handler:
        module_name, _, attr = job.task.rpartition(".")
        if not module_name:
            raise ValueError(f"Invalid task path: {job.task}")
        module: ModuleType = import_module(module_name)
        func = getattr(module, attr, None)
        if func is None:
            raise AttributeError(f"Task {job.task} not found")
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Task {job.task} must be an async function")
        return func


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


__all__ = [
    "Handler",
    "RegisteredTask",
    "TaskExecutionView",
    "TaskRunOutcome",
    "TaskScheduler",
    "TaskStatus",
]
