from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from tokenlife_api.core.settings import settings
from tokenlife_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import SchedulerLeaseManager, TaskScheduler
from .workers import TaskRecoveryWorker


APP_VERSION = "0.1.0"
SERVICE_NAME = "tokenlife-api"


def _session_factory():
    return async_session()


def _resolve_schedule_path() -> Path:
    schedule_path = Path(settings.task_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


def build_task_scheduler() -> TaskScheduler:
    lease = None
    if settings.scheduler_lease_enabled:
        lease = SchedulerLeaseManager(
            _session_factory,
            owner=settings.scheduler_instance_id,
            ttl_seconds=settings.scheduler_lease_ttl_seconds,
        )
    return TaskScheduler(
        session_factory=_session_factory,
        timezone=settings.task_scheduler_timezone,
        lease=lease,
        history_limit=settings.task_history_limit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = build_task_scheduler()
    recovery_worker = TaskRecoveryWorker(scheduler, delay_seconds=settings.task_recovery_delay_seconds)
    app.state.task_scheduler = scheduler
    app.state.task_recovery_worker = recovery_worker

    schedule_path = _resolve_schedule_path()
    scheduler_enabled = settings.task_scheduler_enabled
    if scheduler_enabled:
        try:
            scheduler.load_config(schedule_path)
            await scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Task scheduler failed to start", error=str(exc))
        else:
            logger.info("Task scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info("Task scheduler disabled", reason="task_scheduler_enabled is false")

    recovery_enabled = scheduler_enabled and settings.task_recovery_enabled and scheduler.is_running
    if recovery_enabled:
        recovery_worker.start()
    else:
        logger.info("Task recovery disabled", reason="scheduler not running or task_recovery_enabled is false")

    try:
        yield
    finally:
        if recovery_enabled and recovery_worker.is_running:
            await recovery_worker.stop()
        if scheduler.is_running:
            await scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the token lifecycle service."""
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        json_output=settings.log_json,
    )

    app = FastAPI(
        title="Tokenlife API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name=SERVICE_NAME,
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    return app
