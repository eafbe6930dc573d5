"""Missed-run detection after downtime.

For every recoverable job the planner estimates when it last ran by trying a
fixed, ordered list of strategies. When the gap since that estimate is longer
than the job's cron period, the job is run once through the scheduler and the
run is recorded as ``recovered``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Sequence

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.core.clock import Clock, ensure_aware, utcnow
from tokenlife_api.db.session import ensure_session
from tokenlife_api.models.subscription import Subscription, SubscriptionStatus
from tokenlife_api.models.task_execution import SERVICE_START_TASK_ID, TaskExecutionRecord, TaskExecutionStatus

from .config import JobDefinition
from .scheduler import TaskScheduler

SUBSCRIPTION_SWEEP_JOB_ID = "subscription_expiration_sweep"

EstimateFn = Callable[[AsyncSession, str, datetime, datetime | None], Awaitable[datetime | None]]


@dataclass(frozen=True)
class RecoveryStrategy:
    """Named way of estimating a job's last run; ``job_ids`` limits where it applies."""

    name: str
    estimate: EstimateFn
    job_ids: frozenset[str] | None = None

    def applies_to(self, job_id: str) -> bool:
        return self.job_ids is None or job_id in self.job_ids


@dataclass
class RecoveryDecision:
    job_id: str
    strategy: str | None
    estimated_last_run: datetime | None
    gap_seconds: float | None
    period_seconds: float
    should_run: bool


async def _last_execution_record(
    session: AsyncSession, job_id: str, now: datetime, boot_started_at: datetime | None
) -> datetime | None:
    stmt = select(func.max(TaskExecutionRecord.recorded_at)).where(
        TaskExecutionRecord.task_id == job_id,
        TaskExecutionRecord.status.in_(
            (TaskExecutionStatus.STARTED, TaskExecutionStatus.COMPLETED, TaskExecutionStatus.RECOVERED)
        ),
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _previous_service_start(
    session: AsyncSession, job_id: str, now: datetime, boot_started_at: datetime | None
) -> datetime | None:
    cutoff = boot_started_at or now
    stmt = select(func.max(TaskExecutionRecord.recorded_at)).where(
        TaskExecutionRecord.task_id == SERVICE_START_TASK_ID,
        TaskExecutionRecord.recorded_at < cutoff,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _oldest_overdue_subscription(
    session: AsyncSession, job_id: str, now: datetime, boot_started_at: datetime | None
) -> datetime | None:
    stmt = select(func.min(Subscription.current_period_end)).where(
        Subscription.status == SubscriptionStatus.ACTIVE,
        Subscription.current_period_end <= now,
    )
    oldest = (await session.execute(stmt)).scalar_one_or_none()
    if oldest is None:
        return None
    return ensure_aware(oldest) - timedelta(days=1)


DEFAULT_STRATEGIES: tuple[RecoveryStrategy, ...] = (
    RecoveryStrategy("last_execution_record", _last_execution_record),
    RecoveryStrategy("previous_service_start", _previous_service_start),
    RecoveryStrategy(
        "oldest_overdue_subscription",
        _oldest_overdue_subscription,
        job_ids=frozenset({SUBSCRIPTION_SWEEP_JOB_ID}),
    ),
)


def cron_period_seconds(scheduler: TaskScheduler, definition: JobDefinition, now: datetime) -> float:
    """Interval between two consecutive fire times, or the explicit override."""

    if definition.recovery_period_seconds:
        return float(definition.recovery_period_seconds)
    trigger = scheduler.build_trigger(definition)
    first = trigger.get_next_fire_time(None, now)
    if first is None:
        return float("inf")
    second = trigger.get_next_fire_time(first, first + timedelta(seconds=1))
    if second is None:
        return float("inf")
    return (second - first).total_seconds()


class TaskRecoveryPlanner:
    """Decide which jobs missed a window and run each of them once."""

    def __init__(
        self,
        scheduler: TaskScheduler,
        *,
        clock: Clock | None = None,
        strategies: Sequence[RecoveryStrategy] = DEFAULT_STRATEGIES,
    ) -> None:
        self._scheduler = scheduler
        self._clock = clock or scheduler.clock or utcnow
        self._strategies = tuple(strategies)

    async def estimate_last_run(self, job_id: str) -> tuple[datetime, str] | None:
        now = ensure_aware(self._clock())
        session = await ensure_session(self._scheduler.session_factory)
        async with session as managed_session:
            for strategy in self._strategies:
                if not strategy.applies_to(job_id):
                    continue
                estimate = await strategy.estimate(managed_session, job_id, now, self._scheduler.boot_started_at)
                if estimate is not None:
                    return ensure_aware(estimate), strategy.name
        return None

    async def plan(self, job_id: str) -> RecoveryDecision:
        definition = self._scheduler.get_definition(job_id)
        now = ensure_aware(self._clock())
        period = cron_period_seconds(self._scheduler, definition, now)

        estimate = await self.estimate_last_run(job_id)
        if estimate is None:
            return RecoveryDecision(
                job_id=job_id,
                strategy=None,
                estimated_last_run=None,
                gap_seconds=None,
                period_seconds=period,
                should_run=False,
            )

        last_run, strategy = estimate
        gap = (now - last_run).total_seconds()
        return RecoveryDecision(
            job_id=job_id,
            strategy=strategy,
            estimated_last_run=last_run,
            gap_seconds=gap,
            period_seconds=period,
            should_run=gap > period,
        )

    async def recover_missed_runs(self) -> dict[str, int]:
        """Check every enabled, recoverable job; a failure on one job never stops the rest."""

        summary = {"checked": 0, "recovered": 0, "skipped": 0, "failed": 0}
        for job_id in self._scheduler.job_ids():
            definition = self._scheduler.get_definition(job_id)
            if not definition.recoverable or not definition.enabled:
                continue
            summary["checked"] += 1
            try:
                decision = await self.plan(job_id)
                if not decision.should_run:
                    summary["skipped"] += 1
                    logger.info(
                        "No missed run detected",
                        job_id=job_id,
                        strategy=decision.strategy,
                        gap_seconds=decision.gap_seconds,
                        period_seconds=decision.period_seconds,
                    )
                    continue

                logger.warning(
                    "Missed run detected; recovering",
                    job_id=job_id,
                    strategy=decision.strategy,
                    gap_seconds=decision.gap_seconds,
                    period_seconds=decision.period_seconds,
                )
                outcome = await self._scheduler.run_recovery(
                    job_id,
                    gap_seconds=decision.gap_seconds or 0.0,
                    strategy=decision.strategy or "unknown",
                )
            except Exception as exc:
                summary["failed"] += 1
                logger.exception("Task recovery failed", job_id=job_id, error=str(exc))
                continue

            if outcome.status == TaskExecutionStatus.RECOVERED.value:
                summary["recovered"] += 1
            elif outcome.status == TaskExecutionStatus.SKIPPED.value:
                summary["skipped"] += 1
            else:
                summary["failed"] += 1
        return summary


__all__ = [
    "DEFAULT_STRATEGIES",
    "RecoveryDecision",
    "RecoveryStrategy",
    "SUBSCRIPTION_SWEEP_JOB_ID",
    "TaskRecoveryPlanner",
    "cron_period_seconds",
]
