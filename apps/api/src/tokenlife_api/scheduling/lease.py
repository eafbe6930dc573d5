"""Storage-backed per-job lease for scheduled runs.

A lease narrows the window in which two instances (for example during a rolling
deploy) both run the same job. It is a time-bounded row, not consensus: a
holder that outlives ``ttl_seconds`` can be overtaken.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from tokenlife_api.core.clock import Clock, ensure_aware, utcnow
from tokenlife_api.db.session import SessionFactory, ensure_session
from tokenlife_api.models.task_execution import SchedulerLease


class SchedulerLeaseManager:
    """Acquire the single lease row kept per job id; leases lapse after ``ttl_seconds``."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        owner: str,
        ttl_seconds: int,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.owner = owner
        self.ttl_seconds = ttl_seconds
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return ensure_aware(self._clock())

    async def acquire(self, job_id: str) -> bool:
        now = self._now()
        session = await ensure_session(self._session_factory)
        async with session as managed_session:
            stmt = select(SchedulerLease).where(SchedulerLease.job_id == job_id).with_for_update()
            lease = (await managed_session.execute(stmt)).scalar_one_or_none()

            if lease is None:
                managed_session.add(
                    SchedulerLease(
                        job_id=job_id,
                        owner=self.owner,
                        locked_until=now + timedelta(seconds=self.ttl_seconds),
                        acquired_at=now,
                    )
                )
                try:
                    await managed_session.commit()
                except IntegrityError:
                    await managed_session.rollback()
                    logger.info("Scheduler lease taken by another instance", job_id=job_id, owner=self.owner)
                    return False
                return True

            if lease.owner != self.owner and ensure_aware(lease.locked_until) > now:
                logger.info(
                    "Scheduler lease held elsewhere",
                    job_id=job_id,
                    holder=lease.owner,
                    locked_until=ensure_aware(lease.locked_until).isoformat(),
                )
                return False

            lease.owner = self.owner
            lease.locked_until = now + timedelta(seconds=self.ttl_seconds)
            lease.acquired_at = now
            await managed_session.commit()
            return True


__all__ = ["SchedulerLeaseManager"]
