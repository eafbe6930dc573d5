import pytest
from sqlalchemy import select

from tokenlife_api.models.task_execution import SchedulerLease, TaskExecutionRecord, TaskExecutionStatus
from tokenlife_api.scheduling import SchedulerLeaseManager, TaskScheduler


@pytest.mark.asyncio
async def test_lease_is_exclusive_until_ttl_lapses(session_factory, clock) -> None:
    first = SchedulerLeaseManager(session_factory, owner="api-1", ttl_seconds=300, clock=clock)
    second = SchedulerLeaseManager(session_factory, owner="api-2", ttl_seconds=300, clock=clock)

    assert await first.acquire("sweep") is True
    assert await second.acquire("sweep") is False
    assert await first.acquire("sweep") is True

    clock.advance(seconds=301)
    assert await second.acquire("sweep") is True

    async with session_factory() as session:
        lease = await session.get(SchedulerLease, "sweep")
        assert lease.owner == "api-2"

    assert await first.acquire("other_job") is True


@pytest.mark.asyncio
async def test_scheduled_run_skips_when_lease_is_held(session_factory, clock) -> None:
    holder = SchedulerLeaseManager(session_factory, owner="api-1", ttl_seconds=600, clock=clock)
    assert await holder.acquire("sweep") is True

    calls: list[str] = []

    async def sweep(*, session_factory, clock) -> None:
        calls.append("sweep")

    lease = SchedulerLeaseManager(session_factory, owner="api-2", ttl_seconds=600, clock=clock)
    scheduler = TaskScheduler(session_factory=session_factory, clock=clock, lease=lease)
    scheduler.register("sweep", "*/10 * * * *", sweep)

    await scheduler._scheduled_run("sweep")
    assert calls == []

    manual = await scheduler.trigger("sweep")
    assert manual.status == "completed"
    assert calls == ["sweep"]

    clock.advance(minutes=11)
    await scheduler._scheduled_run("sweep")
    assert calls == ["sweep", "sweep"]

    async with session_factory() as session:
        stmt = select(TaskExecutionRecord).where(TaskExecutionRecord.status == TaskExecutionStatus.SKIPPED)
        skipped = (await session.execute(stmt)).scalars().all()
        assert [record.details for record in skipped] == [{"reason": "lease_held"}]

    assert scheduler.health()["lease_owner"] == "api-2"
