import asyncio
from pathlib import Path

import pytest
from sqlalchemy import select

from tokenlife_api.core.errors import HandlerFailureError, RecordNotFoundError
from tokenlife_api.models.task_execution import SERVICE_START_TASK_ID, TaskExecutionRecord, TaskExecutionStatus
from tokenlife_api.scheduling import TaskScheduler, load_job_definitions


async def _records(session_factory, task_id: str) -> list[TaskExecutionRecord]:
    async with session_factory() as session:
        stmt = select(TaskExecutionRecord).where(TaskExecutionRecord.task_id == task_id)
        return list((await session.execute(stmt)).scalars().all())


def _statuses(records: list[TaskExecutionRecord]) -> list[TaskExecutionStatus]:
    return sorted((TaskExecutionStatus(record.status) for record in records), key=lambda status: status.value)


@pytest.mark.asyncio
async def test_trigger_records_started_and_completed(session_factory, clock) -> None:
    scheduler = TaskScheduler(session_factory=session_factory, clock=clock)
    calls: list[dict] = []

    async def sweep(*, session_factory, clock, batch: int) -> dict:
        calls.append({"batch": batch})
        clock.advance(seconds=2)
        return {"processed": batch}

    scheduler.register("sweep", "0 0 * * *", sweep, kwargs={"batch": 3}, description="Nightly sweep")

    outcome = await scheduler.trigger("sweep")
    assert outcome.status == "completed"
    assert outcome.trigger == "manual"
    assert outcome.summary == {"processed": 3}
    assert calls == [{"batch": 3}]

    records = await _records(session_factory, "sweep")
    assert _statuses(records) == [TaskExecutionStatus.COMPLETED, TaskExecutionStatus.STARTED]
    completed = next(record for record in records if record.status == TaskExecutionStatus.COMPLETED)
    assert completed.details["summary"] == {"processed": 3}
    assert completed.duration_ms is not None
    assert {record.run_id for record in records} == {outcome.run_id}

    status = await scheduler.get_task_status("sweep")
    assert status.description == "Nightly sweep"
    assert status.last_execution.status == "completed"
    assert len(status.history) == 2


@pytest.mark.asyncio
async def test_trigger_failure_is_recorded_and_raised(session_factory, clock) -> None:
    scheduler = TaskScheduler(session_factory=session_factory, clock=clock)

    async def broken(*, session_factory, clock) -> None:
        raise RuntimeError("boom")

    scheduler.register("broken", "*/5 * * * *", broken)

    with pytest.raises(HandlerFailureError) as excinfo:
        await scheduler.trigger("broken")
    assert excinfo.value.job_id == "broken"

    records = await _records(session_factory, "broken")
    assert _statuses(records) == [TaskExecutionStatus.ERROR, TaskExecutionStatus.STARTED]
    error = next(record for record in records if record.status == TaskExecutionStatus.ERROR)
    assert error.error_message == "boom"

    health = scheduler.health()
    assert health["jobs"][0]["metrics"]["totals"]["run_failures"] == 1
    assert health["jobs"][0]["metrics"]["last_error"] == "boom"


@pytest.mark.asyncio
async def test_scheduled_failure_does_not_raise(session_factory, clock) -> None:
    scheduler = TaskScheduler(session_factory=session_factory, clock=clock)

    async def broken(*, session_factory, clock) -> None:
        raise RuntimeError("still boom")

    scheduler.register("broken", "*/5 * * * *", broken)
    await scheduler._scheduled_run("broken")

    records = await _records(session_factory, "broken")
    assert TaskExecutionStatus.ERROR in _statuses(records)


@pytest.mark.asyncio
async def test_retries_until_success(session_factory, clock) -> None:
    scheduler = TaskScheduler(session_factory=session_factory, clock=clock)
    attempts = 0

    async def flaky(*, session_factory, clock) -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("transient")
        return "ok"

    scheduler.register(
        "flaky",
        "0 * * * *",
        flaky,
        max_attempts=3,
        base_backoff_seconds=0.0,
        jitter_seconds=0.0,
    )

    outcome = await scheduler.trigger("flaky")
    assert outcome.status == "completed"
    assert attempts == 2

    totals = scheduler.metrics.snapshot().jobs["flaky"].totals
    assert totals["runs"] == 1
    assert totals["success"] == 1
    assert totals["attempt_failures"] == 1
    assert totals["retries"] == 1
    assert totals["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(session_factory, clock) -> None:
    scheduler = TaskScheduler(session_factory=session_factory, clock=clock)
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(*, session_factory, clock) -> None:
        started.set()
        await release.wait()

    scheduler.register("slow", "* * * * *", slow)

    first = asyncio.create_task(scheduler.trigger("slow"))
    await started.wait()
    assert (await scheduler.get_task_status("slow")).running is True

    second = await scheduler.trigger("slow")
    assert second.status == "skipped"

    release.set()
    assert (await first).status == "completed"

    records = await _records(session_factory, "slow")
    skipped = [record for record in records if record.status == TaskExecutionStatus.SKIPPED]
    assert len(skipped) == 1
    assert skipped[0].details == {"reason": "already_running"}
    assert scheduler.metrics.snapshot().jobs["slow"].totals["skipped"] == 1


@pytest.mark.asyncio
async def test_enable_disable_and_unknown_jobs(session_factory, clock) -> None:
    scheduler = TaskScheduler(session_factory=session_factory, clock=clock)

    async def noop(*, session_factory, clock) -> None:
        return None

    scheduler.register("noop", "0 0 * * *", noop)

    scheduler.disable("noop")
    assert (await scheduler.get_task_status("noop")).enabled is False
    scheduler.enable("noop")
    assert (await scheduler.get_task_status("noop")).enabled is True

    with pytest.raises(RecordNotFoundError):
        await scheduler.trigger("missing")
    with pytest.raises(RecordNotFoundError):
        scheduler.disable("missing")
    with pytest.raises(RecordNotFoundError):
        await scheduler.get_task_status("missing")


def test_register_rejects_reserved_ids_and_sync_handlers(session_factory, clock) -> None:
    scheduler = TaskScheduler(session_factory=session_factory, clock=clock)

    async def noop(*, session_factory, clock) -> None:
        return None

    def sync_handler(*, session_factory, clock) -> None:
        return None

    with pytest.raises(ValueError):
        scheduler.register(SERVICE_START_TASK_ID, "0 0 * * *", noop)
    with pytest.raises(TypeError):
        scheduler.register("sync", "0 0 * * *", sync_handler)
    with pytest.raises(ValueError):
        scheduler.register("bad_cron", "not a cron", noop)


@pytest.mark.asyncio
async def test_start_records_boot_and_stop_waits(session_factory, clock, tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
timezone = "UTC"

[jobs.token_sweep]
task = "tokenlife_api.jobs.tokens.run_token_expiration_sweep"
cron = "30 0 * * *"
description = "Expire subscription tokens"
max_attempts = 2

[jobs.cleanup]
task = "tokenlife_api.jobs.maintenance.prune_task_executions"
cron = "0 3 * * *"
recoverable = false
enabled = false
"""
    )

    scheduler = TaskScheduler(session_factory=session_factory, clock=clock)
    assert scheduler.load_config(config_path) == 2
    assert scheduler.get_definition("token_sweep").max_attempts == 2
    assert scheduler.get_definition("cleanup").recoverable is False

    await scheduler.start()
    try:
        assert scheduler.is_running
        assert scheduler.boot_started_at == clock()
        token_status = await scheduler.get_task_status("token_sweep")
        assert token_status.next_run_at is not None
        cleanup_status = await scheduler.get_task_status("cleanup")
        assert cleanup_status.enabled is False
        assert cleanup_status.next_run_at is None

        health = scheduler.health()
        assert health["running"] is True
        assert health["configured_jobs"] == 2
    finally:
        await scheduler.stop()

    assert not scheduler.is_running
    boots = await _records(session_factory, SERVICE_START_TASK_ID)
    assert len(boots) == 1
    assert boots[0].trigger == "boot"
    assert sorted(boots[0].details["jobs"]) == ["cleanup", "token_sweep"]


def test_load_job_definitions_parses_retry_and_recovery_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
timezone = "Europe/Berlin"

[jobs.sweep]
task = "tokenlife_api.jobs.subscriptions.run_subscription_expiration_sweep"
cron = "0 0 * * *"
max_attempts = 4
base_backoff_seconds = 1.5
backoff_multiplier = 3
max_backoff_seconds = 10
jitter_seconds = 0
recovery_period_seconds = 3600

[jobs.invalid]
cron = "0 0 * * *"
"""
    )

    config = load_job_definitions(config_path)
    assert config.timezone == "Europe/Berlin"
    assert [job.id for job in config.jobs] == ["sweep"]
    job = config.jobs[0]
    assert job.max_attempts == 4
    assert job.base_backoff_seconds == 1.5
    assert job.backoff_multiplier == 3.0
    assert job.max_backoff_seconds == 10.0
    assert job.jitter_seconds == 0.0
    assert job.recovery_period_seconds == 3600.0


def test_load_job_definitions_requires_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")
