from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from tokenlife_api.core.clock import ensure_aware
from tokenlife_api.jobs.maintenance import prune_task_executions
from tokenlife_api.jobs.subscriptions import run_monthly_token_allocation, run_subscription_expiration_sweep
from tokenlife_api.jobs.tokens import run_token_expiration_sweep
from tokenlife_api.models.subscription import SubscriptionProvider
from tokenlife_api.models.task_execution import SERVICE_START_TASK_ID, TaskExecutionRecord, TaskExecutionStatus
from tokenlife_api.models.token_ledger import TokenType
from tokenlife_api.models.user import User
from tokenlife_api.services.invitations import InvitationRewardQueue
from tokenlife_api.services.subscriptions import SubscriptionService
from tokenlife_api.services.tokens import TokenLedgerService


@pytest.mark.asyncio
async def test_prune_keeps_latest_service_start(session_factory, clock) -> None:
    now = clock()
    seeds = [
        ("nightly", now - timedelta(days=10)),
        ("nightly", now - timedelta(days=1)),
        (SERVICE_START_TASK_ID, now - timedelta(days=20)),
        (SERVICE_START_TASK_ID, now - timedelta(days=15)),
    ]
    async with session_factory() as session:
        for task_id, recorded_at in seeds:
            session.add(
                TaskExecutionRecord(
                    task_id=task_id,
                    status=TaskExecutionStatus.COMPLETED,
                    trigger="schedule",
                    recorded_at=recorded_at,
                    details={},
                )
            )
        await session.commit()

    summary = await prune_task_executions(session_factory=session_factory, clock=clock, retention_days=7)
    assert summary["deleted"] == 2
    assert summary["retention_days"] == 7
    assert summary["cutoff"] == (now - timedelta(days=7)).isoformat()

    async with session_factory() as session:
        remaining = (await session.execute(select(TaskExecutionRecord))).scalars().all()
        ages = sorted((record.task_id, (now - ensure_aware(record.recorded_at)).days) for record in remaining)
        assert ages == [("nightly", 1), (SERVICE_START_TASK_ID, 15)]


@pytest.mark.asyncio
async def test_subscription_sweep_job_reports_settlement(session_factory, make_user, make_plan, clock) -> None:
    lapsed = await make_user("lapsed@example.com")
    rewarded = await make_user("rewarded@example.com")
    pro = await make_plan("pro", token_quota=10_000, duration_days=30)

    clock.set(datetime(2023, 12, 11, tzinfo=timezone.utc))
    async with session_factory() as session:
        subscriptions = SubscriptionService(session, clock=clock)
        for user in (lapsed, rewarded):
            await subscriptions.create_subscription(user.id, pro, provider=SubscriptionProvider.STRIPE, days=30)
        await InvitationRewardQueue(session, clock=clock).enqueue_or_grant(rewarded.id, pro.id, None)
        await session.commit()

    clock.set(datetime(2024, 1, 11, tzinfo=timezone.utc))
    summary = await run_subscription_expiration_sweep(session_factory=session_factory, clock=clock)

    assert summary == {
        "processed": 2,
        "expired": 2,
        "failed": 0,
        "tokens_removed": 20_000,
        "free_plan_fallbacks": 1,
        "rewards_activated": 1,
    }

    async with session_factory() as session:
        assert (await session.get(User, lapsed.id)).token_balance == 1_000
        assert (await session.get(User, rewarded.id)).token_balance == 10_000

    assert (await run_subscription_expiration_sweep(session_factory=session_factory, clock=clock))["processed"] == 0


@pytest.mark.asyncio
async def test_token_sweep_job_summarises_compensations(session_factory, make_user, clock) -> None:
    first = await make_user("first@example.com")
    second = await make_user("second@example.com")

    async with session_factory() as session:
        ledger = TokenLedgerService(session, clock=clock)
        await ledger.credit(first.id, 300, TokenType.SUBSCRIPTION, expires_at=clock() + timedelta(hours=1))
        await ledger.credit(first.id, 200, TokenType.SUBSCRIPTION, expires_at=clock() + timedelta(hours=2))
        await ledger.credit(second.id, 50, TokenType.SUBSCRIPTION, expires_at=clock() + timedelta(hours=1))
        await ledger.credit(second.id, 70, TokenType.PURCHASED)
        await session.commit()

    clock.advance(hours=3)
    summary = await run_token_expiration_sweep(session_factory=session_factory, clock=clock)
    assert summary == {"entries_expired": 3, "tokens_removed": 550, "users_affected": 2}

    again = await run_token_expiration_sweep(session_factory=session_factory, clock=clock)
    assert again == {"entries_expired": 0, "tokens_removed": 0, "users_affected": 0}


@pytest.mark.asyncio
async def test_monthly_allocation_job(session_factory, make_user, make_plan, clock) -> None:
    user = await make_user("monthly-job@example.com")
    pro = await make_plan("pro", token_quota=4_000, duration_days=30)

    clock.set(datetime(2024, 1, 15, tzinfo=timezone.utc))
    async with session_factory() as session:
        await InvitationRewardQueue(session, clock=clock).enqueue_or_grant(user.id, pro.id, None, days=60)
        await session.commit()

    clock.set(datetime(2024, 2, 2, tzinfo=timezone.utc))
    await run_token_expiration_sweep(session_factory=session_factory, clock=clock)
    summary = await run_monthly_token_allocation(session_factory=session_factory, clock=clock)
    assert summary == {"allocated": 1, "failed": 0, "tokens": 4_000}

    assert await run_monthly_token_allocation(session_factory=session_factory, clock=clock) == {
        "allocated": 0,
        "failed": 0,
        "tokens": 0,
    }
