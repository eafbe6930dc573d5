from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from tokenlife_api.core.clock import ensure_aware
from tokenlife_api.core.errors import (
    InvalidSubscriptionTransitionError,
    StorageFailureError,
    SubscriptionConflictError,
)
from tokenlife_api.models.activity import UserActivity
from tokenlife_api.models.invitation import QueuedInvitationReward, QueuedRewardStatus
from tokenlife_api.models.plan import Plan
from tokenlife_api.models.subscription import Subscription, SubscriptionProvider, SubscriptionStatus
from tokenlife_api.models.user import User
from tokenlife_api.services.invitations import InvitationRewardQueue
from tokenlife_api.services.notifications import NotificationService
from tokenlife_api.services.subscriptions import SubscriptionService
from tokenlife_api.services.subscriptions.state_machine import SubscriptionStateMachine
from tokenlife_api.services.tokens import TokenLedgerService


async def _start_pro_subscription(session_factory, clock, user, plan, *, ends_on: datetime) -> Subscription:
    clock.set(ends_on - timedelta(days=plan.duration_days))
    async with session_factory() as session:
        subscription = await SubscriptionService(session, clock=clock).create_subscription(
            user.id,
            plan,
            provider=SubscriptionProvider.STRIPE,
            days=plan.duration_days,
            provider_subscription_id="sub_pro",
        )
        await session.commit()
        return subscription


async def _user_subscriptions(session, user_id) -> list[Subscription]:
    stmt = select(Subscription).where(Subscription.user_id == user_id).order_by(Subscription.current_period_start)
    return list((await session.execute(stmt)).scalars().all())


@pytest.mark.asyncio
async def test_expired_pro_subscription_falls_back_to_free_plan(
    session_factory, make_user, make_plan, clock
) -> None:
    user = await make_user("u@example.com", "U")
    pro = await make_plan("pro", name="Pro", token_quota=10_000, duration_days=30)
    pro_subscription = await _start_pro_subscription(
        session_factory, clock, user, pro, ends_on=datetime(2024, 1, 10, tzinfo=timezone.utc)
    )

    clock.set(datetime(2024, 1, 11, tzinfo=timezone.utc))
    async with session_factory() as session:
        notifier = NotificationService(session)
        notifier.use_in_memory_backend()
        machine = SubscriptionStateMachine(session, notifier=notifier, clock=clock)
        results = await machine.process_expired_subscriptions()

        assert len(results) == 1
        result = results[0]
        assert result.subscription_id == pro_subscription.id
        assert result.status == "expired_and_downgraded"
        assert result.removed_tokens == 10_000
        assert result.fallback_subscription_id is not None
        assert result.reconciled_subscription_id is None

        assert [event.template for event in notifier.sent_events] == ["subscription_expired"]
        assert notifier.sent_events[0].data["fallback_plan_name"] == "Free"

    async with session_factory() as session:
        expired, free = await _user_subscriptions(session, user.id)
        assert expired.status == SubscriptionStatus.EXPIRED
        assert expired.metadata_json["closed_reason"] == "period_ended"
        assert free.id == result.fallback_subscription_id
        assert free.status == SubscriptionStatus.ACTIVE
        assert free.provider == SubscriptionProvider.SYSTEM
        free_plan = await session.get(Plan, free.plan_id)
        assert free_plan.is_free
        assert ensure_aware(free.current_period_end) == clock() + timedelta(days=365)

        stored = await session.get(User, user.id)
        assert stored.token_balance == 1_000
        audit = await TokenLedgerService(session, clock=clock).audit_balance(user.id)
        assert audit.consistent

        actions = (
            await session.execute(select(UserActivity.action).where(UserActivity.user_id == user.id))
        ).scalars().all()
        assert "subscription_expired" in actions
        assert "free_plan_activated" in actions


@pytest.mark.asyncio
async def test_sweep_is_idempotent(session_factory, make_user, make_plan, clock) -> None:
    user = await make_user("again@example.com")
    pro = await make_plan("pro", token_quota=10_000, duration_days=30)
    await _start_pro_subscription(session_factory, clock, user, pro, ends_on=datetime(2024, 1, 10, tzinfo=timezone.utc))

    clock.set(datetime(2024, 1, 11, tzinfo=timezone.utc))
    async with session_factory() as session:
        machine = SubscriptionStateMachine(session, clock=clock)
        first = await machine.process_expired_subscriptions()
        second = await machine.process_expired_subscriptions()

        assert len(first) == 1
        assert second == []

    async with session_factory() as session:
        assert len(await _user_subscriptions(session, user.id)) == 2
        stored = await session.get(User, user.id)
        assert stored.token_balance == 1_000


@pytest.mark.asyncio
async def test_sweep_activates_queued_rewards_instead_of_free_plan(
    session_factory, make_user, make_plan, clock
) -> None:
    user = await make_user("queued@example.com")
    pro = await make_plan("pro", token_quota=10_000, duration_days=30)
    await _start_pro_subscription(session_factory, clock, user, pro, ends_on=datetime(2024, 1, 10, tzinfo=timezone.utc))

    async with session_factory() as session:
        queue = InvitationRewardQueue(session, clock=clock)
        outcomes = [
            await queue.enqueue_or_grant(user.id, pro.id, None, days=days) for days in (30, 30, 15)
        ]
        await session.commit()
        assert [outcome.status for outcome in outcomes] == ["queued", "queued", "queued"]

    clock.set(datetime(2024, 1, 11, tzinfo=timezone.utc))
    async with session_factory() as session:
        results = await SubscriptionStateMachine(session, clock=clock).process_expired_subscriptions()

        assert len(results) == 1
        assert results[0].fallback_subscription_id is None
        assert results[0].reconciled_subscription_id is not None

    async with session_factory() as session:
        subscriptions = await _user_subscriptions(session, user.id)
        assert len(subscriptions) == 2
        reward_subscription = subscriptions[-1]
        assert reward_subscription.id == results[0].reconciled_subscription_id
        assert reward_subscription.provider == SubscriptionProvider.INVITATION
        span = ensure_aware(reward_subscription.current_period_end) - ensure_aware(
            reward_subscription.current_period_start
        )
        assert span == timedelta(days=75)

        rewards = (await session.execute(select(QueuedInvitationReward))).scalars().all()
        assert {reward.status for reward in rewards} == {QueuedRewardStatus.PROCESSED}
        assert {reward.subscription_id for reward in rewards} == {reward_subscription.id}

        stored = await session.get(User, user.id)
        assert stored.token_balance == 10_000


@pytest.mark.asyncio
async def test_cancel_now_clears_tokens_and_settles_user(session_factory, make_user, make_plan, clock) -> None:
    user = await make_user("cancel@example.com")
    pro = await make_plan("pro", token_quota=5_000, duration_days=30)
    subscription = await _start_pro_subscription(
        session_factory, clock, user, pro, ends_on=datetime(2024, 2, 1, tzinfo=timezone.utc)
    )

    clock.advance(days=1)
    async with session_factory() as session:
        machine = SubscriptionStateMachine(session, clock=clock)
        canceled = await machine.cancel(subscription.id)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.canceled_at is not None

        with pytest.raises(InvalidSubscriptionTransitionError):
            await machine.cancel(subscription.id)
        with pytest.raises(InvalidSubscriptionTransitionError):
            await machine.reactivate(subscription.id)

    async with session_factory() as session:
        subscriptions = await _user_subscriptions(session, user.id)
        assert [sub.status for sub in subscriptions] == [SubscriptionStatus.CANCELED, SubscriptionStatus.ACTIVE]
        stored = await session.get(User, user.id)
        assert stored.token_balance == 1_000


@pytest.mark.asyncio
async def test_cancel_at_period_end_then_reactivate(session_factory, make_user, make_plan, clock) -> None:
    user = await make_user("lapse@example.com")
    pro = await make_plan("pro", token_quota=5_000, duration_days=30)
    subscription = await _start_pro_subscription(
        session_factory, clock, user, pro, ends_on=datetime(2024, 2, 1, tzinfo=timezone.utc)
    )

    async with session_factory() as session:
        machine = SubscriptionStateMachine(session, clock=clock)
        flagged = await machine.cancel(subscription.id, at_period_end=True)
        assert flagged.status == SubscriptionStatus.ACTIVE
        assert flagged.cancel_at_period_end is True

        restored = await machine.reactivate(subscription.id)
        assert restored.cancel_at_period_end is False

    async with session_factory() as session:
        stored = await session.get(User, user.id)
        assert stored.token_balance == 5_000


@pytest.mark.asyncio
async def test_paid_plan_supersedes_free_subscription(session_factory, make_user, make_plan, clock) -> None:
    user = await make_user("upgrade@example.com")
    pro = await make_plan("pro", token_quota=2_000, duration_days=30)

    async with session_factory() as session:
        subscriptions = SubscriptionService(session, clock=clock)
        free, created = await subscriptions.ensure_free_plan_subscription(user.id)
        reused, created_again = await subscriptions.ensure_free_plan_subscription(user.id)
        assert created is True
        assert created_again is False
        assert reused.id == free.id

        clock.advance(hours=1)
        await subscriptions.create_subscription(user.id, pro, provider=SubscriptionProvider.STRIPE, days=30)
        await session.commit()

    async with session_factory() as session:
        free_sub, pro_sub = await _user_subscriptions(session, user.id)
        assert free_sub.status == SubscriptionStatus.CANCELED
        assert free_sub.metadata_json["closed_reason"] == "superseded_by_paid_plan"
        assert pro_sub.status == SubscriptionStatus.ACTIVE
        stored = await session.get(User, user.id)
        assert stored.token_balance == 2_000


@pytest.mark.asyncio
async def test_trial_is_granted_once(session_factory, make_user, make_plan, clock) -> None:
    user = await make_user("trial@example.com")
    await make_plan("pro", name="Pro", token_quota=3_000, duration_days=30)

    async with session_factory() as session:
        notifier = NotificationService(session)
        notifier.use_in_memory_backend()
        machine = SubscriptionStateMachine(session, notifier=notifier, clock=clock)
        trial = await machine.start_trial(user.id)

        assert trial.provider == SubscriptionProvider.TRIAL
        assert trial.cancel_at_period_end is True
        assert ensure_aware(trial.current_period_end) == clock() + timedelta(days=14)
        assert [event.template for event in notifier.sent_events] == ["trial_started"]

        with pytest.raises(SubscriptionConflictError):
            await machine.start_trial(user.id)

    clock.advance(days=15)
    async with session_factory() as session:
        machine = SubscriptionStateMachine(session, clock=clock)
        await machine.process_expired_subscriptions()
        with pytest.raises(SubscriptionConflictError):
            await machine.start_trial(user.id)


@pytest.mark.asyncio
async def test_monthly_allocation_tops_up_invitation_subscriptions(
    session_factory, make_user, make_plan, clock
) -> None:
    user = await make_user("monthly@example.com")
    pro = await make_plan("pro", token_quota=4_000, duration_days=30)

    clock.set(datetime(2024, 1, 15, tzinfo=timezone.utc))
    async with session_factory() as session:
        outcome = await InvitationRewardQueue(session, clock=clock).enqueue_or_grant(user.id, pro.id, None, days=60)
        await session.commit()
        assert outcome.status == "granted"

        balance = await TokenLedgerService(session, clock=clock).get_balance(user.id)
        assert balance.upcoming_expirations[0].expires_at == datetime(2024, 2, 1, tzinfo=timezone.utc)

        assert await SubscriptionService(session, clock=clock).allocate_monthly_tokens() == []

    clock.set(datetime(2024, 2, 2, tzinfo=timezone.utc))
    async with session_factory() as session:
        ledger = TokenLedgerService(session, clock=clock)
        await ledger.sweep_expired()
        results = await SubscriptionService(session, ledger=ledger, clock=clock).allocate_monthly_tokens()
        await session.commit()

        assert [result.tokens for result in results] == [4_000]
        stored = await session.get(User, user.id)
        assert stored.token_balance == 4_000

        again = await SubscriptionService(session, clock=clock).allocate_monthly_tokens()
        assert again == []


@pytest.mark.asyncio
async def test_expiration_removes_full_grant_even_after_spending(
    session_factory, make_user, make_plan, clock
) -> None:
    user = await make_user("heavy@example.com")
    pro = await make_plan("pro", token_quota=10_000, duration_days=30)
    await _start_pro_subscription(session_factory, clock, user, pro, ends_on=datetime(2024, 1, 10, tzinfo=timezone.utc))

    async with session_factory() as session:
        await TokenLedgerService(session, clock=clock).debit(user.id, 9_500, source="api_call")
        await session.commit()

    clock.set(datetime(2024, 1, 11, tzinfo=timezone.utc))
    async with session_factory() as session:
        results = await SubscriptionStateMachine(session, clock=clock).process_expired_subscriptions()
        assert results[0].removed_tokens == 10_000

    async with session_factory() as session:
        stored = await session.get(User, user.id)
        assert stored.token_balance == 500 - 10_000 + 1_000
        audit = await TokenLedgerService(session, clock=clock).audit_balance(user.id)
        assert audit.consistent


@pytest.mark.asyncio
async def test_failed_settlement_rolls_back_only_that_user(session_factory, make_user, make_plan, clock) -> None:
    healthy = await make_user("healthy@example.com")
    broken = await make_user("broken@example.com")
    pro = await make_plan("pro", token_quota=10_000, duration_days=30)
    healthy_sub = await _start_pro_subscription(
        session_factory, clock, healthy, pro, ends_on=datetime(2024, 1, 9, tzinfo=timezone.utc)
    )
    broken_sub = await _start_pro_subscription(
        session_factory, clock, broken, pro, ends_on=datetime(2024, 1, 10, tzinfo=timezone.utc)
    )

    async with session_factory() as session:
        session.add(
            QueuedInvitationReward(
                user_id=broken.id,
                plan_id=uuid4(),
                days_to_add=30,
                status=QueuedRewardStatus.PENDING,
                queued_at=clock(),
            )
        )
        await session.commit()

    clock.set(datetime(2024, 1, 11, tzinfo=timezone.utc))
    async with session_factory() as session:
        results = await SubscriptionStateMachine(session, clock=clock).process_expired_subscriptions()

    by_subscription = {result.subscription_id: result for result in results}
    assert by_subscription[healthy_sub.id].status == "expired_and_downgraded"
    assert by_subscription[healthy_sub.id].fallback_subscription_id is not None
    assert by_subscription[broken_sub.id].status == "error"
    assert "Plan" in by_subscription[broken_sub.id].error

    async with session_factory() as session:
        untouched = await session.get(Subscription, broken_sub.id)
        assert untouched.status == SubscriptionStatus.ACTIVE
        assert (await session.get(User, broken.id)).token_balance == 10_000
        assert len(await _user_subscriptions(session, broken.id)) == 1

        reward = (
            await session.execute(select(QueuedInvitationReward).where(QueuedInvitationReward.user_id == broken.id))
        ).scalar_one()
        assert reward.status == QueuedRewardStatus.PENDING

        assert (await session.get(User, healthy.id)).token_balance == 1_000


@pytest.mark.asyncio
async def test_rewards_reconciled_once_when_two_subscriptions_expire_together(
    session_factory, make_user, make_plan, clock
) -> None:
    user = await make_user("double@example.com")
    pro = await make_plan("pro", token_quota=10_000, duration_days=30)
    await _start_pro_subscription(session_factory, clock, user, pro, ends_on=datetime(2024, 1, 9, tzinfo=timezone.utc))
    await _start_pro_subscription(session_factory, clock, user, pro, ends_on=datetime(2024, 1, 10, tzinfo=timezone.utc))

    async with session_factory() as session:
        queue = InvitationRewardQueue(session, clock=clock)
        for days in (30, 30, 15):
            await queue.enqueue_or_grant(user.id, pro.id, None, days=days)
        await session.commit()

    clock.set(datetime(2024, 1, 11, tzinfo=timezone.utc))
    async with session_factory() as session:
        results = await SubscriptionStateMachine(session, clock=clock).process_expired_subscriptions()

    assert [result.status for result in results] == ["expired_and_downgraded", "expired_and_downgraded"]
    reconciled = [result.reconciled_subscription_id for result in results if result.reconciled_subscription_id]
    assert len(reconciled) == 1
    assert all(result.fallback_subscription_id is None for result in results)

    async with session_factory() as session:
        live = [sub for sub in await _user_subscriptions(session, user.id) if sub.status == SubscriptionStatus.ACTIVE]
        assert [sub.id for sub in live] == reconciled
        span = ensure_aware(live[0].current_period_end) - ensure_aware(live[0].current_period_start)
        assert span == timedelta(days=75)

        rewards = (await session.execute(select(QueuedInvitationReward))).scalars().all()
        assert {reward.subscription_id for reward in rewards} == set(reconciled)
        assert (await session.get(User, user.id)).token_balance == 10_000


@pytest.mark.asyncio
async def test_user_is_settled_when_last_due_subscription_fails(
    session_factory, make_user, make_plan, clock, monkeypatch
) -> None:
    user = await make_user("halfway@example.com")
    pro = await make_plan("pro", token_quota=10_000, duration_days=30)
    first = await _start_pro_subscription(
        session_factory, clock, user, pro, ends_on=datetime(2024, 1, 9, tzinfo=timezone.utc)
    )
    last = await _start_pro_subscription(
        session_factory, clock, user, pro, ends_on=datetime(2024, 1, 10, tzinfo=timezone.utc)
    )

    original_close = SubscriptionService.close

    async def close_or_fail(self, subscription, target_status, *, reason):
        if subscription.id == last.id:
            raise StorageFailureError("subscription row unavailable")
        return await original_close(self, subscription, target_status, reason=reason)

    monkeypatch.setattr(SubscriptionService, "close", close_or_fail)

    clock.set(datetime(2024, 1, 11, tzinfo=timezone.utc))
    async with session_factory() as session:
        notifier = NotificationService(session)
        notifier.use_in_memory_backend()
        results = await SubscriptionStateMachine(
            session, notifier=notifier, clock=clock
        ).process_expired_subscriptions()

        assert [(result.subscription_id, result.status) for result in results] == [
            (first.id, "expired_and_downgraded"),
            (last.id, "error"),
        ]
        assert results[0].fallback_subscription_id is not None
        assert [event.data.get("fallback_plan_name") for event in notifier.sent_events] == ["Free"]

    async with session_factory() as session:
        statuses = {sub.id: sub.status for sub in await _user_subscriptions(session, user.id)}
        assert statuses[first.id] == SubscriptionStatus.EXPIRED
        assert statuses[last.id] == SubscriptionStatus.ACTIVE
        assert statuses[results[0].fallback_subscription_id] == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_monthly_allocation_isolates_failed_subscription(
    session_factory, make_user, make_plan, clock, monkeypatch
) -> None:
    steady = await make_user("steady@example.com")
    flaky = await make_user("flaky@example.com")
    pro = await make_plan("pro", token_quota=4_000, duration_days=30)

    clock.set(datetime(2024, 1, 15, tzinfo=timezone.utc))
    async with session_factory() as session:
        queue = InvitationRewardQueue(session, clock=clock)
        for user in (steady, flaky):
            await queue.enqueue_or_grant(user.id, pro.id, None, days=60)
        await session.commit()

    clock.set(datetime(2024, 2, 2, tzinfo=timezone.utc))
    async with session_factory() as session:
        await TokenLedgerService(session, clock=clock).sweep_expired()
        await session.commit()

    original_credit = TokenLedgerService.credit

    async def credit_or_fail(self, user_id, amount, token_type, **kwargs):
        if user_id == flaky.id:
            raise StorageFailureError("ledger unavailable")
        return await original_credit(self, user_id, amount, token_type, **kwargs)

    monkeypatch.setattr(TokenLedgerService, "credit", credit_or_fail)

    async with session_factory() as session:
        results = await SubscriptionService(session, clock=clock).allocate_monthly_tokens()

    by_user = {result.user_id: result for result in results}
    assert by_user[steady.id].status == "allocated"
    assert by_user[steady.id].tokens == 4_000
    assert by_user[flaky.id].status == "error"
    assert by_user[flaky.id].error == "ledger unavailable"

    monkeypatch.setattr(TokenLedgerService, "credit", original_credit)

    async with session_factory() as session:
        retry = await SubscriptionService(session, clock=clock).allocate_monthly_tokens()
        assert [(result.user_id, result.status) for result in retry] == [(flaky.id, "allocated")]

        assert (await session.get(User, steady.id)).token_balance == 4_000
        assert (await session.get(User, flaky.id)).token_balance == 4_000
