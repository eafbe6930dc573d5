"""Subscription status transitions and the expiration sweep."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.core.clock import Clock, ensure_aware, isoformat, utcnow
from tokenlife_api.core.errors import InvalidSubscriptionTransitionError
from tokenlife_api.models.plan import Plan
from tokenlife_api.models.subscription import Subscription, SubscriptionStatus
from tokenlife_api.services.activity import ActivityLogService
from tokenlife_api.services.invitations.reward_queue import InvitationRewardQueue, ReconcileResult
from tokenlife_api.services.notifications import NotificationSender
from tokenlife_api.services.tokens import TokenLedgerService

from .service import SubscriptionService


@dataclass
class UserSettlement:
    """What happened to a user once they were left without a live paid plan."""

    user_id: UUID
    fallback_subscription_id: UUID | None = None
    fallback_plan_name: str | None = None
    fallback_created: bool = False
    reconciled: ReconcileResult | None = None
    skipped: bool = False


@dataclass
class SubscriptionSweepResult:
    subscription_id: UUID
    user_id: UUID
    status: str
    removed_tokens: int = 0
    fallback_subscription_id: UUID | None = None
    reconciled_subscription_id: UUID | None = None
    error: str | None = None


class SubscriptionStateMachine:
    """Drive ACTIVE subscriptions into EXPIRED or CANCELED and settle the user afterwards.

    Every public operation commits. Notifications are sent only after the
    commit that made the transition durable, and a failed delivery never undoes
    the transition.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        notifier: Optional[NotificationSender] = None,
        clock: Clock | None = None,
    ) -> None:
        self._db = db_session
        self._clock = clock or utcnow
        self._notifier = notifier
        self._activity = ActivityLogService(db_session, clock=self._clock)
        self._ledger = TokenLedgerService(db_session, clock=self._clock)
        self._subscriptions = SubscriptionService(
            db_session, ledger=self._ledger, activity=self._activity, clock=self._clock
        )
        self._reward_queue = InvitationRewardQueue(
            db_session, subscriptions=self._subscriptions, activity=self._activity, clock=self._clock
        )

    @property
    def subscriptions(self) -> SubscriptionService:
        return self._subscriptions

    @property
    def reward_queue(self) -> InvitationRewardQueue:
        return self._reward_queue

    def _now(self) -> datetime:
        return ensure_aware(self._clock())

    async def expire(self, subscription_id: UUID) -> SubscriptionSweepResult:
        subscription = await self._subscriptions.get_subscription(subscription_id)
        plan = await self._db.get(Plan, subscription.plan_id)
        user_id = subscription.user_id
        period_end = isoformat(subscription.current_period_end)

        removed = await self._subscriptions.close(subscription, SubscriptionStatus.EXPIRED, reason="period_ended")
        self._activity.record(
            user_id,
            "subscription_expired",
            resource="subscription",
            metadata={"subscription_id": str(subscription_id), "removed_tokens": removed},
        )
        settlement = await self._settle_user(user_id)
        await self._db.commit()

        await self._notify_expired(user_id, plan.name if plan else None, period_end, removed, settlement)
        return _sweep_result(subscription_id, user_id, removed, settlement)

    async def start_trial(self, user_id: UUID, *, plan_slug: str | None = None) -> Subscription:
        subscription = await self._subscriptions.create_trial_subscription(user_id, plan_slug=plan_slug)
        plan = await self._db.get(Plan, subscription.plan_id)
        days = (ensure_aware(subscription.current_period_end) - ensure_aware(subscription.current_period_start)).days
        await self._db.commit()

        await self._notify(
            user_id,
            "trial_started",
            {
                "plan_name": plan.name if plan else None,
                "days": days,
                "period_end": isoformat(subscription.current_period_end),
                "tokens_granted": int(plan.token_quota or 0) if plan else 0,
            },
        )
        return subscription

    async def cancel(self, subscription_id: UUID, *, at_period_end: bool = False) -> Subscription:
        """Cancel now (tokens removed, user settled) or flag the subscription to lapse."""

        subscription = await self._subscriptions.get_subscription(subscription_id)
        current = SubscriptionStatus(subscription.status)
        if current is not SubscriptionStatus.ACTIVE:
            raise InvalidSubscriptionTransitionError(current.value, SubscriptionStatus.CANCELED.value)

        plan = await self._db.get(Plan, subscription.plan_id)
        user_id = subscription.user_id
        period_end = isoformat(subscription.current_period_end)

        if at_period_end:
            subscription.cancel_at_period_end = True
            self._activity.record(
                user_id,
                "subscription_cancel_scheduled",
                resource="subscription",
                metadata={"subscription_id": str(subscription_id), "period_end": period_end},
            )
            removed = 0
        else:
            removed = await self._subscriptions.close(subscription, SubscriptionStatus.CANCELED, reason="canceled")
            self._activity.record(
                user_id,
                "subscription_canceled",
                resource="subscription",
                metadata={"subscription_id": str(subscription_id), "removed_tokens": removed},
            )
            if plan is None or not plan.is_free:
                await self._settle_user(user_id)

        await self._db.commit()
        logger.info(
            "Canceled subscription",
            subscription_id=str(subscription_id),
            user_id=str(user_id),
            at_period_end=at_period_end,
            removed_tokens=removed,
        )
        await self._notify(
            user_id,
            "subscription_canceled",
            {
                "plan_name": plan.name if plan else None,
                "at_period_end": at_period_end,
                "period_end": period_end,
                "removed_tokens": removed,
            },
        )
        return subscription

    async def reactivate(self, subscription_id: UUID) -> Subscription:
        """Undo a scheduled cancellation while the subscription is still ACTIVE."""

        subscription = await self._subscriptions.get_subscription(subscription_id)
        current = SubscriptionStatus(subscription.status)
        if current is not SubscriptionStatus.ACTIVE:
            raise InvalidSubscriptionTransitionError(current.value, SubscriptionStatus.ACTIVE.value)

        subscription.cancel_at_period_end = False
        self._activity.record(
            subscription.user_id,
            "subscription_reactivated",
            resource="subscription",
            metadata={"subscription_id": str(subscription_id)},
        )
        await self._db.commit()
        logger.info("Reactivated subscription", subscription_id=str(subscription_id))
        return subscription

    async def process_expired_subscriptions(self) -> list[SubscriptionSweepResult]:
        """Expire every ACTIVE subscription whose period has ended.

        Each subscription is committed on its own so a failure rolls back only
        that item. Users are settled once, with their last due subscription in
        the batch; when that item fails, settlement runs on its own after the
        user's last item that did expire. Notifications go out after the batch.
        """

        now = self._now()
        stmt = (
            select(Subscription.id, Subscription.user_id, Subscription.plan_id, Subscription.current_period_end)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end <= now,
            )
            .order_by(Subscription.current_period_end.asc())
        )
        due = [tuple(row) for row in (await self._db.execute(stmt)).all()]
        if not due:
            return []

        last_index_by_user: dict[UUID, int] = {}
        for index, (_, user_id, _, _) in enumerate(due):
            last_index_by_user[user_id] = index

        results: list[SubscriptionSweepResult] = []
        notices: list[tuple[SubscriptionSweepResult, str | None, str | None]] = []
        settlements: dict[UUID, UserSettlement] = {}
        last_success: dict[UUID, SubscriptionSweepResult] = {}

        for index, (subscription_id, user_id, plan_id, period_end) in enumerate(due):
            is_last = last_index_by_user[user_id] == index
            try:
                subscription = await self._subscriptions.get_subscription(subscription_id)
                plan = await self._db.get(Plan, plan_id)
                plan_name = plan.name if plan else None
                removed = await self._subscriptions.close(
                    subscription, SubscriptionStatus.EXPIRED, reason="period_ended"
                )
                self._activity.record(
                    user_id,
                    "subscription_expired",
                    resource="subscription",
                    metadata={
                        "subscription_id": str(subscription_id),
                        "period_end": isoformat(period_end),
                        "removed_tokens": removed,
                    },
                )
                settlement = await self._settle_user(user_id) if is_last else None
                await self._db.commit()
            except Exception as exc:
                await self._db.rollback()
                logger.exception(
                    "Failed to expire subscription",
                    subscription_id=str(subscription_id),
                    user_id=str(user_id),
                    error=str(exc),
                )
                results.append(
                    SubscriptionSweepResult(
                        subscription_id=subscription_id,
                        user_id=user_id,
                        status="error",
                        error=str(exc),
                    )
                )
                previous = last_success.get(user_id)
                if is_last and previous is not None:
                    settlement = await self._settle_separately(user_id)
                    if settlement is not None:
                        _apply_settlement(previous, settlement)
                        settlements[previous.subscription_id] = settlement
                continue

            result = _sweep_result(subscription_id, user_id, removed, settlement)
            results.append(result)
            last_success[user_id] = result
            if settlement is not None:
                settlements[subscription_id] = settlement
            notices.append((result, plan_name, isoformat(period_end)))

        for result, plan_name, period_end in notices:
            await self._notify_expired(
                result.user_id,
                plan_name,
                period_end,
                result.removed_tokens,
                settlements.get(result.subscription_id),
            )

        expired = sum(1 for result in results if result.status != "error")
        logger.info(
            "Processed expired subscriptions",
            due=len(due),
            expired=expired,
            failed=len(results) - expired,
        )
        return results

    async def _settle_separately(self, user_id: UUID) -> UserSettlement | None:
        try:
            settlement = await self._settle_user(user_id)
            await self._db.commit()
        except Exception as exc:
            await self._db.rollback()
            logger.exception("Failed to settle user after expiration", user_id=str(user_id), error=str(exc))
            return None
        return settlement

    async def _settle_user(self, user_id: UUID) -> UserSettlement:
        """Reconcile queued rewards, or fall back to the free plan when none apply."""

        settlement = UserSettlement(user_id=user_id)
        if await self._subscriptions.get_live_subscription(user_id, include_free=False) is not None:
            settlement.skipped = True
            return settlement

        reconciled = await self._reward_queue.reconcile(user_id)
        if reconciled is not None:
            settlement.reconciled = reconciled
            return settlement

        fallback, created = await self._subscriptions.ensure_free_plan_subscription(user_id)
        free_plan = await self._db.get(Plan, fallback.plan_id)
        settlement.fallback_subscription_id = fallback.id
        settlement.fallback_plan_name = free_plan.name if free_plan else None
        settlement.fallback_created = created
        return settlement

    async def _notify_expired(
        self,
        user_id: UUID,
        plan_name: str | None,
        period_end: str | None,
        removed: int,
        settlement: UserSettlement | None,
    ) -> None:
        data: dict[str, Any] = {
            "plan_name": plan_name,
            "period_end": period_end,
            "removed_tokens": removed,
        }
        if settlement is not None and settlement.fallback_subscription_id is not None:
            data["fallback_plan_name"] = settlement.fallback_plan_name
        if settlement is not None and settlement.reconciled is not None:
            data["reward_days"] = settlement.reconciled.total_days
        await self._notify(user_id, "subscription_expired", data)

    async def _notify(self, user_id: UUID, template: str, data: dict[str, Any]) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.send(user_id, template, data)
        except Exception as exc:
            logger.warning(
                "Lifecycle notification failed",
                user_id=str(user_id),
                template=template,
                error=str(exc),
            )


def _apply_settlement(result: SubscriptionSweepResult, settlement: UserSettlement) -> None:
    result.fallback_subscription_id = settlement.fallback_subscription_id
    if settlement.reconciled is not None:
        result.reconciled_subscription_id = settlement.reconciled.subscription_id


def _sweep_result(
    subscription_id: UUID,
    user_id: UUID,
    removed: int,
    settlement: UserSettlement | None,
) -> SubscriptionSweepResult:
    result = SubscriptionSweepResult(
        subscription_id=subscription_id,
        user_id=user_id,
        status="expired_and_downgraded",
        removed_tokens=removed,
    )
    if settlement is not None:
        _apply_settlement(result, settlement)
    return result


__all__ = ["SubscriptionStateMachine", "SubscriptionSweepResult", "UserSettlement"]
