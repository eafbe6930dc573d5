"""Deferred invitation rewards.

A recipient who already holds a live paid subscription cannot receive a second
one, so the reward is parked in ``queued_invitation_rewards`` and merged into a
single invitation subscription once the recipient falls back to no live plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.core.clock import Clock, ensure_aware, utcnow
from tokenlife_api.core.settings import settings
from tokenlife_api.models.invitation import QueuedInvitationReward, QueuedRewardStatus
from tokenlife_api.models.subscription import Subscription, SubscriptionProvider
from tokenlife_api.services.activity import ActivityLogService
from tokenlife_api.services.subscriptions.service import SubscriptionService


@dataclass
class RewardGrantOutcome:
    status: Literal["granted", "queued"]
    user_id: UUID
    plan_id: UUID
    days: int
    subscription_id: UUID | None = None
    queued_reward_id: UUID | None = None
    tokens_granted: int = 0


@dataclass
class ReconcileResult:
    """Subscription created from a batch of queued rewards."""

    user_id: UUID
    subscription_id: UUID
    plan_id: UUID
    total_days: int
    rewards_processed: int
    tokens_granted: int


@dataclass
class QueuedRewardSummary:
    user_id: UUID
    pending: list[QueuedInvitationReward] = field(default_factory=list)

    @property
    def total_days(self) -> int:
        return sum(int(reward.days_to_add) for reward in self.pending)


class InvitationRewardQueue:
    """Grant invitation rewards now or queue them behind a live subscription."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        subscriptions: SubscriptionService | None = None,
        activity: ActivityLogService | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._db = db_session
        self._clock = clock or utcnow
        self._activity = activity or ActivityLogService(db_session, clock=self._clock)
        self._subscriptions = subscriptions or SubscriptionService(
            db_session, activity=self._activity, clock=self._clock
        )

    def _now(self) -> datetime:
        return ensure_aware(self._clock())

    async def enqueue_or_grant(
        self,
        user_id: UUID,
        plan_id: UUID,
        invitation_id: UUID | None,
        *,
        days: int | None = None,
    ) -> RewardGrantOutcome:
        days = days or settings.invitation_reward_days
        plan = await self._subscriptions.get_plan(plan_id)

        live = await self._subscriptions.get_live_subscription(user_id, include_free=False)
        if live is None:
            subscription = await self._grant_invitation_subscription(
                user_id,
                plan_id,
                days=days,
                metadata={"invitation_id": str(invitation_id) if invitation_id else None},
            )
            return RewardGrantOutcome(
                status="granted",
                user_id=user_id,
                plan_id=plan_id,
                days=days,
                subscription_id=subscription.id,
                tokens_granted=int(plan.token_quota or 0),
            )

        reward = QueuedInvitationReward(
            user_id=user_id,
            plan_id=plan_id,
            invitation_id=invitation_id,
            days_to_add=days,
            status=QueuedRewardStatus.PENDING,
            queued_at=self._now(),
        )
        self._db.add(reward)
        await self._db.flush()

        self._activity.record(
            user_id,
            "invitation_reward_queued",
            resource="invitation",
            metadata={
                "queued_reward_id": str(reward.id),
                "invitation_id": str(invitation_id) if invitation_id else None,
                "days_to_add": days,
                "blocking_subscription_id": str(live.id),
            },
        )
        logger.info(
            "Queued invitation reward",
            user_id=str(user_id),
            reward_id=str(reward.id),
            days=days,
            blocking_subscription_id=str(live.id),
        )
        return RewardGrantOutcome(
            status="queued",
            user_id=user_id,
            plan_id=plan_id,
            days=days,
            queued_reward_id=reward.id,
        )

    async def reconcile(self, user_id: UUID) -> ReconcileResult | None:
        """Merge every pending reward into one subscription when the user has no live plan."""

        if await self._subscriptions.get_live_subscription(user_id, include_free=False) is not None:
            return None

        pending = await self._pending_rewards(user_id)
        if not pending:
            return None

        total_days = sum(int(reward.days_to_add) for reward in pending)
        plan_id = pending[0].plan_id
        plan = await self._subscriptions.get_plan(plan_id)
        subscription = await self._grant_invitation_subscription(
            user_id,
            plan_id,
            days=total_days,
            metadata={
                "queued_reward_ids": [str(reward.id) for reward in pending],
                "total_days": total_days,
            },
        )

        now = self._now()
        for reward in pending:
            reward.status = QueuedRewardStatus.PROCESSED
            reward.processed_at = now
            reward.subscription_id = subscription.id
        await self._db.flush()

        self._activity.record(
            user_id,
            "queued_invitation_rewards_activated",
            resource="subscription",
            metadata={
                "subscription_id": str(subscription.id),
                "rewards_processed": len(pending),
                "total_days": total_days,
            },
        )
        logger.info(
            "Activated queued invitation rewards",
            user_id=str(user_id),
            subscription_id=str(subscription.id),
            rewards=len(pending),
            total_days=total_days,
        )
        return ReconcileResult(
            user_id=user_id,
            subscription_id=subscription.id,
            plan_id=plan_id,
            total_days=total_days,
            rewards_processed=len(pending),
            tokens_granted=int(plan.token_quota or 0),
        )

    async def get_queued_rewards(self, user_id: UUID) -> QueuedRewardSummary:
        return QueuedRewardSummary(user_id=user_id, pending=await self._pending_rewards(user_id))

    async def users_with_pending_rewards(self) -> list[UUID]:
        stmt = (
            select(QueuedInvitationReward.user_id)
            .where(QueuedInvitationReward.status == QueuedRewardStatus.PENDING)
            .distinct()
        )
        return [row[0] for row in (await self._db.execute(stmt)).all()]

    async def _pending_rewards(self, user_id: UUID) -> list[QueuedInvitationReward]:
        stmt = (
            select(QueuedInvitationReward)
            .where(
                QueuedInvitationReward.user_id == user_id,
                QueuedInvitationReward.status == QueuedRewardStatus.PENDING,
            )
            .order_by(QueuedInvitationReward.queued_at.asc(), QueuedInvitationReward.created_at.asc())
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def _grant_invitation_subscription(
        self,
        user_id: UUID,
        plan_id: UUID,
        *,
        days: int,
        metadata: dict,
    ) -> Subscription:
        plan = await self._subscriptions.get_plan(plan_id)
        return await self._subscriptions.create_subscription(
            user_id,
            plan,
            provider=SubscriptionProvider.INVITATION,
            days=days,
            cancel_at_period_end=True,
            metadata=metadata,
            token_source="invitation_reward",
            monthly_allocation=True,
        )


__all__ = [
    "InvitationRewardQueue",
    "QueuedRewardSummary",
    "ReconcileResult",
    "RewardGrantOutcome",
]
