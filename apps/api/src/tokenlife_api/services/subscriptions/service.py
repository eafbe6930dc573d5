"""Subscription creation, plan lookups and token grants."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.core.clock import Clock, ensure_aware, start_of_next_month, utcnow
from tokenlife_api.core.errors import (
    InvalidSubscriptionTransitionError,
    RecordNotFoundError,
    SubscriptionConflictError,
)
from tokenlife_api.core.settings import settings
from tokenlife_api.models.plan import Plan
from tokenlife_api.models.subscription import Subscription, SubscriptionProvider, SubscriptionStatus
from tokenlife_api.models.token_ledger import TokenType
from tokenlife_api.models.user import User
from tokenlife_api.services.activity import ActivityLogService
from tokenlife_api.services.tokens import TokenLedgerService

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELED},
    SubscriptionStatus.EXPIRED: set(),
    SubscriptionStatus.CANCELED: set(),
}

MONTHLY_ALLOCATION_KEY = "monthly_token_allocation"


@dataclass
class MonthlyAllocationResult:
    subscription_id: UUID
    user_id: UUID
    status: str
    tokens: int = 0
    error: str | None = None


class SubscriptionService:
    """Create subscriptions and keep their token grants in the ledger."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: TokenLedgerService | None = None,
        activity: ActivityLogService | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._db = db_session
        self._clock = clock or utcnow
        self._ledger = ledger or TokenLedgerService(db_session, clock=self._clock)
        self._activity = activity or ActivityLogService(db_session, clock=self._clock)

    @property
    def ledger(self) -> TokenLedgerService:
        return self._ledger

    def _now(self) -> datetime:
        return ensure_aware(self._clock())

    async def get_plan(self, plan_id: UUID) -> Plan:
        plan = await self._db.get(Plan, plan_id)
        if plan is None:
            raise RecordNotFoundError("Plan", plan_id)
        return plan

    async def get_plan_by_slug(self, slug: str) -> Plan:
        result = await self._db.execute(select(Plan).where(Plan.slug == slug))
        plan = result.scalar_one_or_none()
        if plan is None:
            raise RecordNotFoundError("Plan", slug)
        return plan

    async def get_or_create_free_plan(self) -> Plan:
        result = await self._db.execute(select(Plan).where(Plan.slug == settings.free_plan_slug))
        plan = result.scalar_one_or_none()
        if plan is not None:
            return plan

        plan = Plan(
            slug=settings.free_plan_slug,
            name=settings.free_plan_name,
            token_quota=settings.free_plan_token_quota,
            duration_days=settings.free_plan_validity_days,
            is_free=True,
            is_active=True,
        )
        self._db.add(plan)
        await self._db.flush()
        logger.info("Created free plan", plan_id=str(plan.id), token_quota=plan.token_quota)
        return plan

    async def get_subscription(self, subscription_id: UUID) -> Subscription:
        subscription = await self._db.get(Subscription, subscription_id)
        if subscription is None:
            raise RecordNotFoundError("Subscription", subscription_id)
        return subscription

    async def get_live_subscription(self, user_id: UUID, *, include_free: bool = True) -> Subscription | None:
        """Return the ACTIVE subscription whose period has not ended yet, if any."""

        stmt = (
            select(Subscription)
            .join(Plan, Plan.id == Subscription.plan_id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end > self._now(),
            )
            .order_by(Subscription.current_period_end.desc())
            .limit(1)
        )
        if not include_free:
            stmt = stmt.where(Plan.is_free.is_(False))
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def list_user_subscriptions(self, user_id: UUID) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.current_period_start.desc())
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def create_subscription(
        self,
        user_id: UUID,
        plan: Plan,
        *,
        provider: SubscriptionProvider,
        days: int,
        cancel_at_period_end: bool = False,
        provider_subscription_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        token_source: str = "subscription_grant",
        monthly_allocation: bool = False,
    ) -> Subscription:
        """Start a subscription and grant the plan quota as SUBSCRIPTION tokens.

        Starting a paid plan supersedes the user's free-plan subscription. With
        ``monthly_allocation`` the first grant expires at month end and later
        months are topped up by ``allocate_monthly_tokens``.
        """

        if days <= 0:
            raise ValueError("Subscriptions require a positive duration")
        if await self._db.get(User, user_id) is None:
            raise RecordNotFoundError("User", user_id)

        if not plan.is_free:
            await self._supersede_free_subscriptions(user_id)

        now = self._now()
        period_end = now + timedelta(days=days)
        subscription_metadata = dict(metadata or {})
        if monthly_allocation:
            subscription_metadata[MONTHLY_ALLOCATION_KEY] = {
                "enabled": True,
                "token_amount": int(plan.token_quota or 0),
                "last_allocated": now.isoformat(),
            }

        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            provider=provider,
            provider_subscription_id=provider_subscription_id,
            current_period_start=now,
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
            metadata_json=subscription_metadata,
        )
        self._db.add(subscription)
        await self._db.flush()

        quota = int(plan.token_quota or 0)
        if quota > 0:
            tokens_expire_at = period_end
            if monthly_allocation:
                tokens_expire_at = min(period_end, start_of_next_month(now))
            await self._ledger.credit(
                user_id,
                quota,
                TokenType.SUBSCRIPTION,
                source=token_source,
                description=f"{plan.name} plan tokens",
                expires_at=tokens_expire_at,
                subscription_id=subscription.id,
                metadata={"plan_id": str(plan.id), "plan_slug": plan.slug},
            )

        logger.info(
            "Created subscription",
            subscription_id=str(subscription.id),
            user_id=str(user_id),
            plan=plan.slug,
            provider=provider.value,
            days=days,
            tokens=quota,
        )
        return subscription

    async def ensure_free_plan_subscription(self, user_id: UUID) -> tuple[Subscription, bool]:
        """Reuse the user's live free subscription or start a new one."""

        free_plan = await self.get_or_create_free_plan()
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.plan_id == free_plan.id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end > self._now(),
            )
            .limit(1)
        )
        existing = (await self._db.execute(stmt)).scalar_one_or_none()
        if existing is not None:
            return existing, False

        subscription = await self.create_subscription(
            user_id,
            free_plan,
            provider=SubscriptionProvider.SYSTEM,
            days=settings.free_plan_validity_days,
            token_source="free_plan_grant",
        )
        self._activity.record(
            user_id,
            "free_plan_activated",
            resource="subscription",
            metadata={"subscription_id": str(subscription.id), "plan_id": str(free_plan.id)},
        )
        return subscription, True

    async def create_trial_subscription(self, user_id: UUID, *, plan_slug: str | None = None) -> Subscription:
        """Grant a one-time trial of the trial plan; tokens expire with the trial."""

        if await self.get_live_subscription(user_id, include_free=False) is not None:
            raise SubscriptionConflictError(f"User {user_id} already has an active subscription")

        stmt = select(Subscription.id).where(
            Subscription.user_id == user_id,
            Subscription.provider == SubscriptionProvider.TRIAL,
        )
        if (await self._db.execute(stmt.limit(1))).first() is not None:
            raise SubscriptionConflictError(f"User {user_id} has already used a trial")

        plan = await self.get_plan_by_slug(plan_slug or settings.trial_plan_slug)
        subscription = await self.create_subscription(
            user_id,
            plan,
            provider=SubscriptionProvider.TRIAL,
            days=settings.trial_days,
            cancel_at_period_end=True,
            provider_subscription_id=f"trial_{user_id}",
            metadata={"trial_days": settings.trial_days},
            token_source="trial_grant",
        )
        self._activity.record(
            user_id,
            "trial_started",
            resource="subscription",
            metadata={"subscription_id": str(subscription.id), "plan_id": str(plan.id), "days": settings.trial_days},
        )
        return subscription

    async def close(
        self,
        subscription: Subscription,
        target_status: SubscriptionStatus,
        *,
        reason: str,
    ) -> int:
        """Move an ACTIVE subscription to a terminal status and clear its tokens.

        Returns the number of tokens removed from the balance.
        """

        current = SubscriptionStatus(subscription.status)
        if target_status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidSubscriptionTransitionError(current.value, target_status.value)

        now = self._now()
        subscription.status = target_status
        if target_status is SubscriptionStatus.CANCELED:
            subscription.canceled_at = now
        metadata = dict(subscription.metadata_json or {})
        metadata["closed_reason"] = reason
        metadata["closed_at"] = now.isoformat()
        subscription.metadata_json = metadata

        compensation = await self._ledger.clear_subscription_tokens(subscription.user_id, subscription.id)
        await self._db.flush()
        removed = -int(compensation.amount) if compensation is not None else 0
        logger.info(
            "Closed subscription",
            subscription_id=str(subscription.id),
            user_id=str(subscription.user_id),
            status=target_status.value,
            reason=reason,
            removed_tokens=removed,
        )
        return removed

    async def end_active_trials(self, user_id: UUID) -> list[Subscription]:
        stmt = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.provider == SubscriptionProvider.TRIAL,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        trials = list((await self._db.execute(stmt)).scalars().all())
        for trial in trials:
            await self.close(trial, SubscriptionStatus.CANCELED, reason="trial_replaced")
        return trials

    async def allocate_monthly_tokens(self) -> list[MonthlyAllocationResult]:
        """Top up live invitation subscriptions once per calendar month.

        Each subscription is committed on its own. A failure rolls back that
        item only and is reported with status ``error``; its month stays open
        for the next run.
        """

        now = self._now()
        stmt = (
            select(Subscription.id, Subscription.user_id)
            .where(
                Subscription.provider == SubscriptionProvider.INVITATION,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end > now,
            )
            .order_by(Subscription.current_period_end.asc())
        )
        candidates = [tuple(row) for row in (await self._db.execute(stmt)).all()]

        results: list[MonthlyAllocationResult] = []
        for subscription_id, user_id in candidates:
            try:
                tokens = await self._allocate_month(subscription_id, now)
                if tokens:
                    await self._db.commit()
            except Exception as exc:
                await self._db.rollback()
                logger.exception(
                    "Monthly token allocation failed",
                    subscription_id=str(subscription_id),
                    user_id=str(user_id),
                    error=str(exc),
                )
                results.append(
                    MonthlyAllocationResult(
                        subscription_id=subscription_id,
                        user_id=user_id,
                        status="error",
                        error=str(exc),
                    )
                )
                continue

            if tokens:
                results.append(
                    MonthlyAllocationResult(
                        subscription_id=subscription_id,
                        user_id=user_id,
                        status="allocated",
                        tokens=tokens,
                    )
                )
        return results

    async def _allocate_month(self, subscription_id: UUID, now: datetime) -> int:
        subscription = await self.get_subscription(subscription_id)
        metadata = dict(subscription.metadata_json or {})
        allocation = dict(metadata.get(MONTHLY_ALLOCATION_KEY) or {})
        if not allocation.get("enabled") or _allocated_this_month(allocation.get("last_allocated"), now):
            return 0

        token_amount = int(allocation.get("token_amount") or 0)
        if token_amount <= 0:
            return 0

        period_end = ensure_aware(subscription.current_period_end)
        await self._ledger.credit(
            subscription.user_id,
            token_amount,
            TokenType.SUBSCRIPTION,
            source="monthly_allocation",
            description="Monthly subscription token allocation",
            expires_at=min(period_end, start_of_next_month(now)),
            subscription_id=subscription.id,
            metadata={"allocation_month": now.strftime("%Y-%m")},
        )
        allocation["last_allocated"] = now.isoformat()
        metadata[MONTHLY_ALLOCATION_KEY] = allocation
        subscription.metadata_json = metadata
        await self._db.flush()
        return token_amount

    async def _supersede_free_subscriptions(self, user_id: UUID) -> None:
        stmt = (
            select(Subscription)
            .join(Plan, Plan.id == Subscription.plan_id)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Plan.is_free.is_(True),
            )
        )
        for subscription in (await self._db.execute(stmt)).scalars().all():
            await self.close(subscription, SubscriptionStatus.CANCELED, reason="superseded_by_paid_plan")
            self._activity.record(
                user_id,
                "free_plan_superseded",
                resource="subscription",
                metadata={"subscription_id": str(subscription.id)},
            )


def _allocated_this_month(last_allocated: Any, now: datetime) -> bool:
    if not isinstance(last_allocated, str):
        return False
    try:
        allocated_at = ensure_aware(datetime.fromisoformat(last_allocated))
    except ValueError:
        return False
    return (allocated_at.year, allocated_at.month) == (now.year, now.month)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "MONTHLY_ALLOCATION_KEY",
    "MonthlyAllocationResult",
    "SubscriptionService",
]
