"""Subscription expiration sweep and monthly token allocation jobs."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from tokenlife_api.core.clock import Clock
from tokenlife_api.db.session import SessionFactory, ensure_session
from tokenlife_api.services.notifications import NotificationService
from tokenlife_api.services.subscriptions.state_machine import SubscriptionStateMachine


async def run_subscription_expiration_sweep(
    *,
    session_factory: SessionFactory,
    clock: Clock | None = None,
) -> Dict[str, Any]:
    """Expire due subscriptions, clear their tokens and settle each affected user."""

    session = await ensure_session(session_factory)
    async with session as managed_session:
        machine = SubscriptionStateMachine(
            managed_session,
            notifier=NotificationService(managed_session),
            clock=clock,
        )
        results = await machine.process_expired_subscriptions()

    summary = {
        "processed": len(results),
        "expired": sum(1 for result in results if result.status == "expired_and_downgraded"),
        "failed": sum(1 for result in results if result.status == "error"),
        "tokens_removed": sum(result.removed_tokens for result in results),
        "free_plan_fallbacks": sum(1 for result in results if result.fallback_subscription_id is not None),
        "rewards_activated": sum(1 for result in results if result.reconciled_subscription_id is not None),
    }
    logger.bind(summary=summary).info("Subscription expiration sweep completed")
    return summary


async def run_monthly_token_allocation(
    *,
    session_factory: SessionFactory,
    clock: Clock | None = None,
) -> Dict[str, Any]:
    """Top up live invitation subscriptions that have not been allocated this month."""

    session = await ensure_session(session_factory)
    async with session as managed_session:
        machine = SubscriptionStateMachine(managed_session, clock=clock)
        results = await machine.subscriptions.allocate_monthly_tokens()

    summary = {
        "allocated": sum(1 for result in results if result.status == "allocated"),
        "failed": sum(1 for result in results if result.status == "error"),
        "tokens": sum(result.tokens for result in results),
    }
    logger.bind(summary=summary).info("Monthly token allocation completed")
    return summary


__all__ = ["run_monthly_token_allocation", "run_subscription_expiration_sweep"]
