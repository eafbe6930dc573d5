"""Safety net for invitation rewards left queued."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from tokenlife_api.core.clock import Clock
from tokenlife_api.db.session import SessionFactory, ensure_session
from tokenlife_api.services.invitations import InvitationRewardQueue


async def run_queued_reward_reconciliation(
    *,
    session_factory: SessionFactory,
    clock: Clock | None = None,
) -> Dict[str, Any]:
    """Activate queued rewards for users who no longer hold a live paid subscription.

    The expiration sweep reconciles users as they fall back; this job catches
    users whose subscription ended through another path.
    """

    session = await ensure_session(session_factory)
    async with session as managed_session:
        queue = InvitationRewardQueue(managed_session, clock=clock)
        user_ids = await queue.users_with_pending_rewards()

        activated = 0
        failed = 0
        for user_id in user_ids:
            try:
                result = await queue.reconcile(user_id)
                await managed_session.commit()
            except Exception as exc:
                await managed_session.rollback()
                failed += 1
                logger.exception("Queued reward reconciliation failed", user_id=str(user_id), error=str(exc))
                continue
            if result is not None:
                activated += 1

    summary = {"users_checked": len(user_ids), "activated": activated, "failed": failed}
    logger.bind(summary=summary).info("Queued reward reconciliation completed")
    return summary


__all__ = ["run_queued_reward_reconciliation"]
