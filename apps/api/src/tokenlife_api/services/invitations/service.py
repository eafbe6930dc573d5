"""Invitation issuing and acceptance."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.core.clock import Clock, ensure_aware, utcnow
from tokenlife_api.core.errors import InvitationError, RecordNotFoundError
from tokenlife_api.core.settings import settings
from tokenlife_api.models.invitation import Invitation, InvitationStatus
from tokenlife_api.models.user import User
from tokenlife_api.services.activity import ActivityLogService
from tokenlife_api.services.notifications import NotificationSender
from tokenlife_api.services.subscriptions.service import SubscriptionService

from .reward_queue import InvitationRewardQueue, RewardGrantOutcome

_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_CODE_LENGTH = 10


@dataclass
class InvitationAcceptance:
    invitation_id: UUID
    inviter: RewardGrantOutcome
    invitee: RewardGrantOutcome


def generate_invitation_code(length: int = _CODE_LENGTH) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


class InvitationService:
    """Issue invitation codes and reward both parties when one is accepted."""

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
        self._subscriptions = SubscriptionService(db_session, activity=self._activity, clock=self._clock)
        self._reward_queue = InvitationRewardQueue(
            db_session, subscriptions=self._subscriptions, activity=self._activity, clock=self._clock
        )

    async def create_invitation(self, inviter_id: UUID) -> Invitation:
        if await self._db.get(User, inviter_id) is None:
            raise RecordNotFoundError("User", inviter_id)

        invitation = Invitation(
            inviter_id=inviter_id,
            code=generate_invitation_code(),
            status=InvitationStatus.PENDING,
        )
        self._db.add(invitation)
        self._activity.record(
            inviter_id,
            "invitation_created",
            resource="invitation",
            metadata={"code": invitation.code},
        )
        await self._db.commit()
        logger.info("Created invitation", inviter_id=str(inviter_id), invitation_id=str(invitation.id))
        return invitation

    async def accept_invitation(self, code: str, invitee_id: UUID) -> InvitationAcceptance:
        """Accept a pending code and grant or queue the reward for both users."""

        result = await self._db.execute(select(Invitation).where(Invitation.code == code.strip().upper()))
        invitation = result.scalar_one_or_none()
        if invitation is None:
            raise RecordNotFoundError("Invitation", code)
        if InvitationStatus(invitation.status) is not InvitationStatus.PENDING:
            raise InvitationError(f"Invitation {code} is {InvitationStatus(invitation.status).value}")
        if invitation.inviter_id == invitee_id:
            raise InvitationError("Users cannot accept their own invitation")
        if await self._db.get(User, invitee_id) is None:
            raise RecordNotFoundError("User", invitee_id)

        already_invited = await self._db.execute(
            select(Invitation.id).where(
                Invitation.invitee_id == invitee_id,
                Invitation.status == InvitationStatus.ACCEPTED,
            )
        )
        if already_invited.first() is not None:
            raise InvitationError(f"User {invitee_id} has already accepted an invitation")

        plan = await self._subscriptions.get_plan_by_slug(settings.invitation_plan_slug)
        invitation_id = invitation.id
        inviter_id = invitation.inviter_id

        invitation.status = InvitationStatus.ACCEPTED
        invitation.invitee_id = invitee_id
        invitation.accepted_at = ensure_aware(self._clock())

        await self._subscriptions.end_active_trials(invitee_id)
        invitee_outcome = await self._reward_queue.enqueue_or_grant(invitee_id, plan.id, invitation_id)
        inviter_outcome = await self._reward_queue.enqueue_or_grant(inviter_id, plan.id, invitation_id)

        self._activity.record(
            invitee_id,
            "invitation_accepted",
            resource="invitation",
            metadata={"invitation_id": str(invitation_id), "inviter_id": str(inviter_id)},
        )
        await self._db.commit()
        logger.info(
            "Accepted invitation",
            invitation_id=str(invitation_id),
            inviter_id=str(inviter_id),
            invitee_id=str(invitee_id),
            inviter_outcome=inviter_outcome.status,
            invitee_outcome=invitee_outcome.status,
        )

        for outcome in (invitee_outcome, inviter_outcome):
            await self._notify_outcome(outcome, plan.name)

        return InvitationAcceptance(invitation_id=invitation_id, inviter=inviter_outcome, invitee=invitee_outcome)

    async def _notify_outcome(self, outcome: RewardGrantOutcome, plan_name: str) -> None:
        if self._notifier is None:
            return
        if outcome.status == "granted":
            template = "invitation_subscription_granted"
            data = {"plan_name": plan_name, "days": outcome.days, "tokens_granted": outcome.tokens_granted}
        else:
            summary = await self._reward_queue.get_queued_rewards(outcome.user_id)
            template = "invitation_reward_queued"
            data = {"plan_name": plan_name, "days_to_add": outcome.days, "total_days": summary.total_days}
        try:
            await self._notifier.send(outcome.user_id, template, data)
        except Exception as exc:
            logger.warning(
                "Invitation notification failed",
                user_id=str(outcome.user_id),
                template=template,
                error=str(exc),
            )


__all__ = ["InvitationAcceptance", "InvitationService", "generate_invitation_code"]
