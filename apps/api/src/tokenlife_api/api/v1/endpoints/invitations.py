"""Invitation issuing, acceptance and queued reward views."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.api.dependencies.security import require_admin_api_key
from tokenlife_api.api.errors import http_error_from
from tokenlife_api.core.errors import TokenLifecycleError
from tokenlife_api.db.session import get_session
from tokenlife_api.models.invitation import InvitationStatus
from tokenlife_api.services.invitations import InvitationRewardQueue, InvitationService, RewardGrantOutcome
from tokenlife_api.services.notifications import NotificationService


router = APIRouter(prefix="/invitations", tags=["invitations"], dependencies=[Depends(require_admin_api_key)])


class InvitationCreateRequest(BaseModel):
    inviterId: UUID


class InvitationResponse(BaseModel):
    id: UUID
    inviterId: UUID
    code: str
    status: str


class InvitationAcceptRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=32)
    inviteeId: UUID


class RewardOutcomeResponse(BaseModel):
    userId: UUID
    status: Literal["granted", "queued"]
    days: int
    subscriptionId: Optional[UUID]
    queuedRewardId: Optional[UUID]
    tokensGranted: int


class InvitationAcceptResponse(BaseModel):
    invitationId: UUID
    inviter: RewardOutcomeResponse
    invitee: RewardOutcomeResponse


class QueuedRewardResponse(BaseModel):
    id: UUID
    planId: UUID
    invitationId: Optional[UUID]
    daysToAdd: int
    queuedAt: datetime


class QueuedRewardSummaryResponse(BaseModel):
    userId: UUID
    totalDays: int
    pending: List[QueuedRewardResponse]


def _outcome_response(outcome: RewardGrantOutcome) -> RewardOutcomeResponse:
    return RewardOutcomeResponse(
        userId=outcome.user_id,
        status=outcome.status,
        days=outcome.days,
        subscriptionId=outcome.subscription_id,
        queuedRewardId=outcome.queued_reward_id,
        tokensGranted=outcome.tokens_granted,
    )


@router.post("", response_model=InvitationResponse, status_code=status.HTTP_201_CREATED)
async def create_invitation(
    payload: InvitationCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> InvitationResponse:
    try:
        invitation = await InvitationService(db).create_invitation(payload.inviterId)
    except TokenLifecycleError as exc:
        await db.rollback()
        raise http_error_from(exc) from exc
    return InvitationResponse(
        id=invitation.id,
        inviterId=invitation.inviter_id,
        code=invitation.code,
        status=InvitationStatus(invitation.status).value,
    )


@router.post("/accept", response_model=InvitationAcceptResponse)
async def accept_invitation(
    payload: InvitationAcceptRequest,
    db: AsyncSession = Depends(get_session),
) -> InvitationAcceptResponse:
    service = InvitationService(db, notifier=NotificationService(db))
    try:
        acceptance = await service.accept_invitation(payload.code, payload.inviteeId)
    except TokenLifecycleError as exc:
        await db.rollback()
        raise http_error_from(exc) from exc
    return InvitationAcceptResponse(
        invitationId=acceptance.invitation_id,
        inviter=_outcome_response(acceptance.inviter),
        invitee=_outcome_response(acceptance.invitee),
    )


@router.get("/users/{user_id}/queued-rewards", response_model=QueuedRewardSummaryResponse)
async def get_queued_rewards(user_id: UUID, db: AsyncSession = Depends(get_session)) -> QueuedRewardSummaryResponse:
    summary = await InvitationRewardQueue(db).get_queued_rewards(user_id)
    return QueuedRewardSummaryResponse(
        userId=summary.user_id,
        totalDays=summary.total_days,
        pending=[
            QueuedRewardResponse(
                id=reward.id,
                planId=reward.plan_id,
                invitationId=reward.invitation_id,
                daysToAdd=reward.days_to_add,
                queuedAt=reward.queued_at,
            )
            for reward in summary.pending
        ],
    )
