"""Admin endpoints driving subscription transitions."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.api.dependencies.security import require_admin_api_key
from tokenlife_api.api.errors import http_error_from
from tokenlife_api.core.errors import TokenLifecycleError
from tokenlife_api.db.session import get_session
from tokenlife_api.models.subscription import Subscription, SubscriptionProvider, SubscriptionStatus
from tokenlife_api.services.notifications import NotificationService
from tokenlife_api.services.subscriptions.state_machine import SubscriptionStateMachine


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"], dependencies=[Depends(require_admin_api_key)])


class SubscriptionResponse(BaseModel):
    id: UUID
    userId: UUID
    planId: UUID
    status: str
    provider: str
    currentPeriodStart: datetime
    currentPeriodEnd: datetime
    cancelAtPeriodEnd: bool
    canceledAt: Optional[datetime]


class SweepResultResponse(BaseModel):
    subscriptionId: UUID
    userId: UUID
    status: str
    removedTokens: int
    fallbackSubscriptionId: Optional[UUID]
    reconciledSubscriptionId: Optional[UUID]
    error: Optional[str]


class SweepResponse(BaseModel):
    processed: int
    expired: int
    failed: int
    results: List[SweepResultResponse]


class CancelRequest(BaseModel):
    atPeriodEnd: bool = Field(False, description="Let the subscription lapse at period end instead of now")


class TrialRequest(BaseModel):
    planSlug: Optional[str] = Field(None, description="Override the configured trial plan")


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        userId=subscription.user_id,
        planId=subscription.plan_id,
        status=SubscriptionStatus(subscription.status).value,
        provider=SubscriptionProvider(subscription.provider).value,
        currentPeriodStart=subscription.current_period_start,
        currentPeriodEnd=subscription.current_period_end,
        cancelAtPeriodEnd=bool(subscription.cancel_at_period_end),
        canceledAt=subscription.canceled_at,
    )


def _state_machine(db: AsyncSession) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(db, notifier=NotificationService(db))


@router.post("/process-expired", response_model=SweepResponse)
async def process_expired_subscriptions(db: AsyncSession = Depends(get_session)) -> SweepResponse:
    results = await _state_machine(db).process_expired_subscriptions()
    failed = sum(1 for result in results if result.status == "error")
    return SweepResponse(
        processed=len(results),
        expired=len(results) - failed,
        failed=failed,
        results=[
            SweepResultResponse(
                subscriptionId=result.subscription_id,
                userId=result.user_id,
                status=result.status,
                removedTokens=result.removed_tokens,
                fallbackSubscriptionId=result.fallback_subscription_id,
                reconciledSubscriptionId=result.reconciled_subscription_id,
                error=result.error,
            )
            for result in results
        ],
    )


@router.get("/users/{user_id}", response_model=List[SubscriptionResponse])
async def list_user_subscriptions(user_id: UUID, db: AsyncSession = Depends(get_session)) -> List[SubscriptionResponse]:
    subscriptions = await _state_machine(db).subscriptions.list_user_subscriptions(user_id)
    return [_subscription_response(subscription) for subscription in subscriptions]


@router.post("/users/{user_id}/trial", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def start_trial(
    user_id: UUID,
    payload: TrialRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> SubscriptionResponse:
    try:
        subscription = await _state_machine(db).start_trial(
            user_id,
            plan_slug=payload.planSlug if payload else None,
        )
    except TokenLifecycleError as exc:
        await db.rollback()
        raise http_error_from(exc) from exc
    return _subscription_response(subscription)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: UUID,
    payload: CancelRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> SubscriptionResponse:
    try:
        subscription = await _state_machine(db).cancel(
            subscription_id,
            at_period_end=payload.atPeriodEnd if payload else False,
        )
    except TokenLifecycleError as exc:
        await db.rollback()
        raise http_error_from(exc) from exc
    return _subscription_response(subscription)


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(subscription_id: UUID, db: AsyncSession = Depends(get_session)) -> SubscriptionResponse:
    try:
        subscription = await _state_machine(db).reactivate(subscription_id)
    except TokenLifecycleError as exc:
        await db.rollback()
        raise http_error_from(exc) from exc
    return _subscription_response(subscription)
