"""Admin endpoints for token balances and ledger entries."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.api.dependencies.security import require_admin_api_key
from tokenlife_api.api.errors import http_error_from
from tokenlife_api.core.errors import TokenLifecycleError
from tokenlife_api.core.settings import settings
from tokenlife_api.db.session import get_session
from tokenlife_api.models.token_ledger import TokenLedgerEntry, TokenType
from tokenlife_api.services.tokens import TokenLedgerService


router = APIRouter(prefix="/tokens", tags=["tokens"], dependencies=[Depends(require_admin_api_key)])


class ExpirationWindowResponse(BaseModel):
    entryId: UUID
    amount: int
    expiresAt: datetime
    subscriptionId: Optional[UUID]


class TokenBalanceResponse(BaseModel):
    userId: UUID
    total: int
    breakdown: dict[str, int]
    upcomingExpirations: List[ExpirationWindowResponse]


class LedgerEntryResponse(BaseModel):
    id: UUID
    sequence: int
    tokenType: str
    amount: int
    balanceBefore: int
    balanceAfter: int
    source: str
    description: Optional[str]
    expiresAt: Optional[datetime]
    subscriptionId: Optional[UUID]
    occurredAt: datetime
    metadata: dict[str, Any]


class CreditRequest(BaseModel):
    amount: int = Field(..., gt=0)
    tokenType: str = Field(TokenType.PURCHASED.value, description="Token type to credit")
    source: str = Field("token_addition", max_length=64)
    description: Optional[str] = None
    expiresAt: Optional[datetime] = Field(None, description="Only honoured for subscription tokens")
    metadata: Optional[dict[str, Any]] = None


class DebitRequest(BaseModel):
    amount: int = Field(..., gt=0)
    source: str = Field(..., max_length=64)
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class ExpiringEntryResponse(BaseModel):
    entryId: UUID
    userId: UUID
    amount: int
    expiresAt: datetime
    subscriptionId: Optional[UUID]


class ExpiringTokensResponse(BaseModel):
    windowDays: int
    totalTokens: int
    usersAffected: int
    entries: List[ExpiringEntryResponse]


def _entry_response(entry: TokenLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        sequence=entry.sequence,
        tokenType=TokenType(entry.token_type).value,
        amount=entry.amount,
        balanceBefore=entry.balance_before,
        balanceAfter=entry.balance_after,
        source=entry.source,
        description=entry.description,
        expiresAt=entry.expires_at,
        subscriptionId=entry.subscription_id,
        occurredAt=entry.occurred_at,
        metadata=dict(entry.metadata_json or {}),
    )


def _parse_token_type(value: str) -> TokenType:
    try:
        return TokenType(value.lower())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unsupported token type: {value}") from exc


@router.get("/users/{user_id}/balance", response_model=TokenBalanceResponse)
async def get_user_balance(user_id: UUID, db: AsyncSession = Depends(get_session)) -> TokenBalanceResponse:
    try:
        balance = await TokenLedgerService(db).get_balance(user_id)
    except TokenLifecycleError as exc:
        raise http_error_from(exc) from exc
    return TokenBalanceResponse(
        userId=balance.user_id,
        total=balance.total,
        breakdown=balance.breakdown,
        upcomingExpirations=[
            ExpirationWindowResponse(
                entryId=window.entry_id,
                amount=window.amount,
                expiresAt=window.expires_at,
                subscriptionId=window.subscription_id,
            )
            for window in balance.upcoming_expirations
        ],
    )


@router.get("/users/{user_id}/transactions", response_model=List[LedgerEntryResponse])
async def list_user_transactions(
    user_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    types: Optional[List[str]] = Query(None, description="Filter by token type"),
    db: AsyncSession = Depends(get_session),
) -> List[LedgerEntryResponse]:
    token_types = [_parse_token_type(value) for value in types] if types else None
    entries = await TokenLedgerService(db).list_transactions(user_id, limit=limit, token_types=token_types)
    return [_entry_response(entry) for entry in entries]


@router.post("/users/{user_id}/credit", response_model=LedgerEntryResponse, status_code=status.HTTP_201_CREATED)
async def credit_tokens(
    user_id: UUID,
    payload: CreditRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerEntryResponse:
    token_type = _parse_token_type(payload.tokenType)
    if token_type is TokenType.DEBIT:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Use the debit endpoint to consume tokens")
    try:
        entry = await TokenLedgerService(db).credit(
            user_id,
            payload.amount,
            token_type,
            source=payload.source,
            description=payload.description,
            expires_at=payload.expiresAt,
            metadata=payload.metadata,
        )
        await db.commit()
    except TokenLifecycleError as exc:
        await db.rollback()
        raise http_error_from(exc) from exc
    return _entry_response(entry)


@router.post("/users/{user_id}/debit", response_model=LedgerEntryResponse, status_code=status.HTTP_201_CREATED)
async def debit_tokens(
    user_id: UUID,
    payload: DebitRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerEntryResponse:
    try:
        entry = await TokenLedgerService(db).debit(
            user_id,
            payload.amount,
            source=payload.source,
            description=payload.description,
            metadata=payload.metadata,
        )
        await db.commit()
    except TokenLifecycleError as exc:
        await db.rollback()
        raise http_error_from(exc) from exc
    return _entry_response(entry)


@router.get("/expiring", response_model=ExpiringTokensResponse)
async def get_expiring_tokens(
    days: int = Query(settings.expiring_tokens_window_days, ge=1, le=365),
    db: AsyncSession = Depends(get_session),
) -> ExpiringTokensResponse:
    summary = await TokenLedgerService(db).get_expiring_tokens_summary(days=days)
    return ExpiringTokensResponse(
        windowDays=summary.window_days,
        totalTokens=summary.total_tokens,
        usersAffected=summary.users_affected,
        entries=[
            ExpiringEntryResponse(
                entryId=entry.entry_id,
                userId=entry.user_id,
                amount=entry.amount,
                expiresAt=entry.expires_at,
                subscriptionId=entry.subscription_id,
            )
            for entry in summary.entries
        ],
    )
