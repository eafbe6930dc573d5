"""Token ledger: append-only entries with a cached per-user balance."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenlife_api.core.clock import Clock, ensure_aware, utcnow
from tokenlife_api.core.errors import InsufficientBalanceError, RecordNotFoundError, StorageFailureError
from tokenlife_api.models.subscription import Subscription, SubscriptionStatus
from tokenlife_api.models.token_ledger import TokenLedgerEntry, TokenType
from tokenlife_api.models.user import User


@dataclass
class TokenExpirationWindow:
    """Uncompensated subscription credit that will expire in the future."""

    entry_id: UUID
    amount: int
    expires_at: datetime
    subscription_id: UUID | None


@dataclass
class TokenBalance:
    """Pooled balance plus a reporting breakdown of credits per token type."""

    user_id: UUID
    total: int
    breakdown: dict[str, int]
    upcoming_expirations: list[TokenExpirationWindow] = field(default_factory=list)


@dataclass
class ExpiredTokenRecord:
    entry_id: UUID
    user_id: UUID
    amount: int
    compensated_amount: int
    expired_at: datetime


@dataclass
class ExpiringTokenEntry:
    entry_id: UUID
    user_id: UUID
    amount: int
    expires_at: datetime
    subscription_id: UUID | None


@dataclass
class ExpiringTokensSummary:
    window_days: int
    total_tokens: int
    users_affected: int
    entries: list[ExpiringTokenEntry]


@dataclass
class BalanceAudit:
    """Result of replaying a user's ledger against the cached balance."""

    user_id: UUID
    cached_balance: int
    replayed_balance: int
    entry_count: int
    chain_intact: bool
    first_break_sequence: int | None = None

    @property
    def consistent(self) -> bool:
        return self.chain_intact and self.cached_balance == self.replayed_balance


class TokenLedgerService:
    """Record token credits and debits while keeping the cached balance in sync.

    All writes happen inside the caller's transaction: methods flush but never
    commit, so a status transition and its token compensation land together.
    """

    def __init__(self, db_session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._db = db_session
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return ensure_aware(self._clock())

    async def credit(
        self,
        user_id: UUID,
        amount: int,
        token_type: TokenType | str,
        *,
        source: str = "token_addition",
        description: str | None = None,
        expires_at: datetime | None = None,
        subscription_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TokenLedgerEntry:
        """Add tokens to a user's balance.

        SUBSCRIPTION tokens without an explicit ``expires_at`` inherit the period
        end of the user's current active subscription; other types never expire.
        """

        token_type = TokenType(token_type)
        if token_type is TokenType.DEBIT:
            raise ValueError("Credits cannot use the debit token type")
        if amount <= 0:
            raise ValueError("Token credits require a positive amount")

        user = await self._lock_user(user_id)

        if token_type is TokenType.SUBSCRIPTION:
            if expires_at is None:
                active = await self._current_subscription(user_id)
                if active is not None:
                    expires_at = active.current_period_end
                    subscription_id = subscription_id or active.id
        else:
            expires_at = None

        entry = await self._append(
            user,
            token_type=token_type,
            amount=amount,
            source=source,
            description=description or f"Added {amount} {token_type.value} tokens",
            expires_at=expires_at,
            subscription_id=subscription_id,
            metadata=metadata,
        )
        logger.info(
            "Credited tokens",
            user_id=str(user_id),
            amount=amount,
            token_type=token_type.value,
            source=source,
            balance_after=entry.balance_after,
        )
        return entry

    async def debit(
        self,
        user_id: UUID,
        amount: int,
        *,
        source: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TokenLedgerEntry:
        """Consume tokens from the pooled balance or raise ``InsufficientBalanceError``."""

        if amount <= 0:
            raise ValueError("Token debits require a positive amount")

        user = await self._lock_user(user_id)
        available = int(user.token_balance or 0)
        if amount > available:
            logger.warning(
                "Rejected token debit",
                user_id=str(user_id),
                requested=amount,
                available=available,
                source=source,
            )
            raise InsufficientBalanceError(user_id, requested=amount, available=available)

        entry = await self._append(
            user,
            token_type=TokenType.DEBIT,
            amount=-amount,
            source=source,
            description=description or f"Consumed {amount} tokens",
            metadata=metadata,
        )
        logger.info(
            "Debited tokens",
            user_id=str(user_id),
            amount=amount,
            source=source,
            balance_after=entry.balance_after,
        )
        return entry

    async def get_balance(self, user_id: UUID) -> TokenBalance:
        user = await self._get_user(user_id)
        now = self._now()

        stmt_breakdown = (
            select(TokenLedgerEntry.token_type, func.coalesce(func.sum(TokenLedgerEntry.amount), 0))
            .where(TokenLedgerEntry.user_id == user_id, TokenLedgerEntry.amount > 0)
            .group_by(TokenLedgerEntry.token_type)
        )
        breakdown = {token_type.value: 0 for token_type in TokenType if token_type is not TokenType.DEBIT}
        for token_type, total in (await self._db.execute(stmt_breakdown)).all():
            breakdown[TokenType(token_type).value] = int(total or 0)

        stmt_upcoming = (
            select(TokenLedgerEntry)
            .where(
                TokenLedgerEntry.user_id == user_id,
                TokenLedgerEntry.token_type == TokenType.SUBSCRIPTION,
                TokenLedgerEntry.amount > 0,
                TokenLedgerEntry.compensated_at.is_(None),
                TokenLedgerEntry.expires_at.isnot(None),
                TokenLedgerEntry.expires_at > now,
            )
            .order_by(TokenLedgerEntry.expires_at.asc())
        )
        upcoming = [
            TokenExpirationWindow(
                entry_id=entry.id,
                amount=int(entry.amount),
                expires_at=ensure_aware(entry.expires_at),
                subscription_id=entry.subscription_id,
            )
            for entry in (await self._db.execute(stmt_upcoming)).scalars().all()
        ]

        return TokenBalance(
            user_id=user_id,
            total=int(user.token_balance or 0),
            breakdown=breakdown,
            upcoming_expirations=upcoming,
        )

    async def clear_subscription_tokens(self, user_id: UUID, subscription_id: UUID) -> TokenLedgerEntry | None:
        """Offset every outstanding credit granted for a subscription with one entry.

        The compensation always equals the granted sum. Tokens already spent from
        the pooled balance are still counted, so the balance can drop below zero.
        """

        stmt = select(TokenLedgerEntry).where(
            TokenLedgerEntry.user_id == user_id,
            TokenLedgerEntry.subscription_id == subscription_id,
            TokenLedgerEntry.token_type == TokenType.SUBSCRIPTION,
            TokenLedgerEntry.amount > 0,
            TokenLedgerEntry.compensated_at.is_(None),
        )
        credits = list((await self._db.execute(stmt)).scalars().all())
        if not credits:
            return None

        total = sum(int(entry.amount) for entry in credits)
        user = await self._lock_user(user_id)
        now = self._now()
        for entry in credits:
            entry.compensated_at = now

        compensation = await self._append(
            user,
            token_type=TokenType.SUBSCRIPTION,
            amount=-total,
            source="subscription_ended",
            description=f"Removed {total} subscription tokens (subscription ended)",
            subscription_id=subscription_id,
            metadata={
                "removed_tokens": total,
                "compensated_entry_ids": [str(entry.id) for entry in credits],
                "ended_at": now.isoformat(),
            },
        )
        if compensation.balance_after < 0:
            logger.warning(
                "Subscription tokens were spent before clearing",
                user_id=str(user_id),
                subscription_id=str(subscription_id),
                removed=total,
                balance_after=compensation.balance_after,
            )
        logger.info(
            "Cleared subscription tokens",
            user_id=str(user_id),
            subscription_id=str(subscription_id),
            removed=total,
        )
        return compensation

    async def sweep_expired(self) -> list[ExpiredTokenRecord]:
        """Compensate subscription credits whose ``expires_at`` has passed.

        Credits are stamped ``compensated_at`` as they are processed, so a second
        sweep at the same instant finds nothing.
        """

        now = self._now()
        stmt = (
            select(TokenLedgerEntry)
            .where(
                TokenLedgerEntry.token_type == TokenType.SUBSCRIPTION,
                TokenLedgerEntry.amount > 0,
                TokenLedgerEntry.compensated_at.is_(None),
                TokenLedgerEntry.expires_at.isnot(None),
                TokenLedgerEntry.expires_at <= now,
            )
            .order_by(TokenLedgerEntry.expires_at.asc(), TokenLedgerEntry.sequence.asc())
        )
        expired_entries = list((await self._db.execute(stmt)).scalars().all())

        records: list[ExpiredTokenRecord] = []
        for entry in expired_entries:
            user = await self._lock_user(entry.user_id)
            entry.compensated_at = now
            await self._append(
                user,
                token_type=TokenType.SUBSCRIPTION,
                amount=-int(entry.amount),
                source="subscription_expired",
                description="Expired subscription tokens removed",
                subscription_id=entry.subscription_id,
                metadata={
                    "original_entry_id": str(entry.id),
                    "expired_at": now.isoformat(),
                },
            )
            records.append(
                ExpiredTokenRecord(
                    entry_id=entry.id,
                    user_id=entry.user_id,
                    amount=int(entry.amount),
                    compensated_amount=int(entry.amount),
                    expired_at=now,
                )
            )

        await self._flush()
        if records:
            logger.info(
                "Expired subscription tokens",
                entries=len(records),
                tokens=sum(record.compensated_amount for record in records),
            )
        return records

    async def list_transactions(
        self,
        user_id: UUID,
        *,
        limit: int = 50,
        token_types: Sequence[TokenType] | None = None,
    ) -> list[TokenLedgerEntry]:
        stmt = (
            select(TokenLedgerEntry)
            .where(TokenLedgerEntry.user_id == user_id)
            .order_by(TokenLedgerEntry.sequence.desc())
            .limit(limit)
        )
        if token_types:
            stmt = stmt.where(TokenLedgerEntry.token_type.in_(tuple(token_types)))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_expiring_tokens_summary(self, days: int = 7) -> ExpiringTokensSummary:
        """Outstanding subscription credits that expire within ``days``."""

        horizon = self._now() + timedelta(days=days)
        stmt = (
            select(TokenLedgerEntry)
            .where(
                TokenLedgerEntry.token_type == TokenType.SUBSCRIPTION,
                TokenLedgerEntry.amount > 0,
                TokenLedgerEntry.compensated_at.is_(None),
                TokenLedgerEntry.expires_at.isnot(None),
                TokenLedgerEntry.expires_at <= horizon,
            )
            .order_by(TokenLedgerEntry.expires_at.asc())
        )
        entries = [
            ExpiringTokenEntry(
                entry_id=entry.id,
                user_id=entry.user_id,
                amount=int(entry.amount),
                expires_at=ensure_aware(entry.expires_at),
                subscription_id=entry.subscription_id,
            )
            for entry in (await self._db.execute(stmt)).scalars().all()
        ]
        return ExpiringTokensSummary(
            window_days=days,
            total_tokens=sum(entry.amount for entry in entries),
            users_affected=len({entry.user_id for entry in entries}),
            entries=entries,
        )

    async def audit_balance(self, user_id: UUID) -> BalanceAudit:
        """Replay the user's entries in sequence order and compare with the cache."""

        user = await self._get_user(user_id)
        stmt = (
            select(TokenLedgerEntry)
            .where(TokenLedgerEntry.user_id == user_id)
            .order_by(TokenLedgerEntry.sequence.asc())
        )
        entries = (await self._db.execute(stmt)).scalars().all()

        running = 0
        chain_intact = True
        first_break: int | None = None
        for entry in entries:
            link_ok = entry.balance_before == running and entry.balance_after == entry.balance_before + entry.amount
            if not link_ok and chain_intact:
                chain_intact = False
                first_break = entry.sequence
            running += int(entry.amount)

        audit = BalanceAudit(
            user_id=user_id,
            cached_balance=int(user.token_balance or 0),
            replayed_balance=running,
            entry_count=len(entries),
            chain_intact=chain_intact,
            first_break_sequence=first_break,
        )
        if not audit.consistent:
            logger.error(
                "Token ledger balance mismatch",
                user_id=str(user_id),
                cached=audit.cached_balance,
                replayed=audit.replayed_balance,
                first_break_sequence=first_break,
            )
        return audit

    async def _append(
        self,
        user: User,
        *,
        token_type: TokenType,
        amount: int,
        source: str,
        description: str | None = None,
        expires_at: datetime | None = None,
        subscription_id: UUID | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TokenLedgerEntry:
        balance_before = int(user.token_balance or 0)
        balance_after = balance_before + amount
        sequence = int(user.ledger_sequence or 0) + 1

        entry = TokenLedgerEntry(
            user_id=user.id,
            sequence=sequence,
            token_type=token_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            source=source,
            description=description,
            expires_at=expires_at,
            subscription_id=subscription_id,
            metadata_json=metadata or {},
            occurred_at=self._now(),
        )
        self._db.add(entry)
        user.token_balance = balance_after
        user.ledger_sequence = sequence
        await self._flush()
        return entry

    async def _flush(self) -> None:
        try:
            await self._db.flush()
        except SQLAlchemyError as exc:
            logger.exception("Token ledger flush failed", error=str(exc))
            raise StorageFailureError(f"Token ledger write failed: {exc}") from exc

    async def _lock_user(self, user_id: UUID) -> User:
        stmt = (
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = (await self._db.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise RecordNotFoundError("User", user_id)
        return user

    async def _get_user(self, user_id: UUID) -> User:
        stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
        user = (await self._db.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise RecordNotFoundError("User", user_id)
        return user

    async def _current_subscription(self, user_id: UUID) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end > self._now(),
            )
            .order_by(Subscription.current_period_end.desc())
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()


__all__ = [
    "BalanceAudit",
    "ExpiredTokenRecord",
    "ExpiringTokenEntry",
    "ExpiringTokensSummary",
    "TokenBalance",
    "TokenExpirationWindow",
    "TokenLedgerService",
]
