"""Token ledger entries."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from tokenlife_api.db.base import Base


class TokenType(str, Enum):
    """Token tags recorded on ledger entries."""

    SUBSCRIPTION = "subscription"
    PURCHASED = "purchased"
    ACTIVITY = "activity"
    REFERRAL = "referral"
    BONUS = "bonus"
    DEBIT = "debit"


class TokenLedgerEntry(Base):
    """Append-only record of a single balance change.

    ``amount``/``balance_before``/``balance_after`` never change after insert;
    ``compensated_at`` is stamped once on a SUBSCRIPTION credit when a later
    entry offsets it (subscription ended or tokens expired).
    """

    __tablename__ = "token_ledger_entries"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_token_ledger_entries_user_sequence"),
        Index("ix_token_ledger_entries_expiry", "token_type", "compensated_at", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    token_type = Column(SqlEnum(TokenType, name="token_type"), nullable=False)
    amount = Column(BigInteger, nullable=False)
    balance_before = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)
    source = Column(String(64), nullable=False)
    description = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    subscription_id = Column(
        UUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    compensated_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = ["TokenLedgerEntry", "TokenType"]
