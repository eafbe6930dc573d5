"""Invitation and deferred reward models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from tokenlife_api.db.base import Base


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class QueuedRewardStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"


class Invitation(Base):
    """Invitation code issued by an existing user."""

    __tablename__ = "invitations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    inviter_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    invitee_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    code = Column(String(32), nullable=False, unique=True, index=True)
    status = Column(
        SqlEnum(InvitationStatus, name="invitation_status"),
        nullable=False,
        default=InvitationStatus.PENDING,
        server_default=InvitationStatus.PENDING.name,
    )
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class QueuedInvitationReward(Base):
    """Subscription grant deferred until the recipient has no live subscription."""

    __tablename__ = "queued_invitation_rewards"
    __table_args__ = (
        Index("ix_queued_invitation_rewards_user_status", "user_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("plans.id"), nullable=False)
    invitation_id = Column(UUID(as_uuid=True), ForeignKey("invitations.id", ondelete="SET NULL"), nullable=True)
    days_to_add = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(QueuedRewardStatus, name="queued_reward_status"),
        nullable=False,
        default=QueuedRewardStatus.PENDING,
        server_default=QueuedRewardStatus.PENDING.name,
    )
    subscription_id = Column(UUID(as_uuid=True), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)
    queued_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = [
    "Invitation",
    "InvitationStatus",
    "QueuedInvitationReward",
    "QueuedRewardStatus",
]
