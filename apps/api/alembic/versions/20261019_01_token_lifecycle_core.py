"""Users, plans, subscriptions, token ledger, invitations and task audit tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)

subscription_status = sa.Enum("ACTIVE", "EXPIRED", "CANCELED", name="subscription_status")
subscription_provider = sa.Enum("SYSTEM", "TRIAL", "INVITATION", "STRIPE", name="subscription_provider")
token_type = sa.Enum("SUBSCRIPTION", "PURCHASED", "ACTIVITY", "REFERRAL", "BONUS", "DEBIT", name="token_type")
invitation_status = sa.Enum("PENDING", "ACCEPTED", "EXPIRED", name="invitation_status")
queued_reward_status = sa.Enum("PENDING", "PROCESSED", name="queued_reward_status")
task_execution_status = sa.Enum(
    "STARTED", "COMPLETED", "ERROR", "RECOVERED", "SKIPPED", name="task_execution_status"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("token_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("ledger_sequence", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "plans",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("token_quota", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("is_free", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_plans_slug", "plans", ["slug"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", UUID, sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("status", subscription_status, nullable=False, server_default="ACTIVE"),
        sa.Column("provider", subscription_provider, nullable=False),
        sa.Column("provider_subscription_id", sa.String(), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_status_period_end", "subscriptions", ["status", "current_period_end"])

    op.create_table(
        "token_ledger_entries",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("token_type", token_type, nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("balance_before", sa.BigInteger(), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "subscription_id",
            UUID,
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("compensated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("user_id", "sequence", name="uq_token_ledger_entries_user_sequence"),
    )
    op.create_index("ix_token_ledger_entries_user_id", "token_ledger_entries", ["user_id"])
    op.create_index("ix_token_ledger_entries_subscription_id", "token_ledger_entries", ["subscription_id"])
    op.create_index(
        "ix_token_ledger_entries_expiry",
        "token_ledger_entries",
        ["token_type", "compensated_at", "expires_at"],
    )

    op.create_table(
        "invitations",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("inviter_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("invitee_id", UUID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("status", invitation_status, nullable=False, server_default="PENDING"),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_invitations_code", "invitations", ["code"], unique=True)
    op.create_index("ix_invitations_inviter_id", "invitations", ["inviter_id"])
    op.create_index("ix_invitations_invitee_id", "invitations", ["invitee_id"])

    op.create_table(
        "queued_invitation_rewards",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_id", UUID, sa.ForeignKey("plans.id"), nullable=False),
        sa.Column(
            "invitation_id",
            UUID,
            sa.ForeignKey("invitations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("days_to_add", sa.Integer(), nullable=False),
        sa.Column("status", queued_reward_status, nullable=False, server_default="PENDING"),
        sa.Column(
            "subscription_id",
            UUID,
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index(
        "ix_queued_invitation_rewards_user_status",
        "queued_invitation_rewards",
        ["user_id", "status"],
    )

    op.create_table(
        "user_activities",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("resource", sa.String(length=32), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_user_activities_user_id", "user_activities", ["user_id"])
    op.create_index("ix_user_activities_action", "user_activities", ["action"])

    op.create_table(
        "task_execution_records",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("task_id", sa.String(length=128), nullable=False),
        sa.Column("run_id", UUID, nullable=True),
        sa.Column("status", task_execution_status, nullable=False),
        sa.Column("trigger", sa.String(length=32), nullable=False, server_default="schedule"),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB().with_variant(sa.JSON(), "sqlite"),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index(
        "ix_task_execution_records_task_recorded",
        "task_execution_records",
        ["task_id", "recorded_at"],
    )

    op.create_table(
        "scheduler_leases",
        sa.Column("job_id", sa.String(length=128), primary_key=True),
        sa.Column("owner", sa.String(length=255), nullable=False),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("scheduler_leases")
    op.drop_index("ix_task_execution_records_task_recorded", table_name="task_execution_records")
    op.drop_table("task_execution_records")
    op.drop_index("ix_user_activities_action", table_name="user_activities")
    op.drop_index("ix_user_activities_user_id", table_name="user_activities")
    op.drop_table("user_activities")
    op.drop_index("ix_queued_invitation_rewards_user_status", table_name="queued_invitation_rewards")
    op.drop_table("queued_invitation_rewards")
    op.drop_index("ix_invitations_invitee_id", table_name="invitations")
    op.drop_index("ix_invitations_inviter_id", table_name="invitations")
    op.drop_index("ix_invitations_code", table_name="invitations")
    op.drop_table("invitations")
    op.drop_index("ix_token_ledger_entries_expiry", table_name="token_ledger_entries")
    op.drop_index("ix_token_ledger_entries_subscription_id", table_name="token_ledger_entries")
    op.drop_index("ix_token_ledger_entries_user_id", table_name="token_ledger_entries")
    op.drop_table("token_ledger_entries")
    op.drop_index("ix_subscriptions_status_period_end", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_plans_slug", table_name="plans")
    op.drop_table("plans")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in (
        task_execution_status,
        queued_reward_status,
        invitation_status,
        token_type,
        subscription_provider,
        subscription_status,
    ):
        enum.drop(bind, checkfirst=True)
