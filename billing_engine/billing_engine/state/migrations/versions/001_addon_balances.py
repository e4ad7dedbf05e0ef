"""Add SMS credit and call-minute balances with usage logs.

Revision ID: 001
Revises:
Create Date: 2026-09-28 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_BUNDLE_CHECK = "auto_replenish_bundle IS NULL OR auto_replenish_bundle IN ('starter', 'growth', 'pro')"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "workspace_sms_credits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(64), nullable=False, unique=True),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("auto_replenish_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_replenish_threshold", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("auto_replenish_bundle", sa.String(16), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(_BUNDLE_CHECK, name="ck_sms_credits_bundle"),
        sa.CheckConstraint("balance >= 0", name="ck_sms_credits_balance_non_negative"),
    )
    op.create_index("ix_sms_credits_auto_replenish", "workspace_sms_credits", ["auto_replenish_enabled"])

    op.create_table(
        "workspace_call_minutes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(64), nullable=False, unique=True),
        sa.Column("balance_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_used_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("auto_replenish_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_replenish_threshold", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("auto_replenish_bundle", sa.String(16), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(_BUNDLE_CHECK, name="ck_call_minutes_bundle"),
        sa.CheckConstraint("balance_seconds >= 0", name="ck_call_minutes_balance_non_negative"),
    )
    op.create_index("ix_call_minutes_auto_replenish", "workspace_call_minutes", ["auto_replenish_enabled"])

    op.create_table(
        "sms_usage_log",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("message_sid", sa.String(64), nullable=False, unique=True),
        sa.Column("direction", sa.String(16), nullable=False),
        sa.Column("segments", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("credits_consumed", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_mms", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("from_number", sa.String(32), nullable=False),
        sa.Column("to_number", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("direction IN ('inbound', 'outbound')", name="ck_sms_usage_direction"),
    )
    op.create_index("ix_sms_usage_workspace_created", "sms_usage_log", ["workspace_id", "created_at"])

    op.create_table(
        "call_usage_log",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("call_sid", sa.String(64), nullable=False, unique=True),
        sa.Column("direction", sa.String(16), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("minutes_consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("from_number", sa.String(32), nullable=False),
        sa.Column("to_number", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("direction IN ('inbound', 'outbound')", name="ck_call_usage_direction"),
    )
    op.create_index("ix_call_usage_workspace_created", "call_usage_log", ["workspace_id", "created_at"])

    op.create_table(
        "billing_customers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(64), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.String(256), nullable=False),
        sa.Column("default_payment_method_id", sa.String(256), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_billing_customers_stripe_customer", "billing_customers", ["stripe_customer_id"])


def downgrade() -> None:
    op.drop_index("ix_billing_customers_stripe_customer")
    op.drop_table("billing_customers")
    op.drop_index("ix_call_usage_workspace_created")
    op.drop_table("call_usage_log")
    op.drop_index("ix_sms_usage_workspace_created")
    op.drop_table("sms_usage_log")
    op.drop_index("ix_call_minutes_auto_replenish")
    op.drop_table("workspace_call_minutes")
    op.drop_index("ix_sms_credits_auto_replenish")
    op.drop_table("workspace_sms_credits")
