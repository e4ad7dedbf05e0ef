"""Add auto-replenish attempts, billing events and billing alerts.

The partial unique index on ``auto_replenish_attempts`` allows one
``processing`` attempt per workspace and credit type.

Revision ID: 002
Revises: 001
Create Date: 2026-10-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JsonType = JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "auto_replenish_attempts",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("credit_type", sa.String(32), nullable=False),
        sa.Column("bundle", sa.String(16), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="processing"),
        sa.Column("stripe_payment_intent_id", sa.String(256), nullable=True),
        sa.Column("error_code", sa.String(128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('processing', 'succeeded', 'failed', 'requires_action')",
            name="ck_replenish_attempts_status",
        ),
        sa.CheckConstraint(
            "credit_type IN ('sms_credits', 'call_minutes')",
            name="ck_replenish_attempts_credit_type",
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_replenish_attempts_amount_positive"),
    )
    op.create_index(
        "uq_replenish_attempts_processing",
        "auto_replenish_attempts",
        ["workspace_id", "credit_type"],
        unique=True,
        postgresql_where=sa.text("status = 'processing'"),
        sqlite_where=sa.text("status = 'processing'"),
    )
    op.create_index(
        "ix_replenish_attempts_ws_type_created",
        "auto_replenish_attempts",
        ["workspace_id", "credit_type", "created_at"],
    )
    op.create_index("ix_replenish_attempts_status_created", "auto_replenish_attempts", ["status", "created_at"])
    op.create_index("ix_replenish_attempts_payment_intent", "auto_replenish_attempts", ["stripe_payment_intent_id"])

    op.create_table(
        "billing_events",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("event_category", sa.String(32), nullable=False),
        sa.Column("event_data", _JsonType, nullable=False, server_default="{}"),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(8), nullable=False, server_default="usd"),
        sa.Column("stripe_event_id", sa.String(256), nullable=True, unique=True),
        sa.Column("stripe_object_id", sa.String(256), nullable=True),
        sa.Column("source", sa.String(16), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("source IN ('webhook', 'api', 'admin', 'system')", name="ck_billing_events_source"),
    )
    op.create_index("ix_billing_events_workspace_created", "billing_events", ["workspace_id", "created_at"])
    op.create_index("ix_billing_events_type", "billing_events", ["event_type"])

    op.create_table(
        "billing_alerts",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=True),
        sa.Column("billing_event_id", sa.String(32), nullable=True),
        sa.Column("alert_type", sa.String(32), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata_json", _JsonType, nullable=False, server_default="{}"),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="ck_billing_alerts_severity",
        ),
    )
    op.create_index("ix_billing_alerts_unresolved", "billing_alerts", ["resolved", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_billing_alerts_unresolved")
    op.drop_table("billing_alerts")
    op.drop_index("ix_billing_events_type")
    op.drop_index("ix_billing_events_workspace_created")
    op.drop_table("billing_events")
    op.drop_index("ix_replenish_attempts_payment_intent")
    op.drop_index("ix_replenish_attempts_status_created")
    op.drop_index("ix_replenish_attempts_ws_type_created")
    op.drop_index("uq_replenish_attempts_processing")
    op.drop_table("auto_replenish_attempts")
