"""SQLAlchemy 2.0 ORM table definitions for the add-on billing state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

_BUNDLE_CHECK = "auto_replenish_bundle IS NULL OR auto_replenish_bundle IN ('starter', 'growth', 'pro')"


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


class _UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    SQLite has no timezone support and returns naive values; they are
    re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all add-on billing tables."""


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------


class SMSCreditBalanceTable(Base):
    """SMS credit balance and auto-replenish settings per workspace."""

    __tablename__ = "workspace_sms_credits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_replenish_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_replenish_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    auto_replenish_bundle: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        _UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(_BUNDLE_CHECK, name="ck_sms_credits_bundle"),
        CheckConstraint("balance >= 0", name="ck_sms_credits_balance_non_negative"),
        Index("ix_sms_credits_auto_replenish", "auto_replenish_enabled"),
    )


class CallMinutesBalanceTable(Base):
    """Call-minute balance (stored in seconds) and auto-replenish settings.

    ``auto_replenish_threshold`` is expressed in whole minutes.
    """

    __tablename__ = "workspace_call_minutes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    balance_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_used_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_replenish_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_replenish_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    auto_replenish_bundle: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        _UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(_BUNDLE_CHECK, name="ck_call_minutes_bundle"),
        CheckConstraint("balance_seconds >= 0", name="ck_call_minutes_balance_non_negative"),
        Index("ix_call_minutes_auto_replenish", "auto_replenish_enabled"),
    )


# ---------------------------------------------------------------------------
# Usage logs
# ---------------------------------------------------------------------------


class SMSUsageLogTable(Base):
    """One row per SMS/MMS message debited against the credit balance."""

    __tablename__ = "sms_usage_log"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_sid: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    segments: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    credits_consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_mms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    from_number: Mapped[str] = mapped_column(String(32), nullable=False)
    to_number: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("direction IN ('inbound', 'outbound')", name="ck_sms_usage_direction"),
        Index("ix_sms_usage_workspace_created", "workspace_id", "created_at"),
    )


class CallUsageLogTable(Base):
    """One row per call debited against the minutes balance."""

    __tablename__ = "call_usage_log"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    call_sid: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minutes_consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    from_number: Mapped[str] = mapped_column(String(32), nullable=False)
    to_number: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("direction IN ('inbound', 'outbound')", name="ck_call_usage_direction"),
        Index("ix_call_usage_workspace_created", "workspace_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Billing customers
# ---------------------------------------------------------------------------


class BillingCustomerTable(Base):
    """Stripe customer and saved payment method per workspace."""

    __tablename__ = "billing_customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    stripe_customer_id: Mapped[str] = mapped_column(String(256), nullable=False)
    default_payment_method_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        _UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_billing_customers_stripe_customer", "stripe_customer_id"),)


# ---------------------------------------------------------------------------
# Auto-replenish attempts
# ---------------------------------------------------------------------------


class ReplenishAttemptTable(Base):
    """Append-only audit trail of auto-replenish charge attempts.

    The partial unique index ``uq_replenish_attempts_processing`` allows at
    most one ``processing`` row per ``(workspace_id, credit_type)``.  It is
    the only mutual-exclusion mechanism between overlapping job runs.
    """

    __tablename__ = "auto_replenish_attempts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False)
    credit_type: Mapped[str] = mapped_column(String(32), nullable=False)
    bundle: Mapped[str] = mapped_column(String(16), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="processing")
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        _UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(_UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'succeeded', 'failed', 'requires_action')",
            name="ck_replenish_attempts_status",
        ),
        CheckConstraint(
            "credit_type IN ('sms_credits', 'call_minutes')",
            name="ck_replenish_attempts_credit_type",
        ),
        CheckConstraint("amount_cents > 0", name="ck_replenish_attempts_amount_positive"),
        Index(
            "uq_replenish_attempts_processing",
            "workspace_id",
            "credit_type",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
        Index("ix_replenish_attempts_ws_type_created", "workspace_id", "credit_type", "created_at"),
        Index("ix_replenish_attempts_status_created", "status", "created_at"),
        Index("ix_replenish_attempts_payment_intent", "stripe_payment_intent_id"),
    )


# ---------------------------------------------------------------------------
# Billing events and alerts
# ---------------------------------------------------------------------------


class BillingEventTable(Base):
    """Audit log of billing activity (purchases, replenishes, payment failures)."""

    __tablename__ = "billing_events"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_category: Mapped[str] = mapped_column(String(32), nullable=False)
    event_data: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    stripe_event_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    stripe_object_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "source IN ('webhook', 'api', 'admin', 'system')",
            name="ck_billing_events_source",
        ),
        Index("ix_billing_events_workspace_created", "workspace_id", "created_at"),
        Index("ix_billing_events_type", "event_type"),
    )


class BillingAlertTable(Base):
    """Billing issues that need operator attention."""

    __tablename__ = "billing_alerts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    billing_event_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(_UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="ck_billing_alerts_severity",
        ),
        Index("ix_billing_alerts_unresolved", "resolved", "created_at"),
    )
