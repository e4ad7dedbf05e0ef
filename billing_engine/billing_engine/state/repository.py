"""Repository classes providing CRUD access to the add-on billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Balance mutations are single-statement ``UPDATE ... SET x = x + n`` so that
concurrent debits and credits never lose updates.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.tables import (
    BillingAlertTable,
    BillingCustomerTable,
    BillingEventTable,
    CallMinutesBalanceTable,
    CallUsageLogTable,
    ReplenishAttemptTable,
    SMSCreditBalanceTable,
    SMSUsageLogTable,
    _new_id,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 500


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, _MAX_PAGE_SIZE))


# ---------------------------------------------------------------------------
# CreditBalanceRepository
# ---------------------------------------------------------------------------


class CreditBalanceRepository:
    """Balances and auto-replenish settings for SMS credits and call minutes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # -- SMS credits -----------------------------------------------------------

    async def get_sms(self, workspace_id: str) -> SMSCreditBalanceTable | None:
        result = await self._session.execute(
            select(SMSCreditBalanceTable).where(SMSCreditBalanceTable.workspace_id == workspace_id)
        )
        return result.scalar_one_or_none()

    async def ensure_sms(self, workspace_id: str) -> SMSCreditBalanceTable:
        """Return the SMS balance row, creating an empty one if missing."""
        await _dialect_upsert_nothing(
            self._session,
            SMSCreditBalanceTable,
            values={"workspace_id": workspace_id},
            index_elements=["workspace_id"],
        )
        await self._session.flush()
        row = await self.get_sms(workspace_id)
        assert row is not None
        return row

    async def list_sms_auto_replenish(self) -> Sequence[SMSCreditBalanceTable]:
        """Return every SMS balance with auto-replenish enabled."""
        result = await self._session.execute(
            select(SMSCreditBalanceTable)
            .where(SMSCreditBalanceTable.auto_replenish_enabled.is_(True))
            .order_by(SMSCreditBalanceTable.id)
        )
        return result.scalars().all()

    async def add_sms_credits(self, workspace_id: str, credits: int) -> int:
        """Atomically add *credits* to the workspace balance.

        Creates the balance row if it does not exist.  Returns the new
        balance.
        """
        if credits <= 0:
            raise ValueError(f"credits must be positive, got {credits}")
        await self.ensure_sms(workspace_id)
        await self._session.execute(
            update(SMSCreditBalanceTable)
            .where(SMSCreditBalanceTable.workspace_id == workspace_id)
            .values(
                balance=SMSCreditBalanceTable.balance + credits,
                lifetime_credits=SMSCreditBalanceTable.lifetime_credits + credits,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return await self.sms_balance(workspace_id)

    async def deduct_sms_credits(self, workspace_id: str, credits: int) -> bool:
        """Atomically debit *credits*.

        Returns ``False`` (and changes nothing) when the balance is missing
        or insufficient.
        """
        result = await self._session.execute(
            update(SMSCreditBalanceTable)
            .where(
                SMSCreditBalanceTable.workspace_id == workspace_id,
                SMSCreditBalanceTable.balance >= credits,
            )
            .values(
                balance=SMSCreditBalanceTable.balance - credits,
                lifetime_used=SMSCreditBalanceTable.lifetime_used + credits,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def update_sms_settings(
        self,
        workspace_id: str,
        *,
        enabled: bool,
        threshold: int | None = None,
        bundle: str | None = None,
    ) -> SMSCreditBalanceTable:
        """Update SMS auto-replenish settings; unset arguments are left as-is."""
        row = await self.ensure_sms(workspace_id)
        row.auto_replenish_enabled = enabled
        if threshold is not None:
            row.auto_replenish_threshold = threshold
        if bundle is not None:
            row.auto_replenish_bundle = bundle
        await self._session.flush()
        return row

    async def sms_balance(self, workspace_id: str) -> int:
        result = await self._session.execute(
            select(SMSCreditBalanceTable.balance).where(SMSCreditBalanceTable.workspace_id == workspace_id)
        )
        return int(result.scalar_one())

    # -- Call minutes ----------------------------------------------------------

    async def get_minutes(self, workspace_id: str) -> CallMinutesBalanceTable | None:
        result = await self._session.execute(
            select(CallMinutesBalanceTable).where(CallMinutesBalanceTable.workspace_id == workspace_id)
        )
        return result.scalar_one_or_none()

    async def ensure_minutes(self, workspace_id: str) -> CallMinutesBalanceTable:
        """Return the call-minutes row, creating an empty one if missing."""
        await _dialect_upsert_nothing(
            self._session,
            CallMinutesBalanceTable,
            values={"workspace_id": workspace_id},
            index_elements=["workspace_id"],
        )
        await self._session.flush()
        row = await self.get_minutes(workspace_id)
        assert row is not None
        return row

    async def list_minutes_auto_replenish(self) -> Sequence[CallMinutesBalanceTable]:
        """Return every call-minutes balance with auto-replenish enabled."""
        result = await self._session.execute(
            select(CallMinutesBalanceTable)
            .where(CallMinutesBalanceTable.auto_replenish_enabled.is_(True))
            .order_by(CallMinutesBalanceTable.id)
        )
        return result.scalars().all()

    async def add_call_seconds(self, workspace_id: str, seconds: int) -> int:
        """Atomically add *seconds* to the balance.  Returns the new balance in seconds."""
        if seconds <= 0:
            raise ValueError(f"seconds must be positive, got {seconds}")
        await self.ensure_minutes(workspace_id)
        await self._session.execute(
            update(CallMinutesBalanceTable)
            .where(CallMinutesBalanceTable.workspace_id == workspace_id)
            .values(
                balance_seconds=CallMinutesBalanceTable.balance_seconds + seconds,
                lifetime_seconds=CallMinutesBalanceTable.lifetime_seconds + seconds,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return await self.minutes_balance_seconds(workspace_id)

    async def deduct_call_seconds(self, workspace_id: str, seconds: int) -> bool:
        """Atomically debit *seconds*; ``False`` when the balance is insufficient."""
        result = await self._session.execute(
            update(CallMinutesBalanceTable)
            .where(
                CallMinutesBalanceTable.workspace_id == workspace_id,
                CallMinutesBalanceTable.balance_seconds >= seconds,
            )
            .values(
                balance_seconds=CallMinutesBalanceTable.balance_seconds - seconds,
                lifetime_used_seconds=CallMinutesBalanceTable.lifetime_used_seconds + seconds,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def update_minutes_settings(
        self,
        workspace_id: str,
        *,
        enabled: bool,
        threshold: int | None = None,
        bundle: str | None = None,
    ) -> CallMinutesBalanceTable:
        """Update call-minute auto-replenish settings (threshold in minutes)."""
        row = await self.ensure_minutes(workspace_id)
        row.auto_replenish_enabled = enabled
        if threshold is not None:
            row.auto_replenish_threshold = threshold
        if bundle is not None:
            row.auto_replenish_bundle = bundle
        await self._session.flush()
        return row

    async def minutes_balance_seconds(self, workspace_id: str) -> int:
        result = await self._session.execute(
            select(CallMinutesBalanceTable.balance_seconds).where(
                CallMinutesBalanceTable.workspace_id == workspace_id
            )
        )
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# UsageLogRepository
# ---------------------------------------------------------------------------


class UsageLogRepository:
    """Idempotent SMS and call usage records keyed by the carrier SID."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_sms(
        self,
        workspace_id: str,
        message_sid: str,
        *,
        direction: str,
        segments: int,
        credits_consumed: int,
        is_mms: bool,
        from_number: str,
        to_number: str,
    ) -> bool:
        """Insert a usage row.  Returns ``False`` if *message_sid* was already recorded."""
        result = await _dialect_upsert_nothing(
            self._session,
            SMSUsageLogTable,
            values={
                "id": _new_id(),
                "workspace_id": workspace_id,
                "message_sid": message_sid,
                "direction": direction,
                "segments": segments,
                "credits_consumed": credits_consumed,
                "is_mms": is_mms,
                "from_number": from_number,
                "to_number": to_number,
                "created_at": datetime.now(UTC),
            },
            index_elements=["message_sid"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def record_call(
        self,
        workspace_id: str,
        call_sid: str,
        *,
        direction: str,
        duration_seconds: int,
        minutes_consumed: int,
        from_number: str,
        to_number: str,
        status: str | None = None,
    ) -> bool:
        """Insert a call usage row.  Returns ``False`` if *call_sid* was already recorded."""
        result = await _dialect_upsert_nothing(
            self._session,
            CallUsageLogTable,
            values={
                "id": _new_id(),
                "workspace_id": workspace_id,
                "call_sid": call_sid,
                "direction": direction,
                "duration_seconds": duration_seconds,
                "minutes_consumed": minutes_consumed,
                "from_number": from_number,
                "to_number": to_number,
                "status": status,
                "created_at": datetime.now(UTC),
            },
            index_elements=["call_sid"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_sms(self, workspace_id: str, limit: int = 50) -> Sequence[SMSUsageLogTable]:
        result = await self._session.execute(
            select(SMSUsageLogTable)
            .where(SMSUsageLogTable.workspace_id == workspace_id)
            .order_by(SMSUsageLogTable.created_at.desc())
            .limit(_clamp_limit(limit))
        )
        return result.scalars().all()

    async def list_calls(self, workspace_id: str, limit: int = 50) -> Sequence[CallUsageLogTable]:
        result = await self._session.execute(
            select(CallUsageLogTable)
            .where(CallUsageLogTable.workspace_id == workspace_id)
            .order_by(CallUsageLogTable.created_at.desc())
            .limit(_clamp_limit(limit))
        )
        return result.scalars().all()


# ---------------------------------------------------------------------------
# ReplenishAttemptRepository
# ---------------------------------------------------------------------------


class ReplenishAttemptRepository:
    """Audit trail of auto-replenish charge attempts.

    Attempts are never deleted.  Status changes go through
    :meth:`_transition`, which only updates rows still in an allowed source
    status, so a row reaches a terminal status at most once.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def has_recent_success(self, workspace_id: str, credit_type: str, since: datetime) -> bool:
        """Return ``True`` if a ``succeeded`` attempt was created at or after *since*."""
        result = await self._session.execute(
            select(ReplenishAttemptTable.id)
            .where(
                ReplenishAttemptTable.workspace_id == workspace_id,
                ReplenishAttemptTable.credit_type == credit_type,
                ReplenishAttemptTable.status == "succeeded",
                ReplenishAttemptTable.created_at >= since,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def claim(
        self,
        workspace_id: str,
        credit_type: str,
        *,
        bundle: str,
        quantity: int,
        amount_cents: int,
    ) -> ReplenishAttemptTable:
        """Insert a ``processing`` attempt.

        Raises
        ------
        sqlalchemy.exc.IntegrityError
            If another ``processing`` attempt exists for the same
            ``(workspace_id, credit_type)``.  The caller must roll back.
        """
        row = ReplenishAttemptTable(
            workspace_id=workspace_id,
            credit_type=credit_type,
            bundle=bundle,
            quantity=quantity,
            amount_cents=amount_cents,
            status="processing",
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def mark_succeeded(self, attempt_id: str, payment_intent_id: str | None) -> bool:
        """Move a ``processing`` or ``requires_action`` attempt to ``succeeded``."""
        return await self._transition(
            attempt_id,
            ("processing", "requires_action"),
            "succeeded",
            stripe_payment_intent_id=payment_intent_id,
            completed_at=datetime.now(UTC),
        )

    async def mark_failed(
        self,
        attempt_id: str,
        *,
        error_code: str | None,
        error_message: str | None,
        payment_intent_id: str | None = None,
    ) -> bool:
        """Move a ``processing`` or ``requires_action`` attempt to ``failed``."""
        values: dict[str, Any] = {
            "error_code": error_code,
            "error_message": error_message,
            "completed_at": datetime.now(UTC),
        }
        if payment_intent_id is not None:
            values["stripe_payment_intent_id"] = payment_intent_id
        return await self._transition(attempt_id, ("processing", "requires_action"), "failed", **values)

    async def mark_requires_action(
        self,
        attempt_id: str,
        *,
        payment_intent_id: str | None,
        error_code: str | None,
        error_message: str | None,
    ) -> bool:
        """Move a ``processing`` attempt to ``requires_action``."""
        return await self._transition(
            attempt_id,
            ("processing",),
            "requires_action",
            stripe_payment_intent_id=payment_intent_id,
            error_code=error_code,
            error_message=error_message,
            completed_at=datetime.now(UTC),
        )

    async def append_error(self, attempt_id: str, message: str) -> None:
        """Append *message* to the attempt's error text without touching its status."""
        row = await self.get(attempt_id)
        if row is None:
            logger.warning("Cannot append error to unknown replenish attempt %s", attempt_id)
            return
        row.error_message = f"{row.error_message}; {message}" if row.error_message else message
        await self._session.flush()

    async def get(self, attempt_id: str) -> ReplenishAttemptTable | None:
        result = await self._session.execute(
            select(ReplenishAttemptTable)
            .where(ReplenishAttemptTable.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_workspace(
        self,
        workspace_id: str,
        credit_type: str | None = None,
        limit: int = 50,
    ) -> Sequence[ReplenishAttemptTable]:
        """Return the workspace's attempts, newest first."""
        stmt = select(ReplenishAttemptTable).where(ReplenishAttemptTable.workspace_id == workspace_id)
        if credit_type is not None:
            stmt = stmt.where(ReplenishAttemptTable.credit_type == credit_type)
        stmt = stmt.order_by(ReplenishAttemptTable.created_at.desc()).limit(_clamp_limit(limit))
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_stale_processing(self, older_than: datetime) -> Sequence[ReplenishAttemptTable]:
        """Return ``processing`` attempts created before *older_than*.

        These are runs that crashed or hit an unknown charge outcome and
        need manual reconciliation.
        """
        result = await self._session.execute(
            select(ReplenishAttemptTable)
            .where(
                ReplenishAttemptTable.status == "processing",
                ReplenishAttemptTable.created_at < older_than,
            )
            .order_by(ReplenishAttemptTable.created_at)
        )
        return result.scalars().all()

    async def _transition(
        self,
        attempt_id: str,
        from_statuses: tuple[str, ...],
        to_status: str,
        **values: Any,
    ) -> bool:
        result = await self._session.execute(
            update(ReplenishAttemptTable)
            .where(
                ReplenishAttemptTable.id == attempt_id,
                ReplenishAttemptTable.status.in_(from_statuses),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        changed = (result.rowcount or 0) > 0  # type: ignore[attr-defined]
        if not changed:
            logger.warning(
                "Replenish attempt %s not moved to %s (expected status in %s)",
                attempt_id,
                to_status,
                from_statuses,
            )
        return changed


# ---------------------------------------------------------------------------
# BillingCustomerRepository
# ---------------------------------------------------------------------------


class BillingCustomerRepository:
    """Workspace to Stripe customer mapping."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, workspace_id: str) -> BillingCustomerTable | None:
        result = await self._session.execute(
            select(BillingCustomerTable).where(BillingCustomerTable.workspace_id == workspace_id)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        workspace_id: str,
        stripe_customer_id: str,
        default_payment_method_id: str | None = None,
    ) -> BillingCustomerTable:
        """Create or update the workspace's Stripe customer record."""
        row = await self.get(workspace_id)
        if row is None:
            row = BillingCustomerTable(
                workspace_id=workspace_id,
                stripe_customer_id=stripe_customer_id,
                default_payment_method_id=default_payment_method_id,
            )
            self._session.add(row)
        else:
            row.stripe_customer_id = stripe_customer_id
            if default_payment_method_id is not None:
                row.default_payment_method_id = default_payment_method_id
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# BillingEventRepository
# ---------------------------------------------------------------------------


class BillingEventRepository:
    """Billing event log and operator alerts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def log_event(
        self,
        *,
        event_type: str,
        event_category: str,
        workspace_id: str | None = None,
        event_data: dict[str, Any] | None = None,
        amount_cents: int | None = None,
        currency: str = "usd",
        stripe_event_id: str | None = None,
        stripe_object_id: str | None = None,
        source: str = "system",
    ) -> BillingEventTable:
        """Insert a billing event.

        Raises ``IntegrityError`` when *stripe_event_id* was already logged
        (Stripe webhook retry).
        """
        row = BillingEventTable(
            workspace_id=workspace_id,
            event_type=event_type,
            event_category=event_category,
            event_data=event_data or {},
            amount_cents=amount_cents,
            currency=currency,
            stripe_event_id=stripe_event_id,
            stripe_object_id=stripe_object_id,
            source=source,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def create_alert(
        self,
        *,
        alert_type: str,
        title: str,
        workspace_id: str | None = None,
        billing_event_id: str | None = None,
        severity: str = "medium",
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BillingAlertTable:
        row = BillingAlertTable(
            workspace_id=workspace_id,
            billing_event_id=billing_event_id,
            alert_type=alert_type,
            severity=severity,
            title=title,
            description=description,
            metadata_json=metadata or {},
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_events(self, workspace_id: str, limit: int = 50) -> Sequence[BillingEventTable]:
        result = await self._session.execute(
            select(BillingEventTable)
            .where(BillingEventTable.workspace_id == workspace_id)
            .order_by(BillingEventTable.created_at.desc())
            .limit(_clamp_limit(limit))
        )
        return result.scalars().all()

    async def list_alerts(self, resolved: bool = False, limit: int = 50) -> Sequence[BillingAlertTable]:
        result = await self._session.execute(
            select(BillingAlertTable)
            .where(BillingAlertTable.resolved.is_(resolved))
            .order_by(BillingAlertTable.created_at.desc())
            .limit(_clamp_limit(limit))
        )
        return result.scalars().all()
