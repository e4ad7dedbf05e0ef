"""Billing event audit log and operator alerts.

Every helper opens its own short session so that audit writes never share a
transaction with balance or attempt updates.  The ``log_*`` / ``alert_*``
helpers are best-effort: a failed audit write is logged and swallowed so it
cannot change the outcome of a charge that already happened.
"""

from __future__ import annotations

import logging
from typing import Any

from billing_engine.state.repository import BillingEventRepository
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

EVENT_ADDON_AUTO_REPLENISHED = "addon.auto_replenished"
EVENT_PAYMENT_SUCCEEDED = "payment.succeeded"
EVENT_PAYMENT_FAILED = "payment.failed"

ALERT_PAYMENT_FAILED = "payment_failed"
ALERT_UNUSUAL_ACTIVITY = "unusual_activity"


class BillingEventService:
    """Writes to ``billing_events`` and ``billing_alerts``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, currency: str = "usd") -> None:
        self._session_factory = session_factory
        self._currency = currency

    async def log_event(
        self,
        *,
        event_type: str,
        event_category: str,
        workspace_id: str | None = None,
        event_data: dict[str, Any] | None = None,
        amount_cents: int | None = None,
        stripe_event_id: str | None = None,
        stripe_object_id: str | None = None,
        source: str = "system",
    ) -> str | None:
        """Insert one billing event and return its id.

        Returns ``None`` when *stripe_event_id* was already recorded, which
        is how webhook retries are detected.  Other database errors
        propagate.
        """
        async with self._session_factory() as session:
            try:
                row = await BillingEventRepository(session).log_event(
                    event_type=event_type,
                    event_category=event_category,
                    workspace_id=workspace_id,
                    event_data=event_data,
                    amount_cents=amount_cents,
                    currency=self._currency,
                    stripe_event_id=stripe_event_id,
                    stripe_object_id=stripe_object_id,
                    source=source,
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if stripe_event_id is None:
                    raise
                logger.info("Duplicate Stripe event %s ignored", stripe_event_id)
                return None
        return row.id

    async def create_alert(
        self,
        *,
        alert_type: str,
        title: str,
        severity: str = "medium",
        workspace_id: str | None = None,
        billing_event_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        async with self._session_factory() as session:
            row = await BillingEventRepository(session).create_alert(
                alert_type=alert_type,
                title=title,
                severity=severity,
                workspace_id=workspace_id,
                billing_event_id=billing_event_id,
                description=description,
                metadata=metadata,
            )
            await session.commit()
        return row.id

    # -- Best-effort helpers used by the auto-replenish job -----------------------

    async def log_auto_replenished(
        self,
        *,
        workspace_id: str,
        credit_type: str,
        bundle: str,
        quantity: int,
        amount_cents: int,
        attempt_id: str,
        payment_intent_id: str | None,
    ) -> None:
        try:
            await self.log_event(
                event_type=EVENT_ADDON_AUTO_REPLENISHED,
                event_category="addon",
                workspace_id=workspace_id,
                event_data={
                    "credit_type": credit_type,
                    "bundle": bundle,
                    "quantity": quantity,
                    "attempt_id": attempt_id,
                },
                amount_cents=amount_cents,
                stripe_object_id=payment_intent_id,
            )
        except SQLAlchemyError:
            logger.warning("Failed to log auto-replenish event for %s", workspace_id, exc_info=True)

    async def log_payment_failed(
        self,
        *,
        workspace_id: str,
        credit_type: str,
        attempt_id: str,
        amount_cents: int,
        error_code: str | None,
        error_message: str | None,
        payment_intent_id: str | None = None,
    ) -> None:
        """Record a declined auto-replenish charge and raise a ``payment_failed`` alert."""
        try:
            event_id = await self.log_event(
                event_type=EVENT_PAYMENT_FAILED,
                event_category="payment",
                workspace_id=workspace_id,
                event_data={
                    "credit_type": credit_type,
                    "attempt_id": attempt_id,
                    "error_code": error_code,
                    "error_message": error_message,
                },
                amount_cents=amount_cents,
                stripe_object_id=payment_intent_id,
            )
            await self.create_alert(
                alert_type=ALERT_PAYMENT_FAILED,
                severity="high",
                title="Auto-replenish payment failed",
                workspace_id=workspace_id,
                billing_event_id=event_id,
                description=error_message,
                metadata={"attempt_id": attempt_id, "credit_type": credit_type, "error_code": error_code},
            )
        except SQLAlchemyError:
            logger.warning("Failed to log payment failure for %s", workspace_id, exc_info=True)

    async def alert_credit_failure(
        self,
        *,
        workspace_id: str,
        credit_type: str,
        attempt_id: str,
        payment_intent_id: str | None,
        error: str,
    ) -> None:
        """Raise a critical alert: the customer was charged but not credited."""
        try:
            await self.create_alert(
                alert_type=ALERT_UNUSUAL_ACTIVITY,
                severity="critical",
                title="Auto-replenish charged but credit not applied",
                workspace_id=workspace_id,
                description=error,
                metadata={
                    "attempt_id": attempt_id,
                    "credit_type": credit_type,
                    "payment_intent_id": payment_intent_id,
                },
            )
        except SQLAlchemyError:
            logger.error("Failed to raise credit-failure alert for attempt %s", attempt_id, exc_info=True)
