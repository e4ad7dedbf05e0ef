"""Stripe direct-charge integration for add-on purchases and auto-replenish.

Charges are confirmed off-session against the workspace's saved card.  The
caller supplies an idempotency key so that a retried call for the same
replenish attempt never produces a second charge.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from billing_engine.models import ChargeResult, ChargeStatus
from billing_engine.state.repository import BillingCustomerRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.config import APISettings

logger = logging.getLogger(__name__)

# PaymentIntent statuses that mean the customer has to step in.
_PENDING_INTENT_STATUSES = frozenset({"requires_action", "requires_confirmation", "processing"})


class PaymentProviderError(Exception):
    """The payment provider could not be reached or returned an unexpected error.

    The outcome of the charge is unknown when this is raised.
    """


class PaymentGateway(Protocol):
    """Charging primitive used by the auto-replenish job."""

    async def has_payment_method(self, workspace_id: str) -> bool: ...

    async def create_direct_charge(
        self,
        workspace_id: str,
        amount_cents: int,
        *,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ChargeResult: ...


class StripePaymentService:
    """Off-session Stripe charges against a workspace's saved payment method.

    Parameters
    ----------
    session_factory:
        Factory used to read the workspace's ``billing_customers`` row.
    settings:
        API settings containing the Stripe secret key and billing currency.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: APISettings,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def has_payment_method(self, workspace_id: str) -> bool:
        """Return ``True`` if the workspace has a chargeable saved card."""
        resolved = await self._resolve_payment_method(workspace_id)
        return resolved is not None

    async def create_direct_charge(
        self,
        workspace_id: str,
        amount_cents: int,
        *,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ChargeResult:
        """Charge *amount_cents* to the workspace's saved card.

        Returns
        -------
        ChargeResult
            ``succeeded`` with the payment intent id, ``failed`` with the
            provider's decline code and message, or ``requires_action`` when
            the card needs customer authentication.

        Raises
        ------
        PaymentProviderError
            On network or API errors where the charge outcome is unknown.
        """
        resolved = await self._resolve_payment_method(workspace_id)
        if resolved is None:
            return ChargeResult(
                status=ChargeStatus.FAILED,
                error_code="no_payment_method",
                error_message="Workspace has no saved payment method",
            )
        customer_id, payment_method_id = resolved

        stripe = self._get_stripe()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=self._settings.billing_currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                description=description,
                metadata={"workspace_id": workspace_id, **metadata},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as exc:
            return self._card_error_result(exc)
        except stripe.StripeError as exc:
            logger.error("Stripe charge failed for workspace %s: %s", workspace_id, exc)
            raise PaymentProviderError(str(exc)) from exc

        return self._intent_result(intent)

    # -- Internals ---------------------------------------------------------------

    async def _resolve_payment_method(self, workspace_id: str) -> tuple[str, str] | None:
        """Return ``(customer_id, payment_method_id)`` or ``None``.

        Lookup order: the stored default, the Stripe customer's invoice
        default, then the customer's first card.
        """
        async with self._session_factory() as session:
            customer = await BillingCustomerRepository(session).get(workspace_id)
        if customer is None:
            return None
        if customer.default_payment_method_id:
            return customer.stripe_customer_id, customer.default_payment_method_id

        stripe = self._get_stripe()
        try:
            remote = stripe.Customer.retrieve(customer.stripe_customer_id)
            invoice_settings = remote.get("invoice_settings") or {}
            default_pm = invoice_settings.get("default_payment_method")
            if default_pm:
                pm_id = default_pm if isinstance(default_pm, str) else default_pm["id"]
                return customer.stripe_customer_id, pm_id

            methods = stripe.PaymentMethod.list(customer=customer.stripe_customer_id, type="card", limit=1)
        except stripe.StripeError as exc:
            raise PaymentProviderError(str(exc)) from exc

        data = methods.get("data") or []
        if data:
            return customer.stripe_customer_id, data[0]["id"]
        return None

    @staticmethod
    def _intent_result(intent: Any) -> ChargeResult:
        status = intent.get("status")
        intent_id = intent.get("id")
        if status == "succeeded":
            return ChargeResult(status=ChargeStatus.SUCCEEDED, payment_intent_id=intent_id)
        if status in _PENDING_INTENT_STATUSES:
            return ChargeResult(
                status=ChargeStatus.REQUIRES_ACTION,
                payment_intent_id=intent_id,
                error_code=status,
                error_message=f"Payment intent is {status}",
            )

        last_error = intent.get("last_payment_error") or {}
        return ChargeResult(
            status=ChargeStatus.FAILED,
            payment_intent_id=intent_id,
            error_code=last_error.get("code") or status,
            error_message=last_error.get("message") or f"Payment intent is {status}",
        )

    @staticmethod
    def _card_error_result(exc: Any) -> ChargeResult:
        code = getattr(exc, "code", None) or "card_error"
        message = getattr(exc, "user_message", None) or str(exc)

        intent_id = None
        error = getattr(exc, "error", None)
        intent = getattr(error, "payment_intent", None) if error is not None else None
        if intent:
            intent_id = intent.get("id") if hasattr(intent, "get") else None

        status = ChargeStatus.REQUIRES_ACTION if code == "authentication_required" else ChargeStatus.FAILED
        logger.info("Card charge %s: %s (%s)", status.value, code, message)
        return ChargeResult(
            status=status,
            payment_intent_id=intent_id,
            error_code=code,
            error_message=message,
        )
