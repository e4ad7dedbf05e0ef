"""Tests for the Stripe direct-charge wrapper.

Stripe is replaced by a namespace of ``MagicMock`` resources plus real
exception classes, injected through ``StripePaymentService._get_stripe``.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from billing_engine.models import ChargeStatus

from billing_api.services.payment_service import PaymentProviderError, StripePaymentService


class _StripeError(Exception):
    pass


class _CardError(_StripeError):
    def __init__(self, message: str, code: str, payment_intent: dict | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.user_message = message
        self.error = SimpleNamespace(payment_intent=payment_intent)


def _fake_stripe() -> SimpleNamespace:
    return SimpleNamespace(
        PaymentIntent=MagicMock(),
        Customer=MagicMock(),
        PaymentMethod=MagicMock(),
        StripeError=_StripeError,
        CardError=_CardError,
    )


@pytest.fixture
def fake_stripe():
    stripe = _fake_stripe()
    with patch.object(StripePaymentService, "_get_stripe", return_value=stripe):
        yield stripe


@pytest.fixture
def service(session_factory, api_settings) -> StripePaymentService:
    return StripePaymentService(session_factory, api_settings)


async def _charge(service: StripePaymentService, workspace_id: str = "ws-1"):
    return await service.create_direct_charge(
        workspace_id,
        500,
        description="Auto-replenish: 100 credits (starter)",
        metadata={"replenish_attempt_id": "att-1"},
        idempotency_key="auto-replenish-att-1",
    )


# ---------------------------------------------------------------------------
# Payment method resolution
# ---------------------------------------------------------------------------


class TestHasPaymentMethod:
    @pytest.mark.asyncio
    async def test_no_customer_row(self, service, fake_stripe):
        assert await service.has_payment_method("ws-1") is False
        fake_stripe.Customer.retrieve.assert_not_called()

    @pytest.mark.asyncio
    async def test_stored_default_short_circuits_stripe(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", "pm_saved")
        assert await service.has_payment_method("ws-1") is True
        fake_stripe.Customer.retrieve.assert_not_called()

    @pytest.mark.asyncio
    async def test_customer_invoice_default(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", None)
        fake_stripe.Customer.retrieve.return_value = {"invoice_settings": {"default_payment_method": "pm_inv"}}
        assert await service.has_payment_method("ws-1") is True
        fake_stripe.PaymentMethod.list.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_back_to_first_card(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", None)
        fake_stripe.Customer.retrieve.return_value = {"invoice_settings": {}}
        fake_stripe.PaymentMethod.list.return_value = {"data": [{"id": "pm_card_1"}]}
        assert await service.has_payment_method("ws-1") is True
        fake_stripe.PaymentMethod.list.assert_called_once_with(customer="cus_ws-1", type="card", limit=1)

    @pytest.mark.asyncio
    async def test_customer_without_cards(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", None)
        fake_stripe.Customer.retrieve.return_value = {"invoice_settings": None}
        fake_stripe.PaymentMethod.list.return_value = {"data": []}
        assert await service.has_payment_method("ws-1") is False

    @pytest.mark.asyncio
    async def test_stripe_error_during_lookup_raises(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", None)
        fake_stripe.Customer.retrieve.side_effect = _StripeError("api down")
        with pytest.raises(PaymentProviderError, match="api down"):
            await service.has_payment_method("ws-1")


# ---------------------------------------------------------------------------
# Direct charges
# ---------------------------------------------------------------------------


class TestCreateDirectCharge:
    @pytest.mark.asyncio
    async def test_successful_charge(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", "pm_saved")
        fake_stripe.PaymentIntent.create.return_value = {"id": "pi_ok", "status": "succeeded"}

        result = await _charge(service)

        assert result.succeeded
        assert result.payment_intent_id == "pi_ok"
        kwargs = fake_stripe.PaymentIntent.create.call_args.kwargs
        assert kwargs["amount"] == 500
        assert kwargs["currency"] == "usd"
        assert kwargs["customer"] == "cus_ws-1"
        assert kwargs["payment_method"] == "pm_saved"
        assert kwargs["off_session"] is True
        assert kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == "auto-replenish-att-1"
        assert kwargs["metadata"] == {"workspace_id": "ws-1", "replenish_attempt_id": "att-1"}

    @pytest.mark.asyncio
    async def test_no_customer_returns_failed_without_calling_stripe(self, service, fake_stripe):
        result = await _charge(service)
        assert result.status == ChargeStatus.FAILED
        assert result.error_code == "no_payment_method"
        fake_stripe.PaymentIntent.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_card_declined(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", "pm_saved")
        fake_stripe.PaymentIntent.create.side_effect = _CardError(
            "Your card was declined.", "card_declined", payment_intent={"id": "pi_declined"}
        )

        result = await _charge(service)

        assert result.status == ChargeStatus.FAILED
        assert result.error_code == "card_declined"
        assert result.error_message == "Your card was declined."
        assert result.payment_intent_id == "pi_declined"

    @pytest.mark.asyncio
    async def test_authentication_required(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", "pm_saved")
        fake_stripe.PaymentIntent.create.side_effect = _CardError(
            "Authentication required", "authentication_required", payment_intent={"id": "pi_3ds"}
        )

        result = await _charge(service)

        assert result.status == ChargeStatus.REQUIRES_ACTION
        assert result.payment_intent_id == "pi_3ds"

    @pytest.mark.asyncio
    async def test_intent_requiring_action(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", "pm_saved")
        fake_stripe.PaymentIntent.create.return_value = {"id": "pi_pending", "status": "requires_action"}

        result = await _charge(service)

        assert result.status == ChargeStatus.REQUIRES_ACTION
        assert result.error_code == "requires_action"

    @pytest.mark.asyncio
    async def test_intent_requiring_payment_method_is_failure(
        self, service, fake_stripe, session_factory, seed_customer
    ):
        await seed_customer(session_factory, "ws-1", "pm_saved")
        fake_stripe.PaymentIntent.create.return_value = {
            "id": "pi_bad",
            "status": "requires_payment_method",
            "last_payment_error": {"code": "expired_card", "message": "Your card has expired."},
        }

        result = await _charge(service)

        assert result.status == ChargeStatus.FAILED
        assert result.error_code == "expired_card"
        assert result.error_message == "Your card has expired."

    @pytest.mark.asyncio
    async def test_api_error_raises_provider_error(self, service, fake_stripe, session_factory, seed_customer):
        await seed_customer(session_factory, "ws-1", "pm_saved")
        fake_stripe.PaymentIntent.create.side_effect = _StripeError("connection reset")

        with pytest.raises(PaymentProviderError, match="connection reset"):
            await _charge(service)


class TestGetStripe:
    def test_configures_api_key(self, service):
        stripe = service._get_stripe()
        assert stripe.api_key == "sk_test_123"
