"""Tests for the Stripe webhook that settles pending auto-replenish charges."""

from __future__ import annotations

from unittest.mock import patch

import pytest
import pytest_asyncio
from billing_engine.models import ChargeResult, ChargeStatus
from billing_engine.state.repository import CreditBalanceRepository, ReplenishAttemptRepository
from pydantic import SecretStr

from billing_api.dependencies import get_settings

URL = "/api/v1/billing/webhooks"
SIG = {"stripe-signature": "t=1,v1=abc"}


def _event(event_type: str, attempt_id: str | None, *, event_id: str = "evt_1", **obj) -> dict:
    metadata = {"workspace_id": "ws-1"}
    if attempt_id is not None:
        metadata["replenish_attempt_id"] = attempt_id
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": "pi_3ds", "amount": 500, "metadata": metadata, **obj}},
    }


@pytest_asyncio.fixture
async def pending_attempt(session_factory, job, gateway, seed_sms) -> str:
    """A ``requires_action`` attempt for ws-1 (SMS starter, 100 credits)."""
    await seed_sms(session_factory, "ws-1", balance=5, threshold=10)
    gateway.workspaces_with_card.add("ws-1")
    gateway.results.append(ChargeResult(status=ChargeStatus.REQUIRES_ACTION, payment_intent_id="pi_3ds"))
    summary = await job.run()
    return summary.details[0].attempt_id


async def _post(client, event: dict, headers: dict | None = None):
    with patch("stripe.Webhook.construct_event", return_value=event):
        return await client.post(URL, content=b"{}", headers=SIG if headers is None else headers)


async def _state(session_factory, attempt_id: str):
    async with session_factory() as session:
        attempt = await ReplenishAttemptRepository(session).get(attempt_id)
        balance = await CreditBalanceRepository(session).sms_balance("ws-1")
    return attempt, balance


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestWebhookVerification:
    @pytest.mark.asyncio
    async def test_missing_signature_is_400(self, client):
        resp = await client.post(URL, content=b"{}")
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_bad_signature_is_400(self, client):
        with patch("stripe.Webhook.construct_event", side_effect=Exception("bad sig")):
            resp = await client.post(URL, content=b"{}", headers=SIG)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Signature verification failed"

    @pytest.mark.asyncio
    async def test_disabled_without_secret(self, app, client, api_settings):
        unconfigured = api_settings.model_copy(update={"stripe_webhook_secret": SecretStr("")})
        app.dependency_overrides[get_settings] = lambda: unconfigured

        resp = await client.post(URL, content=b"{}", headers=SIG)

        assert resp.json() == {"status": "webhooks_disabled"}

    @pytest.mark.asyncio
    async def test_unrelated_event_is_ignored(self, client):
        resp = await _post(client, _event("customer.created", "att-1"))
        assert resp.json() == {"status": "ignored"}

    @pytest.mark.asyncio
    async def test_intent_without_attempt_metadata_is_ignored(self, client):
        resp = await _post(client, _event("payment_intent.succeeded", None))
        assert resp.json() == {"status": "ignored"}


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class TestWebhookSettlement:
    @pytest.mark.asyncio
    async def test_succeeded_credits_pending_attempt(self, client, session_factory, pending_attempt):
        resp = await _post(client, _event("payment_intent.succeeded", pending_attempt))

        assert resp.status_code == 200
        assert resp.json() == {"status": "processed"}
        attempt, balance = await _state(session_factory, pending_attempt)
        assert attempt.status == "succeeded"
        assert balance == 105

    @pytest.mark.asyncio
    async def test_retried_event_is_duplicate_and_credits_once(self, client, session_factory, pending_attempt):
        event = _event("payment_intent.succeeded", pending_attempt)
        await _post(client, event)

        resp = await _post(client, event)

        assert resp.json() == {"status": "duplicate"}
        _, balance = await _state(session_factory, pending_attempt)
        assert balance == 105

    @pytest.mark.asyncio
    async def test_second_event_for_settled_attempt_is_noop(self, client, session_factory, pending_attempt):
        await _post(client, _event("payment_intent.succeeded", pending_attempt, event_id="evt_1"))

        resp = await _post(client, _event("payment_intent.succeeded", pending_attempt, event_id="evt_2"))

        assert resp.json() == {"status": "noop"}
        _, balance = await _state(session_factory, pending_attempt)
        assert balance == 105

    @pytest.mark.asyncio
    async def test_payment_failed_marks_attempt_failed(self, client, session_factory, pending_attempt):
        event = _event(
            "payment_intent.payment_failed",
            pending_attempt,
            last_payment_error={"code": "card_declined", "message": "Declined"},
        )

        resp = await _post(client, event)

        assert resp.json() == {"status": "processed"}
        attempt, balance = await _state(session_factory, pending_attempt)
        assert attempt.status == "failed"
        assert attempt.error_code == "card_declined"
        assert balance == 5

    @pytest.mark.asyncio
    async def test_unknown_attempt_is_noop(self, client):
        resp = await _post(client, _event("payment_intent.succeeded", "does-not-exist"))
        assert resp.json() == {"status": "noop"}
