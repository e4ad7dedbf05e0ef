"""Stripe webhook receiver for auto-replenish charges.

A charge that needed customer authentication (3-D Secure) or was still
processing when the job ran is settled here: ``payment_intent.succeeded``
credits the workspace, ``payment_intent.payment_failed`` marks the attempt
failed.  Intents are matched to attempts through the
``replenish_attempt_id`` metadata the job attaches to every charge.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from billing_api.dependencies import AutoReplenishJobDep, SessionFactoryDep, SettingsDep
from billing_api.services.billing_events import BillingEventService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

_HANDLED_EVENTS = frozenset({"payment_intent.succeeded", "payment_intent.payment_failed"})


@router.post("/webhooks")
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
    job: AutoReplenishJobDep,
) -> dict[str, str]:
    """Verify the Stripe signature and settle the referenced attempt.

    Attempt transitions only apply once, so Stripe retries are harmless.
    The event id is recorded afterwards and a repeat is reported as
    ``duplicate``.
    """
    webhook_secret = settings.stripe_webhook_secret.get_secret_value()
    if not webhook_secret:
        return {"status": "webhooks_disabled"}

    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    try:
        import stripe

        event = stripe.Webhook.construct_event(payload=body, sig_header=sig_header, secret=webhook_secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except Exception as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed")

    event_type: str = event.get("type", "")
    data_object: dict[str, Any] = event.get("data", {}).get("object", {}) or {}
    metadata: dict[str, Any] = data_object.get("metadata", {}) or {}
    attempt_id = metadata.get("replenish_attempt_id")

    if event_type not in _HANDLED_EVENTS or not attempt_id:
        return {"status": "ignored"}

    intent_id = data_object.get("id")
    if event_type == "payment_intent.succeeded":
        changed = await job.complete_pending_attempt(attempt_id, intent_id)
    else:
        last_error = data_object.get("last_payment_error") or {}
        changed = await job.fail_pending_attempt(
            attempt_id,
            error_code=last_error.get("code") or "payment_failed",
            error_message=last_error.get("message"),
            payment_intent_id=intent_id,
        )

    logger.info("Stripe %s for attempt %s (changed=%s)", event_type, attempt_id, changed)

    events = BillingEventService(session_factory, currency=settings.billing_currency)
    event_id = await events.log_event(
        event_type=event_type,
        event_category="payment",
        workspace_id=metadata.get("workspace_id"),
        event_data={"replenish_attempt_id": attempt_id, "changed": changed},
        amount_cents=data_object.get("amount"),
        stripe_event_id=event.get("id"),
        stripe_object_id=intent_id,
        source="webhook",
    )
    if event_id is None:
        return {"status": "duplicate"}
    return {"status": "processed" if changed else "noop"}
