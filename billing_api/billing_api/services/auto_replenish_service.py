"""Auto-replenish job: charge saved cards for workspaces that ran low.

One run scans every balance with auto-replenish enabled, and for each one
below its threshold:

1. skips it if a charge for the same workspace and credit type succeeded
   within the cooldown window, if no bundle is configured, or if the
   workspace has no saved payment method;
2. claims it by inserting a ``processing`` attempt row.  The partial unique
   index on processing attempts rejects a second claim, so overlapping runs
   skip instead of double-charging;
3. charges the bundle price off-session, using the attempt id as the
   idempotency key;
4. on success, commits the attempt as ``succeeded`` *before* adding credits.
   A crash between the two leaves a charge without a credit, never a second
   charge.

Every step runs in its own short session.  No transaction spans the charge
and the credit.  Candidates are processed sequentially and one candidate's
error never aborts the batch.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from billing_engine.bundles import (
    Bundle,
    BundleCatalog,
    BundleName,
    CreditType,
    default_catalog,
    format_price,
    seconds_to_whole_minutes,
)
from billing_engine.models import (
    CandidateResult,
    CandidateStatus,
    ChargeStatus,
    ReplenishCandidate,
    ReplenishSummary,
)
from billing_engine.state.repository import CreditBalanceRepository, ReplenishAttemptRepository
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.services.billing_events import BillingEventService
from billing_api.services.credit_service import CreditService
from billing_api.services.payment_service import PaymentGateway

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(minutes=10)

SKIP_RECENTLY_SUCCEEDED = "Recently succeeded"
SKIP_NO_BUNDLE = "No bundle configured"
SKIP_NO_PAYMENT_METHOD = "No payment method"
SKIP_CONCURRENT_ATTEMPT = "Concurrent attempt in progress"


class AutoReplenishJob:
    """Finds low balances and tops them up from the saved card.

    Parameters
    ----------
    session_factory:
        Factory for the short per-step sessions.
    payments:
        Charging primitive, normally :class:`StripePaymentService`.
    catalog:
        Bundle price list.
    cooldown:
        Window during which a successful attempt suppresses another charge
        for the same workspace and credit type.
    events:
        Billing audit writer.  Built from *session_factory* when omitted.
    currency:
        Currency recorded on billing events.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentGateway,
        *,
        catalog: BundleCatalog = default_catalog,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        events: BillingEventService | None = None,
        currency: str = "usd",
    ) -> None:
        self._session_factory = session_factory
        self._payments = payments
        self._catalog = catalog
        self._cooldown = cooldown
        self._events = events or BillingEventService(session_factory, currency=currency)

    # -- Entry point -------------------------------------------------------------

    async def run(self, summary: ReplenishSummary | None = None) -> ReplenishSummary:
        """Process every eligible candidate once.

        *summary* is filled in place.  Callers that need partial results
        after an unexpected error pass their own instance.
        """
        if summary is None:
            summary = ReplenishSummary()

        candidates = await self.find_candidates()
        logger.info("Auto-replenish run: %d candidate(s)", len(candidates))

        for candidate in candidates:
            try:
                result = await self.process_candidate(candidate)
            except Exception as exc:
                logger.error(
                    "Auto-replenish failed for %s/%s: %s",
                    candidate.workspace_id,
                    candidate.credit_type.value,
                    exc,
                    exc_info=True,
                )
                result = CandidateResult(
                    workspace_id=candidate.workspace_id,
                    credit_type=candidate.credit_type,
                    status=CandidateStatus.FAILED,
                    error=str(exc) or type(exc).__name__,
                )
            summary.record(result)

        logger.info(
            "Auto-replenish run complete: processed=%d successful=%d failed=%d skipped=%d",
            summary.processed,
            summary.successful,
            summary.failed,
            summary.skipped,
        )
        return summary

    # -- Eligibility -------------------------------------------------------------

    async def find_candidates(self) -> list[ReplenishCandidate]:
        """Return balances strictly below their threshold, SMS first.

        Call-minute balances are compared in whole minutes, rounded down.
        """
        async with self._session_factory() as session:
            repo = CreditBalanceRepository(session)
            sms_rows = await repo.list_sms_auto_replenish()
            minute_rows = await repo.list_minutes_auto_replenish()

        candidates: list[ReplenishCandidate] = []
        for row in sms_rows:
            if row.balance < row.auto_replenish_threshold:
                candidates.append(
                    ReplenishCandidate(
                        workspace_id=row.workspace_id,
                        credit_type=CreditType.SMS,
                        bundle=_parse_bundle(row.auto_replenish_bundle),
                        balance=row.balance,
                        threshold=row.auto_replenish_threshold,
                    )
                )
        for row in minute_rows:
            minutes = seconds_to_whole_minutes(row.balance_seconds)
            if minutes < row.auto_replenish_threshold:
                candidates.append(
                    ReplenishCandidate(
                        workspace_id=row.workspace_id,
                        credit_type=CreditType.MINUTES,
                        bundle=_parse_bundle(row.auto_replenish_bundle),
                        balance=minutes,
                        threshold=row.auto_replenish_threshold,
                    )
                )
        return candidates

    # -- Per-candidate pipeline ----------------------------------------------------

    async def process_candidate(self, candidate: ReplenishCandidate) -> CandidateResult:
        """Guard, claim, charge and credit one candidate."""
        workspace_id = candidate.workspace_id
        credit_type = candidate.credit_type

        since = datetime.now(UTC) - self._cooldown
        async with self._session_factory() as session:
            recent = await ReplenishAttemptRepository(session).has_recent_success(
                workspace_id, credit_type.value, since
            )
        if recent:
            return _result(candidate, CandidateStatus.SKIPPED, SKIP_RECENTLY_SUCCEEDED)

        if candidate.bundle is None:
            return _result(candidate, CandidateStatus.SKIPPED, SKIP_NO_BUNDLE)
        bundle = self._catalog.get(credit_type, candidate.bundle)

        if not await self._payments.has_payment_method(workspace_id):
            return _result(candidate, CandidateStatus.SKIPPED, SKIP_NO_PAYMENT_METHOD)

        attempt_id = await self._claim(workspace_id, bundle)
        if attempt_id is None:
            return _result(candidate, CandidateStatus.SKIPPED, SKIP_CONCURRENT_ATTEMPT)

        try:
            charge = await self._payments.create_direct_charge(
                workspace_id,
                bundle.price_cents,
                description=f"Auto-replenish: {bundle.quantity} {bundle.unit_label} ({bundle.name.value})",
                metadata={
                    "replenish_attempt_id": attempt_id,
                    "credit_type": credit_type.value,
                    "bundle": bundle.name.value,
                    "auto_replenish": "true",
                },
                idempotency_key=f"auto-replenish-{attempt_id}",
            )
        except Exception as exc:
            # Outcome unknown: leave the attempt in processing for reconciliation.
            logger.error("Charge error for attempt %s: %s", attempt_id, exc, exc_info=True)
            await self._append_error(attempt_id, f"Charge error: {exc}")
            return _result(candidate, CandidateStatus.FAILED, str(exc), attempt_id)

        if charge.status == ChargeStatus.FAILED:
            async with self._session_factory() as session:
                await ReplenishAttemptRepository(session).mark_failed(
                    attempt_id,
                    error_code=charge.error_code,
                    error_message=charge.error_message,
                    payment_intent_id=charge.payment_intent_id,
                )
                await session.commit()
            logger.warning(
                "Auto-replenish charge declined for %s/%s: %s",
                workspace_id,
                credit_type.value,
                charge.error_code,
            )
            await self._events.log_payment_failed(
                workspace_id=workspace_id,
                credit_type=credit_type.value,
                attempt_id=attempt_id,
                amount_cents=bundle.price_cents,
                error_code=charge.error_code,
                error_message=charge.error_message,
                payment_intent_id=charge.payment_intent_id,
            )
            return _result(
                candidate,
                CandidateStatus.FAILED,
                charge.error_message or charge.error_code,
                attempt_id,
            )

        if charge.status == ChargeStatus.REQUIRES_ACTION:
            async with self._session_factory() as session:
                await ReplenishAttemptRepository(session).mark_requires_action(
                    attempt_id,
                    payment_intent_id=charge.payment_intent_id,
                    error_code=charge.error_code,
                    error_message=charge.error_message,
                )
                await session.commit()
            logger.info("Auto-replenish for %s/%s requires customer action", workspace_id, credit_type.value)
            return _result(
                candidate,
                CandidateStatus.REQUIRES_ACTION,
                charge.error_message or charge.error_code,
                attempt_id,
            )

        credit_error = await self._finalize_success(attempt_id, workspace_id, bundle, charge.payment_intent_id)
        logger.info(
            "Auto-replenished %s/%s with %s bundle (%s)",
            workspace_id,
            credit_type.value,
            bundle.name.value,
            format_price(bundle.price_cents),
        )
        return _result(candidate, CandidateStatus.SUCCESSFUL, credit_error, attempt_id)

    # -- Pending-charge resolution -------------------------------------------------

    async def complete_pending_attempt(self, attempt_id: str, payment_intent_id: str | None) -> bool:
        """Settle an attempt whose charge completed after the run returned.

        Returns ``False`` when the attempt is unknown or already terminal.
        """
        async with self._session_factory() as session:
            attempt = await ReplenishAttemptRepository(session).get(attempt_id)
        if attempt is None or attempt.status not in ("processing", "requires_action"):
            return False

        # Credit what was charged for, not what the catalog offers today.
        bundle = Bundle(
            BundleName(attempt.bundle),
            CreditType(attempt.credit_type),
            attempt.quantity,
            attempt.amount_cents,
        )
        await self._finalize_success(attempt_id, attempt.workspace_id, bundle, payment_intent_id)
        return True

    async def fail_pending_attempt(
        self,
        attempt_id: str,
        *,
        error_code: str | None,
        error_message: str | None,
        payment_intent_id: str | None = None,
    ) -> bool:
        """Mark a pending attempt as ``failed`` after an asynchronous decline."""
        async with self._session_factory() as session:
            repo = ReplenishAttemptRepository(session)
            attempt = await repo.get(attempt_id)
            if attempt is None:
                return False
            changed = await repo.mark_failed(
                attempt_id,
                error_code=error_code,
                error_message=error_message,
                payment_intent_id=payment_intent_id,
            )
            await session.commit()
        if changed:
            await self._events.log_payment_failed(
                workspace_id=attempt.workspace_id,
                credit_type=attempt.credit_type,
                attempt_id=attempt_id,
                amount_cents=attempt.amount_cents,
                error_code=error_code,
                error_message=error_message,
                payment_intent_id=payment_intent_id,
            )
        return changed

    # -- Internals ---------------------------------------------------------------

    async def _claim(self, workspace_id: str, bundle: Bundle) -> str | None:
        """Insert the ``processing`` attempt; ``None`` if another run holds it."""
        async with self._session_factory() as session:
            try:
                attempt = await ReplenishAttemptRepository(session).claim(
                    workspace_id,
                    bundle.credit_type.value,
                    bundle=bundle.name.value,
                    quantity=bundle.quantity,
                    amount_cents=bundle.price_cents,
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "Concurrent auto-replenish attempt for %s/%s; skipping",
                    workspace_id,
                    bundle.credit_type.value,
                )
                return None
        return attempt.id

    async def _finalize_success(
        self,
        attempt_id: str,
        workspace_id: str,
        bundle: Bundle,
        payment_intent_id: str | None,
    ) -> str | None:
        """Commit ``succeeded``, then credit.  Returns the credit error, if any."""
        async with self._session_factory() as session:
            changed = await ReplenishAttemptRepository(session).mark_succeeded(attempt_id, payment_intent_id)
            await session.commit()
        if not changed:
            return None

        try:
            async with self._session_factory() as session:
                await CreditService(session).apply_bundle(workspace_id, bundle)
                await session.commit()
        except Exception as exc:
            message = f"Credit application failed: {exc}"
            logger.critical(
                "Charged but not credited: attempt %s workspace %s: %s",
                attempt_id,
                workspace_id,
                exc,
                exc_info=True,
            )
            await self._append_error(attempt_id, message)
            await self._events.alert_credit_failure(
                workspace_id=workspace_id,
                credit_type=bundle.credit_type.value,
                attempt_id=attempt_id,
                payment_intent_id=payment_intent_id,
                error=message,
            )
            return message

        await self._events.log_auto_replenished(
            workspace_id=workspace_id,
            credit_type=bundle.credit_type.value,
            bundle=bundle.name.value,
            quantity=bundle.quantity,
            amount_cents=bundle.price_cents,
            attempt_id=attempt_id,
            payment_intent_id=payment_intent_id,
        )
        return None

    async def _append_error(self, attempt_id: str, message: str) -> None:
        try:
            async with self._session_factory() as session:
                await ReplenishAttemptRepository(session).append_error(attempt_id, message)
                await session.commit()
        except Exception:
            logger.error("Could not record error on attempt %s: %s", attempt_id, message, exc_info=True)


def _parse_bundle(value: str | None) -> BundleName | None:
    if value is None:
        return None
    try:
        return BundleName(value)
    except ValueError:
        logger.warning("Ignoring unknown auto-replenish bundle %r", value)
        return None


def _result(
    candidate: ReplenishCandidate,
    status: CandidateStatus,
    error: str | None = None,
    attempt_id: str | None = None,
) -> CandidateResult:
    return CandidateResult(
        workspace_id=candidate.workspace_id,
        credit_type=candidate.credit_type,
        status=status,
        error=error,
        attempt_id=attempt_id,
    )
