"""SMS credit and call-minute balances: top-ups, usage debits and settings.

``CreditService`` works inside the caller's session.  The auto-replenish job
opens a dedicated session for each credit application so the credit commit
is independent of the attempt status commit.
"""

from __future__ import annotations

import logging
from typing import Any

from billing_engine.bundles import (
    Bundle,
    BundleName,
    CreditType,
    billable_minutes,
    minutes_to_seconds,
    seconds_to_whole_minutes,
    sms_credits_for,
)
from billing_engine.state.repository import (
    CreditBalanceRepository,
    ReplenishAttemptRepository,
    UsageLogRepository,
)
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# A balance below these is flagged as low in the workspace summary.
LOW_SMS_CREDITS = 50
LOW_CALL_MINUTES = 10


class InsufficientBalanceError(Exception):
    """Raised when a usage debit exceeds the remaining balance."""

    def __init__(self, workspace_id: str, credit_type: CreditType, required: int) -> None:
        self.workspace_id = workspace_id
        self.credit_type = credit_type
        self.required = required
        super().__init__(f"Insufficient {credit_type.value} for workspace {workspace_id}: {required} required")


class UsageResult(BaseModel):
    """Outcome of recording one SMS or call."""

    recorded: bool
    consumed: int
    balance: int


class CreditService:
    """Balance operations for one database session.

    Parameters
    ----------
    session:
        Active database session.  The caller commits.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._balances = CreditBalanceRepository(session)
        self._usage = UsageLogRepository(session)

    # -- Top-ups -----------------------------------------------------------------

    async def add_sms_credits(self, workspace_id: str, credits: int) -> int:
        """Add *credits* and return the new balance."""
        balance = await self._balances.add_sms_credits(workspace_id, credits)
        logger.info("Added %d SMS credits to workspace %s (balance %d)", credits, workspace_id, balance)
        return balance

    async def add_call_minutes(self, workspace_id: str, minutes: int) -> int:
        """Add *minutes* and return the new balance in seconds."""
        balance = await self._balances.add_call_seconds(workspace_id, minutes_to_seconds(minutes))
        logger.info("Added %d call minutes to workspace %s (balance %ds)", minutes, workspace_id, balance)
        return balance

    async def apply_bundle(self, workspace_id: str, bundle: Bundle) -> int:
        """Credit one purchased *bundle* to the workspace."""
        if bundle.credit_type == CreditType.SMS:
            return await self.add_sms_credits(workspace_id, bundle.quantity)
        return await self.add_call_minutes(workspace_id, bundle.quantity)

    # -- Usage -------------------------------------------------------------------

    async def record_sms_usage(
        self,
        workspace_id: str,
        message_sid: str,
        *,
        direction: str,
        segments: int = 1,
        is_mms: bool = False,
        from_number: str,
        to_number: str,
    ) -> UsageResult:
        """Log a message and debit its credits.

        A message SID that was already recorded is not debited again.

        Raises
        ------
        InsufficientBalanceError
            If the balance does not cover the message.  The caller must roll
            back so the usage row is discarded too.
        """
        credits = sms_credits_for(segments, is_mms)
        inserted = await self._usage.record_sms(
            workspace_id,
            message_sid,
            direction=direction,
            segments=segments,
            credits_consumed=credits,
            is_mms=is_mms,
            from_number=from_number,
            to_number=to_number,
        )
        if inserted and not await self._balances.deduct_sms_credits(workspace_id, credits):
            raise InsufficientBalanceError(workspace_id, CreditType.SMS, credits)

        row = await self._balances.get_sms(workspace_id)
        balance = await self._balances.sms_balance(workspace_id) if row is not None else 0
        return UsageResult(recorded=inserted, consumed=credits if inserted else 0, balance=balance)

    async def record_call_usage(
        self,
        workspace_id: str,
        call_sid: str,
        *,
        direction: str,
        duration_seconds: int,
        from_number: str,
        to_number: str,
        status: str | None = None,
    ) -> UsageResult:
        """Log a call and debit its duration in seconds.

        ``consumed`` is reported in billable minutes (partial minutes round up).
        """
        minutes = billable_minutes(duration_seconds)
        inserted = await self._usage.record_call(
            workspace_id,
            call_sid,
            direction=direction,
            duration_seconds=duration_seconds,
            minutes_consumed=minutes,
            from_number=from_number,
            to_number=to_number,
            status=status,
        )
        if inserted and duration_seconds > 0:
            if not await self._balances.deduct_call_seconds(workspace_id, duration_seconds):
                raise InsufficientBalanceError(workspace_id, CreditType.MINUTES, duration_seconds)

        row = await self._balances.get_minutes(workspace_id)
        balance = await self._balances.minutes_balance_seconds(workspace_id) if row is not None else 0
        return UsageResult(recorded=inserted, consumed=minutes if inserted else 0, balance=balance)

    # -- Settings ----------------------------------------------------------------

    async def update_auto_replenish(
        self,
        workspace_id: str,
        credit_type: CreditType,
        *,
        enabled: bool,
        threshold: int | None = None,
        bundle: BundleName | None = None,
    ) -> dict[str, Any]:
        """Update auto-replenish settings for one credit type.

        Enabling auto-replenish without a bundle, either given here or
        already stored, is rejected.
        """
        if threshold is not None and threshold < 0:
            raise ValueError("threshold must be non-negative")

        bundle_value = bundle.value if bundle is not None else None
        if credit_type == CreditType.SMS:
            row: Any = await self._balances.update_sms_settings(
                workspace_id, enabled=enabled, threshold=threshold, bundle=bundle_value
            )
        else:
            row = await self._balances.update_minutes_settings(
                workspace_id, enabled=enabled, threshold=threshold, bundle=bundle_value
            )

        if row.auto_replenish_enabled and row.auto_replenish_bundle is None:
            raise ValueError("A bundle is required to enable auto-replenish")

        logger.info(
            "Auto-replenish for %s/%s: enabled=%s threshold=%s bundle=%s",
            workspace_id,
            credit_type.value,
            row.auto_replenish_enabled,
            row.auto_replenish_threshold,
            row.auto_replenish_bundle,
        )
        return {
            "enabled": row.auto_replenish_enabled,
            "threshold": row.auto_replenish_threshold,
            "bundle": row.auto_replenish_bundle,
        }

    # -- Summary -----------------------------------------------------------------

    async def get_summary(self, workspace_id: str) -> dict[str, Any]:
        """Return both balances, their low flags, settings and recent attempts."""
        sms = await self._balances.get_sms(workspace_id)
        minutes = await self._balances.get_minutes(workspace_id)
        attempts = await ReplenishAttemptRepository(self._session).list_for_workspace(workspace_id, limit=5)

        sms_balance = sms.balance if sms is not None else 0
        minutes_balance = seconds_to_whole_minutes(minutes.balance_seconds) if minutes is not None else 0

        return {
            "workspace_id": workspace_id,
            "sms": {
                "balance": sms_balance,
                "lifetime_credits": sms.lifetime_credits if sms is not None else 0,
                "lifetime_used": sms.lifetime_used if sms is not None else 0,
                "is_low": sms_balance < LOW_SMS_CREDITS,
                "auto_replenish": {
                    "enabled": sms.auto_replenish_enabled if sms is not None else False,
                    "threshold": sms.auto_replenish_threshold if sms is not None else LOW_SMS_CREDITS,
                    "bundle": sms.auto_replenish_bundle if sms is not None else None,
                },
            },
            "minutes": {
                "balance": minutes_balance,
                "balance_seconds": minutes.balance_seconds if minutes is not None else 0,
                "is_low": minutes_balance < LOW_CALL_MINUTES,
                "auto_replenish": {
                    "enabled": minutes.auto_replenish_enabled if minutes is not None else False,
                    "threshold": minutes.auto_replenish_threshold if minutes is not None else LOW_CALL_MINUTES,
                    "bundle": minutes.auto_replenish_bundle if minutes is not None else None,
                },
            },
            "recent_attempts": [
                {
                    "id": a.id,
                    "type": a.credit_type,
                    "bundle": a.bundle,
                    "status": a.status,
                    "amount_cents": a.amount_cents,
                    "created_at": a.created_at.isoformat() if a.created_at else None,
                }
                for a in attempts
            ],
        }
