"""Tests for balance top-ups, usage debits and auto-replenish settings."""

from __future__ import annotations

import pytest
from billing_engine.bundles import BundleName, CreditType, default_catalog
from billing_engine.state.repository import CreditBalanceRepository, UsageLogRepository

from billing_api.services.credit_service import CreditService, InsufficientBalanceError

WS = "ws-1"


# ---------------------------------------------------------------------------
# Top-ups
# ---------------------------------------------------------------------------


class TestTopUps:
    @pytest.mark.asyncio
    async def test_apply_sms_bundle(self, session):
        bundle = default_catalog.get(CreditType.SMS, BundleName.STARTER)
        assert await CreditService(session).apply_bundle(WS, bundle) == 500

    @pytest.mark.asyncio
    async def test_apply_minutes_bundle_stores_seconds(self, session):
        bundle = default_catalog.get(CreditType.MINUTES, BundleName.GROWTH)
        assert await CreditService(session).apply_bundle(WS, bundle) == 500 * 60

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, session):
        with pytest.raises(ValueError):
            await CreditService(session).add_sms_credits(WS, 0)


# ---------------------------------------------------------------------------
# SMS usage
# ---------------------------------------------------------------------------


class TestSMSUsage:
    @pytest.mark.asyncio
    async def test_segments_are_debited(self, session):
        service = CreditService(session)
        await service.add_sms_credits(WS, 10)

        result = await service.record_sms_usage(
            WS, "SM1", direction="outbound", segments=3, from_number="+15550001", to_number="+15550002"
        )

        assert result.recorded is True
        assert result.consumed == 3
        assert result.balance == 7

    @pytest.mark.asyncio
    async def test_mms_flat_rate(self, session):
        service = CreditService(session)
        await service.add_sms_credits(WS, 10)

        result = await service.record_sms_usage(
            WS, "MM1", direction="outbound", segments=5, is_mms=True, from_number="+1", to_number="+2"
        )

        assert result.consumed == 3
        assert result.balance == 7

    @pytest.mark.asyncio
    async def test_duplicate_sid_is_not_debited_twice(self, session):
        service = CreditService(session)
        await service.add_sms_credits(WS, 10)
        await service.record_sms_usage(WS, "SM1", direction="inbound", from_number="+1", to_number="+2")

        again = await service.record_sms_usage(WS, "SM1", direction="inbound", from_number="+1", to_number="+2")

        assert again.recorded is False
        assert again.consumed == 0
        assert again.balance == 9

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, session):
        service = CreditService(session)
        await service.add_sms_credits(WS, 1)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await service.record_sms_usage(
                WS, "SM1", direction="outbound", segments=2, from_number="+1", to_number="+2"
            )

        assert exc_info.value.credit_type == CreditType.SMS
        assert exc_info.value.required == 2

    @pytest.mark.asyncio
    async def test_no_balance_row_is_insufficient(self, session):
        with pytest.raises(InsufficientBalanceError):
            await CreditService(session).record_sms_usage(
                WS, "SM1", direction="outbound", from_number="+1", to_number="+2"
            )


# ---------------------------------------------------------------------------
# Call usage
# ---------------------------------------------------------------------------


class TestCallUsage:
    @pytest.mark.asyncio
    async def test_seconds_debited_and_minutes_reported_rounded_up(self, session):
        service = CreditService(session)
        await service.add_call_minutes(WS, 10)

        result = await service.record_call_usage(
            WS, "CA1", direction="outbound", duration_seconds=61, from_number="+1", to_number="+2"
        )

        assert result.consumed == 2
        assert result.balance == 600 - 61
        logs = await UsageLogRepository(session).list_calls(WS)
        assert logs[0].minutes_consumed == 2

    @pytest.mark.asyncio
    async def test_zero_length_call_is_logged_without_debit(self, session):
        service = CreditService(session)
        await service.add_call_minutes(WS, 1)

        result = await service.record_call_usage(
            WS, "CA0", direction="inbound", duration_seconds=0, from_number="+1", to_number="+2", status="no-answer"
        )

        assert result.recorded is True
        assert result.consumed == 0
        assert result.balance == 60

    @pytest.mark.asyncio
    async def test_call_longer_than_balance(self, session):
        service = CreditService(session)
        await service.add_call_minutes(WS, 1)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await service.record_call_usage(
                WS, "CA1", direction="outbound", duration_seconds=61, from_number="+1", to_number="+2"
            )
        assert exc_info.value.credit_type == CreditType.MINUTES


# ---------------------------------------------------------------------------
# Settings and summary
# ---------------------------------------------------------------------------


class TestAutoReplenishSettings:
    @pytest.mark.asyncio
    async def test_enable_with_bundle(self, session):
        result = await CreditService(session).update_auto_replenish(
            WS, CreditType.SMS, enabled=True, threshold=25, bundle=BundleName.GROWTH
        )
        assert result == {"enabled": True, "threshold": 25, "bundle": "growth"}

    @pytest.mark.asyncio
    async def test_enable_without_bundle_is_rejected(self, session):
        with pytest.raises(ValueError, match="bundle is required"):
            await CreditService(session).update_auto_replenish(WS, CreditType.MINUTES, enabled=True)

    @pytest.mark.asyncio
    async def test_omitted_fields_keep_stored_values(self, session):
        service = CreditService(session)
        await service.update_auto_replenish(WS, CreditType.MINUTES, enabled=True, threshold=5, bundle=BundleName.PRO)

        result = await service.update_auto_replenish(WS, CreditType.MINUTES, enabled=False)

        assert result == {"enabled": False, "threshold": 5, "bundle": "pro"}

    @pytest.mark.asyncio
    async def test_negative_threshold_is_rejected(self, session):
        with pytest.raises(ValueError):
            await CreditService(session).update_auto_replenish(
                WS, CreditType.SMS, enabled=True, threshold=-1, bundle=BundleName.STARTER
            )


class TestSummary:
    @pytest.mark.asyncio
    async def test_unknown_workspace_has_zero_balances(self, session):
        summary = await CreditService(session).get_summary("nobody")
        assert summary["sms"]["balance"] == 0
        assert summary["sms"]["is_low"] is True
        assert summary["minutes"]["balance"] == 0
        assert summary["recent_attempts"] == []

    @pytest.mark.asyncio
    async def test_minutes_reported_in_whole_minutes(self, session_factory):
        async with session_factory() as session:
            await CreditBalanceRepository(session).add_call_seconds(WS, 20 * 60 + 59)
            await session.commit()

        async with session_factory() as session:
            summary = await CreditService(session).get_summary(WS)

        assert summary["minutes"]["balance"] == 20
        assert summary["minutes"]["balance_seconds"] == 1259
        assert summary["minutes"]["is_low"] is False
