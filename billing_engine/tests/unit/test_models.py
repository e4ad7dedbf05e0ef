"""Unit tests for billing_engine.models.replenish."""

from __future__ import annotations

import pytest
from billing_engine.bundles import CreditType
from billing_engine.models import (
    CandidateResult,
    CandidateStatus,
    ChargeResult,
    ChargeStatus,
    ReplenishCandidate,
    ReplenishSummary,
)
from pydantic import ValidationError


class TestReplenishCandidate:
    def test_bundle_optional(self):
        candidate = ReplenishCandidate(workspace_id="ws-1", credit_type=CreditType.SMS, balance=5, threshold=10)
        assert candidate.bundle is None

    def test_empty_workspace_rejected(self):
        with pytest.raises(ValidationError):
            ReplenishCandidate(workspace_id="", credit_type=CreditType.SMS, balance=5, threshold=10)

    def test_unknown_bundle_rejected(self):
        with pytest.raises(ValidationError):
            ReplenishCandidate(
                workspace_id="ws-1",
                credit_type=CreditType.SMS,
                bundle="mega",
                balance=5,
                threshold=10,
            )


class TestChargeResult:
    def test_succeeded_property(self):
        assert ChargeResult(status=ChargeStatus.SUCCEEDED, payment_intent_id="pi_1").succeeded
        assert not ChargeResult(status=ChargeStatus.FAILED, error_code="card_declined").succeeded
        assert not ChargeResult(status=ChargeStatus.REQUIRES_ACTION).succeeded


# ---------------------------------------------------------------------------
# ReplenishSummary
# ---------------------------------------------------------------------------


def _result(status: CandidateStatus, error: str | None = None) -> CandidateResult:
    return CandidateResult(workspace_id="ws-1", credit_type=CreditType.SMS, status=status, error=error)


class TestReplenishSummary:
    def test_defaults(self):
        summary = ReplenishSummary()
        assert summary.success is True
        assert summary.processed == 0
        assert summary.details == []

    def test_record_tallies(self):
        summary = ReplenishSummary()
        summary.record(_result(CandidateStatus.SUCCESSFUL))
        summary.record(_result(CandidateStatus.SKIPPED, "No payment method"))
        summary.record(_result(CandidateStatus.FAILED, "card_declined"))
        assert summary.processed == 3
        assert summary.successful == 1
        assert summary.skipped == 1
        assert summary.failed == 1

    def test_requires_action_counts_as_failed(self):
        summary = ReplenishSummary()
        summary.record(_result(CandidateStatus.REQUIRES_ACTION, "authentication_required"))
        assert summary.failed == 1
        assert summary.details[0].status == CandidateStatus.REQUIRES_ACTION

    def test_response_uses_camel_case_and_type_key(self):
        summary = ReplenishSummary()
        summary.record(_result(CandidateStatus.SUCCESSFUL))
        body = summary.to_response()
        assert body["details"] == [{"workspaceId": "ws-1", "type": "sms_credits", "status": "successful"}]
        assert "error" not in body

    def test_response_hides_attempt_id(self):
        summary = ReplenishSummary()
        summary.record(
            CandidateResult(
                workspace_id="ws-1",
                credit_type=CreditType.MINUTES,
                status=CandidateStatus.FAILED,
                error="boom",
                attempt_id="abc",
            )
        )
        detail = summary.to_response()["details"][0]
        assert "attempt_id" not in detail
        assert detail["error"] == "boom"

    def test_response_includes_top_level_error(self):
        summary = ReplenishSummary()
        summary.success = False
        summary.error = "database unavailable"
        body = summary.to_response()
        assert body["success"] is False
        assert body["error"] == "database unavailable"
