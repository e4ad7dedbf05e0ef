"""Shared Pydantic request and response models for API endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from billing_engine.bundles import BundleName
from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Auto-replenish settings
# ---------------------------------------------------------------------------


class AutoReplenishSettingsRequest(BaseModel):
    """Body for ``PUT /addons/{workspace_id}/{sms|minutes}/auto-replenish``.

    ``threshold`` is in credits for SMS and whole minutes for calls.
    Omitted fields keep their stored value.
    """

    enabled: bool
    threshold: int | None = Field(default=None, ge=0)
    bundle: BundleName | None = None


class AutoReplenishSettingsResponse(BaseModel):
    enabled: bool
    threshold: int
    bundle: str | None = None


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class SMSUsageRequest(BaseModel):
    """One sent or received message to debit."""

    message_sid: str = Field(..., min_length=1, max_length=64)
    direction: Literal["inbound", "outbound"]
    segments: int = Field(default=1, ge=1)
    is_mms: bool = False
    from_number: str = Field(..., min_length=1, max_length=32)
    to_number: str = Field(..., min_length=1, max_length=32)


class CallUsageRequest(BaseModel):
    """One completed call to debit."""

    call_sid: str = Field(..., min_length=1, max_length=64)
    direction: Literal["inbound", "outbound"]
    duration_seconds: int = Field(..., ge=0)
    from_number: str = Field(..., min_length=1, max_length=32)
    to_number: str = Field(..., min_length=1, max_length=32)
    status: str | None = None


class UsageResponse(BaseModel):
    """``recorded`` is false when the SID was already debited."""

    recorded: bool
    consumed: int
    balance: int


# ---------------------------------------------------------------------------
# Replenish attempts
# ---------------------------------------------------------------------------


class ReplenishAttemptResponse(BaseModel):
    """A persisted auto-replenish attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    workspace_id: str
    credit_type: str
    bundle: str
    quantity: int
    amount_cents: int
    status: str
    stripe_payment_intent_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class ReplenishAttemptListResponse(BaseModel):
    attempts: list[ReplenishAttemptResponse] = Field(default_factory=list)
    total: int = 0


class WorkspaceSummaryResponse(BaseModel):
    """Balances, low-balance flags and auto-replenish settings for one workspace."""

    workspace_id: str
    sms: dict[str, Any]
    minutes: dict[str, Any]
    recent_attempts: list[dict[str, Any]] = Field(default_factory=list)
