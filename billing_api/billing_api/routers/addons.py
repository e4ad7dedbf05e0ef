"""Add-on endpoints: balances, auto-replenish settings, usage debits and attempt history.

Called by internal services with ``Authorization: Bearer <API_SERVICE_TOKEN>``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from billing_engine.bundles import CreditType, default_catalog
from billing_engine.state.repository import ReplenishAttemptRepository
from fastapi import APIRouter, Depends, HTTPException, Query

from billing_api.dependencies import SessionDep, SettingsDep
from billing_api.schemas import (
    AutoReplenishSettingsRequest,
    AutoReplenishSettingsResponse,
    CallUsageRequest,
    ReplenishAttemptListResponse,
    ReplenishAttemptResponse,
    SMSUsageRequest,
    UsageResponse,
    WorkspaceSummaryResponse,
)
from billing_api.security import require_service_token
from billing_api.services.credit_service import CreditService, InsufficientBalanceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/addons", tags=["addons"], dependencies=[Depends(require_service_token)])


# ---------------------------------------------------------------------------
# Catalog and reconciliation
# ---------------------------------------------------------------------------


@router.get("/bundles")
async def list_bundles() -> dict[str, Any]:
    """Return the bundle price list for both credit types."""
    return {
        "bundles": [
            {
                "type": b.credit_type.value,
                "bundle": b.name.value,
                "quantity": b.quantity,
                "price_cents": b.price_cents,
            }
            for b in default_catalog.list()
        ]
    }


@router.get("/replenish-attempts/stale", response_model=ReplenishAttemptListResponse)
async def list_stale_attempts(
    session: SessionDep,
    settings: SettingsDep,
    older_than_minutes: int | None = Query(default=None, ge=1),
) -> ReplenishAttemptListResponse:
    """Attempts stuck in ``processing``: the charge outcome was never recorded."""
    minutes = older_than_minutes or settings.auto_replenish_stale_minutes
    cutoff = datetime.now(UTC) - timedelta(minutes=minutes)
    rows = await ReplenishAttemptRepository(session).list_stale_processing(cutoff)
    attempts = [ReplenishAttemptResponse.model_validate(r) for r in rows]
    return ReplenishAttemptListResponse(attempts=attempts, total=len(attempts))


# ---------------------------------------------------------------------------
# Workspace balances and settings
# ---------------------------------------------------------------------------


@router.get("/{workspace_id}/summary", response_model=WorkspaceSummaryResponse)
async def get_summary(workspace_id: str, session: SessionDep) -> dict[str, Any]:
    return await CreditService(session).get_summary(workspace_id)


async def _update_settings(
    session: SessionDep,
    workspace_id: str,
    credit_type: CreditType,
    body: AutoReplenishSettingsRequest,
) -> dict[str, Any]:
    try:
        return await CreditService(session).update_auto_replenish(
            workspace_id,
            credit_type,
            enabled=body.enabled,
            threshold=body.threshold,
            bundle=body.bundle,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.put("/{workspace_id}/sms/auto-replenish", response_model=AutoReplenishSettingsResponse)
async def update_sms_auto_replenish(
    workspace_id: str,
    body: AutoReplenishSettingsRequest,
    session: SessionDep,
) -> dict[str, Any]:
    """Update SMS auto-replenish (threshold in credits)."""
    return await _update_settings(session, workspace_id, CreditType.SMS, body)


@router.put("/{workspace_id}/minutes/auto-replenish", response_model=AutoReplenishSettingsResponse)
async def update_minutes_auto_replenish(
    workspace_id: str,
    body: AutoReplenishSettingsRequest,
    session: SessionDep,
) -> dict[str, Any]:
    """Update call-minute auto-replenish (threshold in whole minutes)."""
    return await _update_settings(session, workspace_id, CreditType.MINUTES, body)


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


@router.post("/{workspace_id}/sms/usage", response_model=UsageResponse)
async def record_sms_usage(workspace_id: str, body: SMSUsageRequest, session: SessionDep) -> UsageResponse:
    """Debit one message.  402 when the balance does not cover it."""
    try:
        result = await CreditService(session).record_sms_usage(
            workspace_id,
            body.message_sid,
            direction=body.direction,
            segments=body.segments,
            is_mms=body.is_mms,
            from_number=body.from_number,
            to_number=body.to_number,
        )
    except InsufficientBalanceError as exc:
        raise HTTPException(status_code=402, detail=str(exc)) from exc
    return UsageResponse(**result.model_dump())


@router.post("/{workspace_id}/calls/usage", response_model=UsageResponse)
async def record_call_usage(workspace_id: str, body: CallUsageRequest, session: SessionDep) -> UsageResponse:
    """Debit one call by its duration.  402 when the balance does not cover it."""
    try:
        result = await CreditService(session).record_call_usage(
            workspace_id,
            body.call_sid,
            direction=body.direction,
            duration_seconds=body.duration_seconds,
            from_number=body.from_number,
            to_number=body.to_number,
            status=body.status,
        )
    except InsufficientBalanceError as exc:
        raise HTTPException(status_code=402, detail=str(exc)) from exc
    return UsageResponse(**result.model_dump())


# ---------------------------------------------------------------------------
# Attempt history
# ---------------------------------------------------------------------------


@router.get("/{workspace_id}/attempts", response_model=ReplenishAttemptListResponse)
async def list_attempts(
    workspace_id: str,
    session: SessionDep,
    credit_type: CreditType | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=500),
) -> ReplenishAttemptListResponse:
    rows = await ReplenishAttemptRepository(session).list_for_workspace(
        workspace_id,
        credit_type=credit_type.value if credit_type is not None else None,
        limit=limit,
    )
    attempts = [ReplenishAttemptResponse.model_validate(r) for r in rows]
    return ReplenishAttemptListResponse(attempts=attempts, total=len(attempts))
