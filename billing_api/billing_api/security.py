"""Bearer-secret guards for machine callers.

Two shared secrets protect the API: the cron secret presented by the
scheduler that triggers the auto-replenish job, and the service token used
by internal messaging and voice services.  Both are compared in constant
time, and an unset secret rejects every request.
"""

from __future__ import annotations

import hmac
import logging

from fastapi import HTTPException, Request
from pydantic import SecretStr

from billing_api.dependencies import SettingsDep

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "bearer "


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
        return None
    token = authorization[len(_BEARER_PREFIX) :].strip()
    return token or None


def verify_bearer(authorization: str | None, secret: SecretStr) -> bool:
    """Constant-time check of *authorization* against *secret*."""
    expected = secret.get_secret_value()
    token = extract_bearer_token(authorization)
    if not expected or token is None:
        return False
    return hmac.compare_digest(token.encode(), expected.encode())


async def require_cron_secret(request: Request, settings: SettingsDep) -> None:
    """Reject the request with 401 unless it carries the cron secret."""
    if not verify_bearer(request.headers.get("authorization"), settings.cron_secret):
        logger.warning("Rejected cron request to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")
    request.state.caller = "cron"


async def require_service_token(request: Request, settings: SettingsDep) -> None:
    """Reject the request with 401 unless it carries the internal service token."""
    if not verify_bearer(request.headers.get("authorization"), settings.service_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
    request.state.caller = "service"
