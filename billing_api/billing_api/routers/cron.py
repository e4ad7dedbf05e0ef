"""Cron trigger for the auto-replenish job.

The external scheduler calls ``/api/cron/auto-replenish`` every five
minutes with ``Authorization: Bearer <API_CRON_SECRET>``.  Both GET and POST
are accepted because hosted cron services differ in the method they send.
"""

from __future__ import annotations

import logging

from billing_engine.models import ReplenishSummary
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from billing_api.dependencies import AutoReplenishJobDep
from billing_api.security import require_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.api_route("/auto-replenish", methods=["GET", "POST"])
async def auto_replenish(job: AutoReplenishJobDep) -> JSONResponse:
    """Run the auto-replenish job once and return its summary.

    Per-candidate failures are reported inside ``details``.  If the run
    itself fails, the response is a 500 that still carries every result
    gathered before the failure, with ``success`` false and ``error`` set.
    """
    summary = ReplenishSummary()
    try:
        await job.run(summary)
    except Exception as exc:
        logger.error("Auto-replenish run aborted: %s", exc, exc_info=True)
        summary.success = False
        summary.error = str(exc) or type(exc).__name__
        return JSONResponse(status_code=500, content=summary.to_response())

    logger.info("Auto-replenish cron finished", extra={"summary": summary.to_response()})
    return JSONResponse(content=summary.to_response())
