# backend/marketplace/routes/internal.py
"""
Internal scheduler trigger.

POST /cron runs one settlement job set now. Intended for an external
scheduler (platform cron, CI job) as an alternative to Celery beat; the
caller must present ``settings.cron_secret`` as a bearer token.
"""

import asyncio
import logging

from fastapi import APIRouter, Body, Depends

from ..api.dependencies import get_settlement_scheduler, require_cron_secret
from ..schemas.settlement import CronRequest, CronResponse, JobReportResponse
from ..services.settlement_scheduler import SettlementScheduler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["internal"], dependencies=[Depends(require_cron_secret)])


@router.post("/cron", response_model=CronResponse)
async def run_cron(
    payload: CronRequest = Body(...),
    scheduler: SettlementScheduler = Depends(get_settlement_scheduler),
) -> CronResponse:
    logger.info("Cron trigger received", extra={"job": payload.job})
    reports = await asyncio.to_thread(scheduler.run, payload.job, payload.now)
    return CronResponse(
        job=payload.job,
        reports=[JobReportResponse(**report.to_dict()) for report in reports],
    )
