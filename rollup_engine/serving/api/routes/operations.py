"""
Operational Endpoints

Forced refresh and refresh status of individual periods.
"""

from fastapi import APIRouter, Depends, HTTPException
import structlog

from rollup_engine.engine.errors import InvalidPeriod
from rollup_engine.serving.api.dependencies import get_report_service
from rollup_engine.serving.reports import ReportService
from rollup_engine.serving.schemas import RefreshOutcomeResponse, RefreshStatusResponse

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.post("/refresh/{period}", response_model=RefreshOutcomeResponse)
async def force_refresh(
    period: str,
    service: ReportService = Depends(get_report_service),
) -> RefreshOutcomeResponse:
    """
    Recompute one period now.

    A refresh already running for the period answers 409; a failed refresh
    answers 200 with status "failed" and the error, the previous snapshot
    staying in place.
    """
    try:
        outcome = await service.force_refresh(period)
    except InvalidPeriod as e:
        raise HTTPException(status_code=400, detail=str(e))

    if outcome.status == "rejected":
        raise HTTPException(status_code=409, detail=outcome.error)

    logger.info("Forced refresh finished", period=outcome.period, status=outcome.status)
    return outcome


@router.get("/status/{period}", response_model=RefreshStatusResponse)
async def get_refresh_status(
    period: str,
    service: ReportService = Depends(get_report_service),
) -> RefreshStatusResponse:
    """Last refresh time and staleness of a period"""
    try:
        return await service.get_refresh_status(period)
    except InvalidPeriod as e:
        raise HTTPException(status_code=400, detail=str(e))
