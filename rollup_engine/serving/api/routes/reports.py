"""
Report Endpoints

Read-only access to committed rollups. Periods use the key format of the
store ("2024-03-05" for a day, "2024-03" for a month) or a relative token
("yesterday", "last_month").
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
import structlog

from rollup_engine.engine.errors import InvalidPeriod
from rollup_engine.serving.api.dependencies import get_report_service
from rollup_engine.serving.reports import ReportService
from rollup_engine.serving.schemas import DailyReport, MonthlyTotals, TopCustomer

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/daily/{day}", response_model=DailyReport)
async def get_daily_report(
    day: str,
    service: ReportService = Depends(get_report_service),
) -> DailyReport:
    """Orders of one day with gross sales and refunds"""
    try:
        return await service.get_daily_report(day)
    except InvalidPeriod as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/monthly/{month}", response_model=MonthlyTotals)
async def get_monthly_totals(
    month: str,
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    service: ReportService = Depends(get_report_service),
) -> MonthlyTotals:
    """Total sales, order count and average order value of a month"""
    try:
        totals = await service.get_monthly_totals(month, currency=currency)
    except InvalidPeriod as e:
        raise HTTPException(status_code=400, detail=str(e))

    if totals is None:
        raise HTTPException(status_code=404, detail=f"Month {month} has not been computed")
    return totals


@router.get("/top-customer", response_model=TopCustomer)
async def get_top_customer(
    period: Optional[str] = None,
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    service: ReportService = Depends(get_report_service),
) -> TopCustomer:
    """Highest spender of a period, or of all time when no period is given"""
    try:
        top = await service.get_top_customer(period, currency=currency)
    except InvalidPeriod as e:
        raise HTTPException(status_code=400, detail=str(e))

    if top is None:
        raise HTTPException(status_code=404, detail="No customer spend recorded")
    return top
