"""
Report Response Models

Shapes returned to report consumers, both from ReportService and over HTTP.
Amounts are Decimal with two places.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class RefreshStatusResponse(BaseModel):
    """Refresh bookkeeping and staleness of a period, or of all months for all-time answers"""
    period: str
    last_refreshed_at: Optional[datetime]
    is_stale: bool
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    entry_count: int = 0
    missing_periods: List[str] = Field(default_factory=list)


class DailyReportRow(BaseModel):
    """One order of a daily revenue/refund report"""
    order_id: str
    customer_id: str
    gross_sales: Decimal
    total_refund: Decimal
    currency_code: str


class DailyReport(BaseModel):
    """Orders of one day, by gross sales descending"""
    report_date: date
    rows: List[DailyReportRow]
    status: RefreshStatusResponse


class MonthlyTotals(BaseModel):
    """Month totals in one currency"""
    month: str
    currency_code: str
    total_sales: Decimal
    order_count: int
    avg_order_value: Decimal
    total_refund: Decimal
    status: RefreshStatusResponse


class TopCustomer(BaseModel):
    """Highest spender of a period (or of all time when period is None)"""
    period: Optional[str]
    customer_id: str
    total_spent: Decimal
    currency_code: str
    status: RefreshStatusResponse


class RefreshOutcomeResponse(BaseModel):
    """Result of a forced refresh"""
    period: str
    status: str
    attempts: int
    entry_count: int
    violation_count: int
    duration_seconds: float
    error: Optional[str] = None
    error_type: Optional[str] = None
