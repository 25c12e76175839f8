"""
Report Serving Module
"""
from .reports import ReportService
from .schemas import (
    DailyReport,
    DailyReportRow,
    MonthlyTotals,
    RefreshOutcomeResponse,
    RefreshStatusResponse,
    TopCustomer,
)

__all__ = [
    "DailyReport",
    "DailyReportRow",
    "MonthlyTotals",
    "RefreshOutcomeResponse",
    "RefreshStatusResponse",
    "ReportService",
    "TopCustomer",
]
