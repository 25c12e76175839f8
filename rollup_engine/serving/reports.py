"""
Report Service

Downstream query and operational interface. Every query resolves from
committed rollup rows; nothing here reads the upstream store. A period whose
last refresh failed still answers from its previous snapshot, flagged stale.
"""

from datetime import datetime
from typing import Callable, List, Optional

import polars as pl
import structlog

from rollup_engine.config.settings import ReportingSettings
from rollup_engine.engine.errors import InvalidPeriod
from rollup_engine.engine.money import from_minor_units
from rollup_engine.engine.pipeline import ReportType, rank_customer_spend
from rollup_engine.engine.ranking import RankingMode
from rollup_engine.engine.windows import Period, PeriodKind, PeriodSpec, parse_period, utcnow
from rollup_engine.scheduler.refresh import RefreshOutcome, RefreshScheduler
from rollup_engine.serving.schemas import (
    DailyReport,
    DailyReportRow,
    MonthlyTotals,
    RefreshOutcomeResponse,
    RefreshStatusResponse,
    TopCustomer,
)
from rollup_engine.store.rollup_store import RefreshStatus, RollupStore, StoredEntry

logger = structlog.get_logger(__name__)

_SPEND_SCHEMA = {
    "period_key": pl.Utf8,
    "currency_code": pl.Utf8,
    "customer_id": pl.Utf8,
    "total_spent": pl.Int64,
}


def status_response(status: RefreshStatus) -> RefreshStatusResponse:
    return RefreshStatusResponse(
        period=status.period_key,
        last_refreshed_at=status.last_refreshed_at,
        is_stale=status.is_stale,
        last_status=status.last_status,
        last_error=status.last_error,
        entry_count=status.entry_count,
        missing_periods=list(status.missing_periods),
    )


def outcome_response(outcome: RefreshOutcome) -> RefreshOutcomeResponse:
    return RefreshOutcomeResponse(
        period=outcome.period_key,
        status=outcome.status.value,
        attempts=outcome.attempts,
        entry_count=outcome.entry_count,
        violation_count=outcome.violation_count,
        duration_seconds=round(outcome.duration_seconds, 4),
        error=outcome.error,
        error_type=outcome.error_type,
    )


def _period_of_kind(spec: PeriodSpec, kind: PeriodKind, now: datetime) -> Period:
    period = parse_period(spec, now=now, kind=kind)
    if period.kind is not kind:
        raise InvalidPeriod(f"Expected a {kind.value} period, got {period.key}")
    return period


def _spend_frame(entries: List[StoredEntry], amount_field: str) -> pl.DataFrame:
    records = [
        {
            "period_key": e.period_key,
            "currency_code": e.payload["currency_code"],
            "customer_id": e.payload["customer_id"],
            "total_spent": e.payload[amount_field],
        }
        for e in entries
    ]
    return pl.from_dicts(records, schema=_SPEND_SCHEMA)


class ReportService:
    """
    Reads reports out of the rollup store and exposes refresh operations.

    Example:
        service = ReportService(store, scheduler)
        report = await service.get_daily_report("2024-03-05")
    """

    def __init__(
        self,
        store: RollupStore,
        scheduler: RefreshScheduler,
        settings: Optional[ReportingSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.scheduler = scheduler
        self.settings = settings or ReportingSettings()
        self._clock = clock

    def _currency(self, currency: Optional[str]) -> str:
        return (currency or self.settings.default_currency).upper()

    async def get_daily_report(self, day: PeriodSpec, now: Optional[datetime] = None) -> DailyReport:
        """Orders of one day with gross sales and refunds, by gross sales descending"""
        now = now or self._clock()
        period = _period_of_kind(day, PeriodKind.DAY, now)
        entries, status = await self.store.snapshot(ReportType.DAILY_ORDER.value, period, now)

        rows = [
            DailyReportRow(
                order_id=e.grouping_key,
                customer_id=e.payload["customer_id"],
                gross_sales=from_minor_units(e.payload["gross_sales"]),
                total_refund=from_minor_units(e.payload["total_refund"]),
                currency_code=e.payload["currency_code"],
            )
            for e in entries
        ]
        rows.sort(key=lambda r: r.order_id)
        rows.sort(key=lambda r: r.gross_sales, reverse=True)

        return DailyReport(report_date=period.start.date(), rows=rows, status=status_response(status))

    async def get_monthly_totals(
        self,
        month: PeriodSpec,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[MonthlyTotals]:
        """
        Total sales, order count and average order value of a month.

        Returns:
            MonthlyTotals, zeroed when the month was computed but had no
            orders in the currency, or None when it was never computed
        """
        now = now or self._clock()
        period = _period_of_kind(month, PeriodKind.MONTH, now)
        code = self._currency(currency)
        entries, status = await self.store.snapshot(ReportType.MONTHLY_TOTALS.value, period, now)

        if not status.computed:
            return None

        payload = next((e.payload for e in entries if e.grouping_key == code), None)
        if payload is None:
            payload = {"total_sales": 0, "order_count": 0, "avg_order_value": 0, "total_refund": 0}

        return MonthlyTotals(
            month=period.key,
            currency_code=code,
            total_sales=from_minor_units(payload["total_sales"]),
            order_count=payload["order_count"],
            avg_order_value=from_minor_units(payload["avg_order_value"]),
            total_refund=from_minor_units(payload["total_refund"]),
            status=status_response(status),
        )

    async def get_top_customer(
        self,
        period: Optional[PeriodSpec] = None,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[TopCustomer]:
        """
        Highest spender of a month, a day, or of all time (period=None).

        All-time ranking folds the committed per-month customer totals; its
        status is stale when any month is stale or missing.
        Ties go to the smaller customer id.
        """
        now = now or self._clock()
        code = self._currency(currency)

        if period is None:
            return await self._top_customer_overall(code, now)

        target = parse_period(period, now=now)
        if target.kind is PeriodKind.MONTH:
            entries, status = await self.store.snapshot(ReportType.TOP_CUSTOMER.value, target, now)
            top = next((e.payload for e in entries if e.grouping_key == f"{code}:1"), None)
        else:
            entries, status = await self.store.snapshot(ReportType.DAILY_ORDER.value, target, now)
            spend = (
                _spend_frame(entries, "gross_sales")
                .group_by(["period_key", "currency_code", "customer_id"])
                .agg(pl.col("total_spent").sum())
            )
            ranked = rank_customer_spend(spend, RankingMode.PER_PERIOD)
            top = next((e.payload for e in ranked if e.payload["currency_code"] == code), None)

        if top is None:
            return None
        return TopCustomer(
            period=target.key,
            customer_id=top["customer_id"],
            total_spent=from_minor_units(top["total_spent"]),
            currency_code=code,
            status=status_response(status),
        )

    async def _top_customer_overall(self, code: str, now: datetime) -> Optional[TopCustomer]:
        entries, status = await self.store.snapshot_all(ReportType.CUSTOMER_SPEND.value, PeriodKind.MONTH, now)
        spend = (
            _spend_frame(entries, "total_spent")
            .filter(pl.col("currency_code") == code)
            .group_by(["currency_code", "customer_id"])
            .agg(pl.col("total_spent").sum())
        )
        ranked = rank_customer_spend(spend, RankingMode.OVERALL)
        if not ranked:
            return None

        top = ranked[0].payload
        return TopCustomer(
            period=None,
            customer_id=top["customer_id"],
            total_spent=from_minor_units(top["total_spent"]),
            currency_code=code,
            status=status_response(status),
        )

    async def force_refresh(self, period: PeriodSpec, now: Optional[datetime] = None) -> RefreshOutcomeResponse:
        """Recompute one period now (backfill / operator entry point)"""
        outcome = await self.scheduler.force_refresh(period, now=now or self._clock())
        return outcome_response(outcome)

    async def get_refresh_status(self, period: PeriodSpec, now: Optional[datetime] = None) -> RefreshStatusResponse:
        """Last successful refresh time and staleness of a period"""
        status = await self.store.get_status(period, now=now or self._clock())
        return status_response(status)
