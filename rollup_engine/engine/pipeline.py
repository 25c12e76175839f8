"""
Rollup Pipeline

Wires the stages in their fixed order for one reporting period:

    upstream reads (range predicates) -> pre-aggregate per entity
        -> equality join with defaults -> ranking -> RollupRows

The pre-aggregation always completes before anything is joined, so a
one-to-many relationship (an order with several refunds) can never
multiply rows.

Report types produced:
- daily_order     (day periods)   one row per order
- monthly_totals  (month periods) one row per currency
- customer_spend  (month periods) one row per (currency, customer)
- top_customer    (month periods) top-N customers per currency
"""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

import polars as pl
import structlog

from rollup_engine.engine.combine import CombineResult, classify_unmatched, combine
from rollup_engine.engine.errors import DataIntegrityViolation
from rollup_engine.engine.money import average_minor_units
from rollup_engine.engine.preaggregate import LINE_ITEM_ROLLUP, aggregate_line_items, aggregate_refunds
from rollup_engine.engine.ranking import RankedEntry, RankingMode, RankingResolver
from rollup_engine.engine.windows import Period, PeriodKind, TimeWindow

if TYPE_CHECKING:
    from rollup_engine.sources.base import UpstreamSource

logger = structlog.get_logger(__name__)


class ReportType(str, Enum):
    """Kinds of rows kept in the rollup store"""
    DAILY_ORDER = "daily_order"
    MONTHLY_TOTALS = "monthly_totals"
    CUSTOMER_SPEND = "customer_spend"
    TOP_CUSTOMER = "top_customer"


def canonical_json(payload: Dict[str, Any]) -> str:
    """Stable serialization: identical payloads give identical text"""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class RollupRow:
    """One pre-aggregated row, keyed by (report_type, period_key, grouping_key)"""
    report_type: str
    period_key: str
    grouping_key: str
    payload: Dict[str, Any]

    @property
    def sort_key(self):
        return (self.report_type, self.grouping_key)

    def payload_json(self) -> str:
        return canonical_json(self.payload)


def content_hash(rows: List[RollupRow]) -> str:
    """sha256 over the canonical form of a period's rows"""
    digest = hashlib.sha256()
    for row in sorted(rows, key=lambda r: r.sort_key):
        digest.update(f"{row.report_type}\x1f{row.grouping_key}\x1f{row.payload_json()}\n".encode("utf-8"))
    return digest.hexdigest()


@dataclass
class RollupBatch:
    """Everything one refresh computed for a period"""
    period: Period
    rows: List[RollupRow]
    violations: List[DataIntegrityViolation] = field(default_factory=list)
    out_of_window: List[str] = field(default_factory=list)
    order_count: int = 0

    @property
    def content_hash(self) -> str:
        return content_hash(self.rows)


def customer_key(currency_code: str, customer_id: str) -> str:
    return f"{currency_code}:{customer_id}"


SPEND_PAYLOAD_COLUMNS = ("currency_code", "customer_id", "total_spent")


def rank_customer_spend(
    spend: pl.DataFrame,
    mode: RankingMode,
    top_n: int = 1,
) -> List[RankedEntry]:
    """
    Top spenders per currency (and per period in PER_PERIOD mode).

    Customers who spent nothing are not ranked. Ties go to the smaller
    customer id. Entries come in partition order, then by rank.
    """
    resolver = RankingResolver(mode, period_column="period_key", partition_columns=["currency_code"])
    candidates = spend.filter(pl.col("total_spent") > 0)
    ranked = resolver.resolve(candidates, score="total_spent", tie_breaker="customer_id", top_n=top_n)
    return resolver.to_ranked_entries(ranked, payload_columns=SPEND_PAYLOAD_COLUMNS)


def daily_order_rows(period: Period, combined: pl.DataFrame) -> List[RollupRow]:
    return [
        RollupRow(
            report_type=ReportType.DAILY_ORDER.value,
            period_key=period.key,
            grouping_key=row["order_id"],
            payload={
                "customer_id": row["customer_id"],
                "currency_code": row["currency_code"],
                "gross_sales": row["gross_sales"],
                "item_count": row["item_count"],
                "total_refund": row["total_refund"],
                "refund_count": row["refund_count"],
            },
        )
        for row in combined.iter_rows(named=True)
    ]


def monthly_totals_rows(period: Period, combined: pl.DataFrame) -> List[RollupRow]:
    totals = (
        combined.group_by("currency_code")
        .agg([
            pl.col("gross_sales").sum().alias("total_sales"),
            pl.col("total_refund").sum().alias("total_refund"),
            pl.len().alias("order_count"),
        ])
        .sort("currency_code")
    )
    return [
        RollupRow(
            report_type=ReportType.MONTHLY_TOTALS.value,
            period_key=period.key,
            grouping_key=row["currency_code"],
            payload={
                "currency_code": row["currency_code"],
                "total_sales": row["total_sales"],
                "total_refund": row["total_refund"],
                "order_count": row["order_count"],
                "avg_order_value": average_minor_units(row["total_sales"], row["order_count"]),
            },
        )
        for row in totals.iter_rows(named=True)
    ]


def customer_spend_frame(period: Period, combined: pl.DataFrame) -> pl.DataFrame:
    return (
        combined.group_by(["currency_code", "customer_id"])
        .agg([
            pl.col("gross_sales").sum().alias("total_spent"),
            pl.len().alias("order_count"),
        ])
        .with_columns(pl.lit(period.key).alias("period_key"))
        .sort(["currency_code", "customer_id"])
    )


def customer_spend_rows(period: Period, spend: pl.DataFrame) -> List[RollupRow]:
    return [
        RollupRow(
            report_type=ReportType.CUSTOMER_SPEND.value,
            period_key=period.key,
            grouping_key=customer_key(row["currency_code"], row["customer_id"]),
            payload={
                "currency_code": row["currency_code"],
                "customer_id": row["customer_id"],
                "total_spent": row["total_spent"],
                "order_count": row["order_count"],
            },
        )
        for row in spend.iter_rows(named=True)
    ]


def top_customer_rows(period: Period, spend: pl.DataFrame, top_n: int) -> List[RollupRow]:
    ranked = rank_customer_spend(spend, RankingMode.PER_PERIOD, top_n=top_n)
    return [
        RollupRow(
            report_type=ReportType.TOP_CUSTOMER.value,
            period_key=period.key,
            grouping_key=f"{entry.payload['currency_code']}:{entry.rank}",
            payload={**entry.payload, "rank": entry.rank},
        )
        for entry in ranked
    ]


class RollupPipeline:
    """
    Computes the rollup rows of one period from the upstream source.

    Example:
        pipeline = RollupPipeline(source)
        batch = await pipeline.compute(Period.from_key("2024-03"))
    """

    def __init__(
        self,
        source: "UpstreamSource",
        top_n: int = 1,
        strict_integrity: bool = False,
    ):
        self.source = source
        self.top_n = top_n
        self.strict_integrity = strict_integrity

    async def combine_window(self, window: TimeWindow) -> CombineResult:
        """Read, pre-aggregate and join one window; integrity issues are classified and logged"""
        orders, items, refunds, currencies = await asyncio.gather(
            self.source.fetch_orders(window),
            self.source.fetch_line_items(window, statuses=LINE_ITEM_ROLLUP.statuses),
            self.source.fetch_refunds(window),
            self.source.fetch_currencies(),
        )

        # Phase 1: one row per order for every entity stream
        item_rollup = aggregate_line_items(items, window)
        refund_rollup = aggregate_refunds(refunds, window)

        # Phase 2: equality joins on pre-reduced inputs
        result = combine(orders, item_rollup, refund_rollup, currencies, window)

        if result.unmatched_keys:
            existing = await self.source.existing_order_ids(result.unmatched_keys)
            orphans, out_of_window = classify_unmatched(result.unmatched, existing)
            result.violations.extend(orphans)
            result.out_of_window = out_of_window
            if out_of_window:
                logger.debug("Skipped rows of orders outside the window", orders=len(out_of_window))

        for violation in result.violations:
            logger.warning("Excluded row violating data integrity", **violation.as_dict())

        if result.violations and self.strict_integrity:
            raise result.violations[0]

        return result

    async def compute(self, period: Period) -> RollupBatch:
        """Compute all rollup rows of a period"""
        started = time.perf_counter()
        result = await self.combine_window(period.window)
        combined = result.frame

        if period.kind is PeriodKind.DAY:
            rows = daily_order_rows(period, combined)
        else:
            spend = customer_spend_frame(period, combined)
            rows = (
                monthly_totals_rows(period, combined)
                + customer_spend_rows(period, spend)
                + top_customer_rows(period, spend, self.top_n)
            )

        rows.sort(key=lambda r: r.sort_key)
        batch = RollupBatch(
            period=period,
            rows=rows,
            violations=list(result.violations),
            out_of_window=list(result.out_of_window),
            order_count=len(combined),
        )

        logger.info(
            "Computed rollups",
            period=period.key,
            orders=len(combined),
            rows=len(rows),
            violations=len(batch.violations),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return batch
