"""
Join-and-Combine Stage

Merges the windowed order stream with the pre-aggregated entity rollups and
the currency dimension, using equality joins only. Both rollups arrive with
one row per order id, so the joins are validated one-to-one and the output
has exactly one row per order. Orders without a rollup row get zero
(outer join with default), never null.

Rows that cannot be placed are excluded and reported:
- orders with a missing or unknown currency id
- duplicate order ids in the order stream
- rollup keys that match no order upstream at all
Rollup keys whose order exists but lies outside the window are dropped
without a violation; that is ordinary window semantics.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

import polars as pl
import structlog

from rollup_engine.engine.errors import DataIntegrityViolation
from rollup_engine.engine.preaggregate import LINE_ITEM_ROLLUP, REFUND_ROLLUP
from rollup_engine.engine.windows import TimeWindow

logger = structlog.get_logger(__name__)

COMBINED_COLUMNS = [
    "order_id",
    "customer_id",
    "currency_code",
    "created_at",
    "gross_sales",
    "item_count",
    "total_refund",
    "refund_count",
]

_DEFAULTED = [
    LINE_ITEM_ROLLUP.output,
    LINE_ITEM_ROLLUP.count_output,
    REFUND_ROLLUP.output,
    REFUND_ROLLUP.count_output,
]


@dataclass
class CombineResult:
    """Output of the join stage"""
    frame: pl.DataFrame
    violations: List[DataIntegrityViolation] = field(default_factory=list)
    unmatched: Dict[str, List[str]] = field(default_factory=dict)
    out_of_window: List[str] = field(default_factory=list)

    @property
    def unmatched_keys(self) -> List[str]:
        keys: Set[str] = set()
        for entity_keys in self.unmatched.values():
            keys.update(entity_keys)
        return sorted(keys)


def _duplicate_order_violations(orders: pl.DataFrame) -> List[DataIntegrityViolation]:
    dupes = (
        orders.group_by("order_id")
        .agg(pl.len().alias("copies"))
        .filter(pl.col("copies") > 1)
        .sort("order_id")
    )
    return [
        DataIntegrityViolation("orders", row["order_id"], "duplicate order id", {"copies": row["copies"]})
        for row in dupes.iter_rows(named=True)
    ]


def _currency_violations(rows: pl.DataFrame) -> List[DataIntegrityViolation]:
    violations = []
    for row in rows.iter_rows(named=True):
        if row["currency_id"] is None:
            reason = "missing currency id"
        else:
            reason = "unknown currency id"
        violations.append(
            DataIntegrityViolation("orders", row["order_id"], reason, {"currency_id": row["currency_id"]})
        )
    return violations


def combine(
    orders: pl.DataFrame,
    item_rollup: pl.DataFrame,
    refund_rollup: pl.DataFrame,
    currencies: pl.DataFrame,
    window: TimeWindow,
) -> CombineResult:
    """
    Join windowed orders to per-order rollups and the currency dimension.

    Args:
        orders: Order stream (filtered to the window here if not already)
        item_rollup: One row per order_id with gross_sales, item_count
        refund_rollup: One row per order_id with total_refund, refund_count
        currencies: currency_id -> iso_code
        window: Active reporting window

    Returns:
        CombineResult with one row per valid order, in order_id order
    """
    windowed = orders.filter(window.frame_predicate("created_at"))
    violations = _duplicate_order_violations(windowed)
    windowed = windowed.unique(subset=["order_id"], keep="first", maintain_order=True)

    dimension = currencies.unique(subset=["currency_id"], keep="first", maintain_order=True)

    joined = (
        windowed.lazy()
        .join(item_rollup.lazy(), on="order_id", how="left", validate="1:1")
        .join(refund_rollup.lazy(), on="order_id", how="left", validate="1:1")
        .with_columns([pl.col(name).fill_null(0) for name in _DEFAULTED])
        .join(dimension.lazy(), on="currency_id", how="left", validate="m:1")
        .rename({"iso_code": "currency_code"})
        .collect()
    )

    invalid_currency = joined.filter(pl.col("currency_code").is_null())
    violations.extend(_currency_violations(invalid_currency))

    frame = (
        joined.filter(pl.col("currency_code").is_not_null())
        .select(COMBINED_COLUMNS)
        .sort("order_id")
    )

    order_keys = windowed.select("order_id")
    unmatched = {
        spec.entity: rollup.join(order_keys, on="order_id", how="anti")["order_id"].sort().to_list()
        for spec, rollup in ((LINE_ITEM_ROLLUP, item_rollup), (REFUND_ROLLUP, refund_rollup))
    }

    logger.debug(
        "Combined order stream",
        orders=len(windowed),
        output_rows=len(frame),
        violations=len(violations),
        unmatched={entity: len(keys) for entity, keys in unmatched.items()},
    )
    return CombineResult(frame=frame, violations=violations, unmatched=unmatched)


def classify_unmatched(
    unmatched: Dict[str, Iterable[str]],
    existing_order_ids: Set[str],
) -> Tuple[List[DataIntegrityViolation], List[str]]:
    """
    Split unmatched rollup keys into orphans and out-of-window references.

    Returns:
        (violations for keys with no upstream order, keys of existing
        orders that fall outside the window)
    """
    violations: List[DataIntegrityViolation] = []
    out_of_window: Set[str] = set()
    for entity, keys in unmatched.items():
        for key in keys:
            if key in existing_order_ids:
                out_of_window.add(key)
            else:
                violations.append(
                    DataIntegrityViolation(entity, key, "references a nonexistent order", {"order_id": key})
                )
    return violations, sorted(out_of_window)
