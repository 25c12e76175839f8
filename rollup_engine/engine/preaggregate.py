"""
Per-Entity Pre-Aggregator

Reduces one raw entity stream to exactly one row per grouping key before
anything is joined to it. The window filter (for entities windowed by their
own timestamp) and the entity's row filter run ahead of the group-by, so a
key with no qualifying rows is absent from the output rather than present
with a zero; the join stage supplies the zero.

Line items carry no window of their own. They belong to the period of their
order, so the upstream read returns the items of the windowed orders and the
rollup applies no timestamp filter to them.

Pure functions of their inputs. Empty input gives an empty, typed result.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import polars as pl
import structlog

from rollup_engine.database.models import LineItemStatus
from rollup_engine.engine.windows import TimeWindow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, eq=False)
class EntityRollupSpec:
    """
    How one entity stream collapses to a per-key rollup.

    Attributes:
        entity: Name used in logs and integrity reports
        key: Grouping column
        timestamp_column: Raw timestamp the window applies to; None for
            entities the upstream read scopes by order membership
        measure: Per-row amount expression; summed per key
        output: Name of the summed measure
        count_output: Name of the qualifying row count
        row_filter: Extra row predicate applied before grouping
        statuses: Status restriction the upstream read can push down
    """
    entity: str
    key: str
    timestamp_column: Optional[str]
    measure: pl.Expr
    output: str
    count_output: str
    row_filter: Optional[pl.Expr] = None
    statuses: Tuple[LineItemStatus, ...] = ()


LINE_ITEM_ROLLUP = EntityRollupSpec(
    entity="order_items",
    key="order_id",
    timestamp_column=None,
    measure=pl.col("quantity") * pl.col("unit_price"),
    output="gross_sales",
    count_output="item_count",
    row_filter=pl.col("status") == LineItemStatus.FULFILLED.value,
    statuses=(LineItemStatus.FULFILLED,),
)

REFUND_ROLLUP = EntityRollupSpec(
    entity="refunds",
    key="order_id",
    timestamp_column="created_at",
    measure=pl.col("amount"),
    output="total_refund",
    count_output="refund_count",
)


def pre_aggregate(frame: pl.DataFrame, spec: EntityRollupSpec, window: TimeWindow) -> pl.DataFrame:
    """
    Collapse an entity stream to one row per key inside the window.

    Args:
        frame: Raw entity rows
        spec: Entity rollup description
        window: Active reporting window, applied to timestamp_column

    Returns:
        DataFrame with columns [key, output, count_output], sorted by key
    """
    lf = frame.lazy()
    if spec.timestamp_column is not None:
        lf = lf.filter(window.frame_predicate(spec.timestamp_column))
    if spec.row_filter is not None:
        lf = lf.filter(spec.row_filter)

    rollup = (
        lf.group_by(spec.key)
        .agg([
            spec.measure.sum().cast(pl.Int64).alias(spec.output),
            pl.len().cast(pl.Int64).alias(spec.count_output),
        ])
        .sort(spec.key)
        .collect()
    )

    logger.debug(
        "Pre-aggregated entity stream",
        entity=spec.entity,
        input_rows=len(frame),
        keys=len(rollup),
        window_start=window.start.isoformat(),
    )
    return rollup


def aggregate_line_items(items: pl.DataFrame, window: TimeWindow) -> pl.DataFrame:
    """Gross sales per order from FULFILLED line items of the window's orders"""
    return pre_aggregate(items, LINE_ITEM_ROLLUP, window)


def aggregate_refunds(refunds: pl.DataFrame, window: TimeWindow) -> pl.DataFrame:
    """Total refund per order"""
    return pre_aggregate(refunds, REFUND_ROLLUP, window)
