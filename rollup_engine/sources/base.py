"""
Upstream Read Interface

The engine reads the order store only through this interface: half-open
range reads on creation timestamps, line items scoped by the orders in the
window with an optional status pushdown, the currency dimension, and an
equality lookup on order ids.

Every read returns a polars DataFrame with a fixed schema. Money columns
hold integer minor units.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, runtime_checkable

import polars as pl

from rollup_engine.database.models import LineItemStatus
from rollup_engine.engine.windows import TimeWindow

ORDER_SCHEMA: Dict[str, pl.DataType] = {
    "order_id": pl.Utf8,
    "customer_id": pl.Utf8,
    "currency_id": pl.Int64,
    "created_at": pl.Datetime("us"),
}

LINE_ITEM_SCHEMA: Dict[str, pl.DataType] = {
    "line_item_id": pl.Utf8,
    "order_id": pl.Utf8,
    "quantity": pl.Int64,
    "unit_price": pl.Int64,
    "status": pl.Utf8,
    "created_at": pl.Datetime("us"),
}

REFUND_SCHEMA: Dict[str, pl.DataType] = {
    "refund_id": pl.Utf8,
    "order_id": pl.Utf8,
    "amount": pl.Int64,
    "created_at": pl.Datetime("us"),
}

CURRENCY_SCHEMA: Dict[str, pl.DataType] = {
    "currency_id": pl.Int64,
    "iso_code": pl.Utf8,
}


def frame_from_records(records: Iterable[Mapping[str, Any]], schema: Mapping[str, pl.DataType]) -> pl.DataFrame:
    """Build a frame with exactly the given schema, empty input included"""
    return pl.from_dicts(list(records), schema=dict(schema))


def conform(frame: pl.DataFrame, schema: Mapping[str, pl.DataType]) -> pl.DataFrame:
    """Select and cast the schema columns of an externally supplied frame"""
    missing = [name for name in schema if name not in frame.columns]
    if missing:
        raise ValueError(f"Frame is missing columns: {missing}")
    return frame.select([pl.col(name).cast(dtype) for name, dtype in schema.items()])


@runtime_checkable
class UpstreamSource(Protocol):
    """Read-only access to orders, line items, refunds and currencies"""

    async def fetch_orders(self, window: TimeWindow) -> pl.DataFrame:
        """Orders with window.start <= created_at < window.end"""
        ...

    async def fetch_line_items(
        self,
        window: TimeWindow,
        statuses: Optional[Sequence[LineItemStatus]] = None,
    ) -> pl.DataFrame:
        """Line items of the orders created inside the window, optionally restricted to statuses"""
        ...

    async def fetch_refunds(self, window: TimeWindow) -> pl.DataFrame:
        """Refunds created inside the window"""
        ...

    async def fetch_currencies(self) -> pl.DataFrame:
        """The whole currency dimension"""
        ...

    async def existing_order_ids(self, order_ids: List[str]) -> Set[str]:
        """The subset of order_ids that exist upstream, regardless of window"""
        ...
