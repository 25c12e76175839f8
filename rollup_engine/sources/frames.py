"""
In-Memory Upstream Source

Serves the upstream read interface from polars frames, either built in
memory or loaded from a directory of parquet extracts. Used for backfills
from data-lake snapshots and throughout the test suite.
"""

from pathlib import Path
from typing import List, Optional, Sequence, Set, Union

import polars as pl
import structlog

from rollup_engine.database.models import LineItemStatus
from rollup_engine.engine.windows import TimeWindow
from rollup_engine.sources.base import (
    CURRENCY_SCHEMA,
    LINE_ITEM_SCHEMA,
    ORDER_SCHEMA,
    REFUND_SCHEMA,
    conform,
)

logger = structlog.get_logger(__name__)


class FrameSource:
    """
    Upstream source over polars frames.

    Example:
        source = FrameSource(orders=orders_df, line_items=items_df,
                             refunds=refunds_df, currencies=currencies_df)
    """

    def __init__(
        self,
        orders: pl.DataFrame,
        line_items: pl.DataFrame,
        refunds: pl.DataFrame,
        currencies: pl.DataFrame,
    ):
        self.orders = conform(orders, ORDER_SCHEMA)
        self.line_items = conform(line_items, LINE_ITEM_SCHEMA)
        self.refunds = conform(refunds, REFUND_SCHEMA)
        self.currencies = conform(currencies, CURRENCY_SCHEMA)

    @classmethod
    def from_parquet(cls, directory: Union[str, Path]) -> "FrameSource":
        """Load orders/order_items/refunds/currencies.parquet from a directory"""
        directory = Path(directory)
        frames = {
            name: pl.read_parquet(directory / f"{name}.parquet")
            for name in ("orders", "order_items", "refunds", "currencies")
        }
        logger.info(
            "Loaded parquet extracts",
            directory=str(directory),
            **{name: len(df) for name, df in frames.items()},
        )
        return cls(
            orders=frames["orders"],
            line_items=frames["order_items"],
            refunds=frames["refunds"],
            currencies=frames["currencies"],
        )

    async def fetch_orders(self, window: TimeWindow) -> pl.DataFrame:
        return self.orders.filter(window.frame_predicate("created_at"))

    async def fetch_line_items(
        self,
        window: TimeWindow,
        statuses: Optional[Sequence[LineItemStatus]] = None,
    ) -> pl.DataFrame:
        order_ids = self.orders.filter(window.frame_predicate("created_at"))["order_id"]
        items = self.line_items.filter(pl.col("order_id").is_in(order_ids.to_list()))
        if statuses:
            items = items.filter(pl.col("status").is_in([LineItemStatus(s).value for s in statuses]))
        return items

    async def fetch_refunds(self, window: TimeWindow) -> pl.DataFrame:
        return self.refunds.filter(window.frame_predicate("created_at"))

    async def fetch_currencies(self) -> pl.DataFrame:
        return self.currencies

    async def existing_order_ids(self, order_ids: List[str]) -> Set[str]:
        known = self.orders.filter(pl.col("order_id").is_in(list(set(order_ids))))
        return set(known["order_id"].to_list())
