"""
SQL Upstream Source

Reads the order store through async SQLAlchemy. Every windowed read is a
plain range predicate on an indexed timestamp column. Line items have no
window of their own: they are read through an equality join to the orders
in the window, with the status restriction pushed into the WHERE clause.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

import polars as pl
import structlog
from sqlalchemy import Select, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rollup_engine.database.models import CurrencyRef, LineItemStatus, Order, OrderItem, Refund
from rollup_engine.engine.errors import UpstreamUnavailable
from rollup_engine.engine.money import to_minor_units
from rollup_engine.engine.windows import TimeWindow
from rollup_engine.sources.base import (
    CURRENCY_SCHEMA,
    LINE_ITEM_SCHEMA,
    ORDER_SCHEMA,
    REFUND_SCHEMA,
    frame_from_records,
)

logger = structlog.get_logger(__name__)


class SqlUpstreamSource:
    """
    Upstream source backed by the transactional database.

    Example:
        source = SqlUpstreamSource(create_session_factory(engine))
        orders = await source.fetch_orders(Period.from_key("2024-03").window)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lookup_chunk_size: int = 500,
    ):
        self._session_factory = session_factory
        self.lookup_chunk_size = lookup_chunk_size

    async def _fetch(
        self,
        entity: str,
        stmt: Select,
        convert: Callable[[Any], Dict[str, Any]],
        schema: Mapping[str, pl.DataType],
    ) -> pl.DataFrame:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except (DBAPIError, OSError) as e:
            logger.error("Upstream read failed", entity=entity, error=str(e))
            raise UpstreamUnavailable(f"Could not read {entity}: {e}") from e

        frame = frame_from_records((convert(row) for row in rows), schema)
        logger.debug("Upstream read", entity=entity, rows=len(frame))
        return frame

    async def fetch_orders(self, window: TimeWindow) -> pl.DataFrame:
        stmt = select(
            Order.order_id,
            Order.customer_id,
            Order.currency_id,
            Order.created_at,
        ).where(window.sql_predicate(Order.created_at))

        return await self._fetch("orders", stmt, lambda row: dict(row._mapping), ORDER_SCHEMA)

    async def fetch_line_items(
        self,
        window: TimeWindow,
        statuses: Optional[Sequence[LineItemStatus]] = None,
    ) -> pl.DataFrame:
        stmt = select(
            OrderItem.line_item_id,
            OrderItem.order_id,
            OrderItem.quantity,
            OrderItem.unit_price,
            OrderItem.status,
            OrderItem.created_at,
        ).join(Order, OrderItem.order_id == Order.order_id).where(window.sql_predicate(Order.created_at))
        if statuses:
            stmt = stmt.where(OrderItem.status.in_(list(statuses)))

        def convert(row) -> Dict[str, Any]:
            return {
                "line_item_id": row.line_item_id,
                "order_id": row.order_id,
                "quantity": row.quantity,
                "unit_price": to_minor_units(row.unit_price),
                "status": LineItemStatus(row.status).value,
                "created_at": row.created_at,
            }

        return await self._fetch("order_items", stmt, convert, LINE_ITEM_SCHEMA)

    async def fetch_refunds(self, window: TimeWindow) -> pl.DataFrame:
        stmt = select(
            Refund.refund_id,
            Refund.order_id,
            Refund.amount,
            Refund.created_at,
        ).where(window.sql_predicate(Refund.created_at))

        def convert(row) -> Dict[str, Any]:
            return {
                "refund_id": row.refund_id,
                "order_id": row.order_id,
                "amount": to_minor_units(row.amount),
                "created_at": row.created_at,
            }

        return await self._fetch("refunds", stmt, convert, REFUND_SCHEMA)

    async def fetch_currencies(self) -> pl.DataFrame:
        stmt = select(CurrencyRef.currency_id, CurrencyRef.iso_code)
        return await self._fetch("currencies", stmt, lambda row: dict(row._mapping), CURRENCY_SCHEMA)

    async def existing_order_ids(self, order_ids: List[str]) -> Set[str]:
        found: Set[str] = set()
        unique_ids = sorted(set(order_ids))
        for i in range(0, len(unique_ids), self.lookup_chunk_size):
            chunk = unique_ids[i:i + self.lookup_chunk_size]
            stmt = select(Order.order_id).where(Order.order_id.in_(chunk))
            frame = await self._fetch(
                "orders", stmt, lambda row: {"order_id": row.order_id}, {"order_id": pl.Utf8}
            )
            found.update(frame["order_id"].to_list())
        return found
