"""
Sample and Synthetic Data

Upstream datasets for development, backfill rehearsals and tests:
- the canonical sample dataset (three customers over February and March 2024)
- a seeded random generator with mixed line-item statuses, multi-refund
  orders and a second currency
- loaders into the upstream tables and into parquet extracts
"""

import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import polars as pl
import structlog
from faker import Faker
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rollup_engine.database.models import CurrencyRef, LineItemStatus, Order, OrderItem, Refund
from rollup_engine.engine.money import from_minor_units, to_minor_units
from rollup_engine.sources.base import (
    CURRENCY_SCHEMA,
    LINE_ITEM_SCHEMA,
    ORDER_SCHEMA,
    REFUND_SCHEMA,
    frame_from_records,
)
from rollup_engine.sources.frames import FrameSource

logger = structlog.get_logger(__name__)

CURRENCIES = [(1, "USD"), (2, "EUR"), (3, "GBP")]

LINE_ITEM_STATUSES = [
    (LineItemStatus.FULFILLED, 0.80),
    (LineItemStatus.PENDING, 0.08),
    (LineItemStatus.CANCELLED, 0.07),
    (LineItemStatus.RETURNED, 0.05),
]


@dataclass
class Dataset:
    """Upstream frames in the read-interface schemas (money in minor units)"""
    orders: pl.DataFrame
    line_items: pl.DataFrame
    refunds: pl.DataFrame
    currencies: pl.DataFrame

    def to_source(self) -> FrameSource:
        return FrameSource(
            orders=self.orders,
            line_items=self.line_items,
            refunds=self.refunds,
            currencies=self.currencies,
        )

    def write_parquet(self, directory: Union[str, Path]) -> Path:
        """Write the extracts FrameSource.from_parquet reads"""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        self.orders.write_parquet(directory / "orders.parquet")
        self.line_items.write_parquet(directory / "order_items.parquet")
        self.refunds.write_parquet(directory / "refunds.parquet")
        self.currencies.write_parquet(directory / "currencies.parquet")
        logger.info("Wrote parquet extracts", directory=str(directory), orders=len(self.orders))
        return directory


def sample_dataset() -> Dataset:
    """
    Canonical sample: all USD, all line items fulfilled.

    March 2024 holds four orders totalling 27000.00:
    Alice 5000 + 3000 (one order) and 2000, Bob 8000, Charlie 9000.
    February 2024 holds Alice 10000, Bob 4000, Charlie 7000.
    Alice's first March order has two refunds (50.00 and 25.00) and Bob's
    March order one (100.00).
    """
    orders = [
        ("ord-a1", "alice", datetime(2024, 3, 5, 10, 0)),
        ("ord-a2", "alice", datetime(2024, 3, 12, 9, 30)),
        ("ord-a3", "alice", datetime(2024, 2, 10, 14, 0)),
        ("ord-b1", "bob", datetime(2024, 3, 8, 11, 15)),
        ("ord-b2", "bob", datetime(2024, 2, 14, 16, 45)),
        ("ord-c1", "charlie", datetime(2024, 2, 20, 8, 0)),
        ("ord-c2", "charlie", datetime(2024, 3, 20, 19, 5)),
    ]
    created = {order_id: ts for order_id, _, ts in orders}

    items = [
        ("li-a1-1", "ord-a1", 1, "5000.00"),
        ("li-a1-2", "ord-a1", 1, "3000.00"),
        ("li-a2-1", "ord-a2", 1, "2000.00"),
        ("li-a3-1", "ord-a3", 1, "10000.00"),
        ("li-b1-1", "ord-b1", 1, "8000.00"),
        ("li-b2-1", "ord-b2", 1, "4000.00"),
        ("li-c1-1", "ord-c1", 1, "7000.00"),
        ("li-c2-1", "ord-c2", 1, "9000.00"),
    ]

    refunds = [
        ("rf-a1-1", "ord-a1", "50.00", datetime(2024, 3, 5, 15, 0)),
        ("rf-a1-2", "ord-a1", "25.00", datetime(2024, 3, 5, 18, 30)),
        ("rf-b1-1", "ord-b1", "100.00", datetime(2024, 3, 8, 20, 0)),
    ]

    return Dataset(
        orders=frame_from_records(
            [
                {"order_id": oid, "customer_id": cust, "currency_id": 1, "created_at": ts}
                for oid, cust, ts in orders
            ],
            ORDER_SCHEMA,
        ),
        line_items=frame_from_records(
            [
                {
                    "line_item_id": lid,
                    "order_id": oid,
                    "quantity": qty,
                    "unit_price": to_minor_units(price),
                    "status": LineItemStatus.FULFILLED.value,
                    "created_at": created[oid],
                }
                for lid, oid, qty, price in items
            ],
            LINE_ITEM_SCHEMA,
        ),
        refunds=frame_from_records(
            [
                {"refund_id": rid, "order_id": oid, "amount": to_minor_units(amount), "created_at": ts}
                for rid, oid, amount, ts in refunds
            ],
            REFUND_SCHEMA,
        ),
        currencies=frame_from_records(
            [{"currency_id": 1, "iso_code": "USD"}],
            CURRENCY_SCHEMA,
        ),
    )


class DatasetGenerator:
    """
    Generate a reproducible random upstream dataset.

    Example:
        dataset = DatasetGenerator(seed=7).generate(n_orders=5000)
    """

    def __init__(
        self,
        seed: int = 42,
        n_customers: int = 200,
        currencies: Sequence[tuple] = CURRENCIES[:2],
    ):
        self.fake = Faker()
        self.fake.seed_instance(seed)
        self.random = random.Random(seed)
        self.rng = np.random.default_rng(seed)
        self.currencies = list(currencies)
        self.customer_ids = [f"cust-{self.fake.unique.random_number(digits=8):08d}" for _ in range(n_customers)]

    def _uuid(self) -> str:
        return str(uuid.UUID(int=self.random.getrandbits(128), version=4))

    def generate(
        self,
        n_orders: int = 1000,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dataset:
        """Generate n_orders orders with their line items and refunds"""
        start_date = start_date or datetime(2024, 1, 1)
        end_date = end_date or start_date + timedelta(days=90)

        orders: List[Dict[str, Any]] = []
        items: List[Dict[str, Any]] = []
        refunds: List[Dict[str, Any]] = []

        statuses = [s.value for s, _ in LINE_ITEM_STATUSES]
        weights = [w for _, w in LINE_ITEM_STATUSES]

        for _ in range(n_orders):
            order_id = self._uuid()
            created_at = self.fake.date_time_between(start_date=start_date, end_date=end_date).replace(microsecond=0)
            currency_id, _ = self.random.choice(self.currencies)

            orders.append({
                "order_id": order_id,
                "customer_id": self.random.choice(self.customer_ids),
                "currency_id": currency_id,
                "created_at": created_at,
            })

            # Most orders have 1-3 items
            n_items = int(self.rng.choice([1, 2, 3, 4, 5], p=[0.45, 0.30, 0.15, 0.07, 0.03]))
            order_total = 0
            for _ in range(n_items):
                quantity = int(self.rng.choice([1, 2, 3], p=[0.70, 0.20, 0.10]))
                unit_price = int(self.rng.integers(500, 50_000))
                status = self.random.choices(statuses, weights=weights)[0]
                # Some items are added after checkout, possibly past the order's period
                item_created_at = created_at
                if self.random.random() < 0.20:
                    item_created_at += timedelta(minutes=self.random.randint(1, 2880))
                items.append({
                    "line_item_id": self._uuid(),
                    "order_id": order_id,
                    "quantity": quantity,
                    "unit_price": unit_price,
                    "status": status,
                    "created_at": item_created_at,
                })
                if status == LineItemStatus.FULFILLED.value:
                    order_total += quantity * unit_price

            # Roughly one order in ten is refunded, some of them more than once
            if order_total and self.random.random() < 0.10:
                n_refunds = int(self.rng.choice([1, 2, 3], p=[0.60, 0.30, 0.10]))
                for _ in range(n_refunds):
                    refunds.append({
                        "refund_id": self._uuid(),
                        "order_id": order_id,
                        "amount": int(self.rng.integers(1, max(2, order_total // n_refunds))),
                        "created_at": created_at + timedelta(hours=self.random.randint(1, 72)),
                    })

        logger.info("Generated dataset", orders=len(orders), line_items=len(items), refunds=len(refunds))

        return Dataset(
            orders=frame_from_records(orders, ORDER_SCHEMA),
            line_items=frame_from_records(items, LINE_ITEM_SCHEMA),
            refunds=frame_from_records(refunds, REFUND_SCHEMA),
            currencies=frame_from_records(
                [{"currency_id": cid, "iso_code": code} for cid, code in self.currencies],
                CURRENCY_SCHEMA,
            ),
        )


async def _insert_batches(session: AsyncSession, model: Any, records: List[Dict[str, Any]], chunk_size: int) -> None:
    for i in range(0, len(records), chunk_size):
        await session.execute(insert(model), records[i:i + chunk_size])
    logger.info(f"Inserted {len(records)} records into {model.__tablename__}")


async def seed_database(
    session_factory: async_sessionmaker[AsyncSession],
    dataset: Dataset,
    chunk_size: int = 1000,
) -> None:
    """Load a dataset into the upstream tables in one transaction"""
    items = [
        {**row, "unit_price": from_minor_units(row["unit_price"]), "status": LineItemStatus(row["status"])}
        for row in dataset.line_items.to_dicts()
    ]
    refunds = [
        {**row, "amount": from_minor_units(row["amount"])}
        for row in dataset.refunds.to_dicts()
    ]

    async with session_factory() as session:
        async with session.begin():
            await _insert_batches(session, CurrencyRef, dataset.currencies.to_dicts(), chunk_size)
            await _insert_batches(session, Order, dataset.orders.to_dicts(), chunk_size)
            await _insert_batches(session, OrderItem, items, chunk_size)
            await _insert_batches(session, Refund, refunds, chunk_size)
