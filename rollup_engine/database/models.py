"""
Database Models

Two groups of tables live here.

Upstream tables (owned by the transactional store, read-only to the engine):
- Order: order header, immutable once created
- OrderItem: line items with quantity, unit price and fulfillment status
- Refund: refunds, many per order
- CurrencyRef: currency id -> ISO code lookup

Rollup tables (owned by the engine):
- RollupEntry: one row per (report_type, period_key, grouping_key)
- RollupRefresh: refresh bookkeeping per period, used for staleness

Indexes mirror the access paths of the engine: half-open range scans on the
creation timestamps and equality lookups on order and currency ids.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class LineItemStatus(str, Enum):
    """Fulfillment status of a line item"""
    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


class RefreshState(str, Enum):
    """Outcome of the last refresh attempt of a period"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# =============================================================================
# UPSTREAM TABLES
# =============================================================================

class CurrencyRef(Base):
    """
    Currency Dimension

    Small, read-only lookup joined without filtering.
    """
    __tablename__ = "currencies"

    currency_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    iso_code: Mapped[str] = mapped_column(String(3), unique=True, nullable=False)


class Order(Base):
    """
    Order Header

    Grain: one row per order. Referenced, never owned, by items and refunds.
    """
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Nullable on purpose: the engine must cope with dirty upstream rows
    currency_id: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    items: Mapped[List["OrderItem"]] = relationship(back_populates="order")
    refunds: Mapped[List["Refund"]] = relationship(back_populates="order")

    __table_args__ = (
        Index("ix_orders_created_at", "created_at"),
        Index("ix_orders_customer", "customer_id"),
    )


class OrderItem(Base):
    """
    Order Line Item

    Grain: one row per line item. Reporting places an item in the period of
    its order; created_at records when the item itself was written.
    """
    __tablename__ = "order_items"

    line_item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.order_id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[LineItemStatus] = mapped_column(
        SQLEnum(LineItemStatus, native_enum=False, length=16),
        default=LineItemStatus.PENDING,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    order: Mapped["Order"] = relationship(back_populates="items")

    __table_args__ = (
        Index("ix_order_items_created_at", "created_at"),
        Index("ix_order_items_order", "order_id"),
        Index("ix_order_items_order_status", "order_id", "status"),
    )


class Refund(Base):
    """
    Refund

    Grain: one row per refund; an order may have any number of them.
    """
    __tablename__ = "refunds"

    refund_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.order_id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    order: Mapped["Order"] = relationship(back_populates="refunds")

    __table_args__ = (
        Index("ix_refunds_created_at", "created_at"),
        Index("ix_refunds_order", "order_id"),
    )


# =============================================================================
# ROLLUP TABLES
# =============================================================================

class RollupEntry(Base):
    """
    Rollup Entry

    Pre-computed report rows keyed by (report_type, period_key, grouping_key).
    Replaced wholesale per period by each refresh. No timestamps live here so
    that refreshing unchanged data rewrites identical rows.
    """
    __tablename__ = "rollup_entries"

    report_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    period_key: Mapped[str] = mapped_column(String(10), primary_key=True)
    grouping_key: Mapped[str] = mapped_column(String(160), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("ix_rollup_entries_period", "period_key"),
    )


class RollupRefresh(Base):
    """
    Refresh Bookkeeping

    One row per period; drives staleness reporting and the scheduler.
    """
    __tablename__ = "rollup_refreshes"

    period_key: Mapped[str] = mapped_column(String(10), primary_key=True)
    period_kind: Mapped[str] = mapped_column(String(8), nullable=False)
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_status: Mapped[Optional[RefreshState]] = mapped_column(
        SQLEnum(RefreshState, native_enum=False, length=16)
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    entry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        Index("ix_rollup_refreshes_kind", "period_kind"),
    )
