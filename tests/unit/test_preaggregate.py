"""
Unit Tests - Per-Entity Pre-Aggregation
"""
from datetime import datetime

import polars as pl

from rollup_engine.engine.preaggregate import aggregate_line_items, aggregate_refunds
from rollup_engine.engine.windows import Period
from rollup_engine.sources.base import LINE_ITEM_SCHEMA, REFUND_SCHEMA, frame_from_records
from tests.factories import item, refund

MARCH_5 = Period.from_key("2024-03-05").window
TS = datetime(2024, 3, 5, 10, 0)


class TestLineItemRollup:
    """Tests for aggregate_line_items"""

    def test_sums_quantity_times_price_per_order(self):
        items = frame_from_records(
            [
                item("li-1", "ord-1", 500000, TS),
                item("li-2", "ord-1", 150000, TS, quantity=2),
                item("li-3", "ord-2", 200000, TS),
            ],
            LINE_ITEM_SCHEMA,
        )

        result = aggregate_line_items(items, MARCH_5)

        assert result.columns == ["order_id", "gross_sales", "item_count"]
        assert result.rows() == [("ord-1", 800000, 2), ("ord-2", 200000, 1)]

    def test_only_fulfilled_items_count(self):
        items = frame_from_records(
            [
                item("li-1", "ord-1", 500000, TS),
                item("li-2", "ord-1", 999900, TS, status="CANCELLED"),
                item("li-3", "ord-1", 100, TS, status="PENDING"),
                item("li-4", "ord-2", 700, TS, status="RETURNED"),
            ],
            LINE_ITEM_SCHEMA,
        )

        result = aggregate_line_items(items, MARCH_5)

        # ord-2 has no qualifying rows and is absent, not zero
        assert result.rows() == [("ord-1", 500000, 1)]

    def test_item_timestamps_do_not_window_items(self):
        # Items arrive already scoped to the window's orders
        items = frame_from_records(
            [
                item("li-1", "ord-1", 100, datetime(2024, 3, 4, 23, 59, 59)),
                item("li-2", "ord-1", 200, datetime(2024, 3, 5)),
                item("li-3", "ord-1", 400, datetime(2024, 3, 6)),
            ],
            LINE_ITEM_SCHEMA,
        )

        result = aggregate_line_items(items, MARCH_5)

        assert result.rows() == [("ord-1", 700, 3)]

    def test_refunds_outside_the_window_are_dropped(self):
        refunds = frame_from_records(
            [
                refund("rf-1", "ord-1", 100, datetime(2024, 3, 4, 23, 59, 59)),
                refund("rf-2", "ord-1", 200, datetime(2024, 3, 5)),
                refund("rf-3", "ord-1", 400, datetime(2024, 3, 6)),
            ],
            REFUND_SCHEMA,
        )

        result = aggregate_refunds(refunds, MARCH_5)

        assert result.rows() == [("ord-1", 200, 1)]

    def test_empty_input_gives_typed_empty_output(self):
        result = aggregate_line_items(frame_from_records([], LINE_ITEM_SCHEMA), MARCH_5)

        assert len(result) == 0
        assert result.schema["gross_sales"] == pl.Int64
        assert result.schema["item_count"] == pl.Int64


class TestRefundRollup:
    """Tests for aggregate_refunds"""

    def test_several_refunds_sum_exactly(self):
        refunds = frame_from_records(
            [
                refund("rf-1", "ord-1", 1001, TS),
                refund("rf-2", "ord-1", 2002, TS),
                refund("rf-3", "ord-1", 3003, TS),
                refund("rf-4", "ord-2", 5, TS),
            ],
            REFUND_SCHEMA,
        )

        result = aggregate_refunds(refunds, MARCH_5)

        assert result.rows() == [("ord-1", 6006, 3), ("ord-2", 5, 1)]

    def test_one_row_per_order(self):
        refunds = frame_from_records(
            [refund(f"rf-{i}", "ord-1", 1, TS) for i in range(50)],
            REFUND_SCHEMA,
        )

        result = aggregate_refunds(refunds, MARCH_5)

        assert result["order_id"].n_unique() == len(result) == 1
        assert result["total_refund"][0] == 50
