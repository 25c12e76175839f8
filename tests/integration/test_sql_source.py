"""
Integration Tests - SQL Upstream Source
"""
from datetime import datetime

import pytest

from rollup_engine.data.generators import DatasetGenerator, seed_database
from rollup_engine.database.connection import create_engine_for, create_session_factory
from rollup_engine.database.models import LineItemStatus
from rollup_engine.engine.errors import UpstreamUnavailable
from rollup_engine.engine.pipeline import RollupPipeline
from rollup_engine.engine.windows import Period
from rollup_engine.sources.base import UpstreamSource
from rollup_engine.sources.sql import SqlUpstreamSource
from tests.factories import item, make_dataset, order

pytestmark = pytest.mark.integration

MARCH = Period.from_key("2024-03").window


@pytest.fixture
async def sql_source(session_factory, sample) -> SqlUpstreamSource:
    await seed_database(session_factory, sample)
    return SqlUpstreamSource(session_factory, lookup_chunk_size=2)


class TestSqlUpstreamSource:
    """Tests for SqlUpstreamSource against SQLite"""

    def test_satisfies_the_protocol(self, sql_source):
        assert isinstance(sql_source, UpstreamSource)

    async def test_fetch_orders_in_window(self, sql_source):
        orders = await sql_source.fetch_orders(MARCH)

        assert sorted(orders["order_id"].to_list()) == ["ord-a1", "ord-a2", "ord-b1", "ord-c2"]
        assert orders["created_at"].min() >= datetime(2024, 3, 1)

    async def test_money_arrives_in_minor_units(self, sql_source):
        items = await sql_source.fetch_line_items(MARCH, statuses=[LineItemStatus.FULFILLED])
        refunds = await sql_source.fetch_refunds(MARCH)

        assert items.filter(items["order_id"] == "ord-a1")["unit_price"].sum() == 800000
        assert set(items["status"].to_list()) == {"FULFILLED"}
        assert sorted(refunds["amount"].to_list()) == [2500, 5000, 10000]

    async def test_line_items_follow_their_order_window(self, session_factory):
        placed = datetime(2024, 3, 31, 23, 0)
        dataset = make_dataset(
            orders=[order("ord-1", "alice", placed), order("ord-2", "bob", datetime(2024, 4, 2))],
            items=[
                item("li-1", "ord-1", 1000, placed),
                item("li-2", "ord-1", 5000, datetime(2024, 4, 1, 0, 30)),
                item("li-3", "ord-2", 700, datetime(2024, 4, 2)),
            ],
        )
        await seed_database(session_factory, dataset)
        source = SqlUpstreamSource(session_factory)

        march = await source.fetch_line_items(MARCH, statuses=[LineItemStatus.FULFILLED])
        april = await source.fetch_line_items(Period.from_key("2024-04").window)

        assert sorted(march["line_item_id"].to_list()) == ["li-1", "li-2"]
        assert april["line_item_id"].to_list() == ["li-3"]

    async def test_currencies(self, sql_source):
        currencies = await sql_source.fetch_currencies()

        assert currencies.rows() == [(1, "USD")]

    async def test_existing_order_ids_in_chunks(self, sql_source):
        found = await sql_source.existing_order_ids(["ord-a3", "ord-ghost", "ord-b1", "ord-c1", "ord-a3"])

        assert found == {"ord-a3", "ord-b1", "ord-c1"}

    async def test_same_rollups_as_the_frame_source(self, sql_source, sample):
        period = Period.from_key("2024-03")

        from_sql = await RollupPipeline(sql_source).compute(period)
        from_frames = await RollupPipeline(sample.to_source()).compute(period)

        assert from_sql.content_hash == from_frames.content_hash

    async def test_generated_dataset_round_trip(self, session_factory):
        dataset = DatasetGenerator(seed=3, n_customers=15).generate(
            n_orders=150,
            start_date=datetime(2024, 5, 1),
            end_date=datetime(2024, 6, 1),
        )
        await seed_database(session_factory, dataset, chunk_size=40)
        period = Period.from_key("2024-05")

        from_sql = await RollupPipeline(SqlUpstreamSource(session_factory)).compute(period)
        from_frames = await RollupPipeline(dataset.to_source()).compute(period)

        assert from_sql.content_hash == from_frames.content_hash
        assert from_sql.order_count == from_frames.order_count > 0

    async def test_unreachable_store(self, tmp_path):
        engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
        source = SqlUpstreamSource(create_session_factory(engine))

        try:
            with pytest.raises(UpstreamUnavailable):
                await source.fetch_orders(MARCH)
        finally:
            await engine.dispose()
