"""
Unit Tests - Rollup Store
"""
import asyncio
from datetime import datetime

import pytest

from rollup_engine.engine.errors import ConcurrentRefreshRejected, InvalidPeriod, UpstreamUnavailable
from rollup_engine.engine.pipeline import ReportType, RollupPipeline
from rollup_engine.engine.windows import Period, PeriodKind
from rollup_engine.store.rollup_store import NOT_COMPUTED, RefreshStatus, RollupStore, combined_status
from tests.factories import FlakySource, GatedSource, item, make_dataset, order

MONTHLY = ReportType.MONTHLY_TOTALS.value


class TestRefresh:
    """Tests for RollupStore.refresh"""

    async def test_refresh_then_read(self, store):
        assert await store.read(MONTHLY, "2024-03", "USD") is NOT_COMPUTED

        batch = await store.refresh("2024-03")

        payload = await store.read(MONTHLY, "2024-03", "USD")
        assert payload["total_sales"] == 2700000
        assert payload["order_count"] == 4
        assert await store.read(MONTHLY, "2024-03", "EUR") is NOT_COMPUTED
        assert len(await store.read_period(MONTHLY, "2024-03")) == 1
        assert batch.period.key == "2024-03"

    async def test_refresh_is_idempotent(self, store, fixed_now):
        first = await store.refresh("2024-03")
        rows_after_first = await store.read_period(ReportType.CUSTOMER_SPEND.value, "2024-03")

        second = await store.refresh("2024-03")
        rows_after_second = await store.read_period(ReportType.CUSTOMER_SPEND.value, "2024-03")

        assert first.content_hash == second.content_hash
        assert rows_after_first == rows_after_second
        status = await store.get_status("2024-03", now=fixed_now)
        assert status.content_hash == second.content_hash
        assert status.entry_count == len(second.rows)

    async def test_refresh_replaces_all_rows_of_the_period(self, store):
        await store.refresh("2024-03-05")
        assert [e.grouping_key for e in await store.read_period(ReportType.DAILY_ORDER.value, "2024-03-05")] == [
            "ord-a1"
        ]

        ts = datetime(2024, 3, 5, 9, 0)
        store.pipeline.source = make_dataset(
            orders=[order("ord-x", "dora", ts)],
            items=[item("li-x", "ord-x", 4200, ts)],
        ).to_source()
        await store.refresh("2024-03-05")

        entries = await store.read_period(ReportType.DAILY_ORDER.value, "2024-03-05")
        assert [e.grouping_key for e in entries] == ["ord-x"]

    async def test_other_periods_are_untouched(self, store):
        await store.refresh("2024-02")
        await store.refresh("2024-03")

        feb = await store.read(MONTHLY, "2024-02", "USD")
        assert feb["total_sales"] == 2100000

    async def test_future_period_is_rejected(self, store):
        with pytest.raises(InvalidPeriod):
            await store.refresh("2024-05")


class TestFailures:
    """A failed refresh keeps the last good snapshot"""

    async def test_failure_keeps_previous_snapshot(self, store, sample, fixed_now):
        await store.refresh("2024-03")
        before = await store.get_status("2024-03", now=fixed_now)

        store.pipeline.source = FlakySource(sample)
        with pytest.raises(UpstreamUnavailable):
            await store.refresh("2024-03")

        payload = await store.read(MONTHLY, "2024-03", "USD")
        assert payload["total_sales"] == 2700000

        status = await store.get_status("2024-03", now=fixed_now)
        assert status.is_stale
        assert status.last_status == "failed"
        assert "UpstreamUnavailable" in status.last_error
        assert status.last_refreshed_at == before.last_refreshed_at
        assert status.entry_count == before.entry_count
        assert store.in_flight() == []

    async def test_failure_before_first_success(self, store, sample, fixed_now):
        store.pipeline.source = FlakySource(sample)

        with pytest.raises(UpstreamUnavailable):
            await store.refresh("2024-03")

        status = await store.get_status("2024-03", now=fixed_now)
        assert not status.computed
        assert status.is_stale
        assert status.last_status == "failed"
        assert await store.read_period(MONTHLY, "2024-03") == []

    async def test_success_after_failure_clears_error(self, store, sample, fixed_now):
        store.pipeline.source = FlakySource(sample, failures=1)
        with pytest.raises(UpstreamUnavailable):
            await store.refresh("2024-03")

        await store.refresh("2024-03")

        status = await store.get_status("2024-03", now=fixed_now)
        assert not status.is_stale
        assert status.last_status == "succeeded"
        assert status.last_error is None


class TestConcurrency:
    """At most one refresh per period"""

    async def test_second_refresh_of_same_period_is_rejected(self, session_factory, sample, fixed_now):
        source = GatedSource(sample)
        store = RollupStore(session_factory, RollupPipeline(source), clock=lambda: fixed_now)

        running = asyncio.create_task(store.refresh("2024-03"))
        await asyncio.wait_for(source.entered.wait(), timeout=5)
        assert store.in_flight() == ["2024-03"]

        with pytest.raises(ConcurrentRefreshRejected) as excinfo:
            await store.refresh("2024-03")
        assert excinfo.value.period_key == "2024-03"

        source.gate.set()
        batch = await asyncio.wait_for(running, timeout=5)

        assert batch.order_count == 4
        assert store.in_flight() == []

    async def test_other_periods_proceed(self, session_factory, sample, fixed_now):
        source = GatedSource(sample)
        store = RollupStore(session_factory, RollupPipeline(source), clock=lambda: fixed_now)

        march = asyncio.create_task(store.refresh("2024-03"))
        await asyncio.wait_for(source.entered.wait(), timeout=5)

        # Open the gate only once February is under way
        february = asyncio.create_task(store.refresh("2024-02"))
        await asyncio.sleep(0)
        assert store.in_flight() == ["2024-02", "2024-03"]
        source.gate.set()

        await asyncio.wait_for(asyncio.gather(march, february), timeout=5)
        assert (await store.read(MONTHLY, "2024-02", "USD"))["order_count"] == 3
        assert (await store.read(MONTHLY, "2024-03", "USD"))["order_count"] == 4


class TestStaleness:
    """Tests for get_status"""

    async def test_stale_before_and_fresh_after_first_refresh(self, store, fixed_now):
        before = await store.get_status("2024-03", now=fixed_now)
        assert before.is_stale
        assert not before.computed

        await store.refresh("2024-03")

        after = await store.get_status("2024-03", now=fixed_now)
        assert not after.is_stale
        assert after.computed
        assert after.last_refreshed_at == fixed_now

    async def test_refresh_before_period_end_stays_stale(self, session_factory, pipeline):
        mid_march = datetime(2024, 3, 20, 12, 0)
        store = RollupStore(session_factory, pipeline, clock=lambda: mid_march)

        await store.refresh("2024-03", now=mid_march)

        assert (await store.get_status("2024-03", now=mid_march)).is_stale
        assert (await store.get_status("2024-03", now=datetime(2024, 4, 2))).is_stale

    async def test_snapshot_reads_rows_and_status_together(self, store, fixed_now):
        await store.refresh("2024-03")

        entries, status = await store.snapshot(MONTHLY, Period.from_key("2024-03"), fixed_now)

        assert [e.grouping_key for e in entries] == ["USD"]
        assert status.computed and not status.is_stale

    async def test_snapshot_all_flags_months_that_were_never_computed(self, store, fixed_now):
        await store.refresh("2024-01")
        await store.refresh("2024-03")
        await store.refresh("2024-03-05")

        entries, status = await store.snapshot_all(ReportType.CUSTOMER_SPEND.value, PeriodKind.MONTH, fixed_now)

        assert {e.period_key for e in entries} == {"2024-03"}
        assert status.period_key == "all"
        assert status.is_stale
        assert status.missing_periods == ("2024-02",)

        await store.refresh("2024-02")

        entries, status = await store.snapshot_all(ReportType.CUSTOMER_SPEND.value, PeriodKind.MONTH, fixed_now)
        assert {e.period_key for e in entries} == {"2024-02", "2024-03"}
        assert not status.is_stale
        assert status.missing_periods == ()
        assert status.last_status == "succeeded"

    async def test_snapshot_all_counts_months_up_to_the_last_completed_one(self, store, fixed_now):
        await store.refresh("2024-02")

        _, status = await store.snapshot_all(ReportType.CUSTOMER_SPEND.value, PeriodKind.MONTH, fixed_now)

        assert status.is_stale
        assert status.missing_periods == ("2024-03",)


class TestCombinedStatus:
    """Tests for combined_status"""

    def test_nothing_on_record_is_stale(self, fixed_now):
        status = combined_status("all", PeriodKind.MONTH, [], fixed_now)

        assert status.is_stale
        assert not status.computed

    def test_failed_month_marks_the_whole_answer_stale(self, fixed_now):
        statuses = [
            RefreshStatus("2024-02", datetime(2024, 4, 1), is_stale=False, last_status="succeeded", entry_count=3),
            RefreshStatus(
                "2024-03",
                datetime(2024, 4, 2),
                is_stale=True,
                last_status="failed",
                last_error="UpstreamUnavailable: down",
                entry_count=4,
            ),
        ]

        status = combined_status("all", PeriodKind.MONTH, statuses, fixed_now)

        assert status.is_stale
        assert status.last_status == "failed"
        assert status.last_error == "2024-03: UpstreamUnavailable: down"
        assert status.last_refreshed_at == datetime(2024, 4, 1)
        assert status.entry_count == 7
        assert status.missing_periods == ()
