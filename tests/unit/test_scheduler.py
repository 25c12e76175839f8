"""
Unit Tests - Refresh Scheduler
"""
import asyncio
from datetime import date

import pytest

from rollup_engine.config.settings import SchedulerSettings
from rollup_engine.engine.errors import InvalidPeriod
from rollup_engine.engine.pipeline import RollupPipeline
from rollup_engine.engine.windows import Period
from rollup_engine.scheduler.refresh import OutcomeStatus, RefreshScheduler
from rollup_engine.store.rollup_store import RollupStore
from tests.factories import FlakySource, GatedSource, RecordingSleep, item, make_dataset, order


class TestDuePeriods:
    """Which periods the scheduler looks at"""

    def test_completed_periods(self, scheduler, fixed_now):
        keys = [p.key for p in scheduler.completed_periods(fixed_now)]

        assert keys == ["2024-04-12", "2024-04-13", "2024-04-14", "2024-03"]

    def test_lookback_settings(self, store, fixed_now):
        settings = SchedulerSettings(lookback_days=1, lookback_months=2, period_kinds=["month", "day"])
        scheduler = RefreshScheduler(store, settings=settings)

        keys = [p.key for p in scheduler.completed_periods(fixed_now)]

        assert keys == ["2024-02", "2024-03", "2024-04-14"]

    async def test_only_stale_periods_are_due(self, scheduler, store, fixed_now):
        await store.refresh("2024-04-13")

        due = [p.key for p in await scheduler.due_periods(fixed_now)]

        assert due == ["2024-04-12", "2024-04-14", "2024-03"]


class TestRunPending:
    """Tests for run_pending"""

    async def test_refreshes_stale_periods_once(self, scheduler):
        outcomes = await scheduler.run_pending()

        assert [o.period_key for o in outcomes] == ["2024-04-12", "2024-04-13", "2024-04-14", "2024-03"]
        assert all(o.succeeded for o in outcomes)
        march = outcomes[-1]
        assert march.entry_count > 0
        assert march.attempts == 1

        assert await scheduler.run_pending() == []

    async def test_upstream_outage_is_retried_with_backoff(self, scheduler, store, sample, recording_sleep):
        store.pipeline.source = FlakySource(sample, failures=2)

        outcome = await scheduler.force_refresh("2024-03")
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.attempts == 1
        assert recording_sleep.delays == []

        outcomes = await scheduler.run_pending()

        first = outcomes[0]
        assert first.succeeded
        assert first.attempts == 2
        assert recording_sleep.delays == [1.0]

    async def test_retries_are_exhausted(self, scheduler, store, sample, recording_sleep):
        store.pipeline.source = FlakySource(sample)

        outcomes = await scheduler.run_pending()

        assert all(o.status is OutcomeStatus.FAILED for o in outcomes)
        assert all(o.attempts == 4 for o in outcomes)
        assert outcomes[0].error_type == "UpstreamUnavailable"
        assert recording_sleep.delays[:3] == [1.0, 2.0, 4.0]
        assert len(recording_sleep.delays) == 3 * len(outcomes)

    async def test_integrity_abort_is_not_retried(self, store, test_settings, recording_sleep, fixed_now):
        ts = fixed_now.replace(day=14, hour=9)
        dataset = make_dataset(
            orders=[order("ord-1", "alice", ts, currency_id=None)],
            items=[item("li-1", "ord-1", 100, ts)],
        )
        store.pipeline = RollupPipeline(dataset.to_source(), strict_integrity=True)
        scheduler = RefreshScheduler(
            store, settings=test_settings.scheduler, clock=lambda: fixed_now, sleep=recording_sleep
        )

        outcome = (await scheduler.run_pending())[2]

        assert outcome.period_key == "2024-04-14"
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.attempts == 1
        assert outcome.error_type == "DataIntegrityViolation"
        assert recording_sleep.delays == []


class TestForceRefresh:
    """Tests for force_refresh and backfill"""

    async def test_force_refresh_ignores_staleness(self, scheduler, store, fixed_now):
        await scheduler.force_refresh("2024-03")
        outcome = await scheduler.force_refresh("2024-03")

        assert outcome.succeeded
        assert (await store.get_status("2024-03", now=fixed_now)).entry_count == outcome.entry_count

    async def test_force_refresh_of_invalid_period(self, scheduler):
        with pytest.raises(InvalidPeriod):
            await scheduler.force_refresh("2024-13")

    async def test_concurrent_force_refresh_is_rejected(self, session_factory, sample, test_settings, fixed_now):
        source = GatedSource(sample)
        store = RollupStore(session_factory, RollupPipeline(source), clock=lambda: fixed_now)
        scheduler = RefreshScheduler(store, settings=test_settings.scheduler, clock=lambda: fixed_now)

        running = asyncio.create_task(scheduler.force_refresh("2024-03"))
        await asyncio.wait_for(source.entered.wait(), timeout=5)

        rejected = await scheduler.force_refresh("2024-03")
        source.gate.set()
        accepted = await asyncio.wait_for(running, timeout=5)

        assert rejected.status is OutcomeStatus.REJECTED
        assert accepted.succeeded

    async def test_backfill(self, scheduler, store, fixed_now):
        outcomes = await scheduler.backfill("day", date(2024, 3, 4), date(2024, 3, 6))

        assert [o.period_key for o in outcomes] == ["2024-03-04", "2024-03-05", "2024-03-06"]
        assert [o.entry_count for o in outcomes] == [0, 1, 0]
        assert not (await store.get_status("2024-03-05", now=fixed_now)).is_stale

    async def test_backfill_stops_at_periods_that_have_not_started(self, scheduler):
        outcomes = await scheduler.backfill("month", date(2024, 3, 1), date(2024, 6, 1))

        assert [o.period_key for o in outcomes] == ["2024-03", "2024-04"]

    async def test_backfill_reversed_range(self, scheduler):
        with pytest.raises(InvalidPeriod):
            await scheduler.backfill("month", date(2024, 3, 1), date(2024, 1, 1))


class TestRunForever:
    """Tests for the polling loop"""

    async def test_runs_until_stopped(self, store, test_settings, fixed_now):
        scheduler = RefreshScheduler(
            store, settings=test_settings.scheduler, clock=lambda: fixed_now, sleep=RecordingSleep()
        )

        task = asyncio.create_task(scheduler.run_forever(poll_interval=0.01))
        for _ in range(200):
            if not (await store.get_status(Period.from_key("2024-03"), now=fixed_now)).is_stale:
                break
            await asyncio.sleep(0.01)

        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        assert not (await store.get_status("2024-03", now=fixed_now)).is_stale
