"""
Refresh Scheduler

Keeps the rollup store current on period boundaries:
- once a day or month has ended and its rollups are stale, it is refreshed
- upstream outages are retried with exponential backoff
- integrity aborts and other failures are reported in the outcome, never
  retried and never silently skipped
- force_refresh/backfill recompute chosen periods on demand
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Union

import structlog

from rollup_engine.config.settings import SchedulerSettings
from rollup_engine.engine.errors import ConcurrentRefreshRejected, RollupError, UpstreamUnavailable
from rollup_engine.engine.windows import Period, PeriodKind, PeriodSpec, iter_periods, parse_period, utcnow
from rollup_engine.store.rollup_store import RollupStore

logger = structlog.get_logger(__name__)


class OutcomeStatus(str, Enum):
    """Result of one scheduled or forced refresh"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class RefreshOutcome:
    """What happened to one period"""
    period_key: str
    status: OutcomeStatus
    attempts: int
    entry_count: int = 0
    violation_count: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED


class RefreshScheduler:
    """
    Drives RollupStore.refresh for completed periods.

    Example:
        scheduler = RefreshScheduler(store)
        outcomes = await scheduler.run_pending()
    """

    def __init__(
        self,
        store: RollupStore,
        settings: Optional[SchedulerSettings] = None,
        kinds: Optional[Sequence[Union[PeriodKind, str]]] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.settings = settings or SchedulerSettings()
        self.kinds = [PeriodKind(k) for k in (kinds or self.settings.period_kinds)]
        self._clock = clock
        self._sleep = sleep
        self._stopped = asyncio.Event()

    def _lookback(self, kind: PeriodKind) -> int:
        if kind is PeriodKind.DAY:
            return self.settings.lookback_days
        return self.settings.lookback_months

    def completed_periods(self, now: datetime) -> List[Period]:
        """Most recent completed periods of every kind, oldest first"""
        periods: List[Period] = []
        for kind in self.kinds:
            period = Period.containing(kind, now).previous()
            recent = []
            for _ in range(self._lookback(kind)):
                recent.append(period)
                period = period.previous()
            periods.extend(reversed(recent))
        return periods

    async def due_periods(self, now: Optional[datetime] = None) -> List[Period]:
        """Completed periods whose rollups are stale"""
        now = now or self._clock()
        due = []
        for period in self.completed_periods(now):
            status = await self.store.get_status(period, now=now)
            if status.is_stale:
                due.append(period)
        return due

    async def _refresh(self, period: Period, now: datetime, retry: bool) -> RefreshOutcome:
        max_retries = self.settings.max_retries if retry else 0
        delay = self.settings.retry_backoff_seconds
        started = time.perf_counter()
        attempt = 0

        while True:
            attempt += 1
            try:
                batch = await self.store.refresh(period, now=now)
            except UpstreamUnavailable as e:
                if attempt > max_retries:
                    return self._failed(period, attempt, started, e)
                logger.warning(
                    "Upstream unavailable, retrying refresh",
                    period=period.key,
                    attempt=attempt,
                    retry_in_seconds=delay,
                )
                await self._sleep(delay)
                delay *= self.settings.retry_backoff_multiplier
            except ConcurrentRefreshRejected as e:
                return RefreshOutcome(
                    period_key=period.key,
                    status=OutcomeStatus.REJECTED,
                    attempts=attempt,
                    duration_seconds=time.perf_counter() - started,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            except Exception as e:
                # Surfaced to the caller through the outcome, not retried
                logger.error("Refresh failed", period=period.key, error=str(e), exc_info=not isinstance(e, RollupError))
                return self._failed(period, attempt, started, e)
            else:
                return RefreshOutcome(
                    period_key=period.key,
                    status=OutcomeStatus.SUCCEEDED,
                    attempts=attempt,
                    entry_count=len(batch.rows),
                    violation_count=len(batch.violations),
                    duration_seconds=time.perf_counter() - started,
                )

    def _failed(self, period: Period, attempts: int, started: float, error: Exception) -> RefreshOutcome:
        return RefreshOutcome(
            period_key=period.key,
            status=OutcomeStatus.FAILED,
            attempts=attempts,
            duration_seconds=time.perf_counter() - started,
            error=str(error),
            error_type=type(error).__name__,
        )

    async def run_pending(self, now: Optional[datetime] = None) -> List[RefreshOutcome]:
        """Refresh every due period, oldest first"""
        now = now or self._clock()
        due = await self.due_periods(now)
        if not due:
            logger.debug("No stale periods")
            return []

        logger.info("Refreshing stale periods", periods=[p.key for p in due])
        outcomes = []
        for period in due:
            outcomes.append(await self._refresh(period, now, retry=True))

        failed = [o.period_key for o in outcomes if not o.succeeded]
        if failed:
            logger.error("Some periods failed to refresh", periods=failed)
        return outcomes

    async def force_refresh(self, period: PeriodSpec, now: Optional[datetime] = None) -> RefreshOutcome:
        """
        Refresh one period regardless of its staleness.

        Raises:
            InvalidPeriod: Malformed or not yet started period
        """
        now = now or self._clock()
        target = parse_period(period, now=now)
        logger.info("Forced refresh requested", period=target.key)
        return await self._refresh(target, now, retry=False)

    async def backfill(
        self,
        kind: Union[PeriodKind, str],
        first: Union[datetime, date],
        last: Union[datetime, date],
        now: Optional[datetime] = None,
    ) -> List[RefreshOutcome]:
        """Force-refresh every period of a kind between first and last, inclusive"""
        now = now or self._clock()
        outcomes = []
        for period in iter_periods(PeriodKind(kind), first, last):
            if period.start >= now:
                break
            outcomes.append(await self._refresh(period, now, retry=True))
        logger.info(
            "Backfill finished",
            kind=PeriodKind(kind).value,
            periods=len(outcomes),
            failed=sum(1 for o in outcomes if not o.succeeded),
        )
        return outcomes

    async def run_forever(self, poll_interval: Optional[float] = None) -> None:
        """Poll for due periods until stop() is called"""
        interval = poll_interval or self.settings.poll_interval_seconds
        self._stopped.clear()
        logger.info("Refresh scheduler started", poll_interval_seconds=interval)

        while not self._stopped.is_set():
            try:
                await self.run_pending()
            except Exception as e:
                logger.error("Scheduler cycle failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Refresh scheduler stopped")

    def stop(self) -> None:
        self._stopped.set()
