"""
Rollup Store

Durable, period-keyed rollup rows with a refresh lifecycle.

- refresh(period) recomputes a period through the pipeline and replaces all
  of its rows inside one transaction; readers in other sessions see either
  the previous snapshot or the new one
- a failed refresh (upstream outage, integrity abort, commit error) leaves
  the previous snapshot untouched and is recorded on the status row
- at most one refresh per period is in flight; a second request for the
  same period is rejected, other periods proceed concurrently
- staleness is derived from the status row: never refreshed, refreshed
  before the period closed, or last attempt failed
"""

import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rollup_engine.database.models import RefreshState, RollupEntry, RollupRefresh
from rollup_engine.engine.errors import ConcurrentRefreshRejected
from rollup_engine.engine.pipeline import RollupBatch, RollupPipeline
from rollup_engine.engine.windows import Period, PeriodKind, PeriodSpec, iter_periods, parse_period, utcnow

logger = structlog.get_logger(__name__)


class _NotComputed:
    """Sentinel for a key the store holds no committed value for"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_COMPUTED"


NOT_COMPUTED = _NotComputed()


@dataclass(frozen=True)
class StoredEntry:
    """A committed rollup row"""
    report_type: str
    period_key: str
    grouping_key: str
    payload: Dict[str, Any]


@dataclass(frozen=True)
class RefreshStatus:
    """Refresh bookkeeping of one period as seen at a given time"""
    period_key: str
    last_refreshed_at: Optional[datetime]
    is_stale: bool
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    entry_count: int = 0
    content_hash: Optional[str] = None
    missing_periods: Tuple[str, ...] = ()

    @property
    def computed(self) -> bool:
        return self.last_refreshed_at is not None


def _is_stale(period: Period, record: Optional[RollupRefresh], now: datetime) -> bool:
    if not period.is_complete(now):
        # Rows of an open period are partial by definition
        return True
    if record is None or record.last_refreshed_at is None:
        return True
    if record.last_refreshed_at < period.end:
        return True
    return record.last_status == RefreshState.FAILED


def _status_from_record(period: Period, record: Optional[RollupRefresh], now: datetime) -> RefreshStatus:
    if record is None:
        return RefreshStatus(period_key=period.key, last_refreshed_at=None, is_stale=_is_stale(period, None, now))
    return RefreshStatus(
        period_key=period.key,
        last_refreshed_at=record.last_refreshed_at,
        is_stale=_is_stale(period, record, now),
        last_status=record.last_status.value if record.last_status else None,
        last_error=record.last_error,
        entry_count=record.entry_count,
        content_hash=record.content_hash,
    )


def combined_status(label: str, kind: PeriodKind, statuses: List[RefreshStatus], now: datetime) -> RefreshStatus:
    """
    Status of an answer assembled from every period of a kind.

    Stale when any contributing period is stale, or when a period between
    the first one on record and the last completed one was never computed.
    last_refreshed_at is that of the oldest snapshot used.
    """
    if not statuses:
        return RefreshStatus(period_key=label, last_refreshed_at=None, is_stale=True)

    computed = [s for s in statuses if s.computed]
    starts = [Period.from_key(s.period_key).start for s in statuses]
    first = min(starts)
    last = max(
        max(starts),
        Period.containing(kind, now).previous().start,
    )
    computed_keys = {s.period_key for s in computed}
    missing = tuple(p.key for p in iter_periods(kind, first, last) if p.key not in computed_keys)

    failed = [s for s in statuses if s.last_status == RefreshState.FAILED.value]
    return RefreshStatus(
        period_key=label,
        last_refreshed_at=min((s.last_refreshed_at for s in computed), default=None),
        is_stale=bool(missing) or any(s.is_stale for s in statuses),
        last_status=RefreshState.FAILED.value if failed else RefreshState.SUCCEEDED.value,
        last_error="; ".join(f"{s.period_key}: {s.last_error}" for s in failed) or None,
        entry_count=sum(s.entry_count for s in statuses),
        missing_periods=missing,
    )


def _entry(row: RollupEntry) -> StoredEntry:
    return StoredEntry(
        report_type=row.report_type,
        period_key=row.period_key,
        grouping_key=row.grouping_key,
        payload=json.loads(row.payload),
    )


class RollupStore:
    """
    Period-keyed rollup storage backed by SQLAlchemy.

    Example:
        store = RollupStore(session_factory, RollupPipeline(source))
        await store.refresh("2024-03")
        totals = await store.read("monthly_totals", "2024-03", "USD")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: RollupPipeline,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.pipeline = pipeline
        self._clock = clock
        self._in_flight: Set[str] = set()

    def in_flight(self) -> List[str]:
        """Periods with a refresh currently running"""
        return sorted(self._in_flight)

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh(self, period: PeriodSpec, now: Optional[datetime] = None) -> RollupBatch:
        """
        Recompute a period and atomically replace its rows.

        Raises:
            InvalidPeriod: Malformed or not yet started period
            ConcurrentRefreshRejected: Same period already refreshing
            UpstreamUnavailable: Source unreadable; prior snapshot kept
        """
        period = parse_period(period, now=now or self._clock())

        # Check-and-add without an await in between: atomic on the event loop
        if period.key in self._in_flight:
            logger.warning("Concurrent refresh rejected", period=period.key)
            raise ConcurrentRefreshRejected(period.key)
        self._in_flight.add(period.key)

        attempted_at = self._clock()
        started = time.perf_counter()
        try:
            try:
                batch = await self.pipeline.compute(period)
                await self._commit(period, batch, attempted_at)
            except Exception as e:
                await self._record_failure(period, attempted_at, e)
                raise
        finally:
            self._in_flight.discard(period.key)

        logger.info(
            "Rollup refresh committed",
            period=period.key,
            rows=len(batch.rows),
            violations=len(batch.violations),
            content_hash=batch.content_hash,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return batch

    async def _commit(self, period: Period, batch: RollupBatch, refreshed_at: datetime) -> None:
        values = [
            {
                "report_type": row.report_type,
                "period_key": row.period_key,
                "grouping_key": row.grouping_key,
                "payload": row.payload_json(),
            }
            for row in batch.rows
        ]

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(delete(RollupEntry).where(RollupEntry.period_key == period.key))
                if values:
                    await session.execute(insert(RollupEntry), values)

                record = await session.get(RollupRefresh, period.key)
                if record is None:
                    record = RollupRefresh(period_key=period.key, period_kind=period.kind.value)
                    session.add(record)
                record.last_refreshed_at = refreshed_at
                record.last_attempt_at = refreshed_at
                record.last_status = RefreshState.SUCCEEDED
                record.last_error = None
                record.entry_count = len(values)
                record.content_hash = batch.content_hash

    async def _record_failure(self, period: Period, attempted_at: datetime, error: Exception) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    record = await session.get(RollupRefresh, period.key)
                    if record is None:
                        record = RollupRefresh(period_key=period.key, period_kind=period.kind.value, entry_count=0)
                        session.add(record)
                    record.last_attempt_at = attempted_at
                    record.last_status = RefreshState.FAILED
                    record.last_error = f"{type(error).__name__}: {error}"
        except (SQLAlchemyError, OSError) as e:
            # The refresh error still propagates to the caller
            logger.error("Could not record refresh failure", period=period.key, error=str(e))

        logger.error(
            "Rollup refresh failed",
            period=period.key,
            error=str(error),
            error_type=type(error).__name__,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def read(self, report_type: str, period_key: str, grouping_key: str) -> Any:
        """Committed payload for one key, or NOT_COMPUTED"""
        async with self._session_factory() as session:
            row = await session.get(RollupEntry, (report_type, period_key, grouping_key))
        if row is None:
            return NOT_COMPUTED
        return json.loads(row.payload)

    async def read_period(self, report_type: str, period_key: str) -> List[StoredEntry]:
        """All committed rows of one report type and period, by grouping key"""
        stmt = (
            select(RollupEntry)
            .where(RollupEntry.report_type == report_type, RollupEntry.period_key == period_key)
            .order_by(RollupEntry.grouping_key)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_entry(row) for row in rows]

    async def snapshot(
        self,
        report_type: str,
        period: Period,
        now: Optional[datetime] = None,
    ) -> Tuple[List[StoredEntry], RefreshStatus]:
        """Rows and status of a period read in one transaction"""
        now = now or self._clock()
        stmt = (
            select(RollupEntry)
            .where(RollupEntry.report_type == report_type, RollupEntry.period_key == period.key)
            .order_by(RollupEntry.grouping_key)
        )
        async with self._session_factory() as session:
            async with session.begin():
                rows = (await session.execute(stmt)).scalars().all()
                record = await session.get(RollupRefresh, period.key)
                status = _status_from_record(period, record, now)
        return [_entry(row) for row in rows], status

    async def snapshot_all(
        self,
        report_type: str,
        kind: PeriodKind,
        now: Optional[datetime] = None,
    ) -> Tuple[List[StoredEntry], RefreshStatus]:
        """Rows of every period of a kind with their combined status, read in one transaction"""
        now = now or self._clock()
        rows_stmt = (
            select(RollupEntry)
            .where(RollupEntry.report_type == report_type)
            .order_by(RollupEntry.period_key, RollupEntry.grouping_key)
        )
        records_stmt = (
            select(RollupRefresh)
            .where(RollupRefresh.period_kind == PeriodKind(kind).value)
            .order_by(RollupRefresh.period_key)
        )
        async with self._session_factory() as session:
            async with session.begin():
                rows = (await session.execute(rows_stmt)).scalars().all()
                records = (await session.execute(records_stmt)).scalars().all()
                statuses = [
                    _status_from_record(Period.from_key(record.period_key), record, now)
                    for record in records
                ]
        return [_entry(row) for row in rows], combined_status("all", kind, statuses, now)

    async def get_status(self, period: PeriodSpec, now: Optional[datetime] = None) -> RefreshStatus:
        """Last refresh time and staleness of a period"""
        now = now or self._clock()
        period = parse_period(period, now=now)
        async with self._session_factory() as session:
            record = await session.get(RollupRefresh, period.key)
            return _status_from_record(period, record, now)
