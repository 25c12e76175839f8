"""
Time-Window Filter

Turns a reporting period into a half-open range [start, end) and renders it
as a range predicate on a raw timestamp column, either for SQLAlchemy or for
polars. Truncating the column to a date before comparing is not offered:
only `start <= ts < end` keeps the timestamp index usable.

All timestamps are naive UTC.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Iterator, Optional, Union

import polars as pl
from sqlalchemy import and_
from sqlalchemy.orm import QueryableAttribute
from sqlalchemy.sql.expression import ColumnClause, ColumnElement

from rollup_engine.engine.errors import InvalidPeriod, NonSargablePredicate

_DAY_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_KEY = re.compile(r"^\d{4}-\d{2}$")

RELATIVE_TOKENS = ("today", "yesterday", "this_month", "last_month")


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PeriodKind(str, Enum):
    """Reporting period granularity"""
    DAY = "day"
    MONTH = "month"


@dataclass(frozen=True)
class TimeWindow:
    """Half-open time range [start, end)"""
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise InvalidPeriod(f"Empty window: start {self.start} is not before end {self.end}")

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    def sql_predicate(self, column) -> ColumnElement:
        """
        Range predicate on a raw column.

        Args:
            column: A mapped attribute or table column holding timestamps

        Raises:
            NonSargablePredicate: If column is a derived expression
                (func.date(...), cast(...), a label, a literal)
        """
        expr = column.expression if isinstance(column, QueryableAttribute) else column
        if not isinstance(expr, ColumnClause) or expr.is_literal:
            raise NonSargablePredicate(
                f"Window predicates apply to raw timestamp columns only, got {type(expr).__name__}"
            )
        return and_(column >= self.start, column < self.end)

    def frame_predicate(self, column: str) -> pl.Expr:
        """Range predicate on a named frame column"""
        if not isinstance(column, str):
            raise NonSargablePredicate(
                f"Window predicates apply to raw timestamp columns only, got {type(column).__name__}"
            )
        return (pl.col(column) >= self.start) & (pl.col(column) < self.end)


@dataclass(frozen=True)
class Period:
    """A calendar day or month, identified by its key ('2024-03-05' / '2024-03')"""
    kind: PeriodKind
    start: datetime

    @classmethod
    def containing(cls, kind: PeriodKind, ts: Union[datetime, date]) -> "Period":
        kind = PeriodKind(kind)
        if kind is PeriodKind.DAY:
            return cls(kind, datetime(ts.year, ts.month, ts.day))
        return cls(kind, datetime(ts.year, ts.month, 1))

    @classmethod
    def from_key(cls, key: str) -> "Period":
        try:
            if _DAY_KEY.match(key):
                return cls.containing(PeriodKind.DAY, datetime.strptime(key, "%Y-%m-%d"))
            if _MONTH_KEY.match(key):
                return cls.containing(PeriodKind.MONTH, datetime.strptime(key, "%Y-%m"))
        except ValueError as e:
            raise InvalidPeriod(f"Invalid period {key!r}: {e}") from e
        raise InvalidPeriod(f"Invalid period {key!r}: expected YYYY-MM-DD or YYYY-MM")

    @property
    def end(self) -> datetime:
        if self.kind is PeriodKind.DAY:
            return self.start + timedelta(days=1)
        year, month = divmod(self.start.month, 12)
        return datetime(self.start.year + year, month + 1, 1)

    @property
    def key(self) -> str:
        if self.kind is PeriodKind.DAY:
            return self.start.strftime("%Y-%m-%d")
        return self.start.strftime("%Y-%m")

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start, self.end)

    def next(self) -> "Period":
        return Period(self.kind, self.end)

    def previous(self) -> "Period":
        return Period.containing(self.kind, self.start - timedelta(days=1))

    def is_complete(self, now: datetime) -> bool:
        """A period is complete once its end boundary has passed"""
        return self.end <= now

    def __str__(self) -> str:
        return self.key


PeriodSpec = Union[Period, datetime, date, str]


def parse_period(
    spec: PeriodSpec,
    now: Optional[datetime] = None,
    kind: Optional[PeriodKind] = None,
) -> Period:
    """
    Normalize a period specifier.

    Accepts a Period, a date or datetime (the day containing it, or the
    month when kind is MONTH), a key ('2024-03-05', '2024-03'), or one of
    'today', 'yesterday', 'this_month', 'last_month' resolved against now.

    Raises:
        InvalidPeriod: For malformed specifiers and periods that have not
            started yet
    """
    now = now or utcnow()

    if isinstance(spec, Period):
        period = spec
    elif isinstance(spec, (datetime, date)):
        period = Period.containing(kind or PeriodKind.DAY, spec)
    elif isinstance(spec, str):
        token = spec.strip().lower()
        if token == "today":
            period = Period.containing(PeriodKind.DAY, now)
        elif token == "yesterday":
            period = Period.containing(PeriodKind.DAY, now).previous()
        elif token == "this_month":
            period = Period.containing(PeriodKind.MONTH, now)
        elif token == "last_month":
            period = Period.containing(PeriodKind.MONTH, now).previous()
        else:
            period = Period.from_key(token)
    else:
        raise InvalidPeriod(f"Unsupported period specifier: {spec!r}")

    if period.start >= now:
        raise InvalidPeriod(f"Period {period.key} has not started yet")
    return period


def iter_periods(kind: PeriodKind, first: Union[datetime, date], last: Union[datetime, date]) -> Iterator[Period]:
    """Periods of the given kind from the one containing first to the one containing last, inclusive"""
    period = Period.containing(kind, first)
    stop = Period.containing(kind, last)
    if period.start > stop.start:
        raise InvalidPeriod(f"Backfill range is reversed: {period.key} > {stop.key}")
    while period.start <= stop.start:
        yield period
        period = period.next()
