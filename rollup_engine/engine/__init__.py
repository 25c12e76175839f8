"""
Rollup Engine Core
"""
from .errors import (
    ConcurrentRefreshRejected,
    DataIntegrityViolation,
    InvalidPeriod,
    NonSargablePredicate,
    RollupError,
    UpstreamUnavailable,
)
from .windows import Period, PeriodKind, TimeWindow, iter_periods, parse_period
from .preaggregate import aggregate_line_items, aggregate_refunds, pre_aggregate
from .combine import CombineResult, combine
from .ranking import RankedEntry, RankingMode, RankingResolver
from .pipeline import ReportType, RollupBatch, RollupPipeline, RollupRow

__all__ = [
    "RollupError",
    "InvalidPeriod",
    "NonSargablePredicate",
    "UpstreamUnavailable",
    "ConcurrentRefreshRejected",
    "DataIntegrityViolation",
    "Period",
    "PeriodKind",
    "TimeWindow",
    "iter_periods",
    "parse_period",
    "pre_aggregate",
    "aggregate_line_items",
    "aggregate_refunds",
    "CombineResult",
    "combine",
    "RankedEntry",
    "RankingMode",
    "RankingResolver",
    "ReportType",
    "RollupBatch",
    "RollupPipeline",
    "RollupRow",
]
