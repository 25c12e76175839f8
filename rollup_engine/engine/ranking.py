"""
Ranking Resolver

Top-N by aggregate within partitions. Rows are ordered by score descending
and then by a secondary key ascending, so equal scores always resolve the
same way: the lexicographically smaller secondary key wins.

Two partition modes:
- OVERALL: one partition across all time
- PER_PERIOD: one partition per reporting period
Either mode can be further partitioned by extra columns (e.g. currency).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence

import polars as pl

RANK_COLUMN = "rank"


class RankingMode(str, Enum):
    """Partitioning of a ranking"""
    OVERALL = "overall"
    PER_PERIOD = "per_period"


@dataclass(frozen=True)
class RankedEntry:
    """One ranked row: rank is 1-based within its partition"""
    partition_key: str
    rank: int
    payload: Dict[str, Any] = field(default_factory=dict)


class RankingResolver:
    """
    Resolves top-N rows per partition with deterministic tie-breaking.

    Example:
        resolver = RankingResolver(RankingMode.PER_PERIOD, partition_columns=["currency_code"])
        top = resolver.resolve(spend, score="total_spent", tie_breaker="customer_id")
    """

    def __init__(
        self,
        mode: RankingMode,
        period_column: str = "period_key",
        partition_columns: Sequence[str] = (),
    ):
        self.mode = RankingMode(mode)
        self.period_column = period_column
        self.partition_columns = list(partition_columns)

    @property
    def partition_by(self) -> List[str]:
        if self.mode is RankingMode.PER_PERIOD:
            return [self.period_column, *self.partition_columns]
        return list(self.partition_columns)

    def resolve(
        self,
        frame: pl.DataFrame,
        score: str,
        tie_breaker: str,
        top_n: int = 1,
    ) -> pl.DataFrame:
        """
        Rank rows within each partition and keep the first top_n.

        Args:
            frame: One row per candidate, already aggregated
            score: Column ranked descending
            tie_breaker: Column ranked ascending among equal scores
            top_n: Rows kept per partition

        Returns:
            The kept rows plus a 1-based 'rank' column, ordered by
            partition then rank
        """
        if top_n < 1:
            raise ValueError("top_n must be at least 1")

        partition = self.partition_by
        missing = [c for c in [*partition, score, tie_breaker] if c not in frame.columns]
        if missing:
            raise ValueError(f"Ranking input is missing columns: {missing}")

        ordered = frame.sort(
            [*partition, score, tie_breaker],
            descending=[False] * len(partition) + [True, False],
            nulls_last=True,
        )

        position = pl.int_range(0, pl.len(), dtype=pl.Int64)
        if partition:
            position = position.over(partition)

        return (
            ordered.with_columns((position + 1).alias(RANK_COLUMN))
            .filter(pl.col(RANK_COLUMN) <= top_n)
        )

    def partition_key(self, row: Dict[str, Any]) -> str:
        parts = [str(row[c]) for c in self.partition_by]
        return ":".join(parts) if parts else self.mode.value

    def to_ranked_entries(self, ranked: pl.DataFrame, payload_columns: Sequence[str]) -> List[RankedEntry]:
        """Convert resolve() output into RankedEntry records"""
        return [
            RankedEntry(
                partition_key=self.partition_key(row),
                rank=row[RANK_COLUMN],
                payload={c: row[c] for c in payload_columns},
            )
            for row in ranked.iter_rows(named=True)
        ]
