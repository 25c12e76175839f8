"""
Rollup Engine Errors

Every failure the engine surfaces derives from RollupError.
"""

from typing import Any, Dict, Optional


class RollupError(Exception):
    """Base class for rollup engine errors"""


class InvalidPeriod(RollupError):
    """Malformed or empty reporting window, rejected before any scan"""


class NonSargablePredicate(InvalidPeriod):
    """A window predicate was requested on a derived expression instead of a raw column"""


class UpstreamUnavailable(RollupError):
    """The source store could not be read; the refresh aborted"""


class ConcurrentRefreshRejected(RollupError):
    """A refresh for the same period is already in flight"""

    def __init__(self, period_key: str):
        super().__init__(f"Refresh already in flight for period {period_key}")
        self.period_key = period_key


class DataIntegrityViolation(RollupError):
    """
    An upstream row that cannot be aggregated.

    Usually collected rather than raised: the offending row is excluded and
    the refresh carries on. Raised only in strict integrity mode.
    """

    def __init__(
        self,
        entity: str,
        key: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(f"{entity} {key}: {reason}")
        self.entity = entity
        self.key = key
        self.reason = reason
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        return {"entity": self.entity, "key": self.key, "reason": self.reason, **self.details}
