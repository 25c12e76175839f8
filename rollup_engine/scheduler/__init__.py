"""
Refresh Scheduler Module
"""
from .refresh import OutcomeStatus, RefreshOutcome, RefreshScheduler

__all__ = [
    "OutcomeStatus",
    "RefreshOutcome",
    "RefreshScheduler",
]
