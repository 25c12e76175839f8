"""
Rollup Store Module
"""
from .rollup_store import NOT_COMPUTED, RefreshStatus, RollupStore, StoredEntry

__all__ = [
    "NOT_COMPUTED",
    "RefreshStatus",
    "RollupStore",
    "StoredEntry",
]
