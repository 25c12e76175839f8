"""
Upstream Sources Module
"""
from .base import (
    CURRENCY_SCHEMA,
    LINE_ITEM_SCHEMA,
    ORDER_SCHEMA,
    REFUND_SCHEMA,
    UpstreamSource,
    frame_from_records,
)
from .frames import FrameSource
from .sql import SqlUpstreamSource

__all__ = [
    "UpstreamSource",
    "FrameSource",
    "SqlUpstreamSource",
    "ORDER_SCHEMA",
    "LINE_ITEM_SCHEMA",
    "REFUND_SCHEMA",
    "CURRENCY_SCHEMA",
    "frame_from_records",
]
