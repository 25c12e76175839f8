"""
API Routes Module
"""
from .health import router as health_router
from .operations import router as operations_router
from .reports import router as reports_router

__all__ = [
    "health_router",
    "operations_router",
    "reports_router",
]
