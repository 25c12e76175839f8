"""
Database Module
"""
from .connection import (
    check_database_health,
    close_database,
    create_engine_for,
    create_schema,
    create_session_factory,
    get_db,
    get_session_factory,
    init_database,
)
from .models import Base

__all__ = [
    "check_database_health",
    "init_database",
    "close_database",
    "create_engine_for",
    "create_schema",
    "create_session_factory",
    "get_db",
    "get_session_factory",
    "Base",
]
