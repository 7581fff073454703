"""
Database Module
"""
from .connection import (
    init_database,
    close_database,
    get_db,
    get_engine,
    get_session_factory,
    build_engine,
    build_session_factory,
    create_tables,
)
from .models import Base

__all__ = [
    "init_database",
    "close_database",
    "get_db",
    "get_engine",
    "get_session_factory",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "Base",
]
