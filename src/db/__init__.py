"""
Database module for the NPHIES claim submission backend.

Exports database connection utilities.
"""

from src.db.connection import (
    check_db_connection,
    close_db_connection,
    get_engine,
    get_session,
    get_session_maker,
    init_models,
)

__all__ = [
    "get_engine",
    "get_session_maker",
    "get_session",
    "init_models",
    "close_db_connection",
    "check_db_connection",
]
