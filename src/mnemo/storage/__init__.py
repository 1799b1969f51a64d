"""Persistence contract and the PostgreSQL implementation."""

from mnemo.storage.database import (
    Database,
    PostgresDatabase,
    get_db_connection,
    safe_close_connection,
)

__all__ = ["Database", "PostgresDatabase", "get_db_connection", "safe_close_connection"]
