# mcp_oauth_gateway/storage/__init__.py

"""Shared SQLite connection and schema used by the OAuth stores."""

from .sqlite_base import (
    get_sqlite_db_connection,
    init_sqlite_db,
    close_sqlite_db_connection
)

__all__ = [
    "get_sqlite_db_connection",
    "init_sqlite_db",
    "close_sqlite_db_connection"
]
