# mcp_oauth_gateway/oauth/sqlite_client_store.py
import sqlite3
import logging
import time
from typing import Optional, List

from .storage_interfaces import AbstractClientStore
from .models import OAuthClientInformation
from ..storage.sqlite_base import get_sqlite_db_connection

logger = logging.getLogger(__name__)


class SQLiteClientStore(AbstractClientStore):
    """SQLite implementation of the OAuth client registry."""

    async def initialize(self) -> None:
        """Initialize the SQLite database connection and ensure tables exist."""
        await get_sqlite_db_connection()
        logger.info("SQLiteClientStore initialized.")

    async def teardown(self) -> None:
        """Clean up resources. Connection is managed globally."""
        logger.info("SQLiteClientStore teardown (connection managed globally).")

    async def _execute_query(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a SQL query with error handling and transaction management."""
        conn = await get_sqlite_db_connection()
        cursor = conn.cursor()
        try:
            cursor.execute(query, params)
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"SQLite error executing query '{query}': {e}", exc_info=True)
            conn.rollback()
            raise
        return cursor

    async def _fetchall(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        conn = await get_sqlite_db_connection()
        try:
            return conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            logger.error(f"SQLite error during fetch for query '{query}': {e}", exc_info=True)
            raise

    def _row_to_client(self, row: Optional[sqlite3.Row]) -> Optional[OAuthClientInformation]:
        """Convert a database row to a client record."""
        if not row:
            return None
        try:
            return OAuthClientInformation.model_validate_json(row["client_data"])
        except ValueError as e:
            logger.error(f"Error deserializing client from row: {e}", exc_info=True)
            return None

    async def get_client(self, client_id: str) -> Optional[OAuthClientInformation]:
        rows = await self._fetchall(
            "SELECT client_data FROM oauth_clients WHERE client_id = ?", (client_id,)
        )
        return self._row_to_client(rows[0]) if rows else None

    async def register_client(self, client: OAuthClientInformation) -> OAuthClientInformation:
        """
        Save or overwrite a client. Re-registration keeps the original
        created_at so listing order reflects first registration.
        """
        now = time.time()
        query = '''
            INSERT INTO oauth_clients (client_id, client_data, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(client_id) DO UPDATE SET
                client_data=excluded.client_data,
                updated_at=excluded.updated_at
        '''
        await self._execute_query(query, (client.client_id, client.model_dump_json(), now, now))
        logger.info(f"Registered OAuth client '{client.client_id}'.")
        return client

    async def delete_client(self, client_id: str) -> bool:
        cursor = await self._execute_query("DELETE FROM oauth_clients WHERE client_id = ?", (client_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted OAuth client '{client_id}'.")
        return deleted

    async def list_clients(self) -> List[OAuthClientInformation]:
        rows = await self._fetchall(
            "SELECT client_data FROM oauth_clients ORDER BY created_at DESC, rowid DESC"
        )
        return [client for client in (self._row_to_client(row) for row in rows) if client is not None]


_sqlite_client_store_instance: Optional[SQLiteClientStore] = None


async def get_sqlite_client_store() -> SQLiteClientStore:
    """Get the singleton instance of SQLiteClientStore."""
    global _sqlite_client_store_instance
    if _sqlite_client_store_instance is None:
        _sqlite_client_store_instance = SQLiteClientStore()
        await _sqlite_client_store_instance.initialize()
    return _sqlite_client_store_instance
