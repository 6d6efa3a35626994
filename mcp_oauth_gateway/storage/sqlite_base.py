# mcp_oauth_gateway/storage/sqlite_base.py
import sqlite3
import logging
from pathlib import Path
from typing import Optional

from ..settings import settings

logger = logging.getLogger(__name__)

# One connection per application lifecycle, shared by every store
_db_connection: Optional[sqlite3.Connection] = None


async def get_sqlite_db_connection() -> sqlite3.Connection:
    """
    Get or create the SQLite database connection.

    The first call creates the database directory if needed, opens the
    connection at ``settings.sqlite_db_path`` and initializes the schema.

    Returns:
        sqlite3.Connection: The database connection instance

    Raises:
        sqlite3.Error: If database connection fails
    """
    global _db_connection
    if _db_connection is None:
        try:
            db_path = Path(settings.sqlite_db_path).resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)

            logger.info(f"Attempting to connect to SQLite DB at: {db_path}")

            # Accessed from the event loop thread and from CLI helpers
            _db_connection = sqlite3.connect(str(db_path), check_same_thread=False)
            _db_connection.row_factory = sqlite3.Row

            logger.info(f"Successfully connected to SQLite DB: {db_path}")

            await init_sqlite_db(_db_connection)
        except sqlite3.Error as e:
            logger.error(
                f"Error connecting to SQLite database at {settings.sqlite_db_path}: {e}",
                exc_info=True
            )
            raise
    return _db_connection


async def init_sqlite_db(conn: Optional[sqlite3.Connection] = None):
    """
    Create the client, authorization code and token tables.

    Expiry columns hold UNIX timestamps (seconds, REAL) so that range
    comparisons in cleanup and read-repair queries stay numeric.
    """
    db_conn = conn or await get_sqlite_db_connection()
    cursor = db_conn.cursor()

    # Clients created through dynamic registration
    cursor.execute('''
    CREATE TABLE IF NOT EXISTS oauth_clients (
        client_id TEXT PRIMARY KEY,
        client_data TEXT NOT NULL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    ''')
    logger.info("Ensured 'oauth_clients' table exists.")

    # Single-use authorization codes minted after the upstream callback
    cursor.execute('''
    CREATE TABLE IF NOT EXISTS oauth_authorization_codes (
        code TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        code_data TEXT NOT NULL,
        expires_at REAL NOT NULL
    )
    ''')
    logger.info("Ensured 'oauth_authorization_codes' table exists.")

    # Access and refresh tokens share one table, told apart by token_type
    cursor.execute('''
    CREATE TABLE IF NOT EXISTS oauth_tokens (
        token TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        token_type TEXT NOT NULL,
        token_data TEXT NOT NULL,
        expires_at REAL NOT NULL
    )
    ''')
    logger.info("Ensured 'oauth_tokens' table exists.")

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_oauth_tokens_client_id ON oauth_tokens (client_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_oauth_tokens_expires_at ON oauth_tokens (expires_at)")
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_oauth_codes_expires_at ON oauth_authorization_codes (expires_at)"
    )

    db_conn.commit()
    logger.info("SQLite database schema initialized/verified.")


async def close_sqlite_db_connection():
    """Close the shared connection. Called on application shutdown."""
    global _db_connection
    if _db_connection is not None:
        logger.info("Closing SQLite DB connection.")
        _db_connection.close()
        _db_connection = None
        logger.info("SQLite DB connection closed.")
