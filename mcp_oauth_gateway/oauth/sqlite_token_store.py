# mcp_oauth_gateway/oauth/sqlite_token_store.py
import sqlite3
import logging
import time
from typing import Optional, List
from datetime import datetime, timezone

from .storage_interfaces import AbstractTokenStore
from .models import (
    AuthorizationParams,
    CleanupResult,
    OAuthClientInformation,
    StoredAuthorizationCode,
    StoredToken,
    TokenStats,
)
from ..storage.sqlite_base import get_sqlite_db_connection

logger = logging.getLogger(__name__)


def _mask(value: str) -> str:
    return f"{value[:6]}..." if len(value) > 6 else "***"


class SQLiteTokenStore(AbstractTokenStore):
    """SQLite implementation of authorization code and token storage."""

    async def initialize(self) -> None:
        """Initialize the SQLite connection and ensure database is ready."""
        await get_sqlite_db_connection()
        logger.info("SQLiteTokenStore initialized.")

    async def teardown(self) -> None:
        logger.info("SQLiteTokenStore teardown.")

    async def _execute_query(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a write query with automatic commit/rollback handling."""
        conn = await get_sqlite_db_connection()
        cursor = conn.cursor()
        try:
            cursor.execute(query, params)
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"SQLite error: {e}", exc_info=True)
            conn.rollback()
            raise
        return cursor

    async def _fetch_live_row(
        self, table: str, key_column: str, key: str, data_column: str
    ) -> Optional[sqlite3.Row]:
        """
        Read one record by key. An expired record is deleted in the same
        transaction and reported as absent.
        """
        conn = await get_sqlite_db_connection()
        now = time.time()
        try:
            with conn:
                row = conn.execute(
                    f"SELECT {data_column}, expires_at FROM {table} WHERE {key_column} = ?",
                    (key,)
                ).fetchone()
                if row is None:
                    return None
                if row["expires_at"] <= now:
                    conn.execute(
                        f"DELETE FROM {table} WHERE {key_column} = ? AND expires_at <= ?",
                        (key, now)
                    )
                    logger.info(f"Removed expired record '{_mask(key)}' from {table} on lookup.")
                    return None
                return row
        except sqlite3.Error as e:
            logger.error(f"SQLite error reading {table}: {e}", exc_info=True)
            raise

    # Authorization codes

    async def store_authorization_code(
        self,
        code: str,
        client: OAuthClientInformation,
        params: AuthorizationParams,
        ttl_seconds: int
    ) -> StoredAuthorizationCode:
        now = time.time()
        record = StoredAuthorizationCode(
            code=code,
            client_id=client.client_id,
            params=params,
            expires_at=datetime.fromtimestamp(now + ttl_seconds, tz=timezone.utc),
            issued_at=datetime.fromtimestamp(now, tz=timezone.utc),
        )
        query = '''
            INSERT INTO oauth_authorization_codes (code, client_id, code_data, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(code) DO UPDATE SET
                client_id=excluded.client_id,
                code_data=excluded.code_data,
                expires_at=excluded.expires_at
        '''
        await self._execute_query(
            query, (code, client.client_id, record.model_dump_json(), now + ttl_seconds)
        )
        logger.debug(f"Stored authorization code '{_mask(code)}' for client '{client.client_id}'.")
        return record

    async def get_authorization_code(self, code: str) -> Optional[StoredAuthorizationCode]:
        row = await self._fetch_live_row("oauth_authorization_codes", "code", code, "code_data")
        if row is None:
            return None
        return StoredAuthorizationCode.model_validate_json(row["code_data"])

    async def delete_authorization_code(self, code: str) -> bool:
        cursor = await self._execute_query(
            "DELETE FROM oauth_authorization_codes WHERE code = ?", (code,)
        )
        return cursor.rowcount > 0

    # Tokens

    async def _store_token(
        self,
        token: str,
        client_id: str,
        token_type: str,
        scopes: List[str],
        ttl_seconds: int,
        resource: Optional[str]
    ) -> StoredToken:
        now = time.time()
        record = StoredToken(
            token=token,
            client_id=client_id,
            token_type=token_type,
            scopes=list(scopes),
            resource=resource,
            expires_at=datetime.fromtimestamp(now + ttl_seconds, tz=timezone.utc),
            issued_at=datetime.fromtimestamp(now, tz=timezone.utc),
        )
        query = '''
            INSERT INTO oauth_tokens (token, client_id, token_type, token_data, expires_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(token) DO UPDATE SET
                client_id=excluded.client_id,
                token_type=excluded.token_type,
                token_data=excluded.token_data,
                expires_at=excluded.expires_at
        '''
        await self._execute_query(
            query, (token, client_id, token_type, record.model_dump_json(), now + ttl_seconds)
        )
        return record

    async def store_access_token(
        self,
        token: str,
        client_id: str,
        scopes: List[str],
        ttl_seconds: int,
        resource: Optional[str] = None
    ) -> StoredToken:
        return await self._store_token(token, client_id, "access", scopes, ttl_seconds, resource)

    async def store_refresh_token(
        self,
        token: str,
        client_id: str,
        scopes: List[str],
        ttl_seconds: int,
        resource: Optional[str] = None
    ) -> StoredToken:
        return await self._store_token(token, client_id, "refresh", scopes, ttl_seconds, resource)

    async def get_token(self, token: str) -> Optional[StoredToken]:
        row = await self._fetch_live_row("oauth_tokens", "token", token, "token_data")
        if row is None:
            return None
        return StoredToken.model_validate_json(row["token_data"])

    async def delete_token(self, token: str) -> bool:
        cursor = await self._execute_query("DELETE FROM oauth_tokens WHERE token = ?", (token,))
        return cursor.rowcount > 0

    async def revoke_tokens_for_client(self, client_id: str) -> int:
        cursor = await self._execute_query("DELETE FROM oauth_tokens WHERE client_id = ?", (client_id,))
        logger.info(f"Revoked {cursor.rowcount} token(s) for client '{client_id}'.")
        return cursor.rowcount

    async def cleanup_expired(self) -> CleanupResult:
        conn = await get_sqlite_db_connection()
        now = time.time()
        try:
            with conn:
                tokens = conn.execute("DELETE FROM oauth_tokens WHERE expires_at <= ?", (now,)).rowcount
                codes = conn.execute(
                    "DELETE FROM oauth_authorization_codes WHERE expires_at <= ?", (now,)
                ).rowcount
        except sqlite3.Error as e:
            logger.error(f"SQLite error during expiry cleanup: {e}", exc_info=True)
            raise
        if tokens or codes:
            logger.info(f"Expiry cleanup removed {tokens} token(s) and {codes} code(s).")
        return CleanupResult(tokens=tokens, codes=codes)

    async def get_token_stats(self) -> TokenStats:
        conn = await get_sqlite_db_connection()
        now = time.time()
        count_query = '''
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN expires_at > ? THEN 1 ELSE 0 END), 0) AS active
            FROM {table}
        '''
        try:
            tokens = conn.execute(count_query.format(table="oauth_tokens"), (now,)).fetchone()
            codes = conn.execute(count_query.format(table="oauth_authorization_codes"), (now,)).fetchone()
        except sqlite3.Error as e:
            logger.error(f"SQLite error computing token stats: {e}", exc_info=True)
            raise
        return TokenStats(
            total_tokens=tokens["total"],
            active_tokens=tokens["active"],
            expired_tokens=tokens["total"] - tokens["active"],
            total_codes=codes["total"],
            active_codes=codes["active"],
            expired_codes=codes["total"] - codes["active"],
        )


_sqlite_token_store_instance: Optional[SQLiteTokenStore] = None


async def get_sqlite_token_store() -> SQLiteTokenStore:
    """Get or create the singleton SQLite token store instance."""
    global _sqlite_token_store_instance
    if _sqlite_token_store_instance is None:
        _sqlite_token_store_instance = SQLiteTokenStore()
        await _sqlite_token_store_instance.initialize()
    return _sqlite_token_store_instance
