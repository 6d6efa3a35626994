# mcp_oauth_gateway/oauth/storage.py
import logging
import time
from typing import Optional, List
from datetime import datetime, timezone

import redis.asyncio as aioredis

from ..settings import settings as gateway_settings
from .storage_interfaces import AbstractTokenStore, AbstractClientStore
from .models import (
    AuthorizationParams,
    CleanupResult,
    OAuthClientInformation,
    StoredAuthorizationCode,
    StoredToken,
    TokenStats,
)
from .sqlite_token_store import get_sqlite_token_store
from .sqlite_client_store import get_sqlite_client_store

logger = logging.getLogger(__name__)


class _RedisStoreBase:
    """Connection handling shared by the Redis stores."""

    _redis_client: Optional[aioredis.Redis] = None

    def __init__(self, key_prefix: Optional[str] = None):
        self.key_prefix = key_prefix or gateway_settings.redis_key_prefix

    async def initialize(self) -> None:
        """Establish Redis connection with configured parameters."""
        if self._redis_client:
            return

        connection_params = {
            "host": gateway_settings.redis_host,
            "port": gateway_settings.redis_port,
            "db": gateway_settings.redis_db,
            "ssl": gateway_settings.redis_ssl,
            "decode_responses": True,
        }
        if gateway_settings.redis_password:
            connection_params["password"] = gateway_settings.redis_password

        try:
            self._redis_client = aioredis.Redis(**connection_params)
            await self._redis_client.ping()
            logger.info(f"{type(self).__name__}: Successfully connected to Redis.")
        except Exception as e:
            logger.error(f"{type(self).__name__}: Failed to connect: {e}", exc_info=True)
            self._redis_client = None
            raise

    async def teardown(self) -> None:
        """Clean up Redis connection."""
        if self._redis_client:
            await self._redis_client.aclose()
            self._redis_client = None
            logger.info(f"{type(self).__name__}: Connection closed.")

    async def _get_client(self) -> aioredis.Redis:
        """Get initialized Redis client or raise error if not ready."""
        if not self._redis_client:
            raise RuntimeError(f"{type(self).__name__} not initialized.")
        return self._redis_client


class RedisTokenStore(_RedisStoreBase, AbstractTokenStore):
    """
    Redis storage for codes and tokens, for deployments where several
    gateway processes share one store.

    Records carry their own expiry and are indexed in sorted sets scored by
    it, so that stats can count expired records and the cleanup sweep can
    remove them. Single use relies on DEL reporting how many keys it removed.
    """

    def _code_key(self, code: str) -> str:
        return f"{self.key_prefix}:code:{code}"

    def _token_key(self, token: str) -> str:
        return f"{self.key_prefix}:token:{token}"

    def _client_tokens_key(self, client_id: str) -> str:
        return f"{self.key_prefix}:client_tokens:{client_id}"

    @property
    def _codes_index(self) -> str:
        return f"{self.key_prefix}:codes_by_expiry"

    @property
    def _tokens_index(self) -> str:
        return f"{self.key_prefix}:tokens_by_expiry"

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
        client_conn = await self._get_client()
        async with client_conn.pipeline(transaction=True) as pipe:
            pipe.set(self._code_key(code), record.model_dump_json())
            pipe.zadd(self._codes_index, {code: now + ttl_seconds})
            await pipe.execute()
        return record

    async def get_authorization_code(self, code: str) -> Optional[StoredAuthorizationCode]:
        client_conn = await self._get_client()
        raw = await client_conn.get(self._code_key(code))
        if raw is None:
            return None
        record = StoredAuthorizationCode.model_validate_json(raw)
        if record.expires_at.timestamp() <= time.time():
            await self.delete_authorization_code(code)
            logger.info("Removed expired authorization code on lookup.")
            return None
        return record

    async def delete_authorization_code(self, code: str) -> bool:
        client_conn = await self._get_client()
        async with client_conn.pipeline(transaction=True) as pipe:
            pipe.delete(self._code_key(code))
            pipe.zrem(self._codes_index, code)
            deleted, _ = await pipe.execute()
        return deleted > 0

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
        client_conn = await self._get_client()
        async with client_conn.pipeline(transaction=True) as pipe:
            pipe.set(self._token_key(token), record.model_dump_json())
            pipe.zadd(self._tokens_index, {token: now + ttl_seconds})
            pipe.sadd(self._client_tokens_key(client_id), token)
            await pipe.execute()
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
        client_conn = await self._get_client()
        raw = await client_conn.get(self._token_key(token))
        if raw is None:
            return None
        record = StoredToken.model_validate_json(raw)
        if record.expires_at.timestamp() <= time.time():
            await self._delete_token_record(token, record.client_id)
            logger.info("Removed expired token on lookup.")
            return None
        return record

    async def _delete_token_record(self, token: str, client_id: Optional[str]) -> bool:
        client_conn = await self._get_client()
        async with client_conn.pipeline(transaction=True) as pipe:
            pipe.delete(self._token_key(token))
            pipe.zrem(self._tokens_index, token)
            if client_id:
                pipe.srem(self._client_tokens_key(client_id), token)
            results = await pipe.execute()
        return results[0] > 0

    async def delete_token(self, token: str) -> bool:
        client_conn = await self._get_client()
        raw = await client_conn.get(self._token_key(token))
        client_id = StoredToken.model_validate_json(raw).client_id if raw else None
        return await self._delete_token_record(token, client_id)

    async def revoke_tokens_for_client(self, client_id: str) -> int:
        client_conn = await self._get_client()
        tokens = await client_conn.smembers(self._client_tokens_key(client_id))
        if not tokens:
            return 0
        async with client_conn.pipeline(transaction=True) as pipe:
            for token in tokens:
                pipe.delete(self._token_key(token))
            pipe.zrem(self._tokens_index, *tokens)
            pipe.delete(self._client_tokens_key(client_id))
            results = await pipe.execute()
        revoked = sum(results[:len(tokens)])
        logger.info(f"Revoked {revoked} token(s) for client '{client_id}'.")
        return revoked

    async def cleanup_expired(self) -> CleanupResult:
        client_conn = await self._get_client()
        now = time.time()

        expired_codes = await client_conn.zrangebyscore(self._codes_index, "-inf", now)
        codes_removed = 0
        for code in expired_codes:
            if await self.delete_authorization_code(code):
                codes_removed += 1

        expired_tokens = await client_conn.zrangebyscore(self._tokens_index, "-inf", now)
        tokens_removed = 0
        for token in expired_tokens:
            if await self.delete_token(token):
                tokens_removed += 1

        if tokens_removed or codes_removed:
            logger.info(f"Expiry cleanup removed {tokens_removed} token(s) and {codes_removed} code(s).")
        return CleanupResult(tokens=tokens_removed, codes=codes_removed)

    async def get_token_stats(self) -> TokenStats:
        client_conn = await self._get_client()
        now = time.time()
        total_tokens = await client_conn.zcard(self._tokens_index)
        active_tokens = await client_conn.zcount(self._tokens_index, f"({now}", "+inf")
        total_codes = await client_conn.zcard(self._codes_index)
        active_codes = await client_conn.zcount(self._codes_index, f"({now}", "+inf")
        return TokenStats(
            total_tokens=total_tokens,
            active_tokens=active_tokens,
            expired_tokens=total_tokens - active_tokens,
            total_codes=total_codes,
            active_codes=active_codes,
            expired_codes=total_codes - active_codes,
        )


class RedisClientStore(_RedisStoreBase, AbstractClientStore):
    """Redis client registry. Creation order is kept in a sorted set."""

    def _client_key(self, client_id: str) -> str:
        return f"{self.key_prefix}:client:{client_id}"

    @property
    def _created_index(self) -> str:
        return f"{self.key_prefix}:clients_by_created"

    async def get_client(self, client_id: str) -> Optional[OAuthClientInformation]:
        client_conn = await self._get_client()
        raw = await client_conn.get(self._client_key(client_id))
        return OAuthClientInformation.model_validate_json(raw) if raw else None

    async def register_client(self, client: OAuthClientInformation) -> OAuthClientInformation:
        client_conn = await self._get_client()
        async with client_conn.pipeline(transaction=True) as pipe:
            pipe.set(self._client_key(client.client_id), client.model_dump_json())
            pipe.zadd(self._created_index, {client.client_id: time.time()}, nx=True)
            await pipe.execute()
        logger.info(f"Registered OAuth client '{client.client_id}'.")
        return client

    async def delete_client(self, client_id: str) -> bool:
        client_conn = await self._get_client()
        async with client_conn.pipeline(transaction=True) as pipe:
            pipe.delete(self._client_key(client_id))
            pipe.zrem(self._created_index, client_id)
            deleted, _ = await pipe.execute()
        return deleted > 0

    async def list_clients(self) -> List[OAuthClientInformation]:
        client_conn = await self._get_client()
        client_ids = await client_conn.zrevrange(self._created_index, 0, -1)
        if not client_ids:
            return []
        raws = await client_conn.mget([self._client_key(client_id) for client_id in client_ids])
        return [OAuthClientInformation.model_validate_json(raw) for raw in raws if raw]


_token_store_instance: Optional[AbstractTokenStore] = None
_client_store_instance: Optional[AbstractClientStore] = None


async def get_token_store() -> AbstractTokenStore:
    """Return the token store for the configured storage_backend."""
    global _token_store_instance

    if _token_store_instance is None:
        if gateway_settings.storage_backend == "sqlite":
            logger.info("Using SQLiteTokenStore for codes and tokens.")
            _token_store_instance = await get_sqlite_token_store()
        elif gateway_settings.storage_backend == "redis":
            logger.info("Using RedisTokenStore for codes and tokens.")
            _token_store_instance = RedisTokenStore()
            await _token_store_instance.initialize()
        else:
            raise ValueError(f"Unsupported storage_backend: {gateway_settings.storage_backend}")

    return _token_store_instance


async def get_client_store() -> AbstractClientStore:
    """Return the client registry for the configured storage_backend."""
    global _client_store_instance

    if _client_store_instance is None:
        if gateway_settings.storage_backend == "sqlite":
            logger.info("Using SQLiteClientStore for OAuth clients.")
            _client_store_instance = await get_sqlite_client_store()
        elif gateway_settings.storage_backend == "redis":
            logger.info("Using RedisClientStore for OAuth clients.")
            _client_store_instance = RedisClientStore()
            await _client_store_instance.initialize()
        else:
            raise ValueError(f"Unsupported storage_backend: {gateway_settings.storage_backend}")

    return _client_store_instance


async def reset_store_instances() -> None:
    """Tear down and forget the cached stores (shutdown and tests)."""
    global _token_store_instance, _client_store_instance
    for store in (_token_store_instance, _client_store_instance):
        if store is not None:
            await store.teardown()
    _token_store_instance = None
    _client_store_instance = None
