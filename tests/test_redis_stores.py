# tests/test_redis_stores.py
import fakeredis
import pytest

from mcp_oauth_gateway.oauth import storage
from mcp_oauth_gateway.oauth.storage import (
    RedisClientStore,
    RedisTokenStore,
    get_client_store,
    get_token_store,
    reset_store_instances,
)

from conftest import make_client, make_params


@pytest.fixture
def redis_server(gateway_settings, monkeypatch):
    """Route the stores' Redis connections to one in-process fake server."""
    server = fakeredis.FakeServer()

    def fake_redis(**connection_params):
        return fakeredis.aioredis.FakeRedis(
            server=server, decode_responses=connection_params["decode_responses"]
        )

    monkeypatch.setattr(storage.aioredis, "Redis", fake_redis)
    monkeypatch.setattr(gateway_settings, "storage_backend", "redis")
    monkeypatch.setattr(gateway_settings, "redis_key_prefix", "test_gateway")
    return server


@pytest.fixture
async def redis_stores(redis_server):
    await reset_store_instances()
    token_store = await get_token_store()
    client_store = await get_client_store()
    yield token_store, client_store
    await reset_store_instances()


@pytest.fixture
def redis_token_store(redis_stores):
    return redis_stores[0]


@pytest.fixture
def redis_client_store(redis_stores):
    return redis_stores[1]


async def _raw(redis_server, key: str):
    conn = fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)
    try:
        return await conn.get(key)
    finally:
        await conn.aclose()


async def test_redis_backend_is_selected(redis_stores):
    token_store, client_store = redis_stores
    assert isinstance(token_store, RedisTokenStore)
    assert isinstance(client_store, RedisClientStore)


async def test_code_is_deleted_exactly_once(redis_token_store):
    await redis_token_store.store_authorization_code(
        "code-1", make_client(), make_params(scopes=["mcp:tools"]), ttl_seconds=600
    )

    stored = await redis_token_store.get_authorization_code("code-1")
    assert stored.client_id == "client-1"
    assert stored.params.scopes == ["mcp:tools"]

    assert await redis_token_store.delete_authorization_code("code-1") is True
    assert await redis_token_store.delete_authorization_code("code-1") is False
    assert await redis_token_store.get_authorization_code("code-1") is None


async def test_expired_records_are_removed_on_lookup(redis_token_store, redis_server):
    await redis_token_store.store_authorization_code("stale-code", make_client(), make_params(), ttl_seconds=-1)
    await redis_token_store.store_access_token("stale-token", "client-1", [], ttl_seconds=-1)
    assert await _raw(redis_server, "test_gateway:code:stale-code") is not None

    assert await redis_token_store.get_authorization_code("stale-code") is None
    assert await redis_token_store.get_token("stale-token") is None

    assert await _raw(redis_server, "test_gateway:code:stale-code") is None
    assert await _raw(redis_server, "test_gateway:token:stale-token") is None


async def test_tokens_keep_kind_scopes_and_resource(redis_token_store):
    await redis_token_store.store_access_token(
        "access-1", "client-1", ["mcp:tools"], 3600, resource="http://testserver/mcp"
    )
    await redis_token_store.store_refresh_token("refresh-1", "client-1", ["mcp:tools"], 3600)

    access = await redis_token_store.get_token("access-1")
    refresh = await redis_token_store.get_token("refresh-1")
    assert access.token_type == "access"
    assert access.resource == "http://testserver/mcp"
    assert refresh.token_type == "refresh"
    assert refresh.scopes == ["mcp:tools"]

    assert await redis_token_store.delete_token("access-1") is True
    assert await redis_token_store.delete_token("access-1") is False
    assert await redis_token_store.get_token("access-1") is None


async def test_revoke_tokens_for_client_leaves_other_clients(redis_token_store):
    await redis_token_store.store_access_token("a-1", "client-a", [], 3600)
    await redis_token_store.store_refresh_token("a-2", "client-a", [], 3600)
    await redis_token_store.store_access_token("b-1", "client-b", [], 3600)

    assert await redis_token_store.revoke_tokens_for_client("client-a") == 2
    assert await redis_token_store.revoke_tokens_for_client("client-a") == 0

    assert await redis_token_store.get_token("a-1") is None
    assert await redis_token_store.get_token("a-2") is None
    assert await redis_token_store.get_token("b-1") is not None


async def test_stats_and_cleanup_count_expired_records(redis_token_store):
    await redis_token_store.store_access_token("live", "client-1", [], 3600)
    await redis_token_store.store_access_token("expired", "client-1", [], -10)
    await redis_token_store.store_authorization_code("live-code", make_client(), make_params(), 600)
    await redis_token_store.store_authorization_code("expired-code", make_client(), make_params(), -10)

    stats = await redis_token_store.get_token_stats()
    assert (stats.total_tokens, stats.active_tokens, stats.expired_tokens) == (2, 1, 1)
    assert (stats.total_codes, stats.active_codes, stats.expired_codes) == (2, 1, 1)

    result = await redis_token_store.cleanup_expired()
    assert (result.tokens, result.codes) == (1, 1)

    stats = await redis_token_store.get_token_stats()
    assert (stats.total_tokens, stats.expired_tokens) == (1, 0)
    assert (stats.total_codes, stats.expired_codes) == (1, 0)
    assert await redis_token_store.get_token("live") is not None


async def test_client_registry_round_trip(redis_client_store):
    assert await redis_client_store.get_client("client-a") is None

    await redis_client_store.register_client(make_client("client-a"))
    await redis_client_store.register_client(make_client("client-b"))
    await redis_client_store.register_client(make_client("client-a", redirect_uris=["https://client.example/new"]))

    updated = await redis_client_store.get_client("client-a")
    assert updated.redirect_uris == ["https://client.example/new"]
    # Re-registration keeps the original creation position
    assert [c.client_id for c in await redis_client_store.list_clients()] == ["client-b", "client-a"]

    assert await redis_client_store.delete_client("client-a") is True
    assert await redis_client_store.delete_client("client-a") is False
    assert [c.client_id for c in await redis_client_store.list_clients()] == ["client-b"]
