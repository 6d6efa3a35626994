# tests/conftest.py
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
import pytest

from mcp_oauth_gateway.settings import settings
from mcp_oauth_gateway.storage.sqlite_base import close_sqlite_db_connection
from mcp_oauth_gateway.oauth.storage import get_token_store, get_client_store, reset_store_instances
from mcp_oauth_gateway.oauth.models import OAuthClientInformation, AuthorizationParams
from mcp_oauth_gateway.oauth.provider import UpstreamOAuthProvider
# Build the app at collection time, before any test monkeypatches
# settings.oauth_enabled, so its route table doesn't depend on test order.
import mcp_oauth_gateway.main  # noqa: E402,F401

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
)

TEST_BASE_URL = "http://testserver"
UPSTREAM_BASE_URL = "https://idp.example"
CLIENT_REDIRECT_URI = "https://client.example/cb"
MCP_PROTOCOL_VERSION = "2025-03-26"


@pytest.fixture(autouse=True)
def gateway_settings(tmp_path, monkeypatch):
    """Point every test at its own SQLite file and a fake upstream provider."""
    overrides = {
        "sqlite_db_path": str(tmp_path / "gateway.sqlite3"),
        "storage_backend": "sqlite",
        "server_url": TEST_BASE_URL,
        "include_port_in_url": False,
        "debug_mode": False,
        "oauth_enabled": True,
        "oauth_strict_resource": False,
        "token_verification_mode": "local",
        "upstream_oauth_client_id": "upstream-client",
        "upstream_oauth_client_secret": "upstream-secret",
        "upstream_oauth_base_url": UPSTREAM_BASE_URL,
        "upstream_oauth_authorize_endpoint": "/oauth/authorize",
        "upstream_oauth_token_endpoint": "/oauth/token",
        "mcp_json_response": True,
        "max_token_single_call": None,
        "event_log_max_events": 1000,
    }
    for name, value in overrides.items():
        monkeypatch.setattr(settings, name, value)
    return settings


@pytest.fixture
async def stores(gateway_settings):
    await reset_store_instances()
    await close_sqlite_db_connection()
    token_store = await get_token_store()
    client_store = await get_client_store()
    yield token_store, client_store
    await reset_store_instances()
    await close_sqlite_db_connection()


@pytest.fixture
def token_store(stores):
    return stores[0]


@pytest.fixture
def client_store(stores):
    return stores[1]


@pytest.fixture
def provider(stores, gateway_settings) -> UpstreamOAuthProvider:
    token_store, client_store = stores
    return UpstreamOAuthProvider.from_settings(gateway_settings, token_store, client_store)


def make_client(
    client_id: str = "client-1",
    client_secret: Optional[str] = "secret-1",
    redirect_uris: Optional[List[str]] = None,
    scope: Optional[str] = None,
) -> OAuthClientInformation:
    return OAuthClientInformation(
        client_id=client_id,
        client_secret=client_secret,
        client_id_issued_at=int(time.time()),
        client_secret_expires_at=0,
        redirect_uris=redirect_uris or [CLIENT_REDIRECT_URI],
        scope=scope,
        client_name=f"Test client {client_id}",
        token_endpoint_auth_method="client_secret_post" if client_secret else "none",
    )


def make_params(
    code_challenge: str = "challenge",
    scopes: Optional[List[str]] = None,
    resource: Optional[str] = None,
    state: Optional[str] = "client-state",
    redirect_uri: str = CLIENT_REDIRECT_URI,
    explicit: bool = True,
) -> AuthorizationParams:
    return AuthorizationParams(
        redirect_uri=redirect_uri,
        redirect_uri_provided_explicitly=explicit,
        code_challenge=code_challenge,
        scopes=scopes or [],
        state=state,
        resource=resource,
    )


def upstream_token_handler(
    status_code: int = 200,
    payload: Optional[Dict[str, Any]] = None,
    text: Optional[str] = None,
    seen: Optional[List[httpx.Request]] = None,
) -> Callable[[httpx.Request], httpx.Response]:
    """MockTransport handler standing in for the upstream token endpoint."""
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if text is not None:
            return httpx.Response(status_code, text=text, headers={"content-type": "text/plain"})
        body = payload if payload is not None else {"access_token": "upstream-access", "token_type": "bearer"}
        return httpx.Response(status_code, json=body)
    return handler


@asynccontextmanager
async def running_app(
    upstream_handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """
    Run the application lifespan and yield an httpx client bound to it.
    Used as a context manager inside each test so startup and shutdown
    happen in the same task.
    """
    from mcp_oauth_gateway.main import app
    from mcp_oauth_gateway.oauth.endpoints import get_httpx_async_client

    await reset_store_instances()
    await close_sqlite_db_connection()

    handler = upstream_handler or upstream_token_handler()

    async def mock_upstream_client() -> AsyncIterator[httpx.AsyncClient]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            yield client

    app.dependency_overrides[get_httpx_async_client] = mock_upstream_client
    try:
        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url=TEST_BASE_URL) as client:
                yield client
    finally:
        app.dependency_overrides.pop(get_httpx_async_client, None)


class McpTestClient:
    """
    Drives the /mcp endpoint the way an MCP client does: initialize,
    send the initialized notification, then call tools on the session.
    """

    def __init__(self, http: httpx.AsyncClient, bearer_token: Optional[str] = None):
        self.http = http
        self.bearer_token = bearer_token
        self.session_id: Optional[str] = None
        self.request_counter = 0
        self.client_logger = logging.getLogger("McpTestClient")

    def _next_id(self) -> int:
        self.request_counter += 1
        return self.request_counter

    def headers(self, session_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        sid = session_id or self.session_id
        if sid:
            headers["Mcp-Session-Id"] = sid
            headers["Mcp-Protocol-Version"] = MCP_PROTOCOL_VERSION
        if self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        return headers

    async def post(self, payload: Any, session_id: Optional[str] = None) -> httpx.Response:
        response = await self.http.post("/mcp", json=payload, headers=self.headers(session_id))
        self.client_logger.debug(f"POST /mcp -> {response.status_code}: {response.text[:200]}")
        return response

    async def initialize(self) -> httpx.Response:
        response = await self.post({
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "initialize",
            "params": {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "gateway-tests", "version": "1.0"},
            },
        })
        if response.status_code == 200:
            self.session_id = response.headers.get("mcp-session-id")
            notified = await self.post({"jsonrpc": "2.0", "method": "notifications/initialized"})
            assert notified.status_code == 202, notified.text
        return response

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.post({
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments},
        })
        assert response.status_code == 200, response.text
        body = response.json()
        assert "result" in body, body
        return body["result"]

    async def delete(self, session_id: Optional[str] = None) -> httpx.Response:
        return await self.http.delete("/mcp", headers=self.headers(session_id))
