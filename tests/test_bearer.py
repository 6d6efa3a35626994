# tests/test_bearer.py
import time
from typing import Callable, List, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from starlette.requests import Request

from mcp_oauth_gateway.oauth.bearer import (
    BearerAuthenticator,
    IntrospectionTokenVerifier,
    LocalTokenVerifier,
    build_token_verifier,
)
from mcp_oauth_gateway.oauth.errors import InvalidTokenError
from mcp_oauth_gateway.oauth.resource import check_resource_allowed

INTROSPECTION_URL = "http://auth.internal/introspect"
RESOURCE_URL = "http://testserver/mcp"
RESOURCE_METADATA_URL = "http://testserver/.well-known/oauth-protected-resource/mcp"


def _request(authorization: Optional[str] = "Bearer tok-123") -> Request:
    headers = [(b"authorization", authorization.encode())] if authorization else []
    return Request({"type": "http", "method": "POST", "path": "/mcp", "headers": headers})


def _introspection_verifier(
    handler: Callable[[httpx.Request], httpx.Response],
    strict_resource: bool = False,
) -> IntrospectionTokenVerifier:
    return IntrospectionTokenVerifier(
        introspection_url=INTROSPECTION_URL,
        resource_url=RESOURCE_URL,
        strict_resource=strict_resource,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def _active_response(seen: Optional[List[httpx.Request]] = None, **claims) -> Callable[[httpx.Request], httpx.Response]:
    body = {
        "active": True,
        "client_id": "client-1",
        "scope": "mcp:tools read",
        "exp": int(time.time()) + 600,
        "aud": RESOURCE_URL,
    }
    body.update(claims)

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(200, json=body)
    return handler


async def test_introspection_resolves_active_token():
    seen = []
    verifier = _introspection_verifier(_active_response(seen))

    auth_info = await BearerAuthenticator(verifier, RESOURCE_METADATA_URL).authenticate(_request())

    assert auth_info.client_id == "client-1"
    assert auth_info.scopes == ["mcp:tools", "read"]
    assert auth_info.resource == RESOURCE_URL
    assert str(seen[0].url) == INTROSPECTION_URL
    assert parse_qs(seen[0].content.decode()) == {"token": ["tok-123"]}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>proxy error</html>", headers={"content-type": "text/html"}),
        httpx.Response(200, json=["active", True]),
        httpx.Response(200, json={"active": False}),
        httpx.Response(401, json={"active": False, "error": "Unauthorized"}),
    ],
    ids=["html-body", "json-array", "inactive", "unauthorized"],
)
async def test_unusable_introspection_answer_is_an_invalid_token(response):
    verifier = _introspection_verifier(lambda request: response)
    authenticator = BearerAuthenticator(verifier, RESOURCE_METADATA_URL)

    with pytest.raises(InvalidTokenError) as exc_info:
        await authenticator.authenticate(_request())

    assert exc_info.value.status_code == 401
    assert f'resource_metadata="{RESOURCE_METADATA_URL}"' in exc_info.value.headers["WWW-Authenticate"]


async def test_unreachable_introspection_endpoint_is_an_invalid_token():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(InvalidTokenError, match="Token introspection failed"):
        await _introspection_verifier(handler).verify("tok-123")


async def test_strict_mode_checks_audience():
    with pytest.raises(InvalidTokenError, match="Resource Indicator"):
        await _introspection_verifier(_active_response(aud=None), strict_resource=True).verify("tok")

    with pytest.raises(InvalidTokenError, match="Expected resource indicator"):
        await _introspection_verifier(
            _active_response(aud="https://elsewhere.example/mcp"), strict_resource=True
        ).verify("tok")

    lenient = await _introspection_verifier(_active_response(aud="https://elsewhere.example/mcp")).verify("tok")
    assert lenient.resource == "https://elsewhere.example/mcp"

    strict = _introspection_verifier(_active_response(aud=f"{RESOURCE_URL}/tools"), strict_resource=True)
    assert (await strict.verify("tok")).client_id == "client-1"


async def test_expired_exp_claim_is_rejected():
    verifier = _introspection_verifier(_active_response(exp=int(time.time()) - 5))

    with pytest.raises(InvalidTokenError, match="Token has expired"):
        await BearerAuthenticator(verifier, RESOURCE_METADATA_URL).authenticate(_request())


@pytest.mark.parametrize("authorization", [None, "Basic abc", "Bearer", "Bearer a b"])
async def test_malformed_authorization_header_is_rejected(authorization):
    verifier = _introspection_verifier(_active_response())

    with pytest.raises(InvalidTokenError):
        await BearerAuthenticator(verifier, RESOURCE_METADATA_URL).authenticate(_request(authorization))


async def test_build_token_verifier_follows_mode(gateway_settings, monkeypatch, provider):
    assert isinstance(build_token_verifier(gateway_settings, provider), LocalTokenVerifier)

    monkeypatch.setattr(gateway_settings, "token_verification_mode", "introspection")
    verifier = build_token_verifier(gateway_settings, provider)
    try:
        assert isinstance(verifier, IntrospectionTokenVerifier)
        assert verifier.introspection_url == "http://testserver/introspect"
        assert verifier.resource_url == "http://testserver/mcp"
    finally:
        await verifier.aclose()

    monkeypatch.setattr(gateway_settings, "introspection_url", INTROSPECTION_URL)
    verifier = build_token_verifier(gateway_settings, provider)
    assert verifier.introspection_url == INTROSPECTION_URL
    await verifier.aclose()

    monkeypatch.setattr(gateway_settings, "token_verification_mode", "jwt")
    with pytest.raises(ValueError, match="Unsupported token_verification_mode"):
        build_token_verifier(gateway_settings, provider)


@pytest.mark.parametrize(
    "requested, allowed",
    [
        ("http://testserver/mcp", True),
        ("http://TESTSERVER/mcp/", True),
        ("http://testserver:80/mcp", True),
        ("http://testserver/mcp/tools", True),
        ("http://testserver/mcpx", False),
        ("https://testserver/mcp", False),
        ("http://testserver:8080/mcp", False),
        ("http://testserver:99999/mcp", False),
        ("http://testserver:port/mcp", False),
    ],
)
def test_check_resource_allowed(requested, allowed):
    assert check_resource_allowed(requested, RESOURCE_URL) is allowed
