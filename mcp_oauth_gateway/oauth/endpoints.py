# mcp_oauth_gateway/oauth/endpoints.py
from fastapi import APIRouter, Depends, Request, Form, Query, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from typing import Annotated, AsyncIterator, Optional
import json
import logging
import secrets
import time
import uuid

import httpx
from pydantic import ValidationError as PydanticValidationError

from .provider import UpstreamOAuthProvider, append_query_params
from .models import (
    AuthorizationParams,
    OAuthClientInformation,
    OAuthClientMetadata,
    OAuthMetadata,
    ProtectedResourceMetadata,
    require_absolute_url,
)
from .errors import (
    OAuthError,
    InvalidClientError,
    InvalidClientMetadataError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTargetError,
    InvalidTokenError,
    ServerError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
    UpstreamAuthError,
)
from .pkce import verify_pkce_code_verifier
from ..settings import settings

logger = logging.getLogger(__name__)
oauth_router = APIRouter()

SUPPORTED_GRANT_TYPES = {"authorization_code", "refresh_token"}
SUPPORTED_RESPONSE_TYPES = {"code"}
SUPPORTED_AUTH_METHODS = {"client_secret_post", "none"}
PROTECTED_RESOURCE_METADATA_PATH = "/.well-known/oauth-protected-resource/mcp"
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

# --- Dependency Functions ---


async def get_oauth_provider(request: Request) -> UpstreamOAuthProvider:
    provider = getattr(request.app.state, "oauth_provider", None)
    if provider is None:
        logger.error("OAuth provider requested before application startup completed.")
        raise ServerError("OAuth provider is not available.")
    return provider


async def get_httpx_async_client() -> AsyncIterator[httpx.AsyncClient]:
    """HTTP client for calls to the upstream identity provider."""
    async with httpx.AsyncClient(timeout=settings.upstream_http_timeout_seconds) as client:
        yield client


ProviderDep = Annotated[UpstreamOAuthProvider, Depends(get_oauth_provider)]


async def _authenticate_client(
    provider: UpstreamOAuthProvider,
    client_id: Optional[str],
    client_secret: Optional[str]
) -> OAuthClientInformation:
    """Client authentication with form credentials (client_secret_post)."""
    if not client_id:
        raise InvalidRequestError("client_id is required")

    client = await provider.client_store.get_client(client_id)
    if client is None:
        logger.warning(f"Token request from unknown client '{client_id}'.")
        raise InvalidClientError("Invalid client_id")

    if client.client_secret:
        if not client_secret:
            raise InvalidClientError("Client secret is required")
        if not secrets.compare_digest(client.client_secret, client_secret):
            logger.warning(f"Invalid client_secret presented for client '{client_id}'.")
            raise InvalidClientError("Invalid client_secret")
        if client.client_secret_expires_at and client.client_secret_expires_at < int(time.time()):
            raise InvalidClientError("Client secret has expired")

    return client


def _error_redirect(redirect_uri: str, error: OAuthError, state: Optional[str]) -> RedirectResponse:
    params = {"error": error.error}
    if error.error_description:
        params["error_description"] = error.error_description
    if state:
        params["state"] = state
    logger.warning(f"Redirecting authorization error '{error.error}' to client: {error.error_description}")
    return RedirectResponse(url=append_query_params(redirect_uri, params), status_code=status.HTTP_302_FOUND)


def _validate_resource_indicator(resource: Optional[str]) -> None:
    if resource is None:
        return
    try:
        require_absolute_url(resource)
    except ValueError:
        raise InvalidTargetError("resource must be an absolute URL without a fragment")


async def _process_authorization_request(
    provider: UpstreamOAuthProvider,
    client_id: Optional[str],
    redirect_uri: Optional[str],
    response_type: Optional[str],
    code_challenge: Optional[str],
    code_challenge_method: Optional[str],
    scope: Optional[str],
    state: Optional[str],
    resource: Optional[str],
) -> Response:
    """
    Validate an authorization request and send the user agent upstream.

    Problems with client_id or redirect_uri are answered directly; once the
    redirect URI is trusted, later errors are redirected back to the client.
    """
    if not client_id:
        raise InvalidRequestError("client_id is required")
    client = await provider.client_store.get_client(client_id)
    if client is None:
        raise InvalidClientError("Invalid client_id")

    if redirect_uri:
        if redirect_uri not in client.redirect_uris:
            raise InvalidRequestError("Unregistered redirect_uri")
        redirect_uri_provided_explicitly = True
    elif len(client.redirect_uris) == 1:
        redirect_uri = client.redirect_uris[0]
        redirect_uri_provided_explicitly = False
    else:
        raise InvalidRequestError("redirect_uri must be specified when the client has several registered URIs")

    try:
        if response_type != "code":
            raise UnsupportedResponseTypeError("response_type must be 'code'")
        if not code_challenge:
            raise InvalidRequestError("code_challenge is required")
        if code_challenge_method != "S256":
            raise InvalidRequestError("code_challenge_method must be 'S256'")

        requested_scopes = scope.split() if scope else []
        allowed_scopes = client.allowed_scopes()
        if allowed_scopes is not None:
            for requested in requested_scopes:
                if requested not in allowed_scopes:
                    raise InvalidScopeError(f"Client was not registered with scope {requested}")

        _validate_resource_indicator(resource)

        params = AuthorizationParams(
            redirect_uri=redirect_uri,
            redirect_uri_provided_explicitly=redirect_uri_provided_explicitly,
            code_challenge=code_challenge,
            scopes=requested_scopes,
            state=state,
            resource=resource,
        )
        upstream_url = await provider.authorize(client, params)
        return RedirectResponse(url=upstream_url, status_code=status.HTTP_302_FOUND)
    except OAuthError as e:
        return _error_redirect(redirect_uri, e, state)


@oauth_router.get("/authorize", name="oauth_authorize_get")
async def authorize_get(
    provider: ProviderDep,
    client_id: Annotated[Optional[str], Query()] = None,
    redirect_uri: Annotated[Optional[str], Query()] = None,
    response_type: Annotated[Optional[str], Query()] = None,
    code_challenge: Annotated[Optional[str], Query()] = None,
    code_challenge_method: Annotated[Optional[str], Query()] = None,
    scope: Annotated[Optional[str], Query()] = None,
    state: Annotated[Optional[str], Query()] = None,
    resource: Annotated[Optional[str], Query()] = None,
):
    """OAuth authorization endpoint (GET)."""
    return await _process_authorization_request(
        provider, client_id, redirect_uri, response_type,
        code_challenge, code_challenge_method, scope, state, resource
    )


@oauth_router.post("/authorize", name="oauth_authorize_post")
async def authorize_post(
    provider: ProviderDep,
    client_id: Annotated[Optional[str], Form()] = None,
    redirect_uri: Annotated[Optional[str], Form()] = None,
    response_type: Annotated[Optional[str], Form()] = None,
    code_challenge: Annotated[Optional[str], Form()] = None,
    code_challenge_method: Annotated[Optional[str], Form()] = None,
    scope: Annotated[Optional[str], Form()] = None,
    state: Annotated[Optional[str], Form()] = None,
    resource: Annotated[Optional[str], Form()] = None,
):
    """OAuth authorization endpoint (POST form)."""
    return await _process_authorization_request(
        provider, client_id, redirect_uri, response_type,
        code_challenge, code_challenge_method, scope, state, resource
    )


@oauth_router.get("/callback", name="oauth_upstream_callback")
async def upstream_callback(
    provider: ProviderDep,
    http_client: Annotated[httpx.AsyncClient, Depends(get_httpx_async_client)],
    code: Annotated[Optional[str], Query()] = None,
    state: Annotated[Optional[str], Query()] = None,
    error: Annotated[Optional[str], Query()] = None,
    error_description: Annotated[Optional[str], Query()] = None,
):
    """
    Redirect target of the upstream identity provider. Exchanges the upstream
    code, mints a local code and sends the user agent back to the client.
    """
    if not state:
        raise InvalidRequestError("Missing state")

    try:
        decoded = provider.decode_state(state)
    except ValueError as e:
        logger.warning(f"Rejected undecodable callback state: {e}")
        raise InvalidRequestError("Invalid state")

    # The state is unsigned; only a registered client and redirect URI are honoured
    client = await provider.client_store.get_client(decoded.client.client_id)
    if client is None or decoded.params.redirect_uri not in client.redirect_uris:
        logger.warning(f"Callback state names unknown client or redirect URI for '{decoded.client.client_id}'.")
        raise InvalidRequestError("Invalid state")

    if error:
        upstream_error = OAuthError(
            status_code=status.HTTP_400_BAD_REQUEST,
            error=error,
            error_description=error_description or "Upstream authorization failed"
        )
        return _error_redirect(decoded.params.redirect_uri, upstream_error, decoded.params.state)

    if not code:
        raise InvalidRequestError("Missing code")

    try:
        await provider.exchange_upstream_code(code, http_client)
    except UpstreamAuthError as e:
        return Response(content=e.body, status_code=e.status_code, media_type=e.content_type)

    redirect_url = await provider.complete_authorization(client, decoded.params)
    return RedirectResponse(url=redirect_url, status_code=status.HTTP_302_FOUND)


@oauth_router.post("/token", name="oauth_token")
async def token(
    provider: ProviderDep,
    grant_type: Annotated[Optional[str], Form()] = None,
    code: Annotated[Optional[str], Form()] = None,
    code_verifier: Annotated[Optional[str], Form()] = None,
    redirect_uri: Annotated[Optional[str], Form()] = None,
    refresh_token: Annotated[Optional[str], Form()] = None,
    scope: Annotated[Optional[str], Form()] = None,
    resource: Annotated[Optional[str], Form()] = None,
    client_id: Annotated[Optional[str], Form()] = None,
    client_secret: Annotated[Optional[str], Form()] = None,
):
    """OAuth token endpoint for exchanging authorization codes and refreshing tokens."""
    client = await _authenticate_client(provider, client_id, client_secret)

    if not grant_type:
        raise InvalidRequestError("grant_type is required")
    if grant_type not in SUPPORTED_GRANT_TYPES:
        raise UnsupportedGrantTypeError(f"Grant type '{grant_type}' is not supported.")
    if grant_type not in client.grant_types:
        raise UnauthorizedClientError(f"Client is not allowed to use grant type '{grant_type}'.")

    try:
        if grant_type == "authorization_code":
            if not code:
                raise InvalidRequestError("code is required")
            if not code_verifier:
                raise InvalidRequestError("code_verifier is required")

            code_challenge = await provider.challenge_for_authorization_code(client, code)
            if not verify_pkce_code_verifier(code_verifier, code_challenge):
                raise InvalidGrantError("code_verifier does not match the challenge")

            tokens = await provider.exchange_authorization_code(
                client, code, code_verifier=code_verifier, redirect_uri=redirect_uri, resource=resource
            )
        else:
            if not refresh_token:
                raise InvalidRequestError("refresh_token is required")
            requested_scopes = scope.split() if scope else None
            tokens = await provider.exchange_refresh_token(
                client, refresh_token, scopes=requested_scopes, resource=resource
            )
    except OAuthError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error during /token: {e}", exc_info=True)
        raise ServerError(error_description="An unexpected error occurred while processing the token request.")

    return JSONResponse(content=tokens.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)


@oauth_router.post("/register", name="oauth_register")
async def register_client(request: Request, provider: ProviderDep):
    """Dynamic client registration (RFC 7591)."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidClientMetadataError("Request body must be a JSON object")

    try:
        metadata = OAuthClientMetadata.model_validate(body)
    except PydanticValidationError as e:
        logger.warning(f"Rejected client registration: {e.errors()}")
        raise InvalidClientMetadataError(str(e))

    if not set(metadata.grant_types) <= SUPPORTED_GRANT_TYPES:
        raise InvalidClientMetadataError("grant_types must be authorization_code and/or refresh_token")
    if set(metadata.response_types) != SUPPORTED_RESPONSE_TYPES:
        raise InvalidClientMetadataError("response_types must be ['code']")
    if metadata.token_endpoint_auth_method not in SUPPORTED_AUTH_METHODS:
        raise InvalidClientMetadataError(
            f"token_endpoint_auth_method '{metadata.token_endpoint_auth_method}' is not supported"
        )

    issued_at = int(time.time())
    is_public = metadata.token_endpoint_auth_method == "none"
    client_secret = None if is_public else secrets.token_hex(32)
    secret_expires_at = 0
    if client_secret and settings.client_secret_ttl_seconds:
        secret_expires_at = issued_at + settings.client_secret_ttl_seconds

    client_info = OAuthClientInformation(
        **metadata.model_dump(),
        client_id=str(uuid.uuid4()),
        client_secret=client_secret,
        client_id_issued_at=issued_at,
        client_secret_expires_at=secret_expires_at,
    )

    try:
        await provider.client_store.register_client(client_info)
    except Exception as e:
        logger.error(f"Failed to persist registered client: {e}", exc_info=True)
        raise ServerError(error_description="Client registration failed.")

    logger.info(f"Registered client '{client_info.client_id}' ({client_info.client_name or 'unnamed'}).")
    return JSONResponse(
        content=client_info.model_dump(exclude_none=True),
        status_code=status.HTTP_201_CREATED,
        headers=NO_STORE_HEADERS,
    )


@oauth_router.post("/revoke", name="oauth_revoke")
async def revoke(
    provider: ProviderDep,
    token: Annotated[Optional[str], Form()] = None,
    token_type_hint: Annotated[Optional[str], Form()] = None,
    client_id: Annotated[Optional[str], Form()] = None,
    client_secret: Annotated[Optional[str], Form()] = None,
):
    """Token revocation (RFC 7009). Unknown tokens are not an error."""
    client = await _authenticate_client(provider, client_id, client_secret)
    if not token:
        raise InvalidRequestError("token is required")
    await provider.revoke_token(client, token)
    return JSONResponse(content={})


@oauth_router.post("/introspect", name="oauth_introspect")
async def introspect(
    provider: ProviderDep,
    token: Annotated[Optional[str], Form()] = None,
):
    """Token introspection for resource servers deployed apart from this one."""
    if not token:
        return JSONResponse(content={"error": "Token is required"}, status_code=status.HTTP_400_BAD_REQUEST)

    try:
        auth_info = await provider.verify_access_token(token)
    except InvalidTokenError as e:
        return JSONResponse(
            content={"active": False, "error": "Unauthorized", "error_description": e.error_description},
            status_code=status.HTTP_401_UNAUTHORIZED,
        )

    return JSONResponse(content={
        "active": True,
        "client_id": auth_info.client_id,
        "scope": " ".join(auth_info.scopes),
        "exp": auth_info.expires_at,
        "aud": auth_info.resource,
    })


# --- Discovery ---


@oauth_router.get(
    "/.well-known/oauth-authorization-server",
    response_model=OAuthMetadata,
    response_model_exclude_none=True,
    name="oauth_authorization_server_metadata"
)
async def authorization_server_metadata():
    base_url = settings.base_url
    return OAuthMetadata(
        issuer=base_url,
        authorization_endpoint=f"{base_url}/authorize",
        token_endpoint=f"{base_url}/token",
        registration_endpoint=f"{base_url}/register",
        revocation_endpoint=f"{base_url}/revoke",
        introspection_endpoint=f"{base_url}/introspect",
        scopes_supported=settings.scopes_supported,
    )


@oauth_router.get(
    "/.well-known/oauth-protected-resource",
    response_model=ProtectedResourceMetadata,
    response_model_exclude_none=True,
    name="oauth_protected_resource_metadata"
)
@oauth_router.get(
    PROTECTED_RESOURCE_METADATA_PATH,
    response_model=ProtectedResourceMetadata,
    response_model_exclude_none=True,
    name="oauth_protected_resource_metadata_mcp"
)
async def protected_resource_metadata():
    return ProtectedResourceMetadata(
        resource=settings.mcp_server_url,
        authorization_servers=[settings.base_url],
        scopes_supported=settings.scopes_supported,
        resource_name=settings.app_name,
    )


def protected_resource_metadata_url() -> str:
    return f"{settings.base_url}{PROTECTED_RESOURCE_METADATA_PATH}"
