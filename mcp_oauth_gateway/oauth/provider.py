# mcp_oauth_gateway/oauth/provider.py
import asyncio
import logging
import secrets
from typing import Optional, Dict, Any, List
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import httpx

from .models import (
    AuthInfo,
    AuthorizationParams,
    AuthorizationState,
    OAuthClientInformation,
    TokenResponse,
    TokenStats,
)
from .errors import (
    ClientMismatchError,
    InvalidGrantError,
    InvalidScopeError,
    InvalidTargetError,
    InvalidTokenError,
    UpstreamAuthError,
    UpstreamConfigError,
)
from .resource import check_resource_allowed, resource_url_from_server_url
from .storage_interfaces import AbstractTokenStore, AbstractClientStore
from ..settings import Settings

logger = logging.getLogger(__name__)

AUTH_CODE_LIFETIME_SECONDS = 600  # 10 minutes
ACCESS_TOKEN_LIFETIME_SECONDS = 3600  # 1 hour
REFRESH_TOKEN_LIFETIME_SECONDS = 3600 * 24 * 7  # 7 days
CLEANUP_INTERVAL_SECONDS = 30 * 60

_REQUIRED_UPSTREAM_SETTINGS = (
    ("upstream_oauth_client_id", "UPSTREAM_OAUTH_CLIENT_ID"),
    ("upstream_oauth_client_secret", "UPSTREAM_OAUTH_CLIENT_SECRET"),
    ("upstream_oauth_base_url", "UPSTREAM_OAUTH_BASE_URL"),
    ("upstream_oauth_authorize_endpoint", "UPSTREAM_OAUTH_AUTHORIZE_ENDPOINT"),
    ("upstream_oauth_token_endpoint", "UPSTREAM_OAUTH_TOKEN_ENDPOINT"),
)


class UpstreamOAuthInfo:
    """Credentials and endpoints of the upstream identity provider."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        authorize_endpoint: str,
        token_endpoint: str,
        scope: str = "all"
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.authorize_endpoint = authorize_endpoint
        self.token_endpoint = token_endpoint
        self.scope = scope

    @property
    def authorize_url(self) -> str:
        return f"{self.base_url}{self.authorize_endpoint}"

    @property
    def token_url(self) -> str:
        return f"{self.base_url}{self.token_endpoint}"

    @classmethod
    def from_settings(cls, settings: Settings) -> "UpstreamOAuthInfo":
        """Raises UpstreamConfigError naming the first missing variable."""
        for attr, env_name in _REQUIRED_UPSTREAM_SETTINGS:
            if not getattr(settings, attr):
                raise UpstreamConfigError(f"{env_name} is not set")
        return cls(
            client_id=settings.upstream_oauth_client_id,
            client_secret=settings.upstream_oauth_client_secret,
            base_url=settings.upstream_oauth_base_url,
            authorize_endpoint=settings.upstream_oauth_authorize_endpoint,
            token_endpoint=settings.upstream_oauth_token_endpoint,
            scope=settings.upstream_oauth_scope,
        )


def append_query_params(url: str, params: Dict[str, str]) -> str:
    """Add query parameters to a URL, keeping any it already has."""
    split_url = urlsplit(url)
    query = parse_qsl(split_url.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(split_url._replace(query=urlencode(query)))


class UpstreamOAuthProvider:
    """
    OAuth 2.1 authorization server that federates user authentication to an
    upstream identity provider and issues its own codes and tokens.

    Holds no durable state: codes, tokens and clients live in the stores.
    """

    def __init__(
        self,
        token_store: AbstractTokenStore,
        client_store: AbstractClientStore,
        upstream: UpstreamOAuthInfo,
        issuer_url: str,
        resource_server_url: str,
        strict_resource: bool = False,
        auth_code_ttl_seconds: int = AUTH_CODE_LIFETIME_SECONDS,
        access_token_ttl_seconds: int = ACCESS_TOKEN_LIFETIME_SECONDS,
        refresh_token_ttl_seconds: int = REFRESH_TOKEN_LIFETIME_SECONDS,
        cleanup_interval_seconds: int = CLEANUP_INTERVAL_SECONDS,
    ):
        self.token_store = token_store
        self.client_store = client_store
        self.upstream = upstream
        self.issuer_url = issuer_url.rstrip("/")
        self.resource_url = resource_url_from_server_url(resource_server_url)
        self.strict_resource = strict_resource
        self.auth_code_ttl_seconds = auth_code_ttl_seconds
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.refresh_token_ttl_seconds = refresh_token_ttl_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info(
            f"UpstreamOAuthProvider initialized. Issuer: {self.issuer_url}, "
            f"resource: {self.resource_url}, strict resource: {self.strict_resource}."
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        token_store: AbstractTokenStore,
        client_store: AbstractClientStore
    ) -> "UpstreamOAuthProvider":
        return cls(
            token_store=token_store,
            client_store=client_store,
            upstream=UpstreamOAuthInfo.from_settings(settings),
            issuer_url=settings.base_url,
            resource_server_url=settings.mcp_server_url,
            strict_resource=settings.oauth_strict_resource,
            auth_code_ttl_seconds=settings.authorization_code_ttl_seconds,
            access_token_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_token_ttl_seconds=settings.refresh_token_ttl_seconds,
            cleanup_interval_seconds=settings.token_cleanup_interval_seconds,
        )

    @property
    def callback_url(self) -> str:
        return f"{self.issuer_url}/callback"

    # Upstream federation

    async def authorize(self, client: OAuthClientInformation, params: AuthorizationParams) -> str:
        """
        Build the upstream authorization URL. The original client and params
        travel in ``state``; nothing is persisted at this step.
        """
        state = AuthorizationState(client=client, params=params).encode()
        upstream_url = append_query_params(self.upstream.authorize_url, {
            "client_id": self.upstream.client_id,
            "scope": self.upstream.scope,
            "redirect_uri": self.callback_url,
            "state": state,
        })
        logger.info(f"Redirecting client '{client.client_id}' to upstream authorization endpoint.")
        return upstream_url

    def decode_state(self, state: str) -> AuthorizationState:
        """
        Decode the ``state`` echoed by the upstream provider.
        Raises ValueError for anything that is not a well-formed state.
        """
        decoded = AuthorizationState.decode(state)
        if not decoded.client.client_id:
            raise ValueError("State does not carry a client id.")
        return decoded

    async def exchange_upstream_code(self, code: str, http_client: httpx.AsyncClient) -> Dict[str, Any]:
        """
        Trade the upstream authorization code for an upstream token response.
        Raises UpstreamAuthError carrying the upstream status and body on failure.
        """
        form = {
            "grant_type": "authorization_code",
            "client_id": self.upstream.client_id,
            "client_secret": self.upstream.client_secret,
            "code": code,
            "redirect_uri": self.callback_url,
        }
        try:
            response = await http_client.post(
                self.upstream.token_url, data=form, headers={"Accept": "application/json"}
            )
        except httpx.RequestError as e:
            logger.error(f"Upstream token endpoint unreachable: {e}", exc_info=True)
            raise UpstreamAuthError(502, "Failed to reach upstream token endpoint") from e

        content_type = response.headers.get("content-type", "text/plain")
        if response.is_error:
            logger.warning(f"Upstream token exchange failed with status {response.status_code}.")
            raise UpstreamAuthError(response.status_code, response.text, content_type)

        if "json" in content_type:
            payload = response.json()
        else:
            # Some providers answer with a form-encoded body despite the Accept header
            payload = dict(parse_qsl(response.text))

        if not isinstance(payload, dict) or not payload.get("access_token"):
            logger.warning("Upstream token response did not contain an access token.")
            raise UpstreamAuthError(400, response.text or "Missing access token", content_type)
        return payload

    async def complete_authorization(
        self, client: OAuthClientInformation, params: AuthorizationParams
    ) -> str:
        """Mint and store a local authorization code and return the client redirect URL."""
        code = secrets.token_urlsafe(32)
        await self.token_store.store_authorization_code(code, client, params, self.auth_code_ttl_seconds)
        redirect_params = {"code": code}
        if params.state:
            redirect_params["state"] = params.state
        logger.info(f"Authorization code issued for client '{client.client_id}'.")
        return append_query_params(params.redirect_uri, redirect_params)

    # Local grants

    async def _load_code_for_client(self, client: OAuthClientInformation, code: str):
        code_data = await self.token_store.get_authorization_code(code)
        if code_data is None:
            logger.warning("Invalid or expired authorization code presented.")
            raise InvalidGrantError("Invalid authorization code")
        if code_data.client_id != client.client_id:
            logger.warning(
                f"Authorization code issued to '{code_data.client_id}' presented by '{client.client_id}'."
            )
            raise ClientMismatchError("Authorization code was not issued to this client")
        return code_data

    async def challenge_for_authorization_code(self, client: OAuthClientInformation, code: str) -> str:
        code_data = await self._load_code_for_client(client, code)
        return code_data.params.code_challenge

    def validate_resource(self, resource: Optional[str]) -> None:
        """In strict mode a resource naming this server is mandatory."""
        if not self.strict_resource:
            return
        if not resource or not check_resource_allowed(resource, self.resource_url):
            logger.warning(f"Rejected resource indicator '{resource}', expected '{self.resource_url}'.")
            raise InvalidTargetError("Invalid resource")

    async def exchange_authorization_code(
        self,
        client: OAuthClientInformation,
        code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        resource: Optional[str] = None
    ) -> TokenResponse:
        """
        Exchange a local code for an access token and a refresh token.

        The PKCE verifier is checked by the token endpoint against
        ``challenge_for_authorization_code``. A code is consumed by exactly one
        exchange: the store's delete is the arbiter when two race.
        """
        code_data = await self._load_code_for_client(client, code)
        self.validate_resource(resource)

        bound_resource = code_data.params.resource
        if resource and bound_resource and resource_url_from_server_url(resource) != resource_url_from_server_url(bound_resource):
            raise InvalidTargetError("Resource mismatch")

        if redirect_uri is not None and redirect_uri != code_data.params.redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the authorization request")
        if redirect_uri is None and code_data.params.redirect_uri_provided_explicitly:
            raise InvalidGrantError("redirect_uri is required for this authorization code")

        if not await self.token_store.delete_authorization_code(code):
            logger.warning("Authorization code was consumed concurrently.")
            raise InvalidGrantError("Invalid authorization code")

        scopes = list(code_data.params.scopes)
        token_resource = bound_resource or resource
        access_token = secrets.token_urlsafe(32)
        refresh_token = secrets.token_urlsafe(32)
        await self.token_store.store_access_token(
            access_token, client.client_id, scopes, self.access_token_ttl_seconds, token_resource
        )
        await self.token_store.store_refresh_token(
            refresh_token, client.client_id, scopes, self.refresh_token_ttl_seconds, token_resource
        )

        logger.info(f"Access and refresh tokens issued for client '{client.client_id}', scopes {scopes}.")
        return TokenResponse(
            access_token=access_token,
            token_type="bearer",
            expires_in=self.access_token_ttl_seconds,
            refresh_token=refresh_token,
            scope=" ".join(scopes) if scopes else None,
        )

    async def exchange_refresh_token(
        self,
        client: OAuthClientInformation,
        refresh_token: str,
        scopes: Optional[List[str]] = None,
        resource: Optional[str] = None
    ) -> TokenResponse:
        """Issue a new access token. The refresh token itself is not rotated."""
        token_data = await self.token_store.get_token(refresh_token)
        if token_data is None or token_data.token_type != "refresh":
            logger.warning("Invalid or expired refresh token presented.")
            raise InvalidGrantError("Invalid refresh token")
        if token_data.client_id != client.client_id:
            logger.warning(
                f"Refresh token issued to '{token_data.client_id}' presented by '{client.client_id}'."
            )
            raise ClientMismatchError("Refresh token was not issued to this client")

        if scopes and not all(scope in token_data.scopes for scope in scopes):
            raise InvalidScopeError("Requested scopes exceed granted scopes")

        if resource and token_data.resource and resource_url_from_server_url(resource) != resource_url_from_server_url(token_data.resource):
            raise InvalidTargetError("Resource mismatch")

        granted_scopes = list(scopes) if scopes else list(token_data.scopes)
        access_token = secrets.token_urlsafe(32)
        await self.token_store.store_access_token(
            access_token,
            client.client_id,
            granted_scopes,
            self.access_token_ttl_seconds,
            resource or token_data.resource,
        )
        logger.info(f"Access token refreshed for client '{client.client_id}', scopes {granted_scopes}.")
        return TokenResponse(
            access_token=access_token,
            token_type="bearer",
            expires_in=self.access_token_ttl_seconds,
            refresh_token=refresh_token,
            scope=" ".join(granted_scopes) if granted_scopes else None,
        )

    async def verify_access_token(self, token: str) -> AuthInfo:
        token_data = await self.token_store.get_token(token)
        if token_data is None or token_data.token_type != "access":
            raise InvalidTokenError("Invalid or expired token")
        return token_data.to_auth_info()

    async def revoke_token(self, client: OAuthClientInformation, token: str) -> bool:
        """Delete the named token. No ownership check is made."""
        deleted = await self.token_store.delete_token(token)
        logger.info(f"Revocation requested by client '{client.client_id}'. Token removed: {deleted}.")
        return deleted

    async def revoke_all_tokens_for_client(self, client_id: str) -> int:
        return await self.token_store.revoke_tokens_for_client(client_id)

    async def get_token_stats(self) -> TokenStats:
        return await self.token_store.get_token_stats()

    # Background expiry sweep

    def start_cleanup_task(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="oauth-expiry-cleanup")
            logger.info(f"Expiry cleanup scheduled every {self.cleanup_interval_seconds}s.")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            await self.run_cleanup()

    async def run_cleanup(self) -> None:
        """One sweep. Failures are logged and never propagate."""
        try:
            result = await self.token_store.cleanup_expired()
            logger.debug(f"Expiry cleanup finished: {result.tokens} token(s), {result.codes} code(s).")
        except Exception as e:
            logger.error(f"Expiry cleanup failed: {e}", exc_info=True)

    async def shutdown(self) -> None:
        """Stop the cleanup timer and run a final sweep."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.run_cleanup()
        logger.info("UpstreamOAuthProvider shut down.")
