# mcp_oauth_gateway/oauth/bearer.py
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from starlette.requests import Request

from .errors import InvalidTokenError
from .models import AuthInfo
from .provider import UpstreamOAuthProvider
from .resource import check_resource_allowed
from ..settings import Settings

logger = logging.getLogger(__name__)


class TokenVerifier(ABC):
    """Resolves a bearer token to AuthInfo or raises InvalidTokenError."""

    @abstractmethod
    async def verify(self, token: str) -> AuthInfo:
        pass

    async def aclose(self) -> None:
        """Release any resources held by the verifier."""


class LocalTokenVerifier(TokenVerifier):
    """Looks tokens up through the in-process provider."""

    def __init__(self, provider: UpstreamOAuthProvider, strict_resource: bool = False):
        self.provider = provider
        self.strict_resource = strict_resource

    async def verify(self, token: str) -> AuthInfo:
        auth_info = await self.provider.verify_access_token(token)
        if self.strict_resource:
            _check_audience(auth_info.resource, self.provider.resource_url)
        return auth_info


class IntrospectionTokenVerifier(TokenVerifier):
    """
    Verifies tokens by calling the introspection endpoint, for deployments
    where the resource server runs apart from the authorization server.
    """

    def __init__(
        self,
        introspection_url: str,
        resource_url: str,
        strict_resource: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 30.0
    ):
        self.introspection_url = introspection_url
        self.resource_url = resource_url
        self.strict_resource = strict_resource
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def verify(self, token: str) -> AuthInfo:
        try:
            response = await self.http_client.post(
                self.introspection_url,
                data={"token": token},
                headers={"Accept": "application/json"}
            )
        except httpx.RequestError as e:
            logger.error(f"Introspection endpoint unreachable: {e}", exc_info=True)
            raise InvalidTokenError("Token introspection failed")

        if response.is_error:
            raise InvalidTokenError("Invalid or expired token")

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Introspection endpoint returned a non-JSON body (status {response.status_code}).")
            raise InvalidTokenError("Token introspection failed")
        if not isinstance(data, dict):
            raise InvalidTokenError("Token introspection failed")

        if not data.get("active"):
            raise InvalidTokenError("Invalid or expired token")

        if self.strict_resource:
            _check_audience(data.get("aud"), self.resource_url)

        return AuthInfo(
            token=token,
            client_id=data.get("client_id", ""),
            scopes=(data.get("scope") or "").split(),
            expires_at=data.get("exp"),
            resource=data.get("aud"),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()


def _check_audience(audience: Optional[str], resource_url: str) -> None:
    if not audience:
        raise InvalidTokenError("Resource Indicator (RFC8707) missing")
    if not check_resource_allowed(audience, resource_url):
        raise InvalidTokenError(f"Expected resource indicator {resource_url}, got: {audience}")


class BearerAuthenticator:
    """
    Authenticates requests carrying ``Authorization: Bearer <token>``.
    Every failure is an InvalidTokenError whose challenge points at the
    protected resource metadata.
    """

    def __init__(self, verifier: TokenVerifier, resource_metadata_url: str):
        self.verifier = verifier
        self.resource_metadata_url = resource_metadata_url

    def _fail(self, description: str) -> InvalidTokenError:
        return InvalidTokenError(description, resource_metadata_url=self.resource_metadata_url)

    async def authenticate(self, request: Request) -> AuthInfo:
        auth_header = request.headers.get("Authorization")
        if not auth_header:
            raise self._fail("Missing Authorization header")

        parts = auth_header.split()
        if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
            raise self._fail("Invalid Authorization header format, expected 'Bearer TOKEN'")

        try:
            auth_info = await self.verifier.verify(parts[1])
        except InvalidTokenError as e:
            raise self._fail(e.error_description or "Invalid token")

        if auth_info.expires_at is not None and auth_info.expires_at < time.time():
            raise self._fail("Token has expired")
        return auth_info


def build_token_verifier(settings: Settings, provider: UpstreamOAuthProvider) -> TokenVerifier:
    """Pick the verifier for ``settings.token_verification_mode``."""
    mode = settings.token_verification_mode.lower()
    if mode == "local":
        return LocalTokenVerifier(provider, strict_resource=settings.oauth_strict_resource)
    if mode == "introspection":
        return IntrospectionTokenVerifier(
            introspection_url=settings.effective_introspection_url,
            resource_url=provider.resource_url,
            strict_resource=settings.oauth_strict_resource,
            timeout_seconds=settings.upstream_http_timeout_seconds,
        )
    raise ValueError(f"Unsupported token_verification_mode: {settings.token_verification_mode}")
