# mcp_oauth_gateway/oauth/errors.py
from fastapi import HTTPException, status
from typing import ClassVar, Dict, Optional


class OAuthError(HTTPException):
    """
    An OAuth error rendered as a top-level JSON body:
    ``{"error": ..., "error_description": ...}``.

    Subclasses fix ``error_code`` and ``http_status``; the base class can
    also be raised directly with any code, e.g. to relay an upstream error.
    """
    error_code: ClassVar[str] = "server_error"
    http_status: ClassVar[int] = status.HTTP_400_BAD_REQUEST
    default_description: ClassVar[Optional[str]] = None

    def __init__(
        self,
        error_description: Optional[str] = None,
        *,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.error = error or self.error_code
        self.error_description = error_description or self.default_description

        super().__init__(
            status_code=status_code or self.http_status,
            detail=self._body(),
            headers=headers if headers is not None else {"WWW-Authenticate": "Bearer"}
        )

    def _body(self) -> Dict[str, str]:
        body = {"error": self.error}
        if self.error_description:
            body["error_description"] = self.error_description
        return body

    def to_dict(self) -> Dict[str, str]:
        return self._body()


class InvalidRequestError(OAuthError):
    """Missing, repeated or malformed request parameter (RFC 6749 5.2)."""
    error_code = "invalid_request"


class InvalidClientError(OAuthError):
    """Unknown client or failed client authentication (RFC 6749 5.2)."""
    error_code = "invalid_client"
    http_status = status.HTTP_401_UNAUTHORIZED
    default_description = "Client authentication failed."


class InvalidGrantError(OAuthError):
    """
    The authorization code or refresh token is unknown, expired, already
    used, bound to another redirect URI or issued to another client.
    """
    error_code = "invalid_grant"
    default_description = "Invalid authorization grant or refresh token."


class ClientMismatchError(InvalidGrantError):
    default_description = "Grant was not issued to this client."


class UnauthorizedClientError(OAuthError):
    """The client may not use this grant type."""
    error_code = "unauthorized_client"


class UnsupportedGrantTypeError(OAuthError):
    error_code = "unsupported_grant_type"


class UnsupportedResponseTypeError(OAuthError):
    error_code = "unsupported_response_type"


class InvalidScopeError(OAuthError):
    """Requested scope is unknown or wider than what was registered or granted."""
    error_code = "invalid_scope"


class InvalidTargetError(OAuthError):
    """Resource indicator is malformed or does not match the grant (RFC 8707 2)."""
    error_code = "invalid_target"
    default_description = "Invalid resource"


class InvalidClientMetadataError(OAuthError):
    """Rejected dynamic registration metadata (RFC 7591 3.2.2)."""
    error_code = "invalid_client_metadata"


class InvalidTokenError(OAuthError):
    """
    Bearer token missing, expired, revoked or otherwise unusable. The
    challenge names the protected resource metadata when one is given
    (RFC 6750 3, RFC 9728 5.1).
    """
    error_code = "invalid_token"
    http_status = status.HTTP_401_UNAUTHORIZED
    default_description = "The access token is invalid."

    def __init__(self, error_description: Optional[str] = None, resource_metadata_url: Optional[str] = None):
        description = error_description or self.default_description
        challenge = f'Bearer error="{self.error_code}", error_description="{description}"'
        if resource_metadata_url:
            challenge += f', resource_metadata="{resource_metadata_url}"'
        super().__init__(description, headers={"WWW-Authenticate": challenge})


class ServerError(OAuthError):
    error_code = "server_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_description = "The authorization server encountered an internal error."


class UpstreamAuthError(Exception):
    """
    The upstream identity provider refused the code exchange or could not be
    reached. Carries the upstream response so it can be forwarded unchanged.
    """

    def __init__(self, status_code: int, body: str, content_type: str = "text/plain"):
        self.status_code = status_code
        self.body = body
        self.content_type = content_type
        super().__init__(f"Upstream token exchange failed with status {status_code}")


class UpstreamConfigError(RuntimeError):
    """A required upstream OAuth setting is missing."""
