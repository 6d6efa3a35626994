# mcp_oauth_gateway/oauth/models.py
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime, timezone
from urllib.parse import urlparse
import base64
import binascii


def require_absolute_url(value: str) -> str:
    parsed = urlparse(value)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"'{value}' is not an absolute URL.")
    if parsed.fragment:
        raise ValueError(f"'{value}' must not contain a fragment.")
    return value


class OAuthClientMetadata(BaseModel):
    """Client metadata accepted by dynamic registration (RFC 7591 - Section 2)."""
    model_config = ConfigDict(extra="ignore")

    redirect_uris: List[str] = Field(min_length=1)
    token_endpoint_auth_method: str = "client_secret_post"
    grant_types: List[str] = Field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: List[str] = Field(default_factory=lambda: ["code"])
    scope: Optional[str] = Field(default=None, description="Space-separated scopes the client may request.")
    client_name: Optional[str] = None
    client_uri: Optional[str] = None
    logo_uri: Optional[str] = None
    contacts: Optional[List[str]] = None
    tos_uri: Optional[str] = None
    policy_uri: Optional[str] = None
    jwks_uri: Optional[str] = None
    jwks: Optional[Dict[str, Any]] = None
    software_id: Optional[str] = None
    software_version: Optional[str] = None

    @field_validator("redirect_uris")
    @classmethod
    def _validate_redirect_uris(cls, value: List[str]) -> List[str]:
        return [require_absolute_url(uri) for uri in value]

    def allowed_scopes(self) -> Optional[List[str]]:
        """Registered scopes, or None when the client registered without a scope restriction."""
        if self.scope is None:
            return None
        return self.scope.split()


class OAuthClientInformation(OAuthClientMetadata):
    """A registered client as held by the client registry."""
    client_id: str = Field(min_length=1)
    client_secret: Optional[str] = None
    client_id_issued_at: Optional[int] = None
    client_secret_expires_at: Optional[int] = Field(
        default=None,
        description="UNIX time the secret stops being accepted. 0 or None means it never expires."
    )


class AuthorizationParams(BaseModel):
    """Parameters of one authorization request, carried through the upstream round-trip."""
    redirect_uri: str
    redirect_uri_provided_explicitly: bool = True
    code_challenge: str
    scopes: List[str] = Field(default_factory=list)
    state: Optional[str] = None
    resource: Optional[str] = None


class AuthorizationState(BaseModel):
    """
    The opaque ``state`` sent to the upstream provider. It embeds exactly the
    original client and request params, so no server-side record is kept
    between /authorize and /callback.
    """
    model_config = ConfigDict(extra="forbid")

    client: OAuthClientInformation
    params: AuthorizationParams

    def encode(self) -> str:
        return base64.urlsafe_b64encode(self.model_dump_json().encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, state: str) -> "AuthorizationState":
        """Decode a state blob. Raises ValueError when it is not a well-formed state."""
        try:
            padded = state + "=" * (-len(state) % 4)
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError) as e:
            raise ValueError("State is not valid base64.") from e
        # pydantic's ValidationError is a ValueError
        return cls.model_validate_json(raw)


class StoredAuthorizationCode(BaseModel):
    """Internal representation of an authorization code awaiting exchange."""
    code: str
    client_id: str
    params: AuthorizationParams
    expires_at: datetime
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StoredToken(BaseModel):
    """Internal representation of an access or refresh token."""
    token: str
    client_id: str
    token_type: Literal["access", "refresh"]
    scopes: List[str] = Field(default_factory=list)
    resource: Optional[str] = None
    expires_at: datetime
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_auth_info(self) -> "AuthInfo":
        return AuthInfo(
            token=self.token,
            client_id=self.client_id,
            scopes=list(self.scopes),
            expires_at=int(self.expires_at.timestamp()),
            resource=self.resource,
        )


class AuthInfo(BaseModel):
    """Resolved identity of a bearer token, attached to authenticated requests."""
    token: str
    client_id: str
    scopes: List[str] = Field(default_factory=list)
    expires_at: Optional[int] = Field(default=None, description="UNIX time in seconds.")
    resource: Optional[str] = None


class TokenResponse(BaseModel):
    """OAuth token response structure as per RFC 6749 - Section 5.1."""
    access_token: str
    token_type: str = "bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class CleanupResult(BaseModel):
    tokens: int = 0
    codes: int = 0


class TokenStats(BaseModel):
    total_tokens: int = 0
    active_tokens: int = 0
    expired_tokens: int = 0
    total_codes: int = 0
    active_codes: int = 0
    expired_codes: int = 0


class OAuthMetadata(BaseModel):
    """OAuth 2.0 authorization server metadata (RFC 8414)."""
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    introspection_endpoint: Optional[str] = None
    scopes_supported: Optional[List[str]] = None
    response_types_supported: List[str] = ["code"]
    grant_types_supported: List[str] = ["authorization_code", "refresh_token"]
    token_endpoint_auth_methods_supported: List[str] = ["client_secret_post", "none"]
    revocation_endpoint_auth_methods_supported: List[str] = ["client_secret_post"]
    code_challenge_methods_supported: List[str] = ["S256"]
    service_documentation: Optional[str] = None


class ProtectedResourceMetadata(BaseModel):
    """OAuth 2.0 protected resource metadata (RFC 9728)."""
    resource: str
    authorization_servers: List[str]
    scopes_supported: Optional[List[str]] = None
    bearer_methods_supported: List[str] = ["header"]
    resource_name: Optional[str] = None
