# mcp_oauth_gateway/oauth/storage_interfaces.py
from abc import ABC, abstractmethod
from typing import Optional, List

from .models import (
    AuthorizationParams,
    CleanupResult,
    OAuthClientInformation,
    StoredAuthorizationCode,
    StoredToken,
    TokenStats,
)


class AbstractTokenStore(ABC):
    """
    Storage for authorization codes and access/refresh tokens.

    Lookups must treat an expired record as absent and delete it as a side
    effect. Implementations shared between processes are the only place
    single-use code semantics are coordinated.
    """

    @abstractmethod
    async def store_authorization_code(
        self,
        code: str,
        client: OAuthClientInformation,
        params: AuthorizationParams,
        ttl_seconds: int
    ) -> StoredAuthorizationCode:
        """Persist a new authorization code for a client."""
        pass

    @abstractmethod
    async def get_authorization_code(self, code: str) -> Optional[StoredAuthorizationCode]:
        """Retrieve an unexpired authorization code."""
        pass

    @abstractmethod
    async def delete_authorization_code(self, code: str) -> bool:
        """Remove an authorization code. Returns True if a record was deleted."""
        pass

    @abstractmethod
    async def store_access_token(
        self,
        token: str,
        client_id: str,
        scopes: List[str],
        ttl_seconds: int,
        resource: Optional[str] = None
    ) -> StoredToken:
        """Persist an access token."""
        pass

    @abstractmethod
    async def store_refresh_token(
        self,
        token: str,
        client_id: str,
        scopes: List[str],
        ttl_seconds: int,
        resource: Optional[str] = None
    ) -> StoredToken:
        """Persist a refresh token."""
        pass

    @abstractmethod
    async def get_token(self, token: str) -> Optional[StoredToken]:
        """Retrieve an unexpired token of either kind."""
        pass

    @abstractmethod
    async def delete_token(self, token: str) -> bool:
        """Remove a token. Returns True if a record was deleted."""
        pass

    @abstractmethod
    async def revoke_tokens_for_client(self, client_id: str) -> int:
        """Remove every token issued to a client and return how many were removed."""
        pass

    @abstractmethod
    async def cleanup_expired(self) -> CleanupResult:
        """Batch-delete every expired token and code."""
        pass

    @abstractmethod
    async def get_token_stats(self) -> TokenStats:
        """Count tokens and codes by active/expired."""
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        pass

    @abstractmethod
    async def teardown(self) -> None:
        """Clean up storage resources."""
        pass


class AbstractClientStore(ABC):
    """Registry of OAuth clients created through dynamic registration."""

    @abstractmethod
    async def get_client(self, client_id: str) -> Optional[OAuthClientInformation]:
        """Retrieve a client by id."""
        pass

    @abstractmethod
    async def register_client(self, client: OAuthClientInformation) -> OAuthClientInformation:
        """Insert or overwrite a client, keyed by client_id."""
        pass

    @abstractmethod
    async def delete_client(self, client_id: str) -> bool:
        """Remove a client. Returns True if a record was deleted."""
        pass

    @abstractmethod
    async def list_clients(self) -> List[OAuthClientInformation]:
        """All clients, most recently created first."""
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        pass

    @abstractmethod
    async def teardown(self) -> None:
        """Clean up storage resources."""
        pass
