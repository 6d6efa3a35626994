# mcp_oauth_gateway/oauth/__init__.py
"""
OAuth 2.1 authorization server for the gateway. User authentication is
federated to an upstream identity provider; codes and tokens are local.
"""

from .provider import UpstreamOAuthProvider, UpstreamOAuthInfo
from .bearer import BearerAuthenticator, LocalTokenVerifier, IntrospectionTokenVerifier, build_token_verifier
from .endpoints import oauth_router
from .errors import OAuthError

__all__ = [
    "UpstreamOAuthProvider",
    "UpstreamOAuthInfo",
    "BearerAuthenticator",
    "LocalTokenVerifier",
    "IntrospectionTokenVerifier",
    "build_token_verifier",
    "oauth_router",
    "OAuthError",
]
