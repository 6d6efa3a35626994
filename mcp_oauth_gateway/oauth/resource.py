# mcp_oauth_gateway/oauth/resource.py
"""Resource indicator helpers (RFC 8707)."""
from typing import Optional
from urllib.parse import urlparse, urlunparse


def resource_url_from_server_url(url: str) -> str:
    """Canonical resource URL for a server URL: fragment removed, scheme and host lowercased."""
    parsed = urlparse(url)
    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        parsed.path,
        parsed.params,
        parsed.query,
        "",
    ))


def _default_port(scheme: str) -> Optional[int]:
    return {"http": 80, "https": 443}.get(scheme)


def check_resource_allowed(requested_resource: str, configured_resource: str) -> bool:
    """
    True when ``requested_resource`` names the configured resource or a path
    below it. Origins must match exactly (scheme, host and port).
    """
    requested = urlparse(resource_url_from_server_url(requested_resource))
    configured = urlparse(resource_url_from_server_url(configured_resource))

    if requested.scheme != configured.scheme or requested.hostname != configured.hostname:
        return False
    try:
        requested_port = requested.port or _default_port(requested.scheme)
    except ValueError:
        # Out-of-range or non-numeric port
        return False
    if requested_port != (configured.port or _default_port(configured.scheme)):
        return False

    requested_path = requested.path if requested.path.endswith("/") else requested.path + "/"
    configured_path = configured.path if configured.path.endswith("/") else configured.path + "/"
    return requested_path.startswith(configured_path)
