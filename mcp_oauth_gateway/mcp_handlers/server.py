# mcp_oauth_gateway/mcp_handlers/server.py
import functools
import logging
from typing import Any, Callable, Dict, Optional

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_request

from ..settings import settings

logger = logging.getLogger(__name__)

SERVER_INSTRUCTIONS = (
    "MCP OAuth Gateway. Tools run on behalf of the OAuth client that "
    "authenticated the session."
)


def truncate_tool_output(text: str, max_chars: Optional[int]) -> str:
    """Cut ``text`` down to ``max_chars`` characters, prefixed with a note saying so."""
    if not max_chars or len(text) <= max_chars:
        return text
    note = f"[Output truncated to {max_chars} of {len(text)} characters]\n"
    return note + text[:max_chars]


def limit_output(func: Callable[..., Any]) -> Callable[..., Any]:
    """Apply the configured single-call output budget to a tool returning text."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        result = func(*args, **kwargs)
        if isinstance(result, str):
            return truncate_tool_output(result, settings.max_token_single_call)
        return result

    return wrapper


def greet(name: str) -> str:
    """Return a greeting for the given name."""
    return f"Hello, {name}!"


def whoami() -> Dict[str, Any]:
    """Describe the OAuth client behind the current session."""
    request = get_http_request()
    auth_info = getattr(request.state, "auth_info", None)
    if auth_info is None:
        return {"authenticated": False}
    return {
        "authenticated": True,
        "client_id": auth_info.client_id,
        "scopes": auth_info.scopes,
        "resource": auth_info.resource,
        "expires_at": auth_info.expires_at,
    }


def build_mcp_server() -> FastMCP:
    """
    Create a FastMCP server with the gateway's tools registered.
    Every session gets its own instance.
    """
    logging.getLogger("fastmcp").setLevel(settings.fastmcp_log_level.upper())

    server = FastMCP(
        name=settings.app_name,
        instructions=SERVER_INSTRUCTIONS,
        mask_error_details=not settings.debug_mode,
    )
    server.tool()(limit_output(greet))
    server.tool()(whoami)
    return server
