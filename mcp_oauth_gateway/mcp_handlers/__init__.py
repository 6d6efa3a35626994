# mcp_oauth_gateway/mcp_handlers/__init__.py
from .server import build_mcp_server
from .endpoint import McpEndpoint, ResponseHandled

__all__ = ["build_mcp_server", "McpEndpoint", "ResponseHandled"]
