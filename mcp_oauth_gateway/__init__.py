# mcp_oauth_gateway/__init__.py
"""MCP streamable HTTP server guarded by an OAuth 2.1 flow federated to an upstream identity provider."""

__version__ = "1.0.0"
