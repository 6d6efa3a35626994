# mcp_oauth_gateway/cli/__init__.py
