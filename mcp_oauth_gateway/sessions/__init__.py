# mcp_oauth_gateway/sessions/__init__.py
"""
Session management for the MCP endpoint: the live session table, per-session
event logs for stream resumption, and the manager that routes requests.
"""

from .event_log import InMemoryEventLog
from .session import McpSession
from .session_registry import SessionRegistry
from .session_manager import McpSessionManager

__all__ = [
    "InMemoryEventLog",
    "McpSession",
    "SessionRegistry",
    "McpSessionManager",
]
