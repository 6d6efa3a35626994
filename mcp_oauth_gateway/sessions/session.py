# mcp_oauth_gateway/sessions/session.py
import logging
import time
from typing import Optional

import anyio
from mcp.server.streamable_http import StreamableHTTPServerTransport

from .event_log import InMemoryEventLog

logger = logging.getLogger(__name__)


class McpSession:
    """One MCP conversation: its transport, event log and server task."""

    def __init__(
        self,
        session_id: str,
        transport: StreamableHTTPServerTransport,
        event_log: InMemoryEventLog
    ):
        self.session_id = session_id
        self.transport = transport
        self.event_log = event_log
        self.cancel_scope: Optional[anyio.CancelScope] = None
        self.created_at = time.time()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Terminate the transport and stop the server task. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        try:
            if not self.transport.is_terminated:
                await self.transport.terminate()
        finally:
            if self.cancel_scope is not None:
                self.cancel_scope.cancel()
        logger.debug(f"Session '{self.session_id}' closed.")

    def __repr__(self) -> str:
        return f"McpSession(session_id={self.session_id!r}, closed={self._closed})"
