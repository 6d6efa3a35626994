# mcp_oauth_gateway/sessions/session_registry.py
import logging
from typing import Dict, List, Optional

from .session import McpSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Table of live sessions keyed by session id.

    The server runs on a single event loop and none of these methods await,
    so each call completes without interleaving. Holding at most one session
    per id therefore only depends on callers adding an id once, which the
    session manager guarantees by registering freshly generated ids only.
    """

    def __init__(self):
        self._sessions: Dict[str, McpSession] = {}

    def add(self, session: McpSession) -> None:
        if session.session_id in self._sessions:
            raise ValueError(f"Session '{session.session_id}' is already registered.")
        self._sessions[session.session_id] = session
        logger.info(f"Session '{session.session_id}' registered. Active sessions: {len(self._sessions)}")

    def get(self, session_id: Optional[str]) -> Optional[McpSession]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[McpSession]:
        """Remove and return the session, or None when it is already gone."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info(f"Session '{session_id}' removed. Active sessions: {len(self._sessions)}")
        return session

    def snapshot(self) -> List[McpSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
