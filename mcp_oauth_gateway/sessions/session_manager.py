# mcp_oauth_gateway/sessions/session_manager.py
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup, TaskStatus
from fastmcp import FastMCP
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.types import InitializeRequestParams
from pydantic import ValidationError
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Message, Receive, Scope, Send

from .event_log import DEFAULT_MAX_EVENTS, InMemoryEventLog
from .session import McpSession
from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)

# JSON-RPC error codes used on the HTTP boundary
PARSE_ERROR = -32700
INTERNAL_ERROR = -32603
BAD_REQUEST = -32000


def jsonrpc_error_response(
    status_code: int,
    code: int,
    message: str,
    data: Optional[Any] = None
) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return JSONResponse(
        status_code=status_code,
        content={"jsonrpc": "2.0", "error": error, "id": None},
    )


def _no_valid_session_response() -> JSONResponse:
    return jsonrpc_error_response(400, BAD_REQUEST, "Bad Request: No valid session ID provided")


def is_initialize_request(payload: Any) -> bool:
    """True for a single JSON-RPC ``initialize`` request with well-formed params."""
    if not isinstance(payload, dict):
        return False
    if payload.get("jsonrpc") != "2.0" or payload.get("method") != "initialize" or "id" not in payload:
        return False
    try:
        InitializeRequestParams.model_validate(payload.get("params") or {})
    except ValidationError:
        return False
    return True


def _replaying_receive(body: bytes, receive: Receive) -> Receive:
    """Hand an already consumed request body to the transport, then defer to ``receive``."""
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class McpSessionManager:
    """
    Routes /mcp requests to per-session streamable HTTP transports.

    * POST without a session id must carry an ``initialize`` request and
      creates a session: a fresh event log, a transport with a new id and a
      freshly built MCP server running in the manager's task group.
    * POST, GET and DELETE with a known session id go to that session's
      transport. Anything else is answered with 400.

    A new session is added to the registry while the transport sends the
    successful response head for ``initialize``, so the id is published
    before any client can learn it. Use ``run()`` as the lifetime context.
    """

    def __init__(
        self,
        server_factory: Callable[[], FastMCP],
        registry: Optional[SessionRegistry] = None,
        json_response: bool = False,
        event_log_max_events: int = DEFAULT_MAX_EVENTS,
    ):
        self.server_factory = server_factory
        self.registry = registry if registry is not None else SessionRegistry()
        self.json_response = json_response
        self.event_log_max_events = event_log_max_events
        self._task_group: Optional[TaskGroup] = None

    @property
    def active_sessions(self) -> int:
        return len(self.registry)

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        if self._task_group is not None:
            raise RuntimeError("McpSessionManager.run() is already active.")
        async with anyio.create_task_group() as task_group:
            self._task_group = task_group
            logger.info("MCP session manager started.")
            try:
                yield
            finally:
                with anyio.CancelScope(shield=True):
                    await self.close_all()
                task_group.cancel_scope.cancel()
                self._task_group = None
                logger.info("MCP session manager stopped.")

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("McpSessionManager is not running. Use 'async with manager.run()'.")

        method = scope["method"]
        session_id = Headers(scope=scope).get(MCP_SESSION_ID_HEADER)

        if method == "POST" and not session_id:
            await self._handle_new_session(scope, receive, send)
            return

        session = self.registry.get(session_id)
        if session is None:
            logger.info(f"{method} /mcp rejected: unknown or missing session id '{session_id}'.")
            await _no_valid_session_response()(scope, receive, send)
            return

        await session.transport.handle_request(scope, receive, send)

        if method == "DELETE" and session.transport.is_terminated:
            logger.info(f"Session '{session.session_id}' terminated by client.")
            await self.close_session(session)

    async def _handle_new_session(self, scope: Scope, receive: Receive, send: Send) -> None:
        body = await Request(scope, receive).body()
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            await jsonrpc_error_response(400, PARSE_ERROR, "Parse error")(scope, receive, send)
            return

        if not is_initialize_request(payload):
            logger.info("POST /mcp without a session id did not carry an initialize request.")
            await _no_valid_session_response()(scope, receive, send)
            return

        session = await self._start_session()
        registered = False

        async def registering_send(message: Message) -> None:
            nonlocal registered
            if (message["type"] == "http.response.start" and not registered
                    and message.get("status", 200) < 400):
                self.registry.add(session)
                registered = True
            await send(message)

        try:
            await session.transport.handle_request(scope, _replaying_receive(body, receive), registering_send)
        finally:
            if not registered:
                logger.warning(f"Initialize for session '{session.session_id}' did not succeed. Closing it.")
                with anyio.CancelScope(shield=True):
                    await session.close()

    async def _start_session(self) -> McpSession:
        session_id = uuid4().hex
        event_log = InMemoryEventLog(max_events=self.event_log_max_events)
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self.json_response,
            event_store=event_log,
        )
        session = McpSession(session_id, transport, event_log)
        server = self.server_factory()
        await self._task_group.start(self._run_server, session, server)
        logger.debug(f"Server task started for session '{session_id}'.")
        return session

    async def _run_server(
        self,
        session: McpSession,
        server: FastMCP,
        *,
        task_status: TaskStatus = anyio.TASK_STATUS_IGNORED
    ) -> None:
        mcp_server = server._mcp_server
        try:
            with anyio.CancelScope() as cancel_scope:
                session.cancel_scope = cancel_scope
                async with session.transport.connect() as (read_stream, write_stream):
                    task_status.started()
                    await mcp_server.run(
                        read_stream,
                        write_stream,
                        mcp_server.create_initialization_options(),
                        stateless=False,
                    )
        except Exception as e:
            logger.error(f"MCP server for session '{session.session_id}' failed: {e}", exc_info=True)
        finally:
            with anyio.CancelScope(shield=True):
                await self.close_session(session)

    async def close_session(self, session: McpSession) -> None:
        """Remove the session from the registry and close it. Repeated calls are no-ops."""
        self.registry.remove(session.session_id)
        await session.close()

    async def close_all(self) -> None:
        sessions = self.registry.snapshot()
        if sessions:
            logger.info(f"Closing {len(sessions)} open session(s).")
        for session in sessions:
            try:
                await self.close_session(session)
            except Exception as e:
                logger.error(f"Error closing session '{session.session_id}': {e}", exc_info=True)
