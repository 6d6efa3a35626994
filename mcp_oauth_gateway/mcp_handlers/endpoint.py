# mcp_oauth_gateway/mcp_handlers/endpoint.py
import logging
from typing import Optional

from starlette.endpoints import HTTPEndpoint
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse, JSONResponse
from starlette.types import Message, Receive, Scope, Send

from ..oauth.bearer import BearerAuthenticator
from ..oauth.errors import InvalidTokenError
from ..sessions.session_manager import INTERNAL_ERROR, McpSessionManager, jsonrpc_error_response
from ..settings import settings

logger = logging.getLogger(__name__)


class ResponseHandled(StarletteResponse):
    """
    Marks a request whose response was already written by the session
    transport. Sends nothing when called.
    """
    def __init__(self):
        super().__init__(content=b"", media_type="text/plain")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        return


class McpEndpoint(HTTPEndpoint):
    """
    GET, POST and DELETE on /mcp. Authenticates the bearer token when OAuth
    is enabled, then hands the raw ASGI request to the session manager.
    """

    async def _authenticate(self, request: StarletteRequest) -> Optional[JSONResponse]:
        authenticator: Optional[BearerAuthenticator] = getattr(request.app.state, "authenticator", None)
        if authenticator is None:
            return None
        try:
            auth_info = await authenticator.authenticate(request)
        except InvalidTokenError as e:
            logger.info(f"{request.method} /mcp rejected: {e.error_description}")
            return JSONResponse(status_code=e.status_code, content=e.to_dict(), headers=e.headers)

        state = self.scope.setdefault("state", {})
        state["auth_info"] = auth_info
        return None

    async def _dispatch_mcp_request(self, request: StarletteRequest) -> None:
        scope, receive, send = self.scope, self.receive, self.send
        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            auth_error = await self._authenticate(request)
            if auth_error is not None:
                await auth_error(scope, receive, tracking_send)
                return

            session_manager: McpSessionManager = request.app.state.session_manager
            await session_manager.handle_request(scope, receive, tracking_send)
        except Exception as e:
            logger.error(f"Unexpected error handling {request.method} /mcp: {e}", exc_info=True)
            if response_started:
                return
            error_response = jsonrpc_error_response(
                500,
                INTERNAL_ERROR,
                "Internal server error",
                data=str(e) if settings.debug_mode else None,
            )
            await error_response(scope, receive, send)

    async def get(self, request: StarletteRequest) -> ResponseHandled:
        await self._dispatch_mcp_request(request)
        return ResponseHandled()

    async def post(self, request: StarletteRequest) -> ResponseHandled:
        await self._dispatch_mcp_request(request)
        return ResponseHandled()

    async def delete(self, request: StarletteRequest) -> ResponseHandled:
        await self._dispatch_mcp_request(request)
        return ResponseHandled()
