# mcp_oauth_gateway/main.py
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.routing import Route, Router as StarletteRouter
from starlette.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Tuple
import logging
import time
from dotenv import load_dotenv
load_dotenv()

from .settings import settings
from .storage.sqlite_base import get_sqlite_db_connection, close_sqlite_db_connection
from .oauth.storage import get_token_store, get_client_store, reset_store_instances
from .oauth.provider import UpstreamOAuthProvider
from .oauth.bearer import BearerAuthenticator, build_token_verifier
from .oauth.endpoints import oauth_router, protected_resource_metadata_url
from .oauth.errors import OAuthError
from .sessions import McpSessionManager
from .mcp_handlers import McpEndpoint, build_mcp_server

if not logging.getLogger().hasHandlers():
    logging.basicConfig(
        level="DEBUG" if settings.debug_mode else "INFO",
        format='%(asctime)s - %(name)s [%(levelname)s] - %(message)s'
    )

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG if settings.debug_mode else logging.INFO)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def gateway_lifespan(app_instance: FastAPI):
    """
    Bring up storage, the OAuth provider and the MCP session manager, and tear
    them down in reverse order. Teardown failures are logged, not raised.
    """
    logger.info("Application startup initiated.")
    teardown_steps: List[Tuple[str, Callable[[], Awaitable[None]]]] = []
    state = app_instance.state
    state.oauth_provider = None
    state.authenticator = None

    try:
        if settings.storage_backend == "sqlite":
            await get_sqlite_db_connection()
            teardown_steps.append(("sqlite_db_connection", close_sqlite_db_connection))
            logger.info("SQLite backend selected and connection initialized.")

        state.token_store = await get_token_store()
        state.client_store = await get_client_store()
        teardown_steps.append(("stores", reset_store_instances))
        logger.info("Token store and client registry initialized.")

        if settings.oauth_enabled:
            provider = UpstreamOAuthProvider.from_settings(settings, state.token_store, state.client_store)
            provider.start_cleanup_task()
            teardown_steps.append(("oauth_provider", provider.shutdown))
            state.oauth_provider = provider

            verifier = build_token_verifier(settings, provider)
            teardown_steps.append(("token_verifier", verifier.aclose))
            state.authenticator = BearerAuthenticator(verifier, protected_resource_metadata_url())
            logger.info(f"OAuth enabled. Bearer tokens verified in '{settings.token_verification_mode}' mode.")
        else:
            logger.warning("OAuth is disabled. /mcp accepts unauthenticated requests.")

        session_manager = McpSessionManager(
            server_factory=build_mcp_server,
            json_response=settings.mcp_json_response,
            event_log_max_events=settings.event_log_max_events,
        )
        state.session_manager = session_manager
        state.start_time = time.time()

        async with session_manager.run():
            logger.info(f"{settings.app_name} ready at {settings.base_url}.")
            yield
    finally:
        logger.info("Application shutdown initiated.")
        for name, step in reversed(teardown_steps):
            try:
                await step()
            except Exception as e:
                logger.error(f"Teardown error in '{name}': {e}", exc_info=True)
        logger.info("All components torn down.")


mcp_starlette_router = StarletteRouter(routes=[
    Route("/mcp", McpEndpoint),
])

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug_mode,
    version=settings.app_version,
    lifespan=gateway_lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Mcp-Session-Id"],
)


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


@app.get("/health")
async def health_api(request: Request):
    """Liveness: the process is up and serving."""
    session_manager = getattr(request.app.state, "session_manager", None)
    start_time = getattr(request.app.state, "start_time", time.time())
    return {
        "status": "healthy",
        "timestamp": _utc_timestamp(),
        "uptime": round(time.time() - start_time, 3),
        "version": settings.app_version,
        "active_sessions": session_manager.active_sessions if session_manager else 0,
    }


@app.get("/ready")
async def ready_api(request: Request):
    """Readiness: the token store answers queries."""
    token_store = getattr(request.app.state, "token_store", None)
    try:
        if token_store is None:
            raise RuntimeError("token store not initialized")
        await token_store.get_token_stats()
    except Exception as e:
        logger.warning(f"Readiness check failed: {e}", exc_info=True)
        body = {"status": "not_ready", "timestamp": _utc_timestamp()}
        if settings.debug_mode:
            body["error"] = str(e)
        return JSONResponse(status_code=503, content=body)
    return {"status": "ready", "timestamp": _utc_timestamp()}


if settings.oauth_enabled:
    app.include_router(oauth_router, tags=["OAuth 2.1"])
app.mount(path="/", app=mcp_starlette_router)
