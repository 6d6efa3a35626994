import uvicorn
from dotenv import load_dotenv
import os
from pathlib import Path
import logging

# Configure logging before any application imports
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s RUN_DEV.PY - [%(levelname)s] - %(message)s'
)
logger = logging.getLogger("run_dev_script")

TRUE_VALUES = ["true", "1", "yes", "on", "t"]

if __name__ == "__main__":
    project_root = Path(__file__).parent.resolve()
    dotenv_path_explicit = project_root / ".env"

    if dotenv_path_explicit.exists():
        logger.info(f".env file found at: {dotenv_path_explicit}")
        load_dotenv(dotenv_path=dotenv_path_explicit, override=True)
    else:
        logger.warning(f".env file not found at: {dotenv_path_explicit}. "
                       "Relying on OS environment variables and settings defaults.")

    _secret_val = os.getenv("UPSTREAM_OAUTH_CLIENT_SECRET")
    logger.info(f"UPSTREAM_OAUTH_CLIENT_ID: {os.getenv('UPSTREAM_OAUTH_CLIENT_ID')}")
    logger.info(f"UPSTREAM_OAUTH_CLIENT_SECRET: {'********' if _secret_val else 'None'}")
    logger.info(f"UPSTREAM_OAUTH_BASE_URL: {os.getenv('UPSTREAM_OAUTH_BASE_URL')}")
    logger.info(f"OAUTH_ENABLED: {os.getenv('OAUTH_ENABLED')}")
    logger.info(f"STORAGE_BACKEND: {os.getenv('STORAGE_BACKEND')}")
    logger.info(f"DEBUG_MODE: {os.getenv('DEBUG_MODE')}")

    host = os.getenv("DEV_SERVER_HOST", "127.0.0.1")
    port = int(os.getenv("MCP_PORT", "3000"))
    uvicorn_log_level = os.getenv("DEV_SERVER_LOG_LEVEL", "info").lower()

    debug_mode = os.getenv("DEBUG_MODE", "False").lower() in TRUE_VALUES
    reload_bool = os.getenv("DEV_SERVER_RELOAD", str(debug_mode)).lower() in TRUE_VALUES

    logger.info(f"Starting Uvicorn server on {host}:{port} (reload={reload_bool}, log level={uvicorn_log_level})")
    uvicorn.run(
        "mcp_oauth_gateway.main:app",
        host=host,
        port=port,
        log_level=uvicorn_log_level,
        reload=reload_bool
    )
