# mcp_oauth_gateway/settings.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional
from urllib.parse import urlparse
import logging
from pathlib import Path

logger = logging.getLogger(__name__)
if not logging.getLogger().hasHandlers():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s SETTINGS.PY - [%(levelname)s] - %(message)s'
    )

# This settings.py file is at <project>/mcp_oauth_gateway/settings.py
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
DOTENV_PATH = PROJECT_ROOT / ".env"

if DOTENV_PATH.exists():
    logger.info(f"SETTINGS.PY: .env file found at: {DOTENV_PATH}")
else:
    logger.info(f"SETTINGS.PY: no .env file at {DOTENV_PATH}. Using OS env vars and defaults.")


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    app_name: str = "MCP OAuth Gateway"
    app_version: str = "1.0.0"
    debug_mode: bool = False

    # Public address of this deployment; also the OAuth issuer
    server_url: str = "http://localhost"
    mcp_port: int = 3000
    include_port_in_url: bool = True

    # Browser MCP clients; Mcp-Session-Id is always exposed to them
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Upstream identity provider. Required while oauth_enabled is True.
    upstream_oauth_client_id: Optional[str] = None
    upstream_oauth_client_secret: Optional[str] = None
    upstream_oauth_base_url: Optional[str] = None
    upstream_oauth_authorize_endpoint: Optional[str] = None
    upstream_oauth_token_endpoint: Optional[str] = None
    upstream_oauth_scope: str = "all"
    upstream_http_timeout_seconds: float = 30.0

    oauth_enabled: bool = True
    oauth_strict_resource: bool = Field(
        default=False,
        description="Require an RFC 8707 resource indicator matching this server on every code exchange."
    )
    token_verification_mode: str = Field(
        default="local",
        description="'local' looks tokens up in the store, 'introspection' calls the introspection endpoint."
    )
    introspection_url: Optional[str] = None

    authorization_code_ttl_seconds: int = 600
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    client_secret_ttl_seconds: int = Field(
        default=30 * 24 * 3600,
        description="Lifetime of secrets issued by dynamic registration. 0 means the secret never expires."
    )
    token_cleanup_interval_seconds: int = 30 * 60
    scopes_supported: List[str] = Field(default_factory=lambda: ["mcp:tools"])

    # "sqlite" for a single host, "redis" when several instances share one store
    storage_backend: str = "sqlite"

    # SQLite configuration
    sqlite_db_path: str = "./mcp_oauth_gateway.sqlite3"

    # Redis configuration
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_ssl: bool = False
    redis_key_prefix: str = "mcp_gateway"

    # MCP transport
    event_log_max_events: int = 1000
    mcp_json_response: bool = False
    max_token_single_call: Optional[int] = Field(
        default=None,
        description="Character budget for a single tool result. Longer output is truncated."
    )
    fastmcp_log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=DOTENV_PATH if DOTENV_PATH.exists() else None,
        extra="ignore",
        env_file_encoding='utf-8'
    )

    @property
    def base_url(self) -> str:
        """Root URL of this server, with the port appended unless the URL already carries one."""
        url = self.server_url.rstrip("/")
        if self.include_port_in_url and urlparse(url).port is None:
            url = f"{url}:{self.mcp_port}"
        return url

    @property
    def mcp_server_url(self) -> str:
        return f"{self.base_url}/mcp"

    @property
    def effective_introspection_url(self) -> str:
        return self.introspection_url or f"{self.base_url}/introspect"


# Initialize settings instance
settings = Settings()

# Log configuration values for debugging (sensitive values are masked)
logger.info(f"SETTINGS.PY: debug_mode={settings.debug_mode} base_url='{settings.base_url}'")
logger.info(
    f"SETTINGS.PY: oauth_enabled={settings.oauth_enabled} "
    f"strict_resource={settings.oauth_strict_resource} "
    f"verification_mode='{settings.token_verification_mode}'"
)
logger.info(
    f"SETTINGS.PY: upstream_oauth_client_id="
    f"{settings.upstream_oauth_client_id or 'None'} upstream_oauth_client_secret="
    f"{'********' if settings.upstream_oauth_client_secret else 'None'}"
)
logger.info(
    f"SETTINGS.PY: storage_backend='{settings.storage_backend}' "
    f"sqlite_db_path='{settings.sqlite_db_path}' redis_host='{settings.redis_host}'"
)
