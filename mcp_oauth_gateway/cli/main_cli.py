# mcp_oauth_gateway/cli/main_cli.py
import typer
from typing import Annotated, Optional

from . import clients_cli, tokens_cli

app = typer.Typer(
    name="gateway",
    help="MCP OAuth Gateway Command Line Interface.",
    no_args_is_help=True
)

app.add_typer(clients_cli.app, name="clients")
app.add_typer(tokens_cli.app, name="tokens")


@app.callback()
def main_callback():
    """
    MCP OAuth Gateway CLI.
    Use 'gateway serve' to run the server, 'gateway clients --help' and
    'gateway tokens --help' for store maintenance.
    """
    pass


@app.command("serve")
def serve(
    host: Annotated[str, typer.Option(help="Interface to bind.")] = "127.0.0.1",
    port: Annotated[Optional[int], typer.Option(help="Port to bind. Defaults to MCP_PORT.")] = None,
    reload: Annotated[bool, typer.Option(help="Restart on code changes (development).")] = False,
    log_level: Annotated[str, typer.Option(help="Uvicorn log level.")] = "info",
):
    """Run the gateway with uvicorn."""
    import uvicorn
    from ..settings import settings

    bind_port = port or settings.mcp_port
    typer.echo(f"CLI: Starting {settings.app_name} on {host}:{bind_port} (public URL {settings.base_url})")
    uvicorn.run(
        "mcp_oauth_gateway.main:app",
        host=host,
        port=bind_port,
        log_level=log_level.lower(),
        reload=reload
    )


def cli_entry_point():
    """Entry point function for console script registration in pyproject.toml"""
    app()


if __name__ == "__main__":
    cli_entry_point()
