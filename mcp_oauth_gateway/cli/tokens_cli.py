# mcp_oauth_gateway/cli/tokens_cli.py
import typer
from typing import Annotated

from .store_utils import run_with_stores

app = typer.Typer(
    name="tokens",
    help="Token and authorization code maintenance.",
    no_args_is_help=True
)


@app.command("stats")
def token_stats():
    """Show active and expired token and code counts."""
    async def action(token_store, client_store):
        return await token_store.get_token_stats()

    stats = run_with_stores(action)
    typer.echo(f"Tokens: {stats.total_tokens} total, {stats.active_tokens} active, {stats.expired_tokens} expired")
    typer.echo(f"Codes:  {stats.total_codes} total, {stats.active_codes} active, {stats.expired_codes} expired")


@app.command("cleanup")
def cleanup_expired():
    """Delete expired tokens and authorization codes now."""
    async def action(token_store, client_store):
        return await token_store.cleanup_expired()

    result = run_with_stores(action)
    typer.secho(
        f"Removed {result.tokens} expired token(s) and {result.codes} expired code(s).",
        fg=typer.colors.GREEN
    )


@app.command("revoke-client")
def revoke_client_tokens(
    client_id: Annotated[str, typer.Argument(help="Revoke all tokens issued to this client_id.")],
):
    """Revoke every access and refresh token of one client."""
    async def action(token_store, client_store):
        return await token_store.revoke_tokens_for_client(client_id)

    revoked = run_with_stores(action)
    typer.secho(f"Revoked {revoked} token(s) for client '{client_id}'.", fg=typer.colors.GREEN)
