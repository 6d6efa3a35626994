# mcp_oauth_gateway/cli/clients_cli.py
import typer
from datetime import datetime, timezone
from typing import Annotated, List

from ..oauth.models import OAuthClientInformation
from .store_utils import run_with_stores

app = typer.Typer(
    name="clients",
    help="Inspect and remove registered OAuth clients.",
    no_args_is_help=True
)


def _format_issued_at(issued_at) -> str:
    if not issued_at:
        return "-"
    return datetime.fromtimestamp(issued_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


@app.command("list")
def list_clients():
    """List registered clients, newest first."""
    async def action(token_store, client_store) -> List[OAuthClientInformation]:
        return await client_store.list_clients()

    clients = run_with_stores(action)
    if not clients:
        typer.echo("No registered clients.")
        return

    for client in clients:
        kind = "public" if client.token_endpoint_auth_method == "none" else "confidential"
        typer.secho(f"{client.client_id}", fg=typer.colors.CYAN, bold=True)
        typer.echo(f"  name:          {client.client_name or '-'}")
        typer.echo(f"  type:          {kind}")
        typer.echo(f"  issued:        {_format_issued_at(client.client_id_issued_at)}")
        typer.echo(f"  redirect_uris: {', '.join(client.redirect_uris)}")
        typer.echo(f"  scope:         {client.scope or '(unrestricted)'}")


@app.command("delete")
def delete_client(
    client_id: Annotated[str, typer.Argument(help="The client_id to delete.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the confirmation prompt.")] = False,
):
    """Delete a client and revoke every token issued to it."""
    if not yes:
        typer.confirm(f"Delete client '{client_id}' and revoke its tokens?", abort=True)

    async def action(token_store, client_store):
        deleted = await client_store.delete_client(client_id)
        revoked = await token_store.revoke_tokens_for_client(client_id)
        return deleted, revoked

    deleted, revoked = run_with_stores(action)
    if not deleted:
        typer.secho(f"Client '{client_id}' not found.", fg=typer.colors.YELLOW)
        if revoked:
            typer.echo(f"Revoked {revoked} orphaned token(s).")
        raise typer.Exit(code=1)
    typer.secho(f"Deleted client '{client_id}'. Revoked {revoked} token(s).", fg=typer.colors.GREEN)
