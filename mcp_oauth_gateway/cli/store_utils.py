# mcp_oauth_gateway/cli/store_utils.py
import asyncio
from typing import Awaitable, Callable, TypeVar

import typer

from ..oauth.storage import get_token_store, get_client_store, reset_store_instances
from ..oauth.storage_interfaces import AbstractTokenStore, AbstractClientStore
from ..storage.sqlite_base import close_sqlite_db_connection

T = TypeVar("T")


def run_with_stores(action: Callable[[AbstractTokenStore, AbstractClientStore], Awaitable[T]]) -> T:
    """
    Open the configured stores, run ``action`` against them and close them
    again. Store errors end the command with exit code 1.
    """
    async def runner() -> T:
        try:
            token_store = await get_token_store()
            client_store = await get_client_store()
            return await action(token_store, client_store)
        finally:
            await reset_store_instances()
            await close_sqlite_db_connection()

    try:
        return asyncio.run(runner())
    except Exception as e:
        typer.secho(f"CLI: Store operation failed: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
