"""reset-cache command — delete the local cache database."""

from __future__ import annotations

import click
from rich.console import Console

console = Console()


@click.command("reset-cache")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def reset_cache_cmd(ctx, yes: bool):
    """Delete every cached item, comment and cursor.

    The next sync refetches everything from scratch.
    """
    from prdeck_store.sqlite import delete_db

    store = ctx.obj["store"]
    path = store.path
    if not yes and not click.confirm(f"Delete the cache at {path}?", default=False):
        console.print("[yellow]Aborted.[/yellow]")
        return

    store.close()
    if delete_db(path):
        console.print(f"[green]Deleted {path}[/green]")
    else:
        console.print(f"[yellow]No cache at {path}[/yellow]")
