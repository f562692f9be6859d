"""CLI entry point for prdeck.

Commands:
  sync         — pull issues, pull requests, conversations and reviews into the cache
  list / show  — read work items and conversations from the cache
  diff         — a pull request's diff with review threads placed on their lines
  comment, close, reopen, label, assign, resolve, unresolve, viewed
               — write-through actions: sent upstream, then cached
  watch        — poll in the background and print changes as they land
  reset-cache  — delete the local cache database
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from prdeck_cli.commands.act import (
    assign_cmd,
    close_cmd,
    comment_cmd,
    label_cmd,
    reopen_cmd,
    resolve_cmd,
    unresolve_cmd,
    viewed_cmd,
)
from prdeck_cli.commands.cache import reset_cache_cmd
from prdeck_cli.commands.diff import diff_cmd
from prdeck_cli.commands.items import list_cmd, show_cmd
from prdeck_cli.commands.sync import sync_cmd
from prdeck_cli.commands.watch import watch_cmd

console = Console()


def _build_store(config: dict):
    """Open the SQLite cache at ``db_path`` (default: the XDG data directory).

    This factory lives in cli.py so neither prdeck_core nor prdeck_store
    know about the CLI config format.
    """
    from prdeck_store.sqlite import SQLiteStore

    return SQLiteStore(db_path=config.get("db_path"))


def _build_gateway(config: dict):
    """The GitHub gateway. No network traffic happens until the first call."""
    from prdeck_cli.auth import resolve_github_token
    from prdeck_core.gh.github import GitHubGateway

    def token_provider() -> str | None:
        return config.get("github_token") or resolve_github_token(config.get("github_api_url"))

    return GitHubGateway(
        token_provider=token_provider,
        timeout=config["request_timeout"],
        base_url=config.get("github_api_url"),
    )


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(
    version=importlib.metadata.version("prdeck"),
    prog_name="prdeck",
)
@click.option(
    "--config",
    "config_path",
    default=".prdeck.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PRDECK_CONFIG",
)
@click.option("--db", "db_path", default=None, help="Cache database path. Overrides config file.")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(ctx: click.Context, config_path: str, db_path: str | None, verbose: bool):
    """Fast, cache-first GitHub issue and pull request triage."""
    from prdeck_core.config import load_config

    ctx.ensure_object(dict)

    try:
        config = load_config(config_path, cli_overrides={"db_path": db_path})
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc
    _configure_logging("DEBUG" if verbose else config["log_level"])

    store = _build_store(config)
    ctx.obj["store"] = store
    ctx.obj["config"] = config
    ctx.obj["gateway"] = _build_gateway(config)
    ctx.call_on_close(store.close)


main.add_command(sync_cmd)
main.add_command(list_cmd)
main.add_command(show_cmd)
main.add_command(diff_cmd)
main.add_command(comment_cmd)
main.add_command(close_cmd)
main.add_command(reopen_cmd)
main.add_command(label_cmd)
main.add_command(assign_cmd)
main.add_command(resolve_cmd)
main.add_command(unresolve_cmd)
main.add_command(viewed_cmd)
main.add_command(watch_cmd)
main.add_command(reset_cache_cmd)
