"""watch command — keep the cache fresh in the background and report changes."""

from __future__ import annotations

import time

import click
from rich.console import Console

from prdeck_cli.session import build_orchestrator, configured_repos, repository_context, reports_errors
from prdeck_core.errors import AuthExpired
from prdeck_core.scheduler import BackgroundPoller, ChangeNotifier, SyncScheduler

console = Console()


@click.command("watch")
@click.option("--repo", "repos", multiple=True, help="Repository (owner/name). Repeatable; defaults to config.")
@click.option("--item", "number", type=int, default=None, help="Also poll this item's conversation and review.")
@click.option("--duration", type=float, default=None, help="Stop after this many seconds (default: until Ctrl-C).")
@click.pass_context
@reports_errors
def watch_cmd(ctx, repos: tuple[str, ...], number: int | None, duration: float | None):
    """Poll GitHub in the background and print what changed.

    Item lists are polled every ``issue_poll_interval`` seconds and the
    focused item every ``comment_poll_interval`` seconds.
    """
    config = ctx.obj["config"]
    store = ctx.obj["store"]
    notifier = ChangeNotifier()
    scheduler = SyncScheduler(build_orchestrator(ctx, notifier=notifier), workers=config["workers"])
    contexts = [repository_context(ctx, slug) for slug in configured_repos(ctx, repos)]

    errors: list[BaseException] = []

    def _on_error(exc: BaseException) -> None:
        errors.append(exc)
        console.print(f"[red]{exc}[/red]")

    poller = BackgroundPoller(
        scheduler,
        store,
        contexts,
        issue_poll_interval=config["issue_poll_interval"],
        comment_poll_interval=config["comment_poll_interval"],
        comment_ttl_seconds=int(config["comment_ttl_days"]) * 24 * 3600,
        comment_cap=config["comment_cap"],
        deleted_retention_seconds=config["deleted_retention_seconds"],
        on_error=_on_error,
    )
    if number is not None:
        poller.focus(contexts[0], number)

    console.print(f"[dim]Watching {', '.join(c.repository.slug for c in contexts)}. Ctrl-C to stop.[/dim]")
    deadline = time.monotonic() + duration if duration is not None else None
    poller.start()
    try:
        while deadline is None or time.monotonic() < deadline:
            event = notifier.wait(timeout=0.5)
            if event is not None:
                target = f" #{event.number}" if event.number is not None else ""
                console.print(f"[cyan]{event.repository}[/cyan] {event.resource}{target} changed")
            if any(isinstance(e, AuthExpired) for e in errors):
                raise errors[-1]
    except KeyboardInterrupt:
        pass
    finally:
        poller.stop()
        scheduler.shutdown(wait=True)
