"""diff command — a pull request's changed files with review threads in place."""

from __future__ import annotations

import click
from rich.console import Console
from rich.text import Text

from prdeck_cli.session import repository_context, reports_errors, require_item
from prdeck_core.diff import RowKind, reconcile

console = Console()

_ROW_STYLE = {
    RowKind.ADDED: "green",
    RowKind.REMOVED: "red",
    RowKind.HUNK: "cyan",
    RowKind.META: "dim",
    RowKind.CONTEXT: "",
}


def _gutter(n: int | None) -> str:
    return f"{n:>5}" if n is not None else "     "


def _print_thread(thread, indent: str = "      ") -> None:
    status = "[green]resolved[/green]" if thread.resolved else "[yellow]open[/yellow]"
    console.print(f"{indent}[bold]┌ thread {thread.id}[/bold] {status}")
    for comment in thread.comments:
        console.print(f"{indent}│ [bold]{comment.author}[/bold] [dim](id {comment.id})[/dim]")
        for line in comment.body.splitlines() or [""]:
            console.print(Text(f"{indent}│   {line}"))
    console.print(f"{indent}└")


@click.command("diff")
@click.argument("number", type=int)
@click.option("--repo", default=None, help="Repository (owner/name).")
@click.option("--file", "path", default=None, help="Only show this file.")
@click.pass_context
@reports_errors
def diff_cmd(ctx, number: int, repo, path: str | None):
    """Show a cached pull request diff with its review threads.

    Threads that no longer map onto the current diff are listed at the end
    as outdated rather than attached to an unrelated line.
    """
    context = repository_context(ctx, repo)
    item = require_item(ctx, context, number)
    if not item.is_pull_request:
        raise click.UsageError(f"#{number} is an issue, not a pull request.")

    model = reconcile(ctx.obj["store"], item.id)
    if not model.files:
        console.print(f"[yellow]No cached diff. Run `prdeck sync --item {number}`.[/yellow]")
        return

    for diff_file in model.files:
        if path and diff_file.path != path:
            continue
        viewed = " [dim](viewed)[/dim]" if diff_file.viewed else ""
        console.print(f"\n[bold]{diff_file.path}[/bold] [dim]{diff_file.status}[/dim]{viewed}")
        if not diff_file.rows:
            console.print("[dim]  (binary or too large to display)[/dim]")
        for row in diff_file.rows:
            line = Text(f"{_gutter(row.old_line)} {_gutter(row.new_line)} ", style="dim")
            line.append(row.raw, style=_ROW_STYLE[row.kind])
            console.print(line)
            for thread in model.threads_at(diff_file.path, row.index):
                _print_thread(thread)

    if model.outdated:
        console.print(f"\n[bold yellow]Outdated threads ({len(model.outdated)})[/bold yellow]")
        for thread in model.outdated:
            anchor = thread.anchor
            console.print(f"  {anchor.path}:{anchor.line} ({anchor.side.value}) @ {anchor.commit_sha[:7]}")
            _print_thread(thread, indent="    ")
