"""list and show commands — read work items straight from the cache."""

from __future__ import annotations

import time

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from prdeck_cli.session import repository_context, reports_errors, require_item
from prdeck_core.sync import resolve_linked
from prdeck_store.models import ItemKind, ItemState, WorkItemFilter

console = Console()

_STATE_STYLE = {
    ItemState.OPEN: "green",
    ItemState.CLOSED: "red",
    ItemState.MERGED: "magenta",
}


def _state(item) -> str:
    style = _STATE_STYLE[item.state]
    return f"[{style}]{item.state.value}[/{style}]"


@click.command("list")
@click.option("--repo", default=None, help="Repository (owner/name).")
@click.option("--state", type=click.Choice([s.value for s in ItemState]), default=None, help="Filter by state.")
@click.option("--kind", type=click.Choice([k.value for k in ItemKind]), default=None, help="Issues or pull requests.")
@click.option("--label", default=None, help="Only items carrying this label.")
@click.option("--assignee", default=None, help="Only items assigned to this login.")
@click.option("--search", "text", default=None, help="Substring match on title and body.")
@click.option("--limit", default=50, show_default=True, help="Maximum number of items to show.")
@click.pass_context
@reports_errors
def list_cmd(ctx, repo, state, kind, label, assignee, text, limit: int):
    """List cached issues and pull requests, newest number first."""
    context = repository_context(ctx, repo)
    items = ctx.obj["store"].read_work_items(
        context.repository.id,
        WorkItemFilter(
            kind=ItemKind(kind) if kind else None,
            state=ItemState(state) if state else None,
            label=label,
            assignee=assignee,
            text=text,
            limit=limit,
        ),
    )
    if not items:
        console.print("[yellow]No cached items match. Run `prdeck sync` to fetch them.[/yellow]")
        return

    table = Table(title=f"{context.repository.slug}", show_header=True, header_style="bold cyan")
    table.add_column("#", style="bold", justify="right", width=6)
    table.add_column("Kind", width=5)
    table.add_column("State", width=7)
    table.add_column("Title", max_width=60)
    table.add_column("Labels", max_width=30)
    table.add_column("Assignees", max_width=20)
    table.add_column("Updated", width=16)

    for item in items:
        table.add_row(
            str(item.number),
            "PR" if item.is_pull_request else "issue",
            _state(item),
            item.title,
            ", ".join(sorted(item.labels)),
            ", ".join(sorted(item.assignees)),
            (item.updated_at or "")[:16].replace("T", " "),
        )

    console.print(table)


@click.command("show")
@click.argument("number", type=int)
@click.option("--repo", default=None, help="Repository (owner/name).")
@click.pass_context
@reports_errors
def show_cmd(ctx, number: int, repo):
    """Show one cached item with its conversation."""
    store = ctx.obj["store"]
    context = repository_context(ctx, repo)
    item = require_item(ctx, context, number)
    store.touch_comments(item.id, int(time.time()))

    header = f"[bold]#{item.number}[/bold] {item.title}  {_state(item)}"
    meta = [f"by {item.author}"]
    if item.labels:
        meta.append("labels: " + ", ".join(sorted(item.labels)))
    if item.assignees:
        meta.append("assignees: " + ", ".join(sorted(item.assignees)))
    if item.linked_number is not None:
        linked = resolve_linked(store, item)
        meta.append(f"links #{item.linked_number}" + (f" ({linked.title})" if linked else ""))
    console.print(header)
    console.print(f"[dim]{' · '.join(meta)}[/dim]")
    if item.body:
        console.print(Panel(Markdown(item.body), border_style="dim"))

    comments = store.list_comments(item.id)
    if not comments and item.comments_count:
        console.print(
            f"[yellow]{item.comments_count} comment(s) not cached. "
            f"Run `prdeck sync --item {item.number}`.[/yellow]"
        )
    for comment in comments:
        when = (comment.created_at or "")[:16].replace("T", " ")
        console.print(
            Panel(
                Markdown(comment.body),
                title=f"{comment.author} · {when}",
                title_align="left",
                subtitle=f"id {comment.id}",
            )
        )
