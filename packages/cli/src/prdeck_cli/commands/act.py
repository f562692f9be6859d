"""Write-through commands: each sends one action upstream, then caches the server's answer."""

from __future__ import annotations

import click
from rich.console import Console

from prdeck_cli.session import build_coordinator, repository_context, reports_errors, require_item
from prdeck_core.actions import (
    AddComment,
    AddReviewComment,
    CloseItem,
    DeleteComment,
    DeleteReviewComment,
    EditComment,
    EditReviewComment,
    MarkFileViewed,
    ReopenItem,
    ReopenThread,
    ResolveThread,
    SetAssignees,
    SetLabels,
)
from prdeck_store.models import Side

console = Console()

_repo_option = click.option("--repo", default=None, help="Repository (owner/name).")


def _apply(ctx, context, action) -> None:
    outcome = build_coordinator(ctx).apply(context, action)
    if outcome.noop:
        console.print(f"[dim]Nothing to do: {action.name} is already in effect.[/dim]")
    elif outcome.ok:
        console.print(f"[green]{action.name} confirmed.[/green]")
    else:
        hint = " It may succeed if retried later." if outcome.retryable else ""
        raise click.ClickException(f"{action.name} failed: {outcome.error}.{hint}")


@click.command("comment")
@click.argument("number", type=int)
@click.argument("body", required=False)
@_repo_option
@click.option("--edit", "edit_id", type=int, default=None, help="Replace the body of this comment id.")
@click.option("--delete", "delete_id", type=int, default=None, help="Delete this comment id.")
@click.option("--review", is_flag=True, help="--edit/--delete target a review comment.")
@click.option("--path", default=None, help="Start a review thread on this file.")
@click.option("--line", type=int, default=None, help="Line of the review thread (end line when multiline).")
@click.option("--start-line", type=int, default=None, help="First line of a multiline review thread.")
@click.option("--side", type=click.Choice([s.value for s in Side]), default=Side.NEW.value, show_default=True)
@click.option("--reply-to", type=int, default=None, help="Reply in the review thread of this comment id.")
@click.pass_context
@reports_errors
def comment_cmd(ctx, number: int, body, repo, edit_id, delete_id, review, path, line, start_line, side, reply_to):
    """Add, edit or delete a comment on an issue or pull request.

    With --path/--line (or --reply-to) the comment goes into a pull request
    review thread instead of the conversation.
    """
    context = repository_context(ctx, repo)
    require_item(ctx, context, number)

    if delete_id is not None:
        action = DeleteReviewComment(delete_id) if review else DeleteComment(delete_id)
    else:
        if not body:
            body = click.edit("\n") or ""
        if not body.strip():
            raise click.UsageError("Comment body is empty.")
        if edit_id is not None:
            action = EditReviewComment(edit_id, body) if review else EditComment(edit_id, body)
        elif path is not None or reply_to is not None:
            if reply_to is None and line is None:
                raise click.UsageError("--path needs --line.")
            action = AddReviewComment(
                number=number,
                body=body,
                path=path,
                line=line,
                side=Side(side),
                start_line=start_line,
                reply_to=reply_to,
            )
        else:
            action = AddComment(number, body)
    _apply(ctx, context, action)


@click.command("close")
@click.argument("number", type=int)
@_repo_option
@click.pass_context
@reports_errors
def close_cmd(ctx, number: int, repo):
    """Close an issue or pull request."""
    context = repository_context(ctx, repo)
    _apply(ctx, context, CloseItem(number))


@click.command("reopen")
@click.argument("number", type=int)
@_repo_option
@click.pass_context
@reports_errors
def reopen_cmd(ctx, number: int, repo):
    """Reopen a closed issue or pull request."""
    context = repository_context(ctx, repo)
    _apply(ctx, context, ReopenItem(number))


@click.command("label")
@click.argument("number", type=int)
@_repo_option
@click.option("--add", "added", multiple=True, help="Label to add. Repeatable.")
@click.option("--remove", "removed", multiple=True, help="Label to remove. Repeatable.")
@click.option("--set", "replaced", multiple=True, help="Replace all labels with these. Repeatable.")
@click.pass_context
@reports_errors
def label_cmd(ctx, number: int, repo, added, removed, replaced):
    """Change the labels of an item."""
    context = repository_context(ctx, repo)
    item = require_item(ctx, context, number)
    labels = set(replaced) if replaced else (set(item.labels) | set(added)) - set(removed)

    known = {label.name for label in ctx.obj["store"].list_labels(context.repository.id)}
    unknown = sorted(labels - known - set(item.labels))
    if known and unknown:
        console.print(f"[yellow]Not in the cached label catalog: {', '.join(unknown)}[/yellow]")
    _apply(ctx, context, SetLabels(number, labels))


@click.command("assign")
@click.argument("number", type=int)
@_repo_option
@click.option("--add", "added", multiple=True, help="Login to assign. Repeatable.")
@click.option("--remove", "removed", multiple=True, help="Login to unassign. Repeatable.")
@click.pass_context
@reports_errors
def assign_cmd(ctx, number: int, repo, added, removed):
    """Change the assignees of an item."""
    context = repository_context(ctx, repo)
    item = require_item(ctx, context, number)
    assignees = (set(item.assignees) | set(added)) - set(removed)
    _apply(ctx, context, SetAssignees(number, assignees))


@click.command("resolve")
@click.argument("thread_id")
@_repo_option
@click.pass_context
@reports_errors
def resolve_cmd(ctx, thread_id: str, repo):
    """Resolve a review thread."""
    context = repository_context(ctx, repo)
    _apply(ctx, context, ResolveThread(thread_id))


@click.command("unresolve")
@click.argument("thread_id")
@_repo_option
@click.pass_context
@reports_errors
def unresolve_cmd(ctx, thread_id: str, repo):
    """Reopen a resolved review thread."""
    context = repository_context(ctx, repo)
    _apply(ctx, context, ReopenThread(thread_id))


@click.command("viewed")
@click.argument("number", type=int)
@click.argument("path")
@_repo_option
@click.option("--unset", is_flag=True, help="Mark the file as not viewed.")
@click.pass_context
@reports_errors
def viewed_cmd(ctx, number: int, path: str, repo, unset: bool):
    """Mark a pull request file as viewed."""
    context = repository_context(ctx, repo)
    _apply(ctx, context, MarkFileViewed(number, path, viewed=not unset))
