"""sync command — pull remote state into the local cache."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from prdeck_cli.session import build_orchestrator, configured_repos, repository_context, reports_errors
from prdeck_core.gh.gateway import Resource

console = Console()


def _add_row(table: Table, slug: str, resource: str, outcome) -> None:
    style = {"updated": "green", "removed": "red"}.get(outcome.status.value, "dim")
    table.add_row(slug, resource, f"[{style}]{outcome.status.value}[/{style}]", str(outcome.pages), str(outcome.items))


@click.command("sync")
@click.option("--repo", "repos", multiple=True, help="Repository (owner/name). Repeatable; defaults to config.")
@click.option("--item", "number", type=int, default=None, help="Also sync the conversation (and review) of one item.")
@click.option("--pulls/--no-pulls", default=True, show_default=True, help="Refresh pull request head and merge state.")
@click.option("--catalogs", is_flag=True, help="Refresh permission, labels and assignable users.")
@click.pass_context
@reports_errors
def sync_cmd(ctx, repos: tuple[str, ...], number: int | None, pulls: bool, catalogs: bool):
    """Incrementally sync issues and pull requests.

    Interrupted runs resume where they stopped; unchanged repositories cost
    a single conditional request.
    """
    orchestrator = build_orchestrator(ctx)

    table = Table(title="Sync", show_header=True, header_style="bold cyan")
    table.add_column("Repository", style="bold")
    table.add_column("Resource")
    table.add_column("Status")
    table.add_column("Pages", justify="right")
    table.add_column("Items", justify="right")

    for slug in configured_repos(ctx, repos):
        context = repository_context(ctx, slug)

        if catalogs:
            repository = orchestrator.refresh_permission(context)
            labels = orchestrator.refresh_labels(context)
            users = orchestrator.refresh_assignees(context)
            console.print(
                f"[dim]{repository.slug}: permission {repository.permission or 'unknown'}, "
                f"{labels} labels, {users} assignable users[/dim]"
            )

        resources = [Resource.issues()]
        if pulls:
            resources.append(Resource.pulls())
        if number is not None:
            resources.append(Resource.comments(number))

        def _progress(page: int, count: int, _slug=context.repository.slug):
            console.print(f"[dim]{_slug}: committed page {page} ({count} entities)[/dim]")

        for resource in resources:
            outcome = orchestrator.sync(context, resource, progress=_progress)
            _add_row(table, context.repository.slug, resource.key, outcome)

        if number is not None:
            item = ctx.obj["store"].get_work_item(context.repository.id, number)
            if item is not None and item.is_pull_request:
                outcome = orchestrator.sync(context, Resource.review(number))
                _add_row(table, context.repository.slug, f"review#{number}", outcome)

    console.print(table)
