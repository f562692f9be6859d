"""Shared plumbing for commands: repository selection and error reporting."""

from __future__ import annotations

import functools

import click

from prdeck_core.config import normalize_slug
from prdeck_core.errors import AuthExpired, PartialSyncFailure, PrdeckError, StoreIntegrityError
from prdeck_core.sync import RetryPolicy, SyncContext, SyncOrchestrator
from prdeck_store.models import Repository


def repository_context(ctx: click.Context, repo: str | None) -> SyncContext:
    """Resolve ``--repo`` (or the single configured repository) into a SyncContext.

    The repository row is created on first selection.
    """
    store = ctx.obj["store"]
    slug = repo or _default_repo(ctx.obj["config"])
    try:
        slug = normalize_slug(slug)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--repo") from exc

    repository = store.get_repository(slug) or store.upsert_repository(Repository(slug=slug))
    return SyncContext(repository)


def configured_repos(ctx: click.Context, repos: tuple[str, ...]) -> list[str]:
    slugs = list(repos) or list(ctx.obj["config"].get("repositories") or [])
    if not slugs:
        raise click.UsageError("No repository given. Pass --repo owner/name or list repositories in .prdeck.yml.")
    return slugs


def _default_repo(config: dict) -> str:
    repos = config.get("repositories") or []
    if len(repos) != 1:
        raise click.UsageError("Pass --repo owner/name (or configure exactly one repository in .prdeck.yml).")
    return repos[0]


def build_orchestrator(ctx: click.Context, notifier=None) -> SyncOrchestrator:
    config = ctx.obj["config"]
    return SyncOrchestrator(
        ctx.obj["store"],
        ctx.obj["gateway"],
        retry=RetryPolicy.from_config(config),
        notifier=notifier,
        page_size=config["page_size"],
    )


def build_coordinator(ctx: click.Context):
    from prdeck_core.actions import WriteThroughCoordinator

    return WriteThroughCoordinator(
        ctx.obj["store"],
        ctx.obj["gateway"],
        retry=RetryPolicy.from_config(ctx.obj["config"]),
    )


def require_item(ctx: click.Context, context: SyncContext, number: int):
    item = ctx.obj["store"].get_work_item(context.repository.id, number)
    if item is None:
        raise click.ClickException(
            f"#{number} is not cached for {context.repository.slug}. Run `prdeck sync --repo "
            f"{context.repository.slug}` first."
        )
    return item


def reports_errors(fn):
    """Turn prdeck errors into click errors with a useful message."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except AuthExpired as exc:
            raise click.ClickException(
                f"GitHub rejected the credentials ({exc}). Set GITHUB_TOKEN or run `gh auth login`."
            ) from exc
        except PartialSyncFailure as exc:
            raise click.ClickException(
                f"{exc}. Committed pages are kept; run the command again to resume."
            ) from exc
        except StoreIntegrityError as exc:
            raise click.ClickException(f"Cache integrity error: {exc}. Try `prdeck reset-cache`.") from exc
        except PrdeckError as exc:
            raise click.ClickException(str(exc)) from exc

    return wrapper
