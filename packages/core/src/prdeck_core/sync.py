"""Sync orchestrator — incremental, resumable fetch cycles.

A cycle for one (repository, resource):

    sync() → read cursor
           → page 1 with the conditional tag   (or resume at page N+1)
           → for each page: _fetch_with_retry() → one transaction:
                 entities upserted + cursor for exactly this page
           → last page also completes the cycle (page=0, since advanced)

Because the cursor is only ever written in the transaction that wrote its
page, a crash or failure at any point leaves the store describing a prefix
of the cycle, and the next call resumes right after it.

A repeated poll whose single page holds only entities the store already has
at the same version is treated like a 304: nothing is written and nobody is
notified.
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable

from prdeck_core.errors import (
    AuthExpired,
    PartialSyncFailure,
    RateLimited,
    RemoteNotFound,
    StoreIntegrityError,
    SyncCancelled,
    TransientNetwork,
)
from prdeck_core.gh.gateway import (
    EntityKind,
    NotModified,
    Page,
    PageCursor,
    Resource,
    ResourceKind,
)
from prdeck_store.models import SyncCursor

if TYPE_CHECKING:
    from prdeck_core.gh.gateway import RemoteGateway
    from prdeck_core.scheduler import ChangeNotifier
    from prdeck_store.base import BaseStore
    from prdeck_store.models import Repository, WorkItem

logger = logging.getLogger(__name__)

# Called after each committed page with (page number, entities in the page).
ProgressCallback = Callable[[int, int], None]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _max_ts(*values: str | None) -> str | None:
    present = [v for v in values if v]
    return max(present) if present else None


def resolve_linked(store: BaseStore, item: WorkItem) -> WorkItem | None:
    """Follow an item's weak link. Returns None when the link dangles or is absent."""
    if item.linked_number is None:
        return None
    return store.get_work_item(item.repository_id, item.linked_number)


class SyncContext:
    """Per-session state passed explicitly to every sync and action.

    Cancelling the context stops in-flight cycles at the next page boundary
    and wakes any backoff wait immediately. Child contexts are cancelled
    with their parent but can also be cancelled on their own, e.g. when the
    user leaves the item whose conversation a cycle is fetching.
    """

    def __init__(self, repository: Repository, viewer: str | None = None):
        self.repository = repository
        self.viewer = viewer
        self._cancel = threading.Event()
        self._children: weakref.WeakSet[SyncContext] = weakref.WeakSet()
        self._lock = threading.Lock()

    def child(self) -> SyncContext:
        child = SyncContext(self.repository, self.viewer)
        with self._lock:
            if self._cancel.is_set():
                child.cancel()
            else:
                self._children.add(child)
        return child

    def cancel(self) -> None:
        with self._lock:
            self._cancel.set()
            children = list(self._children)
            self._children.clear()
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        return self._cancel.wait(max(0.0, seconds))

    def check(self) -> None:
        if self._cancel.is_set():
            raise SyncCancelled(f"sync of {self.repository.slug} cancelled")


class SyncStatus(str, Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass
class SyncOutcome:
    resource: Resource
    status: SyncStatus = SyncStatus.UNCHANGED
    pages: int = 0
    items: int = 0
    changed_numbers: list[int] = field(default_factory=list)
    cursor: SyncCursor | None = None


@dataclass
class RetryPolicy:
    """Exponential backoff for transient failures.

    ``delay(n) = min(backoff_base * 2**(n-1), backoff_max)``. Rate-limit
    waits last until the reported reset and do not consume attempts.
    """

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    clock: Callable[[], float] = time.time

    @classmethod
    def from_config(cls, config: dict) -> RetryPolicy:
        return cls(
            max_attempts=int(config.get("max_attempts", 3)),
            backoff_base=float(config.get("backoff_base", 1.0)),
            backoff_max=float(config.get("backoff_max", 30.0)),
        )

    def delay(self, attempt: int) -> float:
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)

    def sleep(self, context: SyncContext, seconds: float) -> None:
        if context.wait(seconds):
            context.check()

    def wait_for_reset(self, context: SyncContext, exc: RateLimited) -> None:
        if exc.reset_at is None:
            seconds = self.backoff_max
        else:
            seconds = max(0.0, exc.reset_at - self.clock()) + 1
        logger.warning("Rate limited; waiting %.0fs for the limit to reset", seconds)
        self.sleep(context, seconds)


class SyncOrchestrator:
    def __init__(
        self,
        store: BaseStore,
        gateway: RemoteGateway,
        retry: RetryPolicy | None = None,
        notifier: ChangeNotifier | None = None,
        page_size: int = 100,
    ):
        self._store = store
        self._gateway = gateway
        self._retry = retry or RetryPolicy()
        self._notifier = notifier
        self._page_size = page_size

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def sync(
        self,
        context: SyncContext,
        resource: Resource,
        progress: ProgressCallback | None = None,
    ) -> SyncOutcome:
        """Run one cycle for ``resource``.

        Raises PartialSyncFailure when retries run out after some (or no)
        pages were committed, AuthExpired at once, SyncCancelled when the
        context is cancelled, and StoreIntegrityError when a write violates
        a cache constraint.
        """
        repository = context.repository
        store = self._store
        parent = self._parent_item(repository, resource)

        cursor = store.read_cursor(repository.id, resource.key) or SyncCursor(
            repository_id=repository.id, resource_kind=resource.key
        )
        outcome = SyncOutcome(resource=resource, cursor=cursor)

        if cursor.in_progress:
            logger.info("Resuming %s/%s after page %d", repository.slug, resource, cursor.page)
            request = PageCursor(page=cursor.page + 1, since=cursor.since, per_page=self._page_size)
        else:
            request = PageCursor(page=1, token=cursor.token, since=cursor.since, per_page=self._page_size)

        # The conditional tag of page 1 is what the next fresh cycle sends.
        first_token = cursor.token if cursor.in_progress else None
        high_water = cursor.high_water if cursor.in_progress else None
        # A completed cycle already describes every entity older than its watermark.
        repeat = cursor.updated_at is not None and not cursor.in_progress

        while True:
            context.check()
            try:
                page = self._fetch_with_retry(context, repository, resource, request)
            except RemoteNotFound:
                if parent is None:
                    raise
                return self._remove_parent(repository, parent, outcome)
            except (TransientNetwork, RateLimited) as exc:
                raise PartialSyncFailure(outcome, exc) from exc

            if isinstance(page, NotModified):
                logger.debug("%s/%s not modified", repository.slug, resource)
                return outcome

            last = not page.has_next
            fresh = self._fresh_entities(repository, resource, parent, page)
            if repeat and last and page.number == 1 and not fresh:
                # `since` is inclusive upstream, so an idle poll returns the newest
                # cached entities again under a new tag.
                logger.debug("%s/%s returned only cached entities", repository.slug, resource)
                return outcome

            if page.number == 1:
                first_token = page.token
            high_water = _max_ts(high_water, *(getattr(e, "updated_at", None) for e in page.entities))

            cursor = SyncCursor(
                repository_id=repository.id,
                resource_kind=resource.key,
                token=first_token,
                page=0 if last else page.number,
                since=_max_ts(request.since, high_water) if last else request.since,
                high_water=None if last else high_water,
                updated_at=_utc_now_iso(),
            )
            with store.transaction():
                changed = self._apply_page(repository, resource, parent, page, fresh)
                store.write_cursor(cursor)

            outcome.pages += 1
            outcome.items += len(page.entities)
            outcome.changed_numbers.extend(changed)
            outcome.cursor = cursor
            if fresh:
                outcome.status = SyncStatus.UPDATED
            if progress is not None:
                progress(page.number, len(page.entities))
            self._notify(repository, resource, changed)

            if last:
                logger.info(
                    "Synced %s/%s: %d page(s), %d entities",
                    repository.slug,
                    resource,
                    outcome.pages,
                    outcome.items,
                )
                return outcome
            request = PageCursor(page=page.number + 1, since=request.since, per_page=self._page_size)

    def refresh_item(self, context: SyncContext, number: int) -> WorkItem | None:
        """Refetch one work item. Returns None (and removes it locally) when it is gone upstream."""
        repository = context.repository
        try:
            item = self._call_with_retry(
                context, lambda: self._gateway.fetch_single(repository, EntityKind.WORK_ITEM, number)
            )
        except RemoteNotFound:
            if self._store.delete_work_item(repository.id, number):
                logger.info("#%d was deleted upstream; removed from cache", number)
                self._notify(repository, Resource.issues(), [number])
            return None
        item.repository_id = repository.id
        stored = self._store.upsert_work_item(item)
        self._notify(repository, Resource.issues(), [number])
        return stored

    def refresh_permission(self, context: SyncContext) -> Repository:
        repository = context.repository
        remote = self._call_with_retry(
            context, lambda: self._gateway.fetch_single(repository, EntityKind.REPOSITORY, repository.slug)
        )
        remote.slug = repository.slug
        stored = self._store.upsert_repository(remote)
        context.repository = stored
        return stored

    def refresh_labels(self, context: SyncContext) -> int:
        labels = self._fetch_catalog(context, Resource.labels())
        self._store.upsert_labels(context.repository.id, labels)
        return len(labels)

    def refresh_assignees(self, context: SyncContext) -> int:
        logins = self._fetch_catalog(context, Resource.assignees())
        self._store.upsert_assignable_users(context.repository.id, logins)
        return len(logins)

    # ------------------------------------------------------------------ #
    # Page application                                                     #
    # ------------------------------------------------------------------ #

    def _parent_item(self, repository: Repository, resource: Resource) -> WorkItem | None:
        if resource.number is None:
            return None
        parent = self._store.get_work_item(repository.id, resource.number)
        if parent is None:
            raise StoreIntegrityError(f"{resource} refers to #{resource.number}, which is not cached")
        if resource.kind is ResourceKind.REVIEW and not parent.is_pull_request:
            raise StoreIntegrityError(f"#{resource.number} is not a pull request")
        return parent

    def _fresh_entities(self, repository: Repository, resource: Resource, parent: WorkItem | None, page: Page) -> list:
        """Entities of ``page`` the store does not already hold at the same version."""
        store = self._store
        if resource.kind in (ResourceKind.ISSUES, ResourceKind.PULLS):
            fresh = []
            for item in page.entities:
                cached = store.get_work_item(repository.id, item.number)
                if (
                    cached is None
                    or item.updated_at is None
                    or cached.updated_at != item.updated_at
                    or cached.state != item.state
                    or (item.head_sha is not None and cached.head_sha != item.head_sha)
                ):
                    fresh.append(item)
            return fresh
        if resource.kind is ResourceKind.COMMENTS:
            fresh = []
            for comment in page.entities:
                cached = store.get_comment(comment.id, include_deleted=True)
                if (
                    cached is None
                    or comment.updated_at is None
                    or cached.updated_at != comment.updated_at
                    or cached.work_item_id != parent.id
                ):
                    fresh.append(comment)
            return fresh
        # Review snapshots are fingerprinted by the gateway.
        return list(page.entities)

    def _apply_page(
        self, repository: Repository, resource: Resource, parent: WorkItem | None, page: Page, fresh: list
    ) -> list[int]:
        store = self._store

        if resource.kind in (ResourceKind.ISSUES, ResourceKind.PULLS):
            entities = sorted(fresh, key=lambda e: e.updated_at or "", reverse=True)
            changed = []
            for item in entities:
                item.repository_id = repository.id
                store.upsert_work_item(item)
                changed.append(item.number)
            return changed

        if resource.kind is ResourceKind.COMMENTS:
            for comment in fresh:
                comment.work_item_id = parent.id
                store.upsert_comment(comment)
            return [parent.number] if fresh else []

        if resource.kind is ResourceKind.REVIEW:
            for snapshot in page.entities:
                snapshot.item.repository_id = repository.id
                store.upsert_work_item(snapshot.item)
                store.replace_review_snapshot(
                    parent.id,
                    snapshot.threads,
                    snapshot.files,
                    snapshot.head_sha,
                    keep_viewed=not snapshot.files_viewed_known,
                )
            return [parent.number] if page.entities else []

        raise ValueError(f"{resource} is a catalog; use refresh_labels/refresh_assignees")

    def _remove_parent(self, repository: Repository, parent: WorkItem, outcome: SyncOutcome) -> SyncOutcome:
        with self._store.transaction():
            self._store.delete_work_item(repository.id, parent.number)
        logger.info("#%d was deleted upstream; removed from cache", parent.number)
        outcome.status = SyncStatus.REMOVED
        outcome.changed_numbers.append(parent.number)
        self._notify(repository, outcome.resource, [parent.number])
        return outcome

    def _fetch_catalog(self, context: SyncContext, resource: Resource) -> list:
        entities: list = []
        request = PageCursor(page=1, per_page=self._page_size)
        while True:
            context.check()
            page = self._fetch_with_retry(context, context.repository, resource, request)
            if isinstance(page, NotModified):
                return entities
            entities.extend(page.entities)
            if not page.has_next:
                return entities
            request = PageCursor(page=page.number + 1, per_page=self._page_size)

    # ------------------------------------------------------------------ #
    # Retry                                                                #
    # ------------------------------------------------------------------ #

    def _fetch_with_retry(
        self, context: SyncContext, repository: Repository, resource: Resource, request: PageCursor
    ) -> Page | NotModified:
        return self._call_with_retry(context, lambda: self._gateway.fetch_page(repository, resource, request))

    def _call_with_retry(self, context: SyncContext, call):
        """Retry ``call`` on transient failures with exponential backoff.

        AuthExpired and RemoteNotFound propagate at once; rate limits wait
        for the reset without consuming an attempt.
        """
        attempt = 0
        while True:
            context.check()
            try:
                return call()
            except AuthExpired:
                raise
            except RateLimited as exc:
                self._retry.wait_for_reset(context, exc)
            except TransientNetwork as exc:
                attempt += 1
                if attempt >= self._retry.max_attempts:
                    logger.error("Remote call failed after %d attempts: %s", attempt, exc)
                    raise
                delay = self._retry.delay(attempt)
                logger.warning(
                    "Remote error (attempt %d/%d): %s. Retrying in %.1fs...",
                    attempt,
                    self._retry.max_attempts,
                    exc,
                    delay,
                )
                self._retry.sleep(context, delay)

    def _notify(self, repository: Repository, resource: Resource, numbers: list[int]) -> None:
        if self._notifier is not None and numbers:
            self._notifier.publish(repository.slug, resource.key, numbers[0] if len(numbers) == 1 else None)
