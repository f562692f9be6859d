"""Write-through coordinator: user mutations, remote first, then the cache.

Every action follows the same path:

    apply() → _validate()        ← cached state and permission; no-ops end here
            → _call_with_retry() → gateway.mutate()
            → _commit()          ← server response upserted, server wins

Nothing is written locally before the remote confirms. A failed action
leaves the store exactly as it was, except where the failure itself is
news about the remote (a 404 removes the entity, a conflict refreshes it).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from itertools import count
from typing import TYPE_CHECKING, Any, ClassVar

from prdeck_core.errors import (
    AuthExpired,
    Conflict,
    PermissionDenied,
    PrdeckError,
    RateLimited,
    RemoteNotFound,
    TransientNetwork,
)
from prdeck_core.gh.gateway import Capability, EntityKind, NotModified, PageCursor, Resource
from prdeck_store.models import ItemState, Side

if TYPE_CHECKING:
    from prdeck_core.gh.gateway import RemoteGateway
    from prdeck_core.scheduler import ChangeNotifier
    from prdeck_core.sync import RetryPolicy, SyncContext
    from prdeck_store.base import BaseStore
    from prdeck_store.models import Repository, WorkItem

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------- #
# Actions                                                                 #
# ---------------------------------------------------------------------- #


@dataclass(frozen=True)
class Action:
    # Retrying a non-idempotent action after a timeout could apply it twice.
    idempotent: ClassVar[bool] = True
    requires_triage: ClassVar[bool] = False

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class AddComment(Action):
    idempotent: ClassVar[bool] = False

    number: int
    body: str


@dataclass(frozen=True)
class EditComment(Action):
    comment_id: int
    body: str


@dataclass(frozen=True)
class DeleteComment(Action):
    comment_id: int


@dataclass(frozen=True)
class ResolveThread(Action):
    thread_id: str


@dataclass(frozen=True)
class ReopenThread(Action):
    thread_id: str


@dataclass(frozen=True)
class CloseItem(Action):
    requires_triage: ClassVar[bool] = True

    number: int


@dataclass(frozen=True)
class ReopenItem(Action):
    requires_triage: ClassVar[bool] = True

    number: int


@dataclass(frozen=True)
class SetLabels(Action):
    requires_triage: ClassVar[bool] = True

    number: int
    labels: frozenset[str]

    def __post_init__(self):
        object.__setattr__(self, "labels", frozenset(self.labels))


@dataclass(frozen=True)
class SetAssignees(Action):
    requires_triage: ClassVar[bool] = True

    number: int
    assignees: frozenset[str]

    def __post_init__(self):
        object.__setattr__(self, "assignees", frozenset(self.assignees))


@dataclass(frozen=True)
class MarkFileViewed(Action):
    number: int
    path: str
    viewed: bool = True


@dataclass(frozen=True)
class AddReviewComment(Action):
    """A new review thread, or a reply when ``reply_to`` names a comment in an existing one."""

    idempotent: ClassVar[bool] = False

    number: int
    body: str
    path: str | None = None
    line: int | None = None
    side: Side = Side.NEW
    start_line: int | None = None
    commit_sha: str | None = None
    reply_to: int | None = None

    def __post_init__(self):
        if self.reply_to is None and (self.path is None or self.line is None):
            raise ValueError("a new review thread needs a path and a line")


@dataclass(frozen=True)
class EditReviewComment(Action):
    comment_id: int
    body: str


@dataclass(frozen=True)
class DeleteReviewComment(Action):
    comment_id: int


# ---------------------------------------------------------------------- #
# Outcomes                                                                #
# ---------------------------------------------------------------------- #


class ActionState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class PendingAction:
    id: int
    action: Action
    state: ActionState = ActionState.PENDING
    attempts: int = 0
    error: BaseException | None = None


@dataclass
class ApplyOutcome:
    action: Action
    state: ActionState
    entity: Any = None
    error: BaseException | None = None
    noop: bool = False

    @property
    def ok(self) -> bool:
        return self.state is ActionState.CONFIRMED

    @property
    def retryable(self) -> bool:
        """Whether re-issuing the same action later could succeed."""
        return isinstance(self.error, (TransientNetwork, RateLimited))


# ---------------------------------------------------------------------- #
# Coordinator                                                             #
# ---------------------------------------------------------------------- #


class WriteThroughCoordinator:
    def __init__(
        self,
        store: BaseStore,
        gateway: RemoteGateway,
        retry: RetryPolicy | None = None,
        notifier: ChangeNotifier | None = None,
    ):
        from prdeck_core.sync import RetryPolicy

        self._store = store
        self._gateway = gateway
        self._retry = retry or RetryPolicy()
        self._notifier = notifier
        self._ids = count(1)
        self._pending: dict[int, PendingAction] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def apply(self, context: SyncContext, action: Action) -> ApplyOutcome:
        """Validate, send and commit one action.

        Returns a FAILED outcome for remote-side refusals. Raises AuthExpired,
        Conflict (after refreshing the entity) and StoreIntegrityError.
        """
        repository = context.repository

        try:
            noop = self._validate(repository, action)
        except (PermissionDenied, RemoteNotFound, Conflict) as exc:
            logger.warning("%s rejected locally: %s", action.name, exc)
            return ApplyOutcome(action, ActionState.FAILED, error=exc)
        if noop is not None:
            logger.debug("%s already satisfied; nothing to send", action.name)
            return ApplyOutcome(action, ActionState.CONFIRMED, entity=noop, noop=True)

        pending = PendingAction(id=next(self._ids), action=action)
        with self._lock:
            self._pending[pending.id] = pending

        try:
            response = self._call_with_retry(context, pending)
        except Conflict as exc:
            self._fail(pending, exc)
            self._refresh_after_conflict(repository, action)
            raise
        except RemoteNotFound as exc:
            self._fail(pending, exc)
            self._remove_missing(repository, action)
            return ApplyOutcome(action, ActionState.FAILED, error=exc)
        except AuthExpired as exc:
            self._fail(pending, exc)
            raise
        except PrdeckError as exc:
            self._fail(pending, exc)
            logger.warning("%s failed: %s", action.name, exc)
            return ApplyOutcome(action, ActionState.FAILED, error=exc)

        entity = self._commit(repository, action, response)
        with self._lock:
            pending.state = ActionState.CONFIRMED
            self._pending.pop(pending.id, None)
        self._notify(repository, action)
        return ApplyOutcome(action, ActionState.CONFIRMED, entity=entity)

    def pending(self) -> list[PendingAction]:
        """Actions sent to the remote and not yet confirmed or failed."""
        with self._lock:
            return list(self._pending.values())

    # ------------------------------------------------------------------ #
    # Validation                                                           #
    # ------------------------------------------------------------------ #

    def _validate(self, repository: Repository, action: Action) -> Any:
        """Raise PermissionDenied/RemoteNotFound, or return the cached entity if there is nothing to do."""
        if action.requires_triage and repository.can_triage() is False:
            raise PermissionDenied(f"{action.name} needs triage access to {repository.slug}")

        store = self._store
        if isinstance(action, (CloseItem, ReopenItem, SetLabels, SetAssignees, MarkFileViewed)):
            item = self._cached_item(repository, action.number)
            if isinstance(action, CloseItem) and item.state is not ItemState.OPEN:
                return item
            if isinstance(action, ReopenItem):
                if item.state is ItemState.MERGED:
                    raise Conflict(f"#{item.number} is merged and cannot be reopened")
                if item.state is ItemState.OPEN:
                    return item
            if isinstance(action, SetLabels) and action.labels == frozenset(item.labels):
                return item
            if isinstance(action, SetAssignees) and action.assignees == frozenset(item.assignees):
                return item
            if isinstance(action, MarkFileViewed):
                if not item.is_pull_request:
                    raise ValueError(f"#{item.number} is not a pull request")
                for f in store.list_diff_files(item.id):
                    if f.path == action.path and f.viewed == action.viewed:
                        return f
        elif isinstance(action, (ResolveThread, ReopenThread)):
            thread = store.get_thread(action.thread_id)
            if thread is not None and thread.resolved == isinstance(action, ResolveThread):
                return thread
        elif isinstance(action, AddComment):
            self._cached_item(repository, action.number)
            if not action.body.strip():
                raise ValueError("comment body is empty")
        elif isinstance(action, AddReviewComment):
            item = self._cached_item(repository, action.number)
            if not item.is_pull_request:
                raise ValueError(f"#{item.number} is not a pull request")
            if not action.body.strip():
                raise ValueError("comment body is empty")
        elif isinstance(action, EditComment):
            comment = store.get_comment(action.comment_id)
            if comment is not None and comment.body == action.body:
                return comment
        return None

    def _cached_item(self, repository: Repository, number: int) -> WorkItem:
        item = self._store.get_work_item(repository.id, number)
        if item is None:
            raise RemoteNotFound(f"#{number} is not in the local cache for {repository.slug}; sync first")
        return item

    # ------------------------------------------------------------------ #
    # Remote call                                                          #
    # ------------------------------------------------------------------ #

    def _call_with_retry(self, context: SyncContext, pending: PendingAction) -> Any:
        action = pending.action
        repository = context.repository

        if isinstance(action, MarkFileViewed) and not self._gateway.supports(Capability.VIEWED_FILES):
            # Viewed state is local-only when the remote cannot store it.
            return None

        attempt = 0
        while True:
            pending.attempts += 1
            try:
                return self._gateway.mutate(repository, action)
            except RateLimited as exc:
                if not action.idempotent:
                    raise
                self._retry.wait_for_reset(context, exc)
            except TransientNetwork as exc:
                attempt += 1
                if not action.idempotent or attempt >= self._retry.max_attempts:
                    logger.error("%s failed after %d attempt(s): %s", action.name, attempt, exc)
                    raise
                delay = self._retry.delay(attempt)
                logger.warning(
                    "%s transient error (attempt %d/%d): %s. Retrying in %.1fs...",
                    action.name,
                    attempt,
                    self._retry.max_attempts,
                    exc,
                    delay,
                )
                self._retry.sleep(context, delay)

    def _fail(self, pending: PendingAction, exc: BaseException) -> None:
        with self._lock:
            pending.state = ActionState.FAILED
            pending.error = exc
            self._pending.pop(pending.id, None)

    # ------------------------------------------------------------------ #
    # Commit                                                               #
    # ------------------------------------------------------------------ #

    def _commit(self, repository: Repository, action: Action, response: Any) -> Any:
        store = self._store
        now = _utc_now_iso()

        if isinstance(action, (CloseItem, ReopenItem, SetLabels, SetAssignees)):
            response.repository_id = repository.id
            return store.upsert_work_item(response)

        if isinstance(action, (AddComment, EditComment)):
            if isinstance(action, AddComment):
                parent = self._cached_item(repository, action.number)
                response.work_item_id = parent.id
            else:
                cached = store.get_comment(action.comment_id, include_deleted=True)
                response.work_item_id = response.work_item_id or (cached.work_item_id if cached else None)
            store.upsert_comment(response)
            return response

        if isinstance(action, DeleteComment):
            store.mark_comment_deleted(action.comment_id, now)
            return None

        if isinstance(action, (ResolveThread, ReopenThread)):
            if response is None:
                return None
            cached = store.get_thread(action.thread_id)
            response.work_item_id = response.work_item_id or (cached.work_item_id if cached else None)
            store.upsert_thread(response)
            return store.get_thread(action.thread_id)

        if isinstance(action, MarkFileViewed):
            item = self._cached_item(repository, action.number)
            store.set_file_viewed(item.id, action.path, action.viewed)
            return None

        if isinstance(action, AddReviewComment):
            return self._commit_review_comment(repository, action, response)

        if isinstance(action, EditReviewComment):
            cached = self._thread_of(action.comment_id, response)
            response.thread_id = cached
            if cached is not None:
                store.upsert_review_comment(response)
            return response

        if isinstance(action, DeleteReviewComment):
            store.mark_review_comment_deleted(action.comment_id, now)
            return None

        raise TypeError(f"unsupported action {action!r}")

    def _commit_review_comment(self, repository: Repository, action: AddReviewComment, response: Any) -> Any:
        if action.reply_to is not None:
            thread_id = self._thread_of(action.reply_to, response)
            if thread_id is not None:
                response.thread_id = thread_id
                self._store.upsert_review_comment(response)
                return response

        # A new thread: its identity is only known from a fresh snapshot.
        item = self._cached_item(repository, action.number)
        try:
            page = self._gateway.fetch_page(repository, Resource.review(action.number), PageCursor())
        except PrdeckError as exc:
            logger.warning("Review comment posted but the thread refresh failed: %s", exc)
            return response
        if not isinstance(page, NotModified) and page.entities:
            snapshot = page.entities[0]
            self._store.replace_review_snapshot(
                item.id,
                snapshot.threads,
                snapshot.files,
                snapshot.head_sha,
                keep_viewed=not snapshot.files_viewed_known,
            )
        return response

    def _thread_of(self, comment_id: int, response: Any) -> str | None:
        if getattr(response, "thread_id", None):
            return response.thread_id
        cached = self._store.get_review_comment(comment_id, include_deleted=True)
        return cached.thread_id if cached else None

    # ------------------------------------------------------------------ #
    # Failure handling                                                     #
    # ------------------------------------------------------------------ #

    def _refresh_after_conflict(self, repository: Repository, action: Action) -> None:
        """Replace the cached entity with the authoritative remote version."""
        try:
            if hasattr(action, "number"):
                item = self._gateway.fetch_single(repository, EntityKind.WORK_ITEM, action.number)
                item.repository_id = repository.id
                self._store.upsert_work_item(item)
            elif isinstance(action, (EditComment, DeleteComment)):
                comment = self._gateway.fetch_single(repository, EntityKind.COMMENT, action.comment_id)
                cached = self._store.get_comment(action.comment_id, include_deleted=True)
                if cached is not None:
                    comment.work_item_id = cached.work_item_id
                    self._store.upsert_comment(comment)
            elif isinstance(action, (ResolveThread, ReopenThread)):
                thread = self._gateway.fetch_single(repository, EntityKind.THREAD, action.thread_id)
                cached = self._store.get_thread(action.thread_id)
                if cached is not None:
                    thread.work_item_id = cached.work_item_id
                    self._store.upsert_thread(thread)
        except RemoteNotFound:
            self._remove_missing(repository, action)
        except PrdeckError as exc:
            logger.warning("Could not refresh after conflict on %s: %s", action.name, exc)
        self._notify(repository, action)

    def _remove_missing(self, repository: Repository, action: Action) -> None:
        store = self._store
        now = _utc_now_iso()
        if isinstance(action, (EditComment, DeleteComment)):
            store.mark_comment_deleted(action.comment_id, now)
        elif isinstance(action, (EditReviewComment, DeleteReviewComment)):
            store.mark_review_comment_deleted(action.comment_id, now)
        elif isinstance(action, (ResolveThread, ReopenThread)):
            thread = store.get_thread(action.thread_id)
            if thread is not None:
                for comment in thread.comments:
                    store.mark_review_comment_deleted(comment.id, now)
        elif hasattr(action, "number"):
            if store.delete_work_item(repository.id, action.number):
                logger.info("#%d no longer exists upstream; removed from cache", action.number)
        self._notify(repository, action)

    def _notify(self, repository: Repository, action: Action) -> None:
        if self._notifier is not None:
            self._notifier.publish(repository.slug, action.name, getattr(action, "number", None))
