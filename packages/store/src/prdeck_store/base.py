"""Abstract store interface.

The sync orchestrator, the write-through coordinator and the UI all depend
on BaseStore, not on a concrete backend. The store is pure persistence plus
integrity constraints: it never talks to the remote service.

Writes go through a single logical writer. Every public mutator is its own
transaction unless it runs inside ``transaction()``, in which case all of
them commit (or roll back) together.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prdeck_store.models import (
        Comment,
        DiffFile,
        Label,
        Repository,
        ReviewComment,
        ReviewThread,
        SyncCursor,
        WorkItem,
        WorkItemFilter,
    )


class StoreIntegrityError(Exception):
    """A write violated a store constraint. The enclosing transaction is aborted."""


class BaseStore(ABC):
    """Durable, queryable cache of everything the client has synchronized."""

    # ------------------------------------------------------------------ #
    # Transactions                                                        #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Group several writes into one durable commit.

        Nested use joins the outer transaction. Any exception rolls back
        everything written since the outermost ``transaction()`` began.
        """

    @property
    @abstractmethod
    def commit_count(self) -> int:
        """Number of write transactions committed through this instance."""

    # ------------------------------------------------------------------ #
    # Repositories                                                         #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def upsert_repository(self, repository: Repository) -> Repository:
        """Insert or update by slug; missing optional values keep what is stored."""

    @abstractmethod
    def get_repository(self, slug: str) -> Repository | None: ...

    @abstractmethod
    def get_repository_by_id(self, repository_id: int) -> Repository | None: ...

    @abstractmethod
    def list_repositories(self) -> list[Repository]: ...

    # ------------------------------------------------------------------ #
    # Work items                                                           #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def upsert_work_item(self, item: WorkItem) -> WorkItem:
        """Insert or update keyed by (repository, number).

        Last-writer-wins on ``updated_at``: an older version never
        overwrites a newer one. Returns the row as stored.
        """

    @abstractmethod
    def get_work_item(self, repository_id: int, number: int) -> WorkItem | None: ...

    @abstractmethod
    def get_work_item_by_id(self, work_item_id: int) -> WorkItem | None: ...

    @abstractmethod
    def read_work_items(self, repository_id: int, filter: WorkItemFilter | None = None) -> list[WorkItem]:
        """Return a snapshot of the repository's work items, newest number first."""

    @abstractmethod
    def delete_work_item(self, repository_id: int, number: int) -> bool:
        """Remove an item and everything it owns. Returns False if it was not cached."""

    # ------------------------------------------------------------------ #
    # Conversation comments                                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def upsert_comment(self, comment: Comment) -> bool:
        """Insert or update a comment. Returns False when an older version was ignored.

        Raises StoreIntegrityError if the parent work item does not exist.
        """

    @abstractmethod
    def get_comment(self, comment_id: int, include_deleted: bool = False) -> Comment | None: ...

    @abstractmethod
    def list_comments(self, work_item_id: int) -> list[Comment]:
        """Live comments for an item, oldest first."""

    @abstractmethod
    def mark_comment_deleted(self, comment_id: int, deleted_at: str) -> bool: ...

    @abstractmethod
    def touch_comments(self, work_item_id: int, accessed_at: int) -> None: ...

    @abstractmethod
    def prune_comments(self, ttl_seconds: int, cap: int, now: int | None = None) -> int:
        """Drop comments not accessed within ``ttl_seconds`` and cap the table size.

        Items that lose comments also lose their ``comments#<number>`` cursor,
        so the next sync refetches the whole conversation.
        """

    @abstractmethod
    def purge_deleted(self, older_than: str) -> int:
        """Physically remove soft-deleted comments whose marker is older than ``older_than``."""

    # ------------------------------------------------------------------ #
    # Review threads and diff files                                        #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def upsert_thread(self, thread: ReviewThread) -> None:
        """Insert or update a thread and its comments. The anchor is kept as first stored."""

    @abstractmethod
    def upsert_review_comment(self, comment: ReviewComment) -> bool: ...

    @abstractmethod
    def get_review_comment(self, comment_id: int, include_deleted: bool = False) -> ReviewComment | None: ...

    @abstractmethod
    def mark_review_comment_deleted(self, comment_id: int, deleted_at: str) -> bool: ...

    @abstractmethod
    def get_thread(self, thread_id: str) -> ReviewThread | None: ...

    @abstractmethod
    def list_threads(self, work_item_id: int) -> list[ReviewThread]: ...

    @abstractmethod
    def replace_review_snapshot(
        self,
        work_item_id: int,
        threads: list[ReviewThread],
        files: list[DiffFile],
        head_sha: str | None,
        keep_viewed: bool = True,
    ) -> None:
        """Apply a complete review snapshot for one pull request.

        The snapshot is an explicit statement of the full thread set, so
        threads missing from it are deleted.
        """

    @abstractmethod
    def replace_diff_files(self, work_item_id: int, files: list[DiffFile], keep_viewed: bool = True) -> None:
        """Replace the changed-file list.

        With ``keep_viewed`` the local ``viewed`` flag survives for paths still
        in the list; otherwise the incoming (remote) flag is authoritative.
        """

    @abstractmethod
    def list_diff_files(self, work_item_id: int) -> list[DiffFile]: ...

    @abstractmethod
    def set_file_viewed(self, work_item_id: int, path: str, viewed: bool) -> bool: ...

    # ------------------------------------------------------------------ #
    # Repository catalogs                                                  #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def upsert_labels(self, repository_id: int, labels: list[Label]) -> None: ...

    @abstractmethod
    def list_labels(self, repository_id: int) -> list[Label]: ...

    @abstractmethod
    def upsert_assignable_users(self, repository_id: int, logins: list[str]) -> None: ...

    @abstractmethod
    def list_assignable_users(self, repository_id: int) -> list[str]: ...

    # ------------------------------------------------------------------ #
    # Sync cursors                                                         #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def read_cursor(self, repository_id: int, resource_kind: str) -> SyncCursor | None: ...

    @abstractmethod
    def write_cursor(self, cursor: SyncCursor) -> None:
        """Persist a cursor. Call inside the transaction that wrote its page."""

    def close(self) -> None:
        """Release any resources held by the store (connections, file handles).

        Default is a no-op so callers can always call close() safely.
        """
