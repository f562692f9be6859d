"""Cached entity models.

Decoupled from prdeck_core so the store layer can be used independently:
the gateway adapter maps API payloads into these dataclasses, and the store
is the only component that persists them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ItemKind(str, Enum):
    ISSUE = "issue"
    PULL_REQUEST = "pull_request"


class ItemState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"  # pull requests only


class Side(str, Enum):
    """Which side of a diff a review anchor refers to."""

    OLD = "old"  # GitHub's LEFT
    NEW = "new"  # GitHub's RIGHT

    @classmethod
    def from_api(cls, value: str | None) -> Side:
        if value and value.upper() == "LEFT":
            return cls.OLD
        return cls.NEW

    def to_api(self) -> str:
        return "LEFT" if self is Side.OLD else "RIGHT"


# Permissions that allow label/assignee/state changes on somebody else's item.
TRIAGE_PERMISSIONS = frozenset({"triage", "write", "maintain", "admin"})


@dataclass
class Repository:
    """A remote repository selected by the user.

    Rows are created on first selection and never deleted automatically.
    """

    slug: str  # owner/name
    id: int | None = None
    remote_id: int | None = None
    permission: str | None = None  # None = not fetched yet
    last_full_scan_at: str | None = None

    @property
    def owner(self) -> str:
        return self.slug.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.slug.split("/", 1)[1]

    def can_triage(self) -> bool | None:
        """Return None when the permission has not been cached yet."""
        if self.permission is None:
            return None
        return self.permission in TRIAGE_PERMISSIONS


@dataclass
class WorkItem:
    """An issue or pull request, unified as one variant-tagged entity."""

    repository_id: int
    number: int
    kind: ItemKind
    title: str
    state: ItemState
    remote_id: int | None = None
    id: int | None = None
    body: str = ""
    author: str = ""
    labels: set[str] = field(default_factory=set)
    assignees: set[str] = field(default_factory=set)
    comments_count: int = 0
    head_sha: str | None = None
    # Weak reference: the number of a linked issue/PR. May dangle.
    linked_number: int | None = None
    created_at: str | None = None
    updated_at: str | None = None  # ISO-8601 UTC

    @property
    def is_pull_request(self) -> bool:
        return self.kind is ItemKind.PULL_REQUEST


@dataclass
class Comment:
    """A conversation comment on a work item."""

    id: int
    work_item_id: int | None
    author: str
    body: str
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None
    last_accessed_at: int | None = None  # epoch seconds


@dataclass(frozen=True)
class ReviewAnchor:
    """Where a review thread was created. Immutable once created upstream."""

    commit_sha: str
    path: str
    side: Side
    line: int
    start_line: int | None = None  # set for multiline threads

    @property
    def is_multiline(self) -> bool:
        return self.start_line is not None and self.start_line != self.line


@dataclass
class ReviewComment:
    id: int
    thread_id: str | None
    author: str
    body: str
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None
    # Position metadata used to re-anchor after a diff refresh.
    original_commit_sha: str | None = None
    original_line: int | None = None
    original_start_line: int | None = None
    line: int | None = None  # re-mapped onto the current head; None when outdated upstream
    start_line: int | None = None
    position: int | None = None
    diff_hunk: str | None = None
    in_reply_to_id: int | None = None


@dataclass
class ReviewThread:
    id: str
    work_item_id: int | None
    anchor: ReviewAnchor
    resolved: bool = False
    comments: list[ReviewComment] = field(default_factory=list)

    @property
    def root(self) -> ReviewComment | None:
        return self.comments[0] if self.comments else None


@dataclass
class DiffFile:
    work_item_id: int | None
    path: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0
    patch: str | None = None
    viewed: bool = False


@dataclass
class Label:
    name: str
    color: str = ""


@dataclass
class SyncCursor:
    """Resumability anchor for one (repository, resource kind).

    ``page`` is the last page committed by a cycle that has not finished yet;
    0 means the previous cycle completed and the next one starts fresh.
    """

    repository_id: int
    resource_kind: str
    token: str | None = None
    page: int = 0
    since: str | None = None
    high_water: str | None = None
    updated_at: str | None = None

    @property
    def in_progress(self) -> bool:
        return self.page > 0


@dataclass
class WorkItemFilter:
    kind: ItemKind | None = None
    state: ItemState | None = None
    label: str | None = None
    assignee: str | None = None
    text: str | None = None
    limit: int | None = None
