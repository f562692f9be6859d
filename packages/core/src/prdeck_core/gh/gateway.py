"""Remote gateway contract.

The sync orchestrator and the write-through coordinator talk to the remote
service only through RemoteGateway. Implementations translate transport
failures into prdeck_core.errors classes; callers never see HTTP status
codes or SDK exceptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from prdeck_store.models import DiffFile, Repository, ReviewThread, WorkItem


class ResourceKind(str, Enum):
    ISSUES = "issues"  # every work item, issues and pull requests alike
    PULLS = "pulls"  # pull request details (head sha, merge state)
    COMMENTS = "comments"  # conversation of one work item
    REVIEW = "review"  # files, threads and review comments of one pull request
    LABELS = "labels"
    ASSIGNEES = "assignees"


class EntityKind(str, Enum):
    REPOSITORY = "repository"
    WORK_ITEM = "work_item"
    COMMENT = "comment"
    REVIEW_COMMENT = "review_comment"
    THREAD = "thread"


class Capability(str, Enum):
    CONDITIONAL_FETCH = "conditional_fetch"
    REVIEW_THREADS = "review_threads"
    THREAD_RESOLUTION = "thread_resolution"
    VIEWED_FILES = "viewed_files"


_PER_ITEM = (ResourceKind.COMMENTS, ResourceKind.REVIEW)


@dataclass(frozen=True)
class Resource:
    """One syncable collection. ``key`` names its cursor in the store."""

    kind: ResourceKind
    number: int | None = None

    def __post_init__(self):
        if (self.kind in _PER_ITEM) != (self.number is not None):
            raise ValueError(f"{self.kind.value} resource {'needs' if self.kind in _PER_ITEM else 'takes no'} number")

    @property
    def key(self) -> str:
        if self.number is None:
            return self.kind.value
        return f"{self.kind.value}#{self.number}"

    @classmethod
    def parse(cls, key: str) -> Resource:
        kind, _, number = key.partition("#")
        return cls(ResourceKind(kind), int(number) if number else None)

    @classmethod
    def issues(cls) -> Resource:
        return cls(ResourceKind.ISSUES)

    @classmethod
    def pulls(cls) -> Resource:
        return cls(ResourceKind.PULLS)

    @classmethod
    def comments(cls, number: int) -> Resource:
        return cls(ResourceKind.COMMENTS, number)

    @classmethod
    def review(cls, number: int) -> Resource:
        return cls(ResourceKind.REVIEW, number)

    @classmethod
    def labels(cls) -> Resource:
        return cls(ResourceKind.LABELS)

    @classmethod
    def assignees(cls) -> Resource:
        return cls(ResourceKind.ASSIGNEES)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class PageCursor:
    """What the orchestrator asks the gateway for."""

    page: int = 1
    token: str | None = None  # conditional tag; only honoured on page 1
    since: str | None = None  # only entities updated at or after this instant
    per_page: int = 100


@dataclass
class Page:
    number: int
    entities: list[Any]
    token: str | None = None  # conditional tag of this response
    has_next: bool = False


@dataclass
class ReviewSnapshot:
    """The complete review state of one pull request as of one fetch."""

    item: WorkItem
    head_sha: str | None
    files: list[DiffFile] = field(default_factory=list)
    threads: list[ReviewThread] = field(default_factory=list)
    files_viewed_known: bool = False  # True when ``DiffFile.viewed`` came from the remote


class NotModified:
    """Returned instead of a Page when the conditional tag still matches."""

    def __repr__(self) -> str:
        return "NOT_MODIFIED"


NOT_MODIFIED = NotModified()


class RemoteGateway(ABC):
    """Every remote interaction the core needs, behind one interface."""

    @abstractmethod
    def fetch_page(self, repository: Repository, resource: Resource, cursor: PageCursor) -> Page | NotModified:
        """Fetch one page of ``resource``.

        Work-item pages are ordered newest-updated first. A REVIEW resource
        always returns a single page holding one ReviewSnapshot.
        """

    @abstractmethod
    def fetch_single(self, repository: Repository, kind: EntityKind, ident: Any) -> Any:
        """Fetch one entity. Raises RemoteNotFound when it no longer exists."""

    @abstractmethod
    def mutate(self, repository: Repository, action: Any) -> Any:
        """Perform a write action and return the entity as the server stored it (None for deletions)."""

    @abstractmethod
    def supports(self, capability: Capability) -> bool: ...
