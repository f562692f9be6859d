"""Shared fixtures: a real SQLite store on tmp_path and a scripted in-memory gateway."""

from __future__ import annotations

import copy
import hashlib

import pytest

from prdeck_core.gh.gateway import NOT_MODIFIED, Capability, Page, RemoteGateway
from prdeck_core.sync import RetryPolicy, SyncContext
from prdeck_store.models import ItemKind, ItemState, Repository, WorkItem
from prdeck_store.sqlite import SQLiteStore


class FakeGateway(RemoteGateway):
    """In-memory remote.

    ``pages[resource_key]`` lists the entities of each page. ``etags`` holds
    the conditional tag per resource; page 1 answers NOT_MODIFIED when the
    request carries it. ``script`` is consumed one entry per remote call:
    an exception instance is raised, None lets the call through.

    With ``inclusive_since`` set the fake behaves like GitHub: ``since``
    keeps entities updated at exactly that instant, and the tag is a hash
    of the response body.
    """

    def __init__(self):
        self.pages: dict[str, list[list]] = {}
        self.etags: dict[str, str] = {}
        self.singles: dict[tuple, object] = {}
        self.script: list[BaseException | None] = []
        self.capabilities = set(Capability)
        self.calls: list[tuple[str, object]] = []
        self.mutations: list = []
        self.mutate_results: list = []
        self.inclusive_since = False

    def _next_scripted(self):
        if self.script:
            exc = self.script.pop(0)
            if exc is not None:
                raise exc

    def fetch_page(self, repository, resource, cursor):
        self.calls.append((resource.key, cursor))
        self._next_scripted()
        pages = self.pages.get(resource.key) or [[]]
        entities = pages[cursor.page - 1] if cursor.page <= len(pages) else []
        etag = self.etags.get(resource.key)
        if self.inclusive_since:
            if cursor.since:
                entities = [e for e in entities if (e.updated_at or "") >= cursor.since]
            etag = '"' + hashlib.sha256(repr(entities).encode()).hexdigest()[:16] + '"'
        if cursor.page == 1 and cursor.token is not None and cursor.token == etag:
            return NOT_MODIFIED
        return Page(
            number=cursor.page,
            entities=copy.deepcopy(entities),
            token=etag if cursor.page == 1 else None,
            has_next=cursor.page < len(pages),
        )

    def fetch_single(self, repository, kind, ident):
        self.calls.append((kind.value, ident))
        self._next_scripted()
        value = self.singles[(kind, ident)]
        if isinstance(value, BaseException):
            raise value
        return copy.deepcopy(value)

    def mutate(self, repository, action):
        self.mutations.append(action)
        self._next_scripted()
        result = self.mutate_results.pop(0) if self.mutate_results else None
        if isinstance(result, BaseException):
            raise result
        return copy.deepcopy(result)

    def supports(self, capability):
        return capability in self.capabilities


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(db_path=tmp_path / "cache.db")
    yield s
    s.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def repo(store):
    return store.upsert_repository(Repository(slug="acme/widgets", permission="write"))


@pytest.fixture
def context(repo):
    return SyncContext(repo, viewer="alice")


@pytest.fixture
def retry(mocker):
    """A retry policy that never actually sleeps."""
    policy = RetryPolicy(max_attempts=3, backoff_base=0.0, backoff_max=0.0, clock=lambda: 1000.0)
    mocker.patch.object(policy, "sleep")
    return policy


@pytest.fixture
def make_item():
    def _make(number, updated_at="2024-01-01T00:00:00Z", **kwargs):
        defaults = dict(
            repository_id=0,
            kind=ItemKind.ISSUE,
            title=f"Item {number}",
            state=ItemState.OPEN,
            author="alice",
        )
        defaults.update(kwargs)
        return WorkItem(number=number, updated_at=updated_at, **defaults)

    return _make
