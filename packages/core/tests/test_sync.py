"""Tests for the sync orchestrator: idempotence, resumability and failure handling."""

import pytest

from prdeck_core.errors import (
    AuthExpired,
    PartialSyncFailure,
    RateLimited,
    RemoteNotFound,
    StoreIntegrityError,
    SyncCancelled,
    TransientNetwork,
)
from prdeck_core.gh.gateway import EntityKind, Resource, ReviewSnapshot
from prdeck_core.scheduler import ChangeNotifier
from prdeck_core.sync import RetryPolicy, SyncOrchestrator, SyncStatus, resolve_linked
from prdeck_store.models import (
    Comment,
    DiffFile,
    ItemKind,
    ItemState,
    Label,
    Repository,
    ReviewAnchor,
    ReviewComment,
    ReviewThread,
    Side,
)


@pytest.fixture
def orchestrator(store, gateway, retry):
    return SyncOrchestrator(store, gateway, retry=retry)


def _numbers(store, repo):
    return [i.number for i in store.read_work_items(repo.id)]


def _page_numbers(gateway, key="issues"):
    return [cursor.page for k, cursor in gateway.calls if k == key]


# ---------------------------------------------------------------------------
# Full cycles
# ---------------------------------------------------------------------------


class TestFullCycle:
    def test_pages_are_stored_and_cursor_completed(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.etags["issues"] = 'W/"v1"'
        gateway.pages["issues"] = [
            [make_item(3, "2024-01-03T00:00:00Z"), make_item(2, "2024-01-02T00:00:00Z")],
            [make_item(1, "2024-01-01T00:00:00Z")],
        ]

        outcome = orchestrator.sync(context, Resource.issues())

        assert outcome.status is SyncStatus.UPDATED
        assert (outcome.pages, outcome.items) == (2, 3)
        assert sorted(outcome.changed_numbers) == [1, 2, 3]
        assert _numbers(store, repo) == [3, 2, 1]
        cursor = store.read_cursor(repo.id, "issues")
        assert cursor.page == 0
        assert cursor.token == 'W/"v1"'
        assert cursor.since == "2024-01-03T00:00:00Z"

    def test_each_page_commits_once(self, orchestrator, gateway, store, context, make_item):
        gateway.pages["issues"] = [[make_item(2)], [make_item(1)]]
        before = store.commit_count
        orchestrator.sync(context, Resource.issues())
        assert store.commit_count == before + 2

    def test_progress_reported_per_page(self, orchestrator, gateway, context, make_item):
        gateway.pages["issues"] = [[make_item(3), make_item(2)], [make_item(1)]]
        seen = []
        orchestrator.sync(context, Resource.issues(), progress=lambda page, count: seen.append((page, count)))
        assert seen == [(1, 2), (2, 1)]

    def test_sync_is_idempotent(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.pages["issues"] = [[make_item(1, labels={"bug"}), make_item(2, state=ItemState.CLOSED)]]
        orchestrator.sync(context, Resource.issues())
        first = store.read_work_items(repo.id)
        orchestrator.sync(context, Resource.issues())
        assert store.read_work_items(repo.id) == first

    def test_next_cycle_asks_only_for_newer_entities(self, orchestrator, gateway, context, make_item):
        gateway.pages["issues"] = [[make_item(1, "2024-05-01T00:00:00Z")]]
        orchestrator.sync(context, Resource.issues())
        orchestrator.sync(context, Resource.issues())
        _, second_request = gateway.calls[-1]
        assert second_request.page == 1
        assert second_request.since == "2024-05-01T00:00:00Z"

    def test_newest_version_in_page_wins(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.pages["issues"] = [
            [make_item(1, "2024-01-01T00:00:00Z", title="old"), make_item(1, "2024-02-01T00:00:00Z", title="new")]
        ]
        orchestrator.sync(context, Resource.issues())
        assert store.get_work_item(repo.id, 1).title == "new"

    def test_notifier_told_about_changed_items(self, store, gateway, retry, context, make_item):
        notifier = ChangeNotifier()
        orchestrator = SyncOrchestrator(store, gateway, retry=retry, notifier=notifier)
        gateway.pages["issues"] = [[make_item(5)]]
        orchestrator.sync(context, Resource.issues())
        events = notifier.drain()
        assert [(e.repository, e.resource, e.number) for e in events] == [("acme/widgets", "issues", 5)]


# ---------------------------------------------------------------------------
# Conditional fetch
# ---------------------------------------------------------------------------


class TestNotModified:
    def test_unchanged_poll_writes_nothing(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.etags["issues"] = '"abc"'
        gateway.pages["issues"] = [[make_item(1)]]
        orchestrator.sync(context, Resource.issues())
        before = store.commit_count

        outcome = orchestrator.sync(context, Resource.issues())

        assert outcome.status is SyncStatus.UNCHANGED
        assert outcome.pages == 0
        assert store.commit_count == before
        _, request = gateway.calls[-1]
        assert request.token == '"abc"'

    def test_changed_tag_fetches_again(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.etags["issues"] = '"v1"'
        gateway.pages["issues"] = [[make_item(1)]]
        orchestrator.sync(context, Resource.issues())

        gateway.etags["issues"] = '"v2"'
        gateway.pages["issues"] = [[make_item(1, "2024-02-01T00:00:00Z", title="renamed")]]
        outcome = orchestrator.sync(context, Resource.issues())

        assert outcome.status is SyncStatus.UPDATED
        assert store.get_work_item(repo.id, 1).title == "renamed"
        assert store.read_cursor(repo.id, "issues").token == '"v2"'

    def test_idle_polls_after_a_change_write_nothing(self, store, gateway, retry, context, make_item):
        notifier = ChangeNotifier()
        orchestrator = SyncOrchestrator(store, gateway, retry=retry, notifier=notifier)
        gateway.inclusive_since = True
        gateway.pages["issues"] = [[make_item(2, "2024-01-02T00:00:00Z"), make_item(1, "2024-01-01T00:00:00Z")]]
        orchestrator.sync(context, Resource.issues())
        notifier.drain()
        before = store.commit_count

        idle = [orchestrator.sync(context, Resource.issues()).status for _ in range(2)]

        assert idle == [SyncStatus.UNCHANGED, SyncStatus.UNCHANGED]
        assert store.commit_count == before
        assert notifier.drain() == []
        _, request = gateway.calls[-1]
        assert request.since == "2024-01-02T00:00:00Z"

    def test_change_after_idle_polls_is_applied(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.inclusive_since = True
        gateway.pages["issues"] = [[make_item(2, "2024-01-02T00:00:00Z"), make_item(1, "2024-01-01T00:00:00Z")]]
        orchestrator.sync(context, Resource.issues())
        orchestrator.sync(context, Resource.issues())

        gateway.pages["issues"] = [
            [make_item(2, "2024-01-05T00:00:00Z", title="renamed"), make_item(1, "2024-01-01T00:00:00Z")]
        ]
        outcome = orchestrator.sync(context, Resource.issues())

        assert outcome.status is SyncStatus.UPDATED
        assert outcome.changed_numbers == [2]
        assert store.get_work_item(repo.id, 2).title == "renamed"
        assert store.read_cursor(repo.id, "issues").since == "2024-01-05T00:00:00Z"

    def test_first_cycle_records_cursor_even_when_empty(self, orchestrator, gateway, store, repo, context):
        gateway.etags["issues"] = '"empty"'
        orchestrator.sync(context, Resource.issues())
        assert store.read_cursor(repo.id, "issues").token == '"empty"'


# ---------------------------------------------------------------------------
# Failures and resumption
# ---------------------------------------------------------------------------


class TestFailures:
    def test_transient_error_is_retried(self, orchestrator, gateway, store, repo, context, retry, make_item):
        gateway.pages["issues"] = [[make_item(1)]]
        gateway.script = [TransientNetwork("502")]

        orchestrator.sync(context, Resource.issues())

        assert _numbers(store, repo) == [1]
        assert retry.sleep.call_count == 1

    def test_exhausted_retries_resume_after_last_committed_page(
        self, orchestrator, gateway, store, repo, context, make_item
    ):
        gateway.etags["issues"] = '"v1"'
        gateway.pages["issues"] = [[make_item(3)], [make_item(2)], [make_item(1)]]
        gateway.script = [None, None, TransientNetwork("timeout"), TransientNetwork("timeout"), TransientNetwork("x")]

        with pytest.raises(PartialSyncFailure) as exc_info:
            orchestrator.sync(context, Resource.issues())

        assert exc_info.value.outcome.pages == 2
        assert isinstance(exc_info.value.cause, TransientNetwork)
        assert _numbers(store, repo) == [3, 2]
        assert store.read_cursor(repo.id, "issues").page == 2

        outcome = orchestrator.sync(context, Resource.issues())

        assert outcome.pages == 1
        assert _page_numbers(gateway)[-1] == 3
        _, resumed = gateway.calls[-1]
        assert resumed.token is None
        assert _numbers(store, repo) == [3, 2, 1]
        cursor = store.read_cursor(repo.id, "issues")
        assert cursor.page == 0
        assert cursor.token == '"v1"'

    def test_failure_before_first_page_commits_nothing(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.pages["issues"] = [[make_item(1)]]
        gateway.script = [TransientNetwork("down")] * 3
        before = store.commit_count

        with pytest.raises(PartialSyncFailure) as exc_info:
            orchestrator.sync(context, Resource.issues())

        assert exc_info.value.outcome.pages == 0
        assert store.commit_count == before
        assert store.read_cursor(repo.id, "issues") is None

    def test_auth_expired_is_not_retried(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.pages["issues"] = [[make_item(1)]]
        gateway.script = [AuthExpired("bad credentials")]

        with pytest.raises(AuthExpired):
            orchestrator.sync(context, Resource.issues())

        assert len(gateway.calls) == 1
        assert _numbers(store, repo) == []

    def test_rate_limit_waits_for_reset(self, orchestrator, gateway, store, repo, context, retry, make_item):
        gateway.pages["issues"] = [[make_item(1)]]
        gateway.script = [RateLimited(reset_at=1030.0)]

        orchestrator.sync(context, Resource.issues())

        retry.sleep.assert_called_once_with(context, 31.0)
        assert _numbers(store, repo) == [1]

    def test_rate_limit_does_not_consume_attempts(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.pages["issues"] = [[make_item(1)]]
        gateway.script = [RateLimited(reset_at=1000.0)] * 5 + [TransientNetwork("blip")] * 2

        orchestrator.sync(context, Resource.issues())

        assert _numbers(store, repo) == [1]

    def test_cancel_stops_at_page_boundary(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.pages["issues"] = [[make_item(2)], [make_item(1)]]

        with pytest.raises(SyncCancelled):
            orchestrator.sync(context, Resource.issues(), progress=lambda page, count: context.cancel())

        assert _numbers(store, repo) == [2]
        assert store.read_cursor(repo.id, "issues").page == 1

    def test_cancelled_context_fetches_nothing(self, orchestrator, gateway, context):
        context.cancel()
        with pytest.raises(SyncCancelled):
            orchestrator.sync(context, Resource.issues())
        assert gateway.calls == []


class TestRetryPolicy:
    def test_backoff_is_exponential_and_capped(self):
        policy = RetryPolicy(backoff_base=1.0, backoff_max=5.0)
        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_from_config(self):
        policy = RetryPolicy.from_config({"max_attempts": 5, "backoff_base": 0.5, "backoff_max": 8})
        assert (policy.max_attempts, policy.backoff_base, policy.backoff_max) == (5, 0.5, 8.0)

    def test_sleep_is_interrupted_by_cancel(self, context):
        context.cancel()
        with pytest.raises(SyncCancelled):
            RetryPolicy().sleep(context, 60)


# ---------------------------------------------------------------------------
# Per-item resources
# ---------------------------------------------------------------------------


class TestItemResources:
    def test_comments_bound_to_parent(self, orchestrator, gateway, store, repo, context, make_item):
        parent = store.upsert_work_item(make_item(7, repository_id=repo.id))
        gateway.pages["comments#7"] = [
            [
                Comment(id=11, work_item_id=None, author="bob", body="first", created_at="2024-01-01"),
                Comment(id=12, work_item_id=None, author="carol", body="second", created_at="2024-01-02"),
            ]
        ]

        outcome = orchestrator.sync(context, Resource.comments(7))

        assert outcome.changed_numbers == [7]
        assert [c.body for c in store.list_comments(parent.id)] == ["first", "second"]

    def test_pruned_conversation_is_refetched(self, orchestrator, gateway, store, repo, context, make_item):
        parent = store.upsert_work_item(make_item(7, repository_id=repo.id))
        gateway.etags["comments#7"] = '"c1"'
        gateway.pages["comments#7"] = [
            [Comment(id=11, work_item_id=None, author="bob", body="first", updated_at="2024-01-01T00:00:00Z")]
        ]
        orchestrator.sync(context, Resource.comments(7))
        store.touch_comments(parent.id, 1000)

        assert store.prune_comments(ttl_seconds=500, cap=7500, now=2000) == 1
        assert store.list_comments(parent.id) == []

        outcome = orchestrator.sync(context, Resource.comments(7))

        assert outcome.status is SyncStatus.UPDATED
        assert [c.body for c in store.list_comments(parent.id)] == ["first"]
        _, request = gateway.calls[-1]
        assert (request.token, request.since) == (None, None)

    def test_cancelled_item_context_stops_at_page_boundary(
        self, orchestrator, gateway, store, repo, context, make_item
    ):
        parent = store.upsert_work_item(make_item(7, repository_id=repo.id))
        gateway.pages["comments#7"] = [
            [Comment(id=11, work_item_id=None, author="bob", body="first")],
            [Comment(id=12, work_item_id=None, author="bob", body="second")],
        ]
        item_context = context.child()

        with pytest.raises(SyncCancelled):
            orchestrator.sync(item_context, Resource.comments(7), progress=lambda page, count: item_context.cancel())

        assert [c.id for c in store.list_comments(parent.id)] == [11]
        assert store.read_cursor(repo.id, "comments#7").page == 1
        assert not context.cancelled

    def test_comments_for_uncached_item_rejected(self, orchestrator, gateway, context):
        with pytest.raises(StoreIntegrityError):
            orchestrator.sync(context, Resource.comments(404))
        assert gateway.calls == []

    def test_review_of_issue_rejected(self, orchestrator, store, repo, context, make_item):
        store.upsert_work_item(make_item(7, repository_id=repo.id))
        with pytest.raises(StoreIntegrityError):
            orchestrator.sync(context, Resource.review(7))

    def test_deleted_parent_is_removed(self, orchestrator, gateway, store, repo, context, make_item):
        parent = store.upsert_work_item(make_item(7, repository_id=repo.id))
        store.upsert_comment(Comment(id=1, work_item_id=parent.id, author="a", body="x"))
        gateway.script = [RemoteNotFound("gone")]

        outcome = orchestrator.sync(context, Resource.comments(7))

        assert outcome.status is SyncStatus.REMOVED
        assert store.get_work_item(repo.id, 7) is None
        assert store.get_comment(1, include_deleted=True) is None

    def test_not_found_on_list_resource_propagates(self, orchestrator, gateway, context):
        gateway.script = [RemoteNotFound("no such repository")]
        with pytest.raises(RemoteNotFound):
            orchestrator.sync(context, Resource.issues())

    def test_review_snapshot_replaces_threads_and_files(self, orchestrator, gateway, store, repo, context, make_item):
        pr = store.upsert_work_item(make_item(9, repository_id=repo.id, kind=ItemKind.PULL_REQUEST))
        store.replace_diff_files(pr.id, [DiffFile(pr.id, "a.py")])
        store.set_file_viewed(pr.id, "a.py", True)

        thread = ReviewThread(
            id="PRRT_1",
            work_item_id=None,
            anchor=ReviewAnchor(commit_sha="c" * 40, path="a.py", side=Side.NEW, line=2),
            comments=[ReviewComment(id=50, thread_id="PRRT_1", author="bob", body="nit")],
        )
        snapshot = ReviewSnapshot(
            item=make_item(9, "2024-02-01T00:00:00Z", kind=ItemKind.PULL_REQUEST, head_sha="c" * 40),
            head_sha="c" * 40,
            files=[DiffFile(None, "a.py", patch="@@ -1 +1,2 @@\n a\n+b"), DiffFile(None, "b.py")],
            threads=[thread],
            files_viewed_known=False,
        )
        gateway.pages["review#9"] = [[snapshot]]

        orchestrator.sync(context, Resource.review(9))

        assert store.get_work_item(repo.id, 9).head_sha == "c" * 40
        assert [t.id for t in store.list_threads(pr.id)] == ["PRRT_1"]
        viewed = {f.path: f.viewed for f in store.list_diff_files(pr.id)}
        assert viewed == {"a.py": True, "b.py": False}


# ---------------------------------------------------------------------------
# Single-entity refreshes
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_item_upserts(self, orchestrator, gateway, store, repo, context, make_item):
        gateway.singles[(EntityKind.WORK_ITEM, 4)] = make_item(4, title="fresh")
        item = orchestrator.refresh_item(context, 4)
        assert item.title == "fresh"
        assert store.get_work_item(repo.id, 4).title == "fresh"

    def test_refresh_missing_item_removes_it(self, orchestrator, gateway, store, repo, context, make_item):
        store.upsert_work_item(make_item(4, repository_id=repo.id))
        gateway.singles[(EntityKind.WORK_ITEM, 4)] = RemoteNotFound("deleted")
        assert orchestrator.refresh_item(context, 4) is None
        assert store.get_work_item(repo.id, 4) is None

    def test_refresh_permission_updates_context(self, orchestrator, gateway, store, context):
        gateway.singles[(EntityKind.REPOSITORY, "acme/widgets")] = Repository(
            slug="acme/widgets", remote_id=99, permission="read"
        )
        repository = orchestrator.refresh_permission(context)
        assert repository.permission == "read"
        assert context.repository.can_triage() is False
        assert store.get_repository("acme/widgets").remote_id == 99

    def test_refresh_catalogs(self, orchestrator, gateway, store, repo, context):
        gateway.pages["labels"] = [[Label("bug", "d73a4a")], [Label("docs", "0075ca")]]
        gateway.pages["assignees"] = [["alice", "bob"]]

        assert orchestrator.refresh_labels(context) == 2
        assert orchestrator.refresh_assignees(context) == 2
        assert [label.name for label in store.list_labels(repo.id)] == ["bug", "docs"]
        assert store.list_assignable_users(repo.id) == ["alice", "bob"]


def test_resolve_linked_follows_weak_reference(store, repo, make_item):
    store.upsert_work_item(make_item(1, repository_id=repo.id))
    pr = store.upsert_work_item(make_item(2, repository_id=repo.id, kind=ItemKind.PULL_REQUEST, linked_number=1))
    dangling = store.upsert_work_item(make_item(3, repository_id=repo.id, linked_number=999))

    assert resolve_linked(store, pr).number == 1
    assert resolve_linked(store, dangling) is None


# ---------------------------------------------------------------------------


class TestSyncContext:
    def test_cancelling_parent_cancels_children(self, context):
        child = context.child()
        context.cancel()
        assert child.cancelled
        assert context.child().cancelled

    def test_cancelling_child_leaves_parent_running(self, context):
        child = context.child()
        child.cancel()
        assert not context.cancelled
        assert not context.child().cancelled
