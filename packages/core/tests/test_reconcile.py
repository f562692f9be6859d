"""Tests for placing review threads onto diff rows."""

import pytest

from prdeck_core.diff import build_model, reconcile
from prdeck_store.models import (
    DiffFile,
    ItemKind,
    ItemState,
    Repository,
    ReviewAnchor,
    ReviewComment,
    ReviewThread,
    Side,
    WorkItem,
)
from prdeck_store.sqlite import SQLiteStore

HEAD = "h" * 40
OLD_COMMIT = "o" * 40

# Rows:
#   0  @@ -1,3 +1,4 @@
#   1   import os          old 1  new 1
#   2  -import sys         old 2
#   3  +import json               new 2
#   4  +import logging            new 3
#   5   def main():        old 3  new 4
#   6  @@ -20,3 +21,3 @@
#   7       run()          old 20 new 21
#   8  -    return 0       old 21
#   9  +    return 1              new 22
#  10       # end          old 22 new 23
PATCH = (
    "@@ -1,3 +1,4 @@\n"
    " import os\n"
    "-import sys\n"
    "+import json\n"
    "+import logging\n"
    " def main():\n"
    "@@ -20,3 +21,3 @@ def main():\n"
    "     run()\n"
    "-    return 0\n"
    "+    return 1\n"
    "     # end"
)


def _make_thread(line, side=Side.NEW, start_line=None, commit=HEAD, path="app.py", thread_id="T1", **root):
    comment = ReviewComment(
        id=1,
        thread_id=thread_id,
        author="reviewer",
        body="please change",
        created_at="2024-01-01T00:00:00Z",
        line=root.get("current_line"),
        start_line=root.get("current_start_line"),
        diff_hunk=root.get("diff_hunk"),
    )
    return ReviewThread(
        id=thread_id,
        work_item_id=1,
        anchor=ReviewAnchor(commit_sha=commit, path=path, side=side, line=line, start_line=start_line),
        comments=[comment],
    )


def _build(*threads, head_sha=HEAD):
    return build_model(1, head_sha, [DiffFile(work_item_id=1, path="app.py", patch=PATCH)], list(threads))


# ---------------------------------------------------------------------------
# Placement on the current head
# ---------------------------------------------------------------------------


class TestPlacementOnHead:
    def test_single_line_new_side(self):
        thread = _make_thread(3)
        model = _build(thread)
        assert model.outdated == []
        assert model.threads_at("app.py", 4) == [thread]

    def test_single_line_old_side(self):
        model = _build(_make_thread(2, side=Side.OLD))
        assert model.placements[0].row == 2

    def test_context_row_reachable_from_either_side(self):
        new_side = _build(_make_thread(4, side=Side.NEW)).placements[0]
        old_side = _build(_make_thread(3, side=Side.OLD)).placements[0]
        assert new_side.row == old_side.row == 5

    def test_multiline_covers_its_range(self):
        placement = _build(_make_thread(3, start_line=2)).placements[0]
        assert (placement.start_row, placement.row) == (3, 4)

    def test_multiline_with_missing_start_is_outdated(self):
        thread = _make_thread(22, start_line=10)
        model = _build(thread)
        assert model.placements == []
        assert model.outdated == [thread]

    def test_multiline_with_inverted_range_is_outdated(self):
        model = _build(_make_thread(2, start_line=4))
        assert len(model.outdated) == 1

    def test_line_outside_the_diff_is_outdated(self):
        assert len(_build(_make_thread(50)).outdated) == 1

    def test_file_not_in_diff_is_outdated(self):
        assert len(_build(_make_thread(1, path="gone.py")).outdated) == 1

    def test_threads_at_other_rows_empty(self):
        model = _build(_make_thread(3))
        assert model.threads_at("app.py", 3) == []
        assert model.threads_at("other.py", 4) == []


# ---------------------------------------------------------------------------
# Threads written against an older commit
# ---------------------------------------------------------------------------


class TestPlacementAcrossCommits:
    HUNK = "@@ -20,2 +21,2 @@\n     run()\n+    return 1"

    def test_hunk_text_confirms_same_line(self):
        model = _build(_make_thread(22, commit=OLD_COMMIT, diff_hunk=self.HUNK))
        assert model.placements[0].row == 9

    def test_hunk_text_mismatch_is_outdated(self):
        hunk = "@@ -20,2 +21,2 @@\n     run()\n+    return 2"
        assert len(_build(_make_thread(22, commit=OLD_COMMIT, diff_hunk=hunk)).outdated) == 1

    def test_no_remap_and_no_hunk_is_outdated(self):
        assert len(_build(_make_thread(22, commit=OLD_COMMIT)).outdated) == 1

    def test_server_remapped_line_is_used(self):
        thread = _make_thread(3, commit=OLD_COMMIT, current_line=22, diff_hunk=self.HUNK)
        model = _build(thread)
        assert model.placements[0].row == 9

    def test_remapped_line_still_checked_against_hunk(self):
        thread = _make_thread(3, commit=OLD_COMMIT, current_line=2, diff_hunk=self.HUNK)
        assert len(_build(thread).outdated) == 1

    def test_remapped_multiline(self):
        thread = _make_thread(10, start_line=8, commit=OLD_COMMIT, current_line=3, current_start_line=2)
        placement = _build(thread).placements[0]
        assert (placement.start_row, placement.row) == (3, 4)

    def test_unknown_head_trusts_anchor(self):
        model = _build(_make_thread(3, commit=OLD_COMMIT), head_sha=None)
        assert model.placements[0].row == 4

    def test_partition_is_complete(self):
        threads = [
            _make_thread(3, thread_id="A"),
            _make_thread(50, thread_id="B"),
            _make_thread(22, commit=OLD_COMMIT, thread_id="C"),
        ]
        model = _build(*threads)
        placed = {p.thread.id for p in model.placements}
        outdated = {t.id for t in model.outdated}
        assert placed == {"A"}
        assert outdated == {"B", "C"}


# ---------------------------------------------------------------------------
# Anchors for new comments
# ---------------------------------------------------------------------------


class TestAnchorsForNewComments:
    def test_anchor_for_added_row(self):
        anchor = _build().anchor_for_row("app.py", 3)
        assert anchor == ReviewAnchor(commit_sha=HEAD, path="app.py", side=Side.NEW, line=2)

    def test_anchor_for_removed_row_uses_old_side(self):
        anchor = _build().anchor_for_row("app.py", 2)
        assert (anchor.side, anchor.line) == (Side.OLD, 2)

    def test_hunk_header_cannot_be_anchored(self):
        model = _build()
        assert model.anchor_for_row("app.py", 0) is None
        assert model.anchor_for_row("app.py", 99) is None
        assert model.anchor_for_row("missing.py", 1) is None

    @pytest.mark.parametrize("row", [1, 2, 3, 4, 5, 7, 8, 9, 10])
    def test_row_anchor_round_trip(self, row):
        model = _build()
        anchor = model.anchor_for_row("app.py", row)
        assert model.row_for_anchor(anchor) == ("app.py", row)

    def test_selection_becomes_multiline_anchor(self):
        anchor = _build().anchor_for_selection("app.py", 3, 5)
        assert (anchor.side, anchor.start_line, anchor.line) == (Side.NEW, 2, 4)
        assert anchor.is_multiline

    def test_selection_skips_rows_without_a_line_on_that_side(self):
        anchor = _build().anchor_for_selection("app.py", 2, 4)
        assert (anchor.start_line, anchor.line) == (2, 3)

    def test_reversed_selection_is_normalised(self):
        anchor = _build().anchor_for_selection("app.py", 5, 3)
        assert (anchor.start_line, anchor.line) == (2, 4)

    def test_single_row_selection(self):
        anchor = _build().anchor_for_selection("app.py", 4, 4)
        assert anchor.start_line is None
        assert anchor.line == 3

    def test_selection_across_hunks_rejected(self):
        with pytest.raises(ValueError):
            _build().anchor_for_selection("app.py", 5, 7)

    def test_selection_ending_on_header_rejected(self):
        with pytest.raises(ValueError):
            _build().anchor_for_selection("app.py", 0, 0)


# ---------------------------------------------------------------------------
# Reconciling from the store
# ---------------------------------------------------------------------------


class TestReconcileFromStore:
    @pytest.fixture
    def store(self, tmp_path):
        s = SQLiteStore(db_path=tmp_path / "cache.db")
        yield s
        s.close()

    def _item(self, store, kind=ItemKind.PULL_REQUEST):
        repo = store.upsert_repository(Repository(slug="acme/widgets"))
        return store.upsert_work_item(
            WorkItem(
                repository_id=repo.id,
                number=7,
                kind=kind,
                title="Tidy imports",
                state=ItemState.OPEN,
                head_sha=HEAD if kind is ItemKind.PULL_REQUEST else None,
                updated_at="2024-01-01T00:00:00Z",
            )
        )

    def test_reconcile_places_cached_threads(self, store):
        item = self._item(store)
        placed = _make_thread(3, thread_id="placed")
        stale = _make_thread(22, commit=OLD_COMMIT, thread_id="stale")
        stale.comments[0].id = 2
        store.replace_review_snapshot(
            item.id, [placed, stale], [DiffFile(work_item_id=item.id, path="app.py", patch=PATCH)], HEAD
        )

        model = reconcile(store, item.id)

        assert model.head_sha == HEAD
        assert [p.thread.id for p in model.placements] == ["placed"]
        assert [t.id for t in model.outdated] == ["stale"]

    def test_unknown_item(self, store):
        with pytest.raises(LookupError):
            reconcile(store, 12345)

    def test_issue_has_no_diff(self, store):
        item = self._item(store, kind=ItemKind.ISSUE)
        with pytest.raises(ValueError):
            reconcile(store, item.id)
