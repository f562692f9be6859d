"""Diff model and review-thread reconciliation.

A pull request's changed files are parsed into line-indexed rows; review
threads are then placed onto rows or reported as outdated. Placement never
guesses: a thread lands on a row only when every endpoint of its anchor
resolves, otherwise the whole thread is outdated.

Row identity is ``(path, index)`` — the index of the row within its file.
It is stable for a given patch, which is what lets the UI keep a cursor
position across re-renders.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from prdeck_store.models import ReviewAnchor, Side

if TYPE_CHECKING:
    from prdeck_store.base import BaseStore
    from prdeck_store.models import DiffFile, ReviewThread

logger = logging.getLogger(__name__)

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$")


class RowKind(str, Enum):
    META = "meta"
    HUNK = "hunk"
    CONTEXT = "context"
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class DiffRow:
    index: int
    kind: RowKind
    text: str  # content without the +/-/space prefix
    raw: str
    old_line: int | None = None
    new_line: int | None = None
    # Cumulative position in the file's patch: the line below the first @@ is 1.
    position: int | None = None

    def line_on(self, side: Side) -> int | None:
        return self.new_line if side is Side.NEW else self.old_line


def parse_patch(patch: str | None) -> list[DiffRow]:
    """Parse a unified-diff patch into rows.

    A malformed ``@@`` header does not raise: rows under it get no line
    numbers and therefore can never anchor a thread.
    """
    rows: list[DiffRow] = []
    if not patch:
        return rows

    old_line: int | None = None
    new_line: int | None = None
    position: int | None = None

    for raw in patch.splitlines():
        index = len(rows)

        if raw.startswith("@@"):
            match = _HUNK_RE.match(raw)
            if match:
                old_line, new_line = int(match.group(1)), int(match.group(3))
            else:
                old_line = new_line = None
            # The first header is position 0; later headers are counted.
            position = 0 if position is None else position + 1
            rows.append(DiffRow(index, RowKind.HUNK, raw, raw, position=position or None))
            continue

        if position is None:
            # File headers before the first hunk.
            rows.append(DiffRow(index, RowKind.META, raw, raw))
            continue

        position += 1
        if raw.startswith("\\"):
            # "\ No newline at end of file"
            rows.append(DiffRow(index, RowKind.META, raw, raw, position=position))
        elif raw.startswith("+"):
            rows.append(DiffRow(index, RowKind.ADDED, raw[1:], raw, new_line=new_line, position=position))
            new_line = new_line + 1 if new_line is not None else None
        elif raw.startswith("-"):
            rows.append(DiffRow(index, RowKind.REMOVED, raw[1:], raw, old_line=old_line, position=position))
            old_line = old_line + 1 if old_line is not None else None
        elif raw.startswith("diff --git"):
            rows.append(DiffRow(index, RowKind.META, raw, raw, position=position))
        else:
            rows.append(
                DiffRow(
                    index,
                    RowKind.CONTEXT,
                    raw[1:] if raw.startswith(" ") else raw,
                    raw,
                    old_line=old_line,
                    new_line=new_line,
                    position=position,
                )
            )
            old_line = old_line + 1 if old_line is not None else None
            new_line = new_line + 1 if new_line is not None else None

    return rows


@dataclass
class DiffFileModel:
    path: str
    status: str
    rows: list[DiffRow]
    viewed: bool = False
    _index: dict[tuple[Side, int], int] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        for row in self.rows:
            if row.kind in (RowKind.ADDED, RowKind.CONTEXT) and row.new_line is not None:
                self._index[(Side.NEW, row.new_line)] = row.index
            if row.kind in (RowKind.REMOVED, RowKind.CONTEXT) and row.old_line is not None:
                self._index[(Side.OLD, row.old_line)] = row.index

    @classmethod
    def from_diff_file(cls, diff_file: DiffFile) -> DiffFileModel:
        return cls(
            path=diff_file.path,
            status=diff_file.status,
            rows=parse_patch(diff_file.patch),
            viewed=diff_file.viewed,
        )

    def row_index(self, side: Side, line: int | None) -> int | None:
        if line is None:
            return None
        return self._index.get((side, line))

    def line_text(self, side: Side, line: int) -> str | None:
        index = self.row_index(side, line)
        return self.rows[index].text if index is not None else None


@dataclass
class ThreadPlacement:
    thread: ReviewThread
    path: str
    row: int
    start_row: int | None = None  # multiline threads span start_row..row


@dataclass
class DiffModel:
    work_item_id: int
    head_sha: str | None
    files: list[DiffFileModel]
    placements: list[ThreadPlacement] = field(default_factory=list)
    outdated: list[ReviewThread] = field(default_factory=list)

    def file(self, path: str) -> DiffFileModel | None:
        for f in self.files:
            if f.path == path:
                return f
        return None

    def threads_at(self, path: str, row: int) -> list[ReviewThread]:
        """Threads whose (end) row is ``row``."""
        return [p.thread for p in self.placements if p.path == path and p.row == row]

    def anchor_for_row(self, path: str, row: int) -> ReviewAnchor | None:
        """The anchor a new single-line comment on this row would get. None for headers."""
        diff_file = self.file(path)
        if diff_file is None or not 0 <= row < len(diff_file.rows):
            return None
        target = diff_file.rows[row]
        side = _side_of(target)
        if side is None or target.line_on(side) is None:
            return None
        return ReviewAnchor(commit_sha=self.head_sha or "", path=path, side=side, line=target.line_on(side))

    def row_for_anchor(self, anchor: ReviewAnchor) -> tuple[str, int] | None:
        diff_file = self.file(anchor.path)
        if diff_file is None:
            return None
        index = diff_file.row_index(anchor.side, anchor.line)
        return (anchor.path, index) if index is not None else None

    def anchor_for_selection(self, path: str, first_row: int, last_row: int) -> ReviewAnchor:
        """Turn a visual selection into a (possibly multiline) anchor.

        The side follows the last selected row; the start line is the first
        selected row that has a line on that side. A selection may not cross
        a hunk header.
        """
        diff_file = self.file(path)
        if diff_file is None:
            raise ValueError(f"{path} is not part of this diff")
        first_row, last_row = sorted((first_row, last_row))
        if first_row < 0 or last_row >= len(diff_file.rows):
            raise ValueError(f"rows {first_row}..{last_row} are outside {path}")

        selected = diff_file.rows[first_row : last_row + 1]
        if any(r.kind is RowKind.HUNK for r in selected[1:]):
            raise ValueError("a selection cannot span more than one hunk")

        end = selected[-1]
        side = _side_of(end)
        if side is None or end.line_on(side) is None:
            raise ValueError(f"row {last_row} of {path} cannot carry a comment")

        start_line = None
        for r in selected:
            if _side_of(r) is not None and r.line_on(side) is not None:
                start_line = r.line_on(side)
                break
        line = end.line_on(side)
        return ReviewAnchor(
            commit_sha=self.head_sha or "",
            path=path,
            side=side,
            line=line,
            start_line=start_line if start_line != line else None,
        )


def _side_of(row: DiffRow) -> Side | None:
    if row.kind is RowKind.REMOVED:
        return Side.OLD
    if row.kind in (RowKind.ADDED, RowKind.CONTEXT):
        return Side.NEW
    return None


def _hunk_tail(diff_hunk: str | None) -> str | None:
    """Text of the line a review comment was written on: the last line of its diff_hunk."""
    if not diff_hunk:
        return None
    lines = [ln for ln in diff_hunk.splitlines() if not ln.startswith("\\")]
    if not lines or lines[-1].startswith("@@"):
        return None
    return lines[-1][1:].rstrip("\r")


def place_thread(model: DiffModel, thread: ReviewThread) -> ThreadPlacement | None:
    """Resolve a thread onto the current rows, or return None if it is outdated."""
    anchor = thread.anchor
    diff_file = model.file(anchor.path)
    if diff_file is None:
        return None

    root = thread.root
    line, start_line = anchor.line, anchor.start_line
    expected_text = None

    if model.head_sha and anchor.commit_sha and anchor.commit_sha != model.head_sha:
        # Written against another commit: prefer the server's re-mapping onto
        # the current head, and confirm against the code it was written on.
        remapped = root is not None and root.line is not None
        expected_text = _hunk_tail(root.diff_hunk if root else None)
        if remapped:
            line = root.line
            start_line = root.start_line if root.start_line != root.line else None
        elif expected_text is None:
            return None

    row = diff_file.row_index(anchor.side, line)
    if row is None:
        return None
    start_row = None
    if start_line is not None:
        start_row = diff_file.row_index(anchor.side, start_line)
        if start_row is None or start_row > row:
            return None

    if expected_text is not None and diff_file.rows[row].text.rstrip("\r") != expected_text:
        return None

    return ThreadPlacement(thread=thread, path=anchor.path, row=row, start_row=start_row)


def build_model(
    work_item_id: int,
    head_sha: str | None,
    files: list[DiffFile],
    threads: list[ReviewThread],
) -> DiffModel:
    model = DiffModel(
        work_item_id=work_item_id,
        head_sha=head_sha,
        files=[DiffFileModel.from_diff_file(f) for f in files],
    )
    for thread in threads:
        placement = place_thread(model, thread)
        if placement is None:
            model.outdated.append(thread)
        else:
            model.placements.append(placement)
    if model.outdated:
        logger.debug("%d of %d thread(s) outdated on %s", len(model.outdated), len(threads), head_sha)
    return model


def reconcile(store: BaseStore, pull_request_id: int) -> DiffModel:
    """Derive the diff model of a cached pull request from the store."""
    item = store.get_work_item_by_id(pull_request_id)
    if item is None:
        raise LookupError(f"work item {pull_request_id} is not cached")
    if not item.is_pull_request:
        raise ValueError(f"#{item.number} is not a pull request")
    return build_model(
        pull_request_id,
        item.head_sha,
        store.list_diff_files(pull_request_id),
        store.list_threads(pull_request_id),
    )
