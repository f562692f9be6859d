"""SQLiteStore — the local cache behind every prdeck view.

Why SQLite in WAL mode:
- Batteries included: ships with Python, no extra dependencies.
- Write-ahead logging lets readers keep reading the last committed snapshot
  while a background sync holds the write lock, so the foreground never
  waits on a page commit beyond ``busy_timeout``.
- Foreign keys with ON DELETE CASCADE make "remove an item and everything it
  owns" a single statement inside a single transaction.

Concurrency model:
  One writer connection, guarded by a re-entrant lock — every mutation in
  the process serializes through it. Each reader thread gets its own
  connection; reads run inside a short read transaction so a multi-statement
  read sees one consistent snapshot. A thread that is inside a write
  transaction reads through the writer so it sees its own uncommitted rows.

Schema:
  repositories, work_items, work_item_labels, work_item_assignees, labels,
  assignees, comments, review_threads, review_comments, diff_files,
  sync_cursors.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from prdeck_store.base import BaseStore, StoreIntegrityError
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
    SyncCursor,
    WorkItem,
    WorkItemFilter,
)

logger = logging.getLogger(__name__)

DB_FILENAME = "prdeck.db"
APP_DIR_NAME = "prdeck"
CURRENT_SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS repositories (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    slug               TEXT NOT NULL UNIQUE,
    remote_id          INTEGER,
    permission         TEXT,
    last_full_scan_at  TEXT,
    created_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS work_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    repository_id   INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    number          INTEGER NOT NULL,
    remote_id       INTEGER,
    kind            TEXT NOT NULL CHECK (kind IN ('issue', 'pull_request')),
    title           TEXT NOT NULL,
    body            TEXT NOT NULL DEFAULT '',
    author          TEXT NOT NULL DEFAULT '',
    state           TEXT NOT NULL CHECK (state IN ('open', 'closed', 'merged')),
    comments_count  INTEGER NOT NULL DEFAULT 0,
    head_sha        TEXT,
    linked_number   INTEGER,
    created_at      TEXT,
    updated_at      TEXT,
    UNIQUE (repository_id, number),
    CHECK (state != 'merged' OR kind = 'pull_request')
);

CREATE TABLE IF NOT EXISTS labels (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    repository_id  INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    name           TEXT NOT NULL,
    color          TEXT NOT NULL DEFAULT '',
    UNIQUE (repository_id, name)
);

CREATE TABLE IF NOT EXISTS work_item_labels (
    work_item_id  INTEGER NOT NULL REFERENCES work_items(id) ON DELETE CASCADE,
    label_id      INTEGER NOT NULL REFERENCES labels(id) ON DELETE CASCADE,
    PRIMARY KEY (work_item_id, label_id)
);

CREATE TABLE IF NOT EXISTS assignees (
    repository_id  INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    login          TEXT NOT NULL,
    PRIMARY KEY (repository_id, login)
);

CREATE TABLE IF NOT EXISTS work_item_assignees (
    work_item_id  INTEGER NOT NULL REFERENCES work_items(id) ON DELETE CASCADE,
    login         TEXT NOT NULL,
    PRIMARY KEY (work_item_id, login)
);

CREATE TABLE IF NOT EXISTS comments (
    id                INTEGER PRIMARY KEY,
    work_item_id      INTEGER NOT NULL REFERENCES work_items(id) ON DELETE CASCADE,
    author            TEXT NOT NULL,
    body              TEXT NOT NULL,
    created_at        TEXT,
    updated_at        TEXT,
    deleted_at        TEXT,
    last_accessed_at  INTEGER
);

CREATE TABLE IF NOT EXISTS review_threads (
    id            TEXT PRIMARY KEY,
    work_item_id  INTEGER NOT NULL REFERENCES work_items(id) ON DELETE CASCADE,
    commit_sha    TEXT NOT NULL,
    path          TEXT NOT NULL,
    side          TEXT NOT NULL CHECK (side IN ('old', 'new')),
    line          INTEGER NOT NULL,
    start_line    INTEGER,
    resolved      INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS review_comments (
    id                   INTEGER PRIMARY KEY,
    thread_id            TEXT NOT NULL REFERENCES review_threads(id) ON DELETE CASCADE,
    author               TEXT NOT NULL,
    body                 TEXT NOT NULL,
    created_at           TEXT,
    updated_at           TEXT,
    deleted_at           TEXT,
    original_commit_sha  TEXT,
    original_line        INTEGER,
    original_start_line  INTEGER,
    line                 INTEGER,
    start_line           INTEGER,
    position             INTEGER,
    diff_hunk            TEXT,
    in_reply_to_id       INTEGER
);

CREATE TABLE IF NOT EXISTS diff_files (
    work_item_id  INTEGER NOT NULL REFERENCES work_items(id) ON DELETE CASCADE,
    path          TEXT NOT NULL,
    status        TEXT NOT NULL DEFAULT 'modified',
    additions     INTEGER NOT NULL DEFAULT 0,
    deletions     INTEGER NOT NULL DEFAULT 0,
    patch         TEXT,
    viewed        INTEGER NOT NULL DEFAULT 0,
    position      INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (work_item_id, path)
);

CREATE TABLE IF NOT EXISTS sync_cursors (
    repository_id       INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    resource_kind       TEXT NOT NULL,
    cursor_token        TEXT,
    last_page_boundary  INTEGER NOT NULL DEFAULT 0,
    since               TEXT,
    high_water          TEXT,
    updated_at          TEXT NOT NULL,
    PRIMARY KEY (repository_id, resource_kind)
);

CREATE INDEX IF NOT EXISTS idx_work_items_repo    ON work_items (repository_id, number);
CREATE INDEX IF NOT EXISTS idx_work_items_updated ON work_items (repository_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_comments_item      ON comments (work_item_id, created_at);
CREATE INDEX IF NOT EXISTS idx_comments_accessed  ON comments (last_accessed_at);
CREATE INDEX IF NOT EXISTS idx_threads_item       ON review_threads (work_item_id);
CREATE INDEX IF NOT EXISTS idx_review_comments    ON review_comments (thread_id, created_at);
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def default_db_path() -> Path:
    """Return the cache location: ``$XDG_DATA_HOME/prdeck/prdeck.db`` or the platform equivalent."""
    return _data_dir() / APP_DIR_NAME / DB_FILENAME


def _data_dir() -> Path:
    if os.name == "nt":
        for var in ("LOCALAPPDATA", "APPDATA"):
            if os.environ.get(var):
                return Path(os.environ[var])
        return Path.cwd()

    if os.environ.get("XDG_DATA_HOME"):
        return Path(os.environ["XDG_DATA_HOME"])
    if os.environ.get("HOME"):
        return Path(os.environ["HOME"]) / ".local" / "share"
    return Path.cwd()


def delete_db(db_path: str | Path | None = None) -> bool:
    """Delete the cache database (and its WAL side files). Returns False if it did not exist."""
    path = Path(db_path) if db_path is not None else default_db_path()
    if not path.exists():
        return False
    path.unlink()
    for suffix in ("-wal", "-shm"):
        side_file = path.with_name(path.name + suffix)
        if side_file.exists():
            side_file.unlink()
    return True


class SQLiteStore(BaseStore):
    """Stores the synchronized cache in a local SQLite database file.

    The database path defaults to ``default_db_path()``. Configure via
    .prdeck.yml: ``db_path: /path/to/prdeck.db``.
    """

    def __init__(self, db_path: str | Path | None = None, busy_timeout_ms: int = 5000):
        self._path = Path(db_path) if db_path is not None else default_db_path()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_ms = busy_timeout_ms

        self._lock = threading.RLock()
        self._depth = 0
        self._owner: int | None = None
        self._commits = 0

        self._local = threading.local()
        self._readers: list[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()

        self._writer = self._open()
        self._writer.execute("PRAGMA journal_mode=WAL")
        self._writer.executescript(_SCHEMA)
        self._writer.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")

    @property
    def path(self) -> Path:
        return self._path

    def _open(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are issued explicitly below.
        conn = sqlite3.connect(str(self._path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=FULL")
        conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        return conn

    def _reader(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    # ------------------------------------------------------------------ #
    # Transactions                                                        #
    # ------------------------------------------------------------------ #

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._writer
                except sqlite3.IntegrityError as exc:
                    raise StoreIntegrityError(str(exc)) from exc
                finally:
                    self._depth -= 1
                return

            self._writer.execute("BEGIN IMMEDIATE")
            self._owner = threading.get_ident()
            self._depth = 1
            try:
                yield self._writer
            except sqlite3.IntegrityError as exc:
                self._writer.execute("ROLLBACK")
                logger.error("Store transaction aborted by integrity violation: %s", exc)
                raise StoreIntegrityError(str(exc)) from exc
            except BaseException:
                self._writer.execute("ROLLBACK")
                raise
            else:
                self._writer.execute("COMMIT")
                self._commits += 1
            finally:
                self._depth = 0
                self._owner = None

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        if self._owner == threading.get_ident():
            yield self._writer
            return
        conn = self._reader()
        conn.execute("BEGIN")
        try:
            yield conn
        finally:
            conn.execute("COMMIT")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._write():
            yield

    @property
    def commit_count(self) -> int:
        return self._commits

    # ------------------------------------------------------------------ #
    # Repositories                                                         #
    # ------------------------------------------------------------------ #

    def upsert_repository(self, repository: Repository) -> Repository:
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO repositories (slug, remote_id, permission, last_full_scan_at, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    remote_id = COALESCE(excluded.remote_id, repositories.remote_id),
                    permission = COALESCE(excluded.permission, repositories.permission),
                    last_full_scan_at = COALESCE(excluded.last_full_scan_at, repositories.last_full_scan_at)
                """,
                (
                    repository.slug,
                    repository.remote_id,
                    repository.permission,
                    repository.last_full_scan_at,
                    _now_iso(),
                ),
            )
            row = conn.execute("SELECT * FROM repositories WHERE slug=?", (repository.slug,)).fetchone()
        return self._row_to_repository(row)

    def get_repository(self, slug: str) -> Repository | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM repositories WHERE slug=?", (slug,)).fetchone()
        return self._row_to_repository(row) if row else None

    def get_repository_by_id(self, repository_id: int) -> Repository | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM repositories WHERE id=?", (repository_id,)).fetchone()
        return self._row_to_repository(row) if row else None

    def list_repositories(self) -> list[Repository]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM repositories ORDER BY slug").fetchall()
        return [self._row_to_repository(r) for r in rows]

    # ------------------------------------------------------------------ #
    # Work items                                                           #
    # ------------------------------------------------------------------ #

    def upsert_work_item(self, item: WorkItem) -> WorkItem:
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT INTO work_items
                  (repository_id, number, remote_id, kind, title, body, author, state,
                   comments_count, head_sha, linked_number, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repository_id, number) DO UPDATE SET
                    remote_id = COALESCE(excluded.remote_id, work_items.remote_id),
                    kind = excluded.kind,
                    title = excluded.title,
                    body = excluded.body,
                    author = excluded.author,
                    state = excluded.state,
                    comments_count = excluded.comments_count,
                    head_sha = COALESCE(excluded.head_sha, work_items.head_sha),
                    linked_number = COALESCE(excluded.linked_number, work_items.linked_number),
                    created_at = COALESCE(excluded.created_at, work_items.created_at),
                    updated_at = COALESCE(excluded.updated_at, work_items.updated_at)
                WHERE excluded.updated_at IS NULL
                   OR work_items.updated_at IS NULL
                   OR excluded.updated_at >= work_items.updated_at
                """,
                (
                    item.repository_id,
                    item.number,
                    item.remote_id,
                    ItemKind(item.kind).value,
                    item.title,
                    item.body or "",
                    item.author or "",
                    ItemState(item.state).value,
                    item.comments_count,
                    item.head_sha,
                    item.linked_number,
                    item.created_at,
                    item.updated_at,
                ),
            )
            row = conn.execute(
                "SELECT id FROM work_items WHERE repository_id=? AND number=?",
                (item.repository_id, item.number),
            ).fetchone()
            work_item_id = row["id"]
            if cur.rowcount:
                self._replace_item_labels(conn, item.repository_id, work_item_id, item.labels)
                self._replace_item_assignees(conn, work_item_id, item.assignees)
            else:
                logger.debug("Ignored stale update for #%d (updated_at=%s)", item.number, item.updated_at)
            stored = self._load_work_items(conn, "w.id=?", (work_item_id,))
        return stored[0]

    @staticmethod
    def _replace_item_labels(conn: sqlite3.Connection, repository_id: int, work_item_id: int, labels) -> None:
        conn.execute("DELETE FROM work_item_labels WHERE work_item_id=?", (work_item_id,))
        for name in sorted(labels):
            conn.execute(
                "INSERT INTO labels (repository_id, name) VALUES (?, ?) ON CONFLICT(repository_id, name) DO NOTHING",
                (repository_id, name),
            )
            conn.execute(
                """
                INSERT INTO work_item_labels (work_item_id, label_id)
                SELECT ?, id FROM labels WHERE repository_id=? AND name=?
                """,
                (work_item_id, repository_id, name),
            )

    @staticmethod
    def _replace_item_assignees(conn: sqlite3.Connection, work_item_id: int, logins) -> None:
        conn.execute("DELETE FROM work_item_assignees WHERE work_item_id=?", (work_item_id,))
        conn.executemany(
            "INSERT INTO work_item_assignees (work_item_id, login) VALUES (?, ?)",
            [(work_item_id, login) for login in sorted(logins)],
        )

    def get_work_item(self, repository_id: int, number: int) -> WorkItem | None:
        with self._read() as conn:
            items = self._load_work_items(conn, "w.repository_id=? AND w.number=?", (repository_id, number))
        return items[0] if items else None

    def get_work_item_by_id(self, work_item_id: int) -> WorkItem | None:
        with self._read() as conn:
            items = self._load_work_items(conn, "w.id=?", (work_item_id,))
        return items[0] if items else None

    def read_work_items(self, repository_id: int, filter: WorkItemFilter | None = None) -> list[WorkItem]:
        clauses = ["w.repository_id=?"]
        params: list = [repository_id]
        limit = None
        if filter is not None:
            if filter.kind is not None:
                clauses.append("w.kind=?")
                params.append(ItemKind(filter.kind).value)
            if filter.state is not None:
                clauses.append("w.state=?")
                params.append(ItemState(filter.state).value)
            if filter.label:
                clauses.append(
                    "EXISTS (SELECT 1 FROM work_item_labels wl JOIN labels l ON l.id = wl.label_id "
                    "WHERE wl.work_item_id = w.id AND l.name = ?)"
                )
                params.append(filter.label)
            if filter.assignee:
                clauses.append(
                    "EXISTS (SELECT 1 FROM work_item_assignees wa WHERE wa.work_item_id = w.id AND wa.login = ?)"
                )
                params.append(filter.assignee)
            if filter.text:
                clauses.append("(w.title LIKE ? OR w.body LIKE ?)")
                params.extend([f"%{filter.text}%", f"%{filter.text}%"])
            limit = filter.limit

        with self._read() as conn:
            return self._load_work_items(conn, " AND ".join(clauses), tuple(params), limit=limit)

    def _load_work_items(
        self, conn: sqlite3.Connection, where: str, params: tuple, limit: int | None = None
    ) -> list[WorkItem]:
        sql = f"SELECT w.* FROM work_items w WHERE {where} ORDER BY w.number DESC"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        rows = conn.execute(sql, params).fetchall()
        if not rows:
            return []

        ids = [r["id"] for r in rows]
        placeholders = ",".join("?" * len(ids))
        labels: dict[int, set[str]] = {i: set() for i in ids}
        for r in conn.execute(
            f"SELECT wl.work_item_id, l.name FROM work_item_labels wl JOIN labels l ON l.id = wl.label_id "
            f"WHERE wl.work_item_id IN ({placeholders})",
            ids,
        ):
            labels[r["work_item_id"]].add(r["name"])
        assignees: dict[int, set[str]] = {i: set() for i in ids}
        for r in conn.execute(
            f"SELECT work_item_id, login FROM work_item_assignees WHERE work_item_id IN ({placeholders})",
            ids,
        ):
            assignees[r["work_item_id"]].add(r["login"])

        return [self._row_to_work_item(r, labels[r["id"]], assignees[r["id"]]) for r in rows]

    def delete_work_item(self, repository_id: int, number: int) -> bool:
        with self._write() as conn:
            cur = conn.execute(
                "DELETE FROM work_items WHERE repository_id=? AND number=?",
                (repository_id, number),
            )
        return cur.rowcount > 0

    # ------------------------------------------------------------------ #
    # Conversation comments                                                #
    # ------------------------------------------------------------------ #

    def upsert_comment(self, comment: Comment) -> bool:
        if comment.work_item_id is None:
            raise StoreIntegrityError(f"comment {comment.id} has no parent work item")
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT INTO comments
                  (id, work_item_id, author, body, created_at, updated_at, last_accessed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    author = excluded.author,
                    body = excluded.body,
                    created_at = COALESCE(excluded.created_at, comments.created_at),
                    updated_at = COALESCE(excluded.updated_at, comments.updated_at),
                    last_accessed_at = COALESCE(excluded.last_accessed_at, comments.last_accessed_at)
                WHERE excluded.updated_at IS NULL
                   OR comments.updated_at IS NULL
                   OR excluded.updated_at >= comments.updated_at
                """,
                (
                    comment.id,
                    comment.work_item_id,
                    comment.author,
                    comment.body or "",
                    comment.created_at,
                    comment.updated_at,
                    comment.last_accessed_at,
                ),
            )
        return cur.rowcount > 0

    def get_comment(self, comment_id: int, include_deleted: bool = False) -> Comment | None:
        sql = "SELECT * FROM comments WHERE id=?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        with self._read() as conn:
            row = conn.execute(sql, (comment_id,)).fetchone()
        return self._row_to_comment(row) if row else None

    def list_comments(self, work_item_id: int) -> list[Comment]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM comments WHERE work_item_id=? AND deleted_at IS NULL ORDER BY created_at, id",
                (work_item_id,),
            ).fetchall()
        return [self._row_to_comment(r) for r in rows]

    def mark_comment_deleted(self, comment_id: int, deleted_at: str) -> bool:
        with self._write() as conn:
            cur = conn.execute(
                "UPDATE comments SET deleted_at=? WHERE id=? AND deleted_at IS NULL",
                (deleted_at, comment_id),
            )
        return cur.rowcount > 0

    def touch_comments(self, work_item_id: int, accessed_at: int) -> None:
        with self._write() as conn:
            conn.execute(
                "UPDATE comments SET last_accessed_at=? WHERE work_item_id=?",
                (accessed_at, work_item_id),
            )

    def prune_comments(self, ttl_seconds: int, cap: int, now: int | None = None) -> int:
        now = int(time.time()) if now is None else now
        with self._write() as conn:
            before = self._comment_counts(conn)
            expired = conn.execute(
                "DELETE FROM comments WHERE last_accessed_at IS NOT NULL AND last_accessed_at < ?",
                (now - ttl_seconds,),
            ).rowcount
            overflow = conn.execute(
                """
                DELETE FROM comments WHERE id IN (
                    SELECT id FROM comments
                    ORDER BY COALESCE(last_accessed_at, 0) DESC, id DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (cap,),
            ).rowcount
            if expired or overflow:
                after = self._comment_counts(conn)
                pruned = [item_id for item_id, count in before.items() if after.get(item_id, 0) < count]
                self._forget_conversation_cursors(conn, pruned)
        if expired or overflow:
            logger.debug("Pruned %d expired and %d overflow comments", expired, overflow)
        return expired + overflow

    @staticmethod
    def _comment_counts(conn: sqlite3.Connection) -> dict[int, int]:
        rows = conn.execute("SELECT work_item_id, COUNT(*) AS n FROM comments GROUP BY work_item_id")
        return {r["work_item_id"]: r["n"] for r in rows}

    @staticmethod
    def _forget_conversation_cursors(conn: sqlite3.Connection, work_item_ids: list[int]) -> None:
        # A partial conversation must be refetched from scratch, not from the watermark.
        for work_item_id in work_item_ids:
            conn.execute(
                """
                DELETE FROM sync_cursors
                WHERE (repository_id, resource_kind) IN (
                    SELECT repository_id, 'comments#' || number FROM work_items WHERE id=?
                )
                """,
                (work_item_id,),
            )

    def purge_deleted(self, older_than: str) -> int:
        with self._write() as conn:
            purged = conn.execute(
                "DELETE FROM comments WHERE deleted_at IS NOT NULL AND deleted_at <= ?",
                (older_than,),
            ).rowcount
            purged += conn.execute(
                "DELETE FROM review_comments WHERE deleted_at IS NOT NULL AND deleted_at <= ?",
                (older_than,),
            ).rowcount
        return purged

    # ------------------------------------------------------------------ #
    # Review threads and diff files                                        #
    # ------------------------------------------------------------------ #

    def upsert_thread(self, thread: ReviewThread) -> None:
        if thread.work_item_id is None:
            raise StoreIntegrityError(f"thread {thread.id} has no parent pull request")
        anchor = thread.anchor
        with self._write() as conn:
            # The anchor columns are deliberately absent from the UPDATE list:
            # once created upstream an anchor never moves.
            conn.execute(
                """
                INSERT INTO review_threads
                  (id, work_item_id, commit_sha, path, side, line, start_line, resolved)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET resolved = excluded.resolved
                """,
                (
                    thread.id,
                    thread.work_item_id,
                    anchor.commit_sha,
                    anchor.path,
                    Side(anchor.side).value,
                    anchor.line,
                    anchor.start_line,
                    int(thread.resolved),
                ),
            )
            for comment in thread.comments:
                comment.thread_id = thread.id
                self.upsert_review_comment(comment)

    def upsert_review_comment(self, comment: ReviewComment) -> bool:
        if comment.thread_id is None:
            raise StoreIntegrityError(f"review comment {comment.id} has no thread")
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT INTO review_comments
                  (id, thread_id, author, body, created_at, updated_at, original_commit_sha,
                   original_line, original_start_line, line, start_line, position, diff_hunk, in_reply_to_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    author = excluded.author,
                    body = excluded.body,
                    created_at = COALESCE(excluded.created_at, review_comments.created_at),
                    updated_at = COALESCE(excluded.updated_at, review_comments.updated_at),
                    line = excluded.line,
                    start_line = excluded.start_line,
                    position = excluded.position
                WHERE excluded.updated_at IS NULL
                   OR review_comments.updated_at IS NULL
                   OR excluded.updated_at >= review_comments.updated_at
                """,
                (
                    comment.id,
                    comment.thread_id,
                    comment.author,
                    comment.body or "",
                    comment.created_at,
                    comment.updated_at,
                    comment.original_commit_sha,
                    comment.original_line,
                    comment.original_start_line,
                    comment.line,
                    comment.start_line,
                    comment.position,
                    comment.diff_hunk,
                    comment.in_reply_to_id,
                ),
            )
        return cur.rowcount > 0

    def get_review_comment(self, comment_id: int, include_deleted: bool = False) -> ReviewComment | None:
        sql = "SELECT * FROM review_comments WHERE id=?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        with self._read() as conn:
            row = conn.execute(sql, (comment_id,)).fetchone()
        return self._row_to_review_comment(row) if row else None

    def mark_review_comment_deleted(self, comment_id: int, deleted_at: str) -> bool:
        with self._write() as conn:
            cur = conn.execute(
                "UPDATE review_comments SET deleted_at=? WHERE id=? AND deleted_at IS NULL",
                (deleted_at, comment_id),
            )
        return cur.rowcount > 0

    def get_thread(self, thread_id: str) -> ReviewThread | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM review_threads WHERE id=?", (thread_id,)).fetchone()
            if row is None:
                return None
            return self._load_thread(conn, row)

    def list_threads(self, work_item_id: int) -> list[ReviewThread]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM review_threads WHERE work_item_id=? ORDER BY path, line, id",
                (work_item_id,),
            ).fetchall()
            threads = [self._load_thread(conn, r) for r in rows]
        # A thread whose every comment was deleted no longer exists upstream.
        return [t for t in threads if t.comments]

    def _load_thread(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ReviewThread:
        comments = conn.execute(
            "SELECT * FROM review_comments WHERE thread_id=? AND deleted_at IS NULL ORDER BY created_at, id",
            (row["id"],),
        ).fetchall()
        return ReviewThread(
            id=row["id"],
            work_item_id=row["work_item_id"],
            anchor=ReviewAnchor(
                commit_sha=row["commit_sha"],
                path=row["path"],
                side=Side(row["side"]),
                line=row["line"],
                start_line=row["start_line"],
            ),
            resolved=bool(row["resolved"]),
            comments=[self._row_to_review_comment(c) for c in comments],
        )

    def replace_review_snapshot(
        self,
        work_item_id: int,
        threads: list[ReviewThread],
        files: list[DiffFile],
        head_sha: str | None,
        keep_viewed: bool = True,
    ) -> None:
        with self._write() as conn:
            thread_ids = [t.id for t in threads]
            placeholders = ",".join("?" * len(thread_ids))
            if thread_ids:
                conn.execute(
                    f"DELETE FROM review_threads WHERE work_item_id=? AND id NOT IN ({placeholders})",
                    (work_item_id, *thread_ids),
                )
            else:
                conn.execute("DELETE FROM review_threads WHERE work_item_id=?", (work_item_id,))

            for thread in threads:
                thread.work_item_id = work_item_id
                self.upsert_thread(thread)
                comment_ids = [c.id for c in thread.comments]
                # Soft-deleted markers stay until purge_deleted() so the UI can confirm the deletion.
                if comment_ids:
                    conn.execute(
                        f"DELETE FROM review_comments WHERE thread_id=? AND deleted_at IS NULL "
                        f"AND id NOT IN ({','.join('?' * len(comment_ids))})",
                        (thread.id, *comment_ids),
                    )

            self.replace_diff_files(work_item_id, files, keep_viewed=keep_viewed)
            if head_sha:
                conn.execute("UPDATE work_items SET head_sha=? WHERE id=?", (head_sha, work_item_id))

    def replace_diff_files(self, work_item_id: int, files: list[DiffFile], keep_viewed: bool = True) -> None:
        with self._write() as conn:
            previous = {
                r["path"]: bool(r["viewed"])
                for r in conn.execute("SELECT path, viewed FROM diff_files WHERE work_item_id=?", (work_item_id,))
            }
            conn.execute("DELETE FROM diff_files WHERE work_item_id=?", (work_item_id,))
            for position, f in enumerate(files):
                viewed = previous.get(f.path, f.viewed) if keep_viewed else f.viewed
                conn.execute(
                    """
                    INSERT INTO diff_files
                      (work_item_id, path, status, additions, deletions, patch, viewed, position)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (work_item_id, f.path, f.status, f.additions, f.deletions, f.patch, int(viewed), position),
                )

    def list_diff_files(self, work_item_id: int) -> list[DiffFile]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM diff_files WHERE work_item_id=? ORDER BY position",
                (work_item_id,),
            ).fetchall()
        return [
            DiffFile(
                work_item_id=r["work_item_id"],
                path=r["path"],
                status=r["status"],
                additions=r["additions"],
                deletions=r["deletions"],
                patch=r["patch"],
                viewed=bool(r["viewed"]),
            )
            for r in rows
        ]

    def set_file_viewed(self, work_item_id: int, path: str, viewed: bool) -> bool:
        with self._write() as conn:
            cur = conn.execute(
                "UPDATE diff_files SET viewed=? WHERE work_item_id=? AND path=?",
                (int(viewed), work_item_id, path),
            )
        return cur.rowcount > 0

    # ------------------------------------------------------------------ #
    # Repository catalogs                                                  #
    # ------------------------------------------------------------------ #

    def upsert_labels(self, repository_id: int, labels: list[Label]) -> None:
        with self._write() as conn:
            conn.executemany(
                """
                INSERT INTO labels (repository_id, name, color) VALUES (?, ?, ?)
                ON CONFLICT(repository_id, name) DO UPDATE SET color = excluded.color
                """,
                [(repository_id, label.name, label.color) for label in labels],
            )

    def list_labels(self, repository_id: int) -> list[Label]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT name, color FROM labels WHERE repository_id=? ORDER BY name COLLATE NOCASE",
                (repository_id,),
            ).fetchall()
        return [Label(name=r["name"], color=r["color"]) for r in rows]

    def upsert_assignable_users(self, repository_id: int, logins: list[str]) -> None:
        with self._write() as conn:
            conn.execute("DELETE FROM assignees WHERE repository_id=?", (repository_id,))
            conn.executemany(
                "INSERT OR IGNORE INTO assignees (repository_id, login) VALUES (?, ?)",
                [(repository_id, login) for login in logins],
            )

    def list_assignable_users(self, repository_id: int) -> list[str]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT login FROM assignees WHERE repository_id=? ORDER BY login COLLATE NOCASE",
                (repository_id,),
            ).fetchall()
        return [r["login"] for r in rows]

    # ------------------------------------------------------------------ #
    # Sync cursors                                                         #
    # ------------------------------------------------------------------ #

    def read_cursor(self, repository_id: int, resource_kind: str) -> SyncCursor | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM sync_cursors WHERE repository_id=? AND resource_kind=?",
                (repository_id, resource_kind),
            ).fetchone()
        if row is None:
            return None
        return SyncCursor(
            repository_id=row["repository_id"],
            resource_kind=row["resource_kind"],
            token=row["cursor_token"],
            page=row["last_page_boundary"],
            since=row["since"],
            high_water=row["high_water"],
            updated_at=row["updated_at"],
        )

    def write_cursor(self, cursor: SyncCursor) -> None:
        with self._write() as conn:
            # The watermark never moves backwards, whatever the caller passes.
            conn.execute(
                """
                INSERT INTO sync_cursors
                  (repository_id, resource_kind, cursor_token, last_page_boundary, since, high_water, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repository_id, resource_kind) DO UPDATE SET
                    cursor_token = excluded.cursor_token,
                    last_page_boundary = excluded.last_page_boundary,
                    since = NULLIF(MAX(COALESCE(excluded.since, ''), COALESCE(sync_cursors.since, '')), ''),
                    high_water = excluded.high_water,
                    updated_at = excluded.updated_at
                """,
                (
                    cursor.repository_id,
                    cursor.resource_kind,
                    cursor.token,
                    cursor.page,
                    cursor.since,
                    cursor.high_water,
                    cursor.updated_at or _now_iso(),
                ),
            )

    def close(self) -> None:
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers.clear()
        with self._lock:
            self._writer.close()

    # ------------------------------------------------------------------ #
    # Row mapping                                                          #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_repository(row: sqlite3.Row) -> Repository:
        return Repository(
            id=row["id"],
            slug=row["slug"],
            remote_id=row["remote_id"],
            permission=row["permission"],
            last_full_scan_at=row["last_full_scan_at"],
        )

    @staticmethod
    def _row_to_work_item(row: sqlite3.Row, labels: set[str], assignees: set[str]) -> WorkItem:
        return WorkItem(
            id=row["id"],
            repository_id=row["repository_id"],
            number=row["number"],
            remote_id=row["remote_id"],
            kind=ItemKind(row["kind"]),
            title=row["title"],
            body=row["body"] or "",
            author=row["author"] or "",
            state=ItemState(row["state"]),
            labels=labels,
            assignees=assignees,
            comments_count=row["comments_count"],
            head_sha=row["head_sha"],
            linked_number=row["linked_number"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_comment(row: sqlite3.Row) -> Comment:
        return Comment(
            id=row["id"],
            work_item_id=row["work_item_id"],
            author=row["author"],
            body=row["body"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
            last_accessed_at=row["last_accessed_at"],
        )

    @staticmethod
    def _row_to_review_comment(row: sqlite3.Row) -> ReviewComment:
        return ReviewComment(
            id=row["id"],
            thread_id=row["thread_id"],
            author=row["author"],
            body=row["body"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
            original_commit_sha=row["original_commit_sha"],
            original_line=row["original_line"],
            original_start_line=row["original_start_line"],
            line=row["line"],
            start_line=row["start_line"],
            position=row["position"],
            diff_hunk=row["diff_hunk"],
            in_reply_to_id=row["in_reply_to_id"],
        )
