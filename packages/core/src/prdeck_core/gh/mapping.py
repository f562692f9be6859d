"""Map GitHub REST and GraphQL payloads onto store models."""

from __future__ import annotations

import re

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
    WorkItem,
)

# "Fixes #12", "closes #7", "resolved #3": GitHub closing keywords.
_LINK_RE = re.compile(r"\b(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s+#(\d+)\b", re.IGNORECASE)

# Highest first; GitHub reports "push"/"pull" for write/read.
_PERMISSION_ORDER = [
    ("admin", "admin"),
    ("maintain", "maintain"),
    ("push", "write"),
    ("triage", "triage"),
    ("pull", "read"),
]


def _login(user: dict | None) -> str:
    return (user or {}).get("login") or "ghost"


def linked_number(body: str | None) -> int | None:
    match = _LINK_RE.search(body or "")
    return int(match.group(1)) if match else None


def work_item_from_issue(payload: dict, repository_id: int) -> WorkItem:
    """Map an entry of ``GET /repos/{owner}/{repo}/issues``.

    The issues endpoint lists pull requests too; they carry a ``pull_request``
    key whose ``merged_at`` distinguishes merged from closed.
    """
    pr_info = payload.get("pull_request")
    kind = ItemKind.PULL_REQUEST if pr_info is not None else ItemKind.ISSUE
    state = ItemState.OPEN if payload.get("state") == "open" else ItemState.CLOSED
    if pr_info is not None and pr_info.get("merged_at"):
        state = ItemState.MERGED

    return WorkItem(
        repository_id=repository_id,
        number=payload["number"],
        remote_id=payload.get("id"),
        kind=kind,
        title=payload.get("title") or "",
        body=payload.get("body") or "",
        author=_login(payload.get("user")),
        state=state,
        labels={label["name"] for label in payload.get("labels") or []},
        assignees={_login(user) for user in payload.get("assignees") or []},
        comments_count=payload.get("comments") or 0,
        linked_number=linked_number(payload.get("body")),
        created_at=payload.get("created_at"),
        updated_at=payload.get("updated_at"),
    )


def work_item_from_pull(payload: dict, repository_id: int) -> WorkItem:
    """Map an entry of ``GET /repos/{owner}/{repo}/pulls``."""
    if payload.get("merged_at") or payload.get("merged"):
        state = ItemState.MERGED
    elif payload.get("state") == "open":
        state = ItemState.OPEN
    else:
        state = ItemState.CLOSED

    return WorkItem(
        repository_id=repository_id,
        number=payload["number"],
        remote_id=payload.get("id"),
        kind=ItemKind.PULL_REQUEST,
        title=payload.get("title") or "",
        body=payload.get("body") or "",
        author=_login(payload.get("user")),
        state=state,
        labels={label["name"] for label in payload.get("labels") or []},
        assignees={_login(user) for user in payload.get("assignees") or []},
        comments_count=payload.get("comments") or 0,
        head_sha=(payload.get("head") or {}).get("sha"),
        linked_number=linked_number(payload.get("body")),
        created_at=payload.get("created_at"),
        updated_at=payload.get("updated_at"),
    )


def comment_from_payload(payload: dict) -> Comment:
    return Comment(
        id=payload["id"],
        work_item_id=None,
        author=_login(payload.get("user")),
        body=payload.get("body") or "",
        created_at=payload.get("created_at"),
        updated_at=payload.get("updated_at"),
    )


def review_comment_from_payload(payload: dict) -> ReviewComment:
    return ReviewComment(
        id=payload["id"],
        thread_id=None,
        author=_login(payload.get("user")),
        body=payload.get("body") or "",
        created_at=payload.get("created_at"),
        updated_at=payload.get("updated_at"),
        original_commit_sha=payload.get("original_commit_id"),
        original_line=payload.get("original_line"),
        original_start_line=payload.get("original_start_line"),
        line=payload.get("line"),
        start_line=payload.get("start_line"),
        position=payload.get("position"),
        diff_hunk=payload.get("diff_hunk"),
        in_reply_to_id=payload.get("in_reply_to_id"),
    )


def anchor_from_payload(payload: dict) -> ReviewAnchor:
    """Build the immutable anchor from a thread's root REST comment."""
    line = payload.get("original_line") or payload.get("line")
    start_line = payload.get("original_start_line") or payload.get("start_line")
    if start_line == line:
        start_line = None
    return ReviewAnchor(
        commit_sha=payload.get("original_commit_id") or payload.get("commit_id") or "",
        path=payload["path"],
        side=Side.from_api(payload.get("side")),
        line=line or 0,
        start_line=start_line,
    )


def threads_from_rest_comments(payloads: list[dict], work_item_id: int | None = None) -> list[ReviewThread]:
    """Group flat REST review comments into threads by their reply root.

    Used when thread identities are unavailable. Thread ids are derived from
    the root comment so they stay stable across fetches.
    """
    by_id = {p["id"]: p for p in payloads}
    roots: dict[int, list[dict]] = {}
    for payload in sorted(payloads, key=lambda p: (p.get("created_at") or "", p["id"])):
        root_id = payload["id"]
        seen = set()
        while by_id.get(root_id, {}).get("in_reply_to_id") and root_id not in seen:
            seen.add(root_id)
            root_id = by_id[root_id]["in_reply_to_id"]
        roots.setdefault(root_id, []).append(payload)

    threads = []
    for root_id, members in roots.items():
        root = by_id.get(root_id, members[0])
        threads.append(
            ReviewThread(
                id=f"comment-{root_id}",
                work_item_id=work_item_id,
                anchor=anchor_from_payload(root),
                resolved=False,
                comments=[review_comment_from_payload(m) for m in members],
            )
        )
    return threads


def _graphql_comment(node: dict) -> ReviewComment:
    return ReviewComment(
        id=node["databaseId"],
        thread_id=None,
        author=_login(node.get("author")),
        body=node.get("body") or "",
        created_at=node.get("createdAt"),
        updated_at=node.get("updatedAt"),
        original_commit_sha=(node.get("originalCommit") or {}).get("oid"),
        original_line=node.get("originalLine"),
        original_start_line=node.get("originalStartLine"),
        line=node.get("line"),
        start_line=node.get("startLine"),
        diff_hunk=node.get("diffHunk"),
        in_reply_to_id=(node.get("replyTo") or {}).get("databaseId"),
    )


def thread_from_graphql(node: dict, work_item_id: int | None = None) -> ReviewThread:
    """Map a ``PullRequestReviewThread`` node (see THREAD_FIELDS in github.py)."""
    comments = [_graphql_comment(c) for c in (node.get("comments") or {}).get("nodes") or []]
    comments.sort(key=lambda c: (c.created_at or "", c.id))
    root = comments[0] if comments else None

    line = node.get("originalLine") or (root.original_line if root else None) or node.get("line") or 0
    start_line = node.get("originalStartLine") or (root.original_start_line if root else None)
    if start_line == line:
        start_line = None

    return ReviewThread(
        id=node["id"],
        work_item_id=work_item_id,
        anchor=ReviewAnchor(
            commit_sha=(root.original_commit_sha if root else None) or "",
            path=node["path"],
            side=Side.from_api(node.get("diffSide")),
            line=line,
            start_line=start_line,
        ),
        resolved=bool(node.get("isResolved")),
        comments=comments,
    )


def diff_file_from_payload(payload: dict, viewed: bool = False) -> DiffFile:
    return DiffFile(
        work_item_id=None,
        path=payload["filename"],
        status=payload.get("status") or "modified",
        additions=payload.get("additions") or 0,
        deletions=payload.get("deletions") or 0,
        patch=payload.get("patch"),
        viewed=viewed,
    )


def label_from_payload(payload: dict) -> Label:
    return Label(name=payload["name"], color=payload.get("color") or "")


def permission_from_payload(payload: dict) -> str | None:
    permissions = payload.get("permissions")
    if not permissions:
        return None
    for api_name, name in _PERMISSION_ORDER:
        if permissions.get(api_name):
            return name
    return "none"


def repository_from_payload(payload: dict) -> Repository:
    return Repository(
        slug=payload["full_name"],
        remote_id=payload.get("id"),
        permission=permission_from_payload(payload),
    )
