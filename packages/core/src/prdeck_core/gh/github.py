"""GitHub implementation of RemoteGateway, built on PyGithub.

PyGithub's object layer hides ETags and does not speak GraphQL threads, so
list fetches go through the client's requester directly: ``requestJson``
returns status and headers without raising, which is what conditional
requests (304 Not Modified) and rate-limit classification need.

Every failure leaves this module as a prdeck_core.errors class.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Callable

import requests
from github import (
    Auth,
    BadCredentialsException,
    Github,
    GithubException,
    RateLimitExceededException,
    UnknownObjectException,
)

from prdeck_core.actions import (
    AddComment,
    AddReviewComment,
    CloseItem,
    DeleteComment,
    DeleteReviewComment,
    EditComment,
    EditReviewComment,
    MarkFileViewed,
    ReopenItem,
    ReopenThread,
    ResolveThread,
    SetAssignees,
    SetLabels,
)
from prdeck_core.errors import (
    AuthExpired,
    Conflict,
    PermissionDenied,
    PrdeckError,
    RateLimited,
    RemoteNotFound,
    TransientNetwork,
)
from prdeck_core.gh import mapping
from prdeck_core.gh.gateway import (
    NOT_MODIFIED,
    Capability,
    EntityKind,
    NotModified,
    Page,
    PageCursor,
    RemoteGateway,
    Resource,
    ResourceKind,
    ReviewSnapshot,
)
from prdeck_store.models import Repository

logger = logging.getLogger(__name__)

# GitHub caps a pull request's file list at 3000 entries (30 pages of 100).
_MAX_FILE_PAGES = 30

_COMMENT_FIELDS = """
databaseId body createdAt updatedAt diffHunk path
line startLine originalLine originalStartLine
author { login }
originalCommit { oid }
replyTo { databaseId }
"""

THREAD_FIELDS = f"""
id isResolved path diffSide line startLine originalLine originalStartLine
comments(first: 100) {{ nodes {{ {_COMMENT_FIELDS} }} }}
"""

_THREADS_QUERY = f"""
query($owner: String!, $name: String!, $number: Int!, $after: String) {{
  repository(owner: $owner, name: $name) {{
    pullRequest(number: $number) {{
      files(first: 100) {{ nodes {{ path viewerViewedState }} }}
      reviewThreads(first: 100, after: $after) {{
        pageInfo {{ hasNextPage endCursor }}
        nodes {{ {THREAD_FIELDS} }}
      }}
    }}
  }}
}}
"""

_THREAD_QUERY = f"""
query($id: ID!) {{
  node(id: $id) {{ ... on PullRequestReviewThread {{ {THREAD_FIELDS} }} }}
}}
"""

_RESOLVE_MUTATION = f"""
mutation($id: ID!) {{
  resolveReviewThread(input: {{threadId: $id}}) {{ thread {{ {THREAD_FIELDS} }} }}
}}
"""

_UNRESOLVE_MUTATION = f"""
mutation($id: ID!) {{
  unresolveReviewThread(input: {{threadId: $id}}) {{ thread {{ {THREAD_FIELDS} }} }}
}}
"""

_VIEWED_MUTATION = """
mutation($id: ID!, $path: String!) {
  markFileAsViewed(input: {pullRequestId: $id, path: $path}) { clientMutationId }
}
"""

_UNVIEWED_MUTATION = """
mutation($id: ID!, $path: String!) {
  unmarkFileAsViewed(input: {pullRequestId: $id, path: $path}) { clientMutationId }
}
"""


def _has_next(headers: dict) -> bool:
    return 'rel="next"' in (headers.get("link") or "")


def _rate_limit_exhausted(headers: dict) -> bool:
    return headers.get("x-ratelimit-remaining") == "0" or "retry-after" in headers


def _reset_at(headers: dict) -> float | None:
    if "retry-after" in headers:
        try:
            return time.time() + float(headers["retry-after"])
        except ValueError:
            return None
    try:
        return float(headers["x-ratelimit-reset"])
    except (KeyError, ValueError):
        return None


def classify_status(status: int, headers: dict, message: str = "") -> Exception | None:
    """Map an HTTP status onto the error taxonomy; None for success statuses."""
    if status < 300 or status == 304:
        return None
    text = f"HTTP {status}: {message}".strip()
    if status == 401:
        return AuthExpired(text)
    if status in (403, 429) and _rate_limit_exhausted(headers):
        return RateLimited(text, reset_at=_reset_at(headers))
    if status == 429:
        return RateLimited(text, reset_at=_reset_at(headers))
    if status == 403:
        return PermissionDenied(text)
    if status in (301, 404, 410):
        return RemoteNotFound(text)
    if status in (409, 422):
        return Conflict(text)
    if status >= 500:
        return TransientNetwork(text)
    if status == 408:
        return TransientNetwork(text)
    return PrdeckError(text)


def translate(exc: BaseException) -> Exception:
    """Translate a PyGithub or requests exception into the error taxonomy."""
    if isinstance(exc, BadCredentialsException):
        return AuthExpired(str(exc))
    if isinstance(exc, RateLimitExceededException):
        return RateLimited(str(exc), reset_at=_reset_at({k.lower(): v for k, v in (exc.headers or {}).items()}))
    if isinstance(exc, UnknownObjectException):
        return RemoteNotFound(str(exc))
    if isinstance(exc, GithubException):
        headers = {k.lower(): v for k, v in (exc.headers or {}).items()}
        message = (exc.data or {}).get("message", "") if isinstance(exc.data, dict) else str(exc.data or "")
        return classify_status(exc.status or 500, headers, message) or TransientNetwork(str(exc))
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return TransientNetwork(str(exc))
    return exc


class GitHubGateway(RemoteGateway):
    """RemoteGateway over GitHub's REST v3 and GraphQL v4 APIs.

    ``token_provider`` is called whenever a client is (re)built; a 401 drops
    the client so the next call picks up a refreshed token.
    """

    def __init__(
        self,
        token_provider: Callable[[], str | None],
        timeout: float = 15,
        base_url: str | None = None,
        graphql: bool = True,
    ):
        self._token_provider = token_provider
        self._timeout = timeout
        self._base_url = base_url
        self._graphql = graphql
        self._client: Github | None = None

    # ------------------------------------------------------------------ #
    # Transport                                                            #
    # ------------------------------------------------------------------ #

    def _requester(self):
        if self._client is None:
            token = self._token_provider()
            if not token:
                raise AuthExpired("no GitHub token available")
            kwargs: dict[str, Any] = {"auth": Auth.Token(token), "timeout": int(self._timeout)}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = Github(**kwargs)
        return self._client.requester

    def _request(
        self,
        verb: str,
        url: str,
        parameters: dict | None = None,
        headers: dict | None = None,
        body: Any = None,
    ) -> tuple[int, dict, Any]:
        try:
            status, response_headers, output = self._requester().requestJson(
                verb, url, parameters=parameters, headers=headers, input=body
            )
        except (GithubException, requests.RequestException) as exc:
            raise self._fail(translate(exc)) from exc

        response_headers = {k.lower(): v for k, v in (response_headers or {}).items()}
        data = json.loads(output) if output else None
        message = data.get("message", "") if isinstance(data, dict) else ""
        error = classify_status(status, response_headers, message)
        if error is not None:
            raise self._fail(error)
        return status, response_headers, data

    def _get_all(self, url: str, parameters: dict | None = None, max_pages: int | None = None) -> list[dict]:
        results: list[dict] = []
        page = 1
        while True:
            params = {**(parameters or {}), "per_page": 100, "page": page}
            _, headers, data = self._request("GET", url, parameters=params)
            results.extend(data or [])
            if not _has_next(headers) or (max_pages is not None and page >= max_pages):
                return results
            page += 1

    def _graphql_query(self, query: str, variables: dict) -> dict:
        try:
            _, data = self._requester().graphql_query(query, variables)
        except (GithubException, requests.RequestException) as exc:
            raise self._fail(translate(exc)) from exc
        errors = data.get("errors") if isinstance(data, dict) else None
        if errors:
            kinds = {e.get("type") for e in errors}
            message = "; ".join(e.get("message", "") for e in errors)
            if "NOT_FOUND" in kinds:
                raise RemoteNotFound(message)
            if "FORBIDDEN" in kinds:
                raise PermissionDenied(message)
            if "RATE_LIMITED" in kinds:
                raise RateLimited(message)
            raise Conflict(message)
        return data.get("data", data) if isinstance(data, dict) else {}

    def _fail(self, error: Exception) -> Exception:
        if isinstance(error, AuthExpired):
            self._client = None
        return error

    # ------------------------------------------------------------------ #
    # RemoteGateway                                                        #
    # ------------------------------------------------------------------ #

    def supports(self, capability: Capability) -> bool:
        if capability is Capability.CONDITIONAL_FETCH:
            return True
        return self._graphql

    def fetch_page(self, repository: Repository, resource: Resource, cursor: PageCursor) -> Page | NotModified:
        slug = repository.slug
        headers = {"If-None-Match": cursor.token} if cursor.token and cursor.page == 1 else None
        params: dict[str, Any] = {"per_page": cursor.per_page, "page": cursor.page}

        if resource.kind is ResourceKind.REVIEW:
            return self._fetch_review(repository, resource.number, cursor)

        if resource.kind is ResourceKind.ISSUES:
            url = f"/repos/{slug}/issues"
            params.update(state="all", sort="updated", direction="desc")
            if cursor.since:
                params["since"] = cursor.since
        elif resource.kind is ResourceKind.PULLS:
            url = f"/repos/{slug}/pulls"
            params.update(state="all", sort="updated", direction="desc")
        elif resource.kind is ResourceKind.COMMENTS:
            url = f"/repos/{slug}/issues/{resource.number}/comments"
            if cursor.since:
                params["since"] = cursor.since
        elif resource.kind is ResourceKind.LABELS:
            url = f"/repos/{slug}/labels"
        else:
            url = f"/repos/{slug}/assignees"

        status, response_headers, data = self._request("GET", url, parameters=params, headers=headers)
        if status == 304:
            return NOT_MODIFIED

        has_next = _has_next(response_headers)
        payloads = data or []
        if resource.kind is ResourceKind.ISSUES:
            entities = [mapping.work_item_from_issue(p, repository.id) for p in payloads]
        elif resource.kind is ResourceKind.PULLS:
            entities = [mapping.work_item_from_pull(p, repository.id) for p in payloads]
            if cursor.since:
                # The pulls endpoint has no ``since``; pages are newest-updated first.
                fresh = [e for e in entities if (e.updated_at or "") >= cursor.since]
                has_next = has_next and len(fresh) == len(entities)
                entities = fresh
        elif resource.kind is ResourceKind.COMMENTS:
            entities = [mapping.comment_from_payload(p) for p in payloads]
        elif resource.kind is ResourceKind.LABELS:
            entities = [mapping.label_from_payload(p) for p in payloads]
        else:
            entities = [p["login"] for p in payloads]

        return Page(number=cursor.page, entities=entities, token=response_headers.get("etag"), has_next=has_next)

    def _fetch_review(self, repository: Repository, number: int, cursor: PageCursor) -> Page | NotModified:
        """Fetch a complete review snapshot.

        The snapshot is fingerprinted; an unchanged fingerprint is reported
        as NotModified so an idle poll writes nothing.
        """
        slug = repository.slug
        _, _, pull = self._request("GET", f"/repos/{slug}/pulls/{number}")
        files = self._get_all(f"/repos/{slug}/pulls/{number}/files", max_pages=_MAX_FILE_PAGES)

        viewed: dict[str, bool] = {}
        if self._graphql:
            threads, viewed, raw_threads = self._fetch_threads(repository, number)
            fingerprint_source: Any = [pull, files, raw_threads, viewed]
        else:
            comments = self._get_all(f"/repos/{slug}/pulls/{number}/comments")
            threads = mapping.threads_from_rest_comments(comments)
            fingerprint_source = [pull, files, comments]

        token = hashlib.sha256(json.dumps(fingerprint_source, sort_keys=True, default=str).encode()).hexdigest()
        if cursor.token and cursor.token == token:
            return NOT_MODIFIED

        snapshot = ReviewSnapshot(
            item=mapping.work_item_from_pull(pull, repository.id),
            head_sha=(pull.get("head") or {}).get("sha"),
            files=[mapping.diff_file_from_payload(f, viewed.get(f["filename"], False)) for f in files],
            threads=threads,
            files_viewed_known=self._graphql,
        )
        return Page(number=1, entities=[snapshot], token=token, has_next=False)

    def _fetch_threads(self, repository: Repository, number: int):
        threads = []
        raw = []
        viewed: dict[str, bool] = {}
        after = None
        while True:
            data = self._graphql_query(
                _THREADS_QUERY,
                {"owner": repository.owner, "name": repository.name, "number": number, "after": after},
            )
            pull = ((data.get("repository") or {}).get("pullRequest")) or {}
            if not pull:
                raise RemoteNotFound(f"pull request #{number} not found in {repository.slug}")
            for f in (pull.get("files") or {}).get("nodes") or []:
                viewed[f["path"]] = f.get("viewerViewedState") == "VIEWED"
            connection = pull.get("reviewThreads") or {}
            for node in connection.get("nodes") or []:
                raw.append(node)
                threads.append(mapping.thread_from_graphql(node))
            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                return threads, viewed, raw
            after = page_info.get("endCursor")

    def fetch_single(self, repository: Repository, kind: EntityKind, ident: Any) -> Any:
        slug = repository.slug
        if kind is EntityKind.REPOSITORY:
            _, _, data = self._request("GET", f"/repos/{ident}")
            return mapping.repository_from_payload(data)
        if kind is EntityKind.WORK_ITEM:
            _, _, data = self._request("GET", f"/repos/{slug}/issues/{ident}")
            if data.get("pull_request") is not None:
                _, _, pull = self._request("GET", f"/repos/{slug}/pulls/{ident}")
                return mapping.work_item_from_pull(pull, repository.id)
            return mapping.work_item_from_issue(data, repository.id)
        if kind is EntityKind.COMMENT:
            _, _, data = self._request("GET", f"/repos/{slug}/issues/comments/{ident}")
            return mapping.comment_from_payload(data)
        if kind is EntityKind.REVIEW_COMMENT:
            _, _, data = self._request("GET", f"/repos/{slug}/pulls/comments/{ident}")
            return mapping.review_comment_from_payload(data)
        if kind is EntityKind.THREAD:
            if str(ident).startswith("comment-"):
                _, _, data = self._request("GET", f"/repos/{slug}/pulls/comments/{str(ident)[8:]}")
                return mapping.threads_from_rest_comments([data])[0]
            node = self._graphql_query(_THREAD_QUERY, {"id": ident}).get("node")
            if not node:
                raise RemoteNotFound(f"review thread {ident} not found")
            return mapping.thread_from_graphql(node)
        raise ValueError(f"unsupported entity kind {kind!r}")

    def mutate(self, repository: Repository, action: Any) -> Any:
        slug = repository.slug
        logger.debug("Sending %s to %s", type(action).__name__, slug)

        if isinstance(action, AddComment):
            url = f"/repos/{slug}/issues/{action.number}/comments"
            _, _, data = self._request("POST", url, body={"body": action.body})
            return mapping.comment_from_payload(data)
        if isinstance(action, EditComment):
            url = f"/repos/{slug}/issues/comments/{action.comment_id}"
            _, _, data = self._request("PATCH", url, body={"body": action.body})
            return mapping.comment_from_payload(data)
        if isinstance(action, DeleteComment):
            self._request("DELETE", f"/repos/{slug}/issues/comments/{action.comment_id}")
            return None
        if isinstance(action, (CloseItem, ReopenItem, SetLabels, SetAssignees)):
            if isinstance(action, CloseItem):
                body: dict[str, Any] = {"state": "closed"}
            elif isinstance(action, ReopenItem):
                body = {"state": "open"}
            elif isinstance(action, SetLabels):
                body = {"labels": sorted(action.labels)}
            else:
                body = {"assignees": sorted(action.assignees)}
            _, _, data = self._request("PATCH", f"/repos/{slug}/issues/{action.number}", body=body)
            if data.get("pull_request") is not None:
                # The issues endpoint does not report head or merge state.
                return self.fetch_single(repository, EntityKind.WORK_ITEM, action.number)
            return mapping.work_item_from_issue(data, repository.id)
        if isinstance(action, (ResolveThread, ReopenThread)):
            mutation = _RESOLVE_MUTATION if isinstance(action, ResolveThread) else _UNRESOLVE_MUTATION
            field_name = "resolveReviewThread" if isinstance(action, ResolveThread) else "unresolveReviewThread"
            data = self._graphql_query(mutation, {"id": action.thread_id})
            node = ((data.get(field_name) or {}).get("thread")) or None
            return mapping.thread_from_graphql(node) if node else None
        if isinstance(action, MarkFileViewed):
            _, _, pull = self._request("GET", f"/repos/{slug}/pulls/{action.number}")
            mutation = _VIEWED_MUTATION if action.viewed else _UNVIEWED_MUTATION
            self._graphql_query(mutation, {"id": pull["node_id"], "path": action.path})
            return None
        if isinstance(action, AddReviewComment):
            if action.reply_to is not None:
                url = f"/repos/{slug}/pulls/{action.number}/comments/{action.reply_to}/replies"
                body = {"body": action.body}
            else:
                url = f"/repos/{slug}/pulls/{action.number}/comments"
                commit_sha = action.commit_sha
                if commit_sha is None:
                    _, _, pull = self._request("GET", f"/repos/{slug}/pulls/{action.number}")
                    commit_sha = pull["head"]["sha"]
                body = {
                    "body": action.body,
                    "commit_id": commit_sha,
                    "path": action.path,
                    "line": action.line,
                    "side": action.side.to_api(),
                }
                if action.start_line is not None and action.start_line != action.line:
                    body["start_line"] = action.start_line
                    body["start_side"] = action.side.to_api()
            _, _, data = self._request("POST", url, body=body)
            return mapping.review_comment_from_payload(data)
        if isinstance(action, EditReviewComment):
            _, _, data = self._request(
                "PATCH", f"/repos/{slug}/pulls/comments/{action.comment_id}", body={"body": action.body}
            )
            return mapping.review_comment_from_payload(data)
        if isinstance(action, DeleteReviewComment):
            self._request("DELETE", f"/repos/{slug}/pulls/comments/{action.comment_id}")
            return None
        raise ValueError(f"unsupported action {action!r}")
