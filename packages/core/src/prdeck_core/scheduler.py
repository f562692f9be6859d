"""Background workers and the change-notification channel.

The foreground and the workers share nothing but the store and the
ChangeNotifier queue. SyncScheduler runs cycles on a thread pool and
serializes them per (repository, resource): submitting a key that is
already in flight is coalesced into the running cycle.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

from prdeck_core.errors import AuthExpired, PrdeckError, StoreIntegrityError, SyncCancelled
from prdeck_core.gh.gateway import Resource

if TYPE_CHECKING:
    from prdeck_core.sync import SyncContext, SyncOrchestrator, SyncOutcome
    from prdeck_store.base import BaseStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    repository: str  # slug
    resource: str  # resource key or action name
    number: int | None = None  # None = several items changed
    at: float = field(default_factory=time.time)


class ChangeNotifier:
    """Thread-safe fan-in of "something changed in the store" events."""

    def __init__(self):
        self._queue: queue.Queue[ChangeEvent] = queue.Queue()

    def publish(self, repository: str, resource: str, number: int | None = None) -> None:
        self._queue.put(ChangeEvent(repository, resource, number))

    def wait(self, timeout: float | None = None) -> ChangeEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ChangeEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class SyncScheduler:
    def __init__(self, orchestrator: SyncOrchestrator, workers: int = 4):
        self._orchestrator = orchestrator
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="prdeck-sync")
        self._in_flight: dict[tuple[str, str], Future] = {}
        self._lock = threading.Lock()

    def submit(
        self,
        context: SyncContext,
        resource: Resource,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> Future | None:
        """Queue a cycle. Returns None when the same key is already running."""
        key = (context.repository.slug, resource.key)
        with self._lock:
            if key in self._in_flight:
                logger.debug("Coalesced sync of %s/%s", *key)
                return None
            future = self._executor.submit(self._run, context, resource, on_error)
            self._in_flight[key] = future
        future.add_done_callback(lambda _f: self._release(key))
        return future

    def in_flight(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._in_flight)

    def _release(self, key: tuple[str, str]) -> None:
        with self._lock:
            self._in_flight.pop(key, None)

    def _run(
        self,
        context: SyncContext,
        resource: Resource,
        on_error: Callable[[BaseException], None] | None,
    ) -> SyncOutcome | None:
        try:
            return self._orchestrator.sync(context, resource)
        except SyncCancelled:
            logger.debug("Sync of %s/%s cancelled", context.repository.slug, resource)
            return None
        except (PrdeckError, StoreIntegrityError) as exc:
            if on_error is None:
                raise
            on_error(exc)
            return None

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)


class BackgroundPoller:
    """Periodically re-syncs item lists and the item the user has open.

    Item lists every ``issue_poll_interval`` seconds; the open item's
    conversation (and review, for pull requests) every
    ``comment_poll_interval`` seconds. Idle polls write nothing to the
    store. Cache housekeeping (comment pruning and purging deletion markers)
    runs every ``housekeeping_interval`` seconds, and the open item's
    comments are marked accessed when it gains focus and before each prune.
    """

    def __init__(
        self,
        scheduler: SyncScheduler,
        store: BaseStore,
        contexts: list[SyncContext],
        issue_poll_interval: float = 15,
        comment_poll_interval: float = 30,
        comment_ttl_seconds: int = 7 * 24 * 3600,
        comment_cap: int = 7500,
        deleted_retention_seconds: int = 300,
        housekeeping_interval: float = 300,
        on_error: Callable[[BaseException], None] | None = None,
    ):
        self._scheduler = scheduler
        self._store = store
        self._contexts = contexts
        self._issue_interval = issue_poll_interval
        self._comment_interval = comment_poll_interval
        self._comment_ttl = comment_ttl_seconds
        self._comment_cap = comment_cap
        self._deleted_retention = deleted_retention_seconds
        self._housekeeping_interval = housekeeping_interval
        self._on_error = on_error
        self._focus: tuple[SyncContext, SyncContext, int] | None = None  # (repository context, item context, number)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_issue_poll: float | None = None
        self._last_comment_poll: float | None = None
        self._last_housekeeping: float | None = None
        self._touch_pending = False

    def focus(self, context: SyncContext, number: int | None) -> None:
        """Set the item whose comments are polled (None clears it) and poll it now.

        Cycles still fetching the previously focused item are cancelled at
        their next page boundary; item-list polls keep running.
        """
        if self._focus is not None:
            parent, item_context, current = self._focus
            if parent is context and current == number:
                return
            item_context.cancel()
        self._focus = (context, context.child(), number) if number is not None else None
        self._last_comment_poll = None
        self._touch_pending = number is not None

    def tick(self, now: float | None = None) -> list[Future]:
        """Submit whatever is due. Exposed for callers that drive their own loop."""
        now = time.monotonic() if now is None else now
        submitted = []

        if self._last_issue_poll is None or now - self._last_issue_poll >= self._issue_interval:
            self._last_issue_poll = now
            for context in self._contexts:
                future = self._scheduler.submit(context, Resource.issues(), self._on_error)
                if future is not None:
                    submitted.append(future)

        if self._focus is not None and (
            self._last_comment_poll is None or now - self._last_comment_poll >= self._comment_interval
        ):
            self._last_comment_poll = now
            _, item_context, number = self._focus
            item = self._store.get_work_item(item_context.repository.id, number)
            if item is not None:
                if self._touch_pending:
                    self._store.touch_comments(item.id, int(time.time()))
                    self._touch_pending = False
                resources = [Resource.comments(number)]
                if item.is_pull_request:
                    resources.append(Resource.review(number))
                for resource in resources:
                    future = self._scheduler.submit(item_context, resource, self._on_error)
                    if future is not None:
                        submitted.append(future)

        if self._last_housekeeping is None or now - self._last_housekeeping >= self._housekeeping_interval:
            self._last_housekeeping = now
            self._housekeeping()

        return submitted

    def _housekeeping(self) -> None:
        if self._focus is not None:
            _, item_context, number = self._focus
            item = self._store.get_work_item(item_context.repository.id, number)
            if item is not None:
                self._store.touch_comments(item.id, int(time.time()))
        self._store.prune_comments(self._comment_ttl, self._comment_cap)
        cutoff = datetime.fromtimestamp(time.time() - self._deleted_retention, timezone.utc)
        self._store.purge_deleted(cutoff.replace(microsecond=0).isoformat().replace("+00:00", "Z"))

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, name="prdeck-poller", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except AuthExpired as exc:
                logger.error("Polling stopped: %s", exc)
                if self._on_error is not None:
                    self._on_error(exc)
                return
            except (PrdeckError, StoreIntegrityError) as exc:
                logger.error("Poll failed: %s", exc)
                if self._on_error is not None:
                    self._on_error(exc)
            self._stop.wait(1.0)

    def stop(self) -> None:
        self._stop.set()
        for context in self._contexts:
            context.cancel()
        if self._focus is not None:
            self._focus[1].cancel()
        if self._thread is not None:
            self._thread.join()
