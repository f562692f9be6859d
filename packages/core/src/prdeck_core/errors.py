"""Error taxonomy shared by the gateway, the sync orchestrator and the write-through coordinator.

Gateway adapters translate transport failures into these classes so the
rest of the core never inspects HTTP status codes or SDK exception types.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prdeck_store.base import StoreIntegrityError

if TYPE_CHECKING:
    from prdeck_core.sync import SyncOutcome

__all__ = [
    "PrdeckError",
    "TransientNetwork",
    "RateLimited",
    "AuthExpired",
    "RemoteNotFound",
    "PartialSyncFailure",
    "Conflict",
    "PermissionDenied",
    "SyncCancelled",
    "StoreIntegrityError",
]


class PrdeckError(Exception):
    """Base class for every error raised by prdeck_core."""


class TransientNetwork(PrdeckError):
    """Connection failure, timeout or 5xx. Safe to retry."""


class RateLimited(PrdeckError):
    """The remote refused the call until ``reset_at`` (epoch seconds)."""

    def __init__(self, message: str = "rate limited", reset_at: float | None = None):
        super().__init__(message)
        self.reset_at = reset_at


class AuthExpired(PrdeckError):
    """The credential was rejected. Never retried; the user must re-authenticate."""


class RemoteNotFound(PrdeckError):
    """The entity no longer exists upstream (404/410)."""


class Conflict(PrdeckError):
    """The remote rejected a mutation because its state moved on (409/422)."""


class PermissionDenied(PrdeckError):
    """The viewer lacks the permission required for the action."""


class SyncCancelled(PrdeckError):
    """The sync context was cancelled between pages."""


class PartialSyncFailure(PrdeckError):
    """A cycle gave up after committing some pages.

    ``outcome`` records what was committed; the stored cursor points at the
    last committed page so the next call resumes after it.
    """

    def __init__(self, outcome: SyncOutcome, cause: BaseException | None = None):
        super().__init__(
            f"sync of {outcome.resource} stopped after {outcome.pages} committed page(s): {cause}"
        )
        self.outcome = outcome
        self.cause = cause
