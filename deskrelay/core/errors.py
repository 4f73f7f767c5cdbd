"""Error taxonomy shared by stores, feeds, listeners and managers."""

from __future__ import annotations

from typing import Any


class SyncError(RuntimeError):
    """Base error for synchronization core failures."""

    kind = "sync_error"


class NotFoundError(SyncError):
    """Raised when an operation targets a non-existent entity."""

    kind = "not_found"


class ConflictError(SyncError):
    """Raised when an operation violates a state-machine precondition."""

    kind = "conflict"


class AlreadyClaimedError(ConflictError):
    """Raised when claiming a ticket that is no longer waiting."""

    kind = "already_claimed"


class StaleWriteError(ConflictError):
    """Raised by a store when a guarded write finds an unexpected status.

    ``current`` holds the entity as persisted at the time the guard failed.
    """

    kind = "stale_write"

    def __init__(self, message: str, *, current: Any = None) -> None:
        super().__init__(message)
        self.current = current


class AlreadyResolvedError(SyncError):
    """Raised when an operation lost a race against expiry or confirmation."""

    kind = "already_resolved"


class PermissionDeniedError(SyncError):
    """Raised when the acting participant may not perform an operation."""

    kind = "permission_denied"


class InvalidInputError(SyncError):
    """Raised for malformed operation arguments."""

    kind = "invalid_input"


class TransportError(SyncError):
    """Raised when the remote store or change feed is unreachable."""

    kind = "transport"


class MalformedPayloadError(SyncError):
    """Raised when a cross-process envelope fails to parse or validate."""

    kind = "malformed_payload"
