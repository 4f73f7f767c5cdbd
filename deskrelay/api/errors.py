from __future__ import annotations

from fastapi import HTTPException

from deskrelay.core.errors import (
    AlreadyResolvedError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    SyncError,
    TransportError,
)

_STATUS_BY_ERROR: tuple[tuple[type[SyncError], int], ...] = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (AlreadyResolvedError, 409),
    (PermissionDeniedError, 403),
    (InvalidInputError, 422),
    (TransportError, 503),
)


def http_error(exc: SyncError) -> HTTPException:
    """Translate a domain error into an HTTP error carrying its stable kind."""

    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"kind": exc.kind, "message": str(exc)})
    return HTTPException(status_code=500, detail={"kind": exc.kind, "message": str(exc)})
