from __future__ import annotations

from fastapi import HTTPException, status

from apps.api.helpdesk.errors import (
    AccountDeactivated,
    AuthorizationError,
    HelpdeskError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)

FORCE_SIGN_OUT_HEADER = "X-Force-Sign-Out"


def http_error(exc: HelpdeskError) -> HTTPException:
    """Translate an engine error into the HTTP response the client should see."""

    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, AccountDeactivated):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
            headers={FORCE_SIGN_OUT_HEADER: "true"},
        )
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PersistenceError):
        code = status.HTTP_500_INTERNAL_SERVER_ERROR if exc.mutation_applied else status.HTTP_503_SERVICE_UNAVAILABLE
        return HTTPException(
            status_code=code,
            detail={"message": str(exc), "mutation_applied": exc.mutation_applied},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
