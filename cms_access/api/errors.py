from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, status

from cms_access.services.errors import (
    AccessError,
    AuthError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

HANDLED_ERRORS = (NotFoundError, ConflictError, AuthError, ValidationError)

_STATUS_BY_ERROR: dict[type[AccessError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    AuthError: status.HTTP_401_UNAUTHORIZED,
    ValidationError: status.HTTP_400_BAD_REQUEST,
}


def handle_access_error(exc: AccessError) -> NoReturn:
    status_code = _STATUS_BY_ERROR.get(type(exc))
    if status_code is None:
        raise exc
    raise HTTPException(status_code=status_code, detail={"message": str(exc)}) from exc


def not_found(label: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"message": f"{label} not found"})
