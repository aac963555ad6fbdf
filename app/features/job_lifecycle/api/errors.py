"""Translate service Outcomes into HTTP responses."""

from typing import NoReturn, TypeVar

from fastapi import HTTPException

from ..domain.errors import ErrorKind, Outcome, ServiceError

T = TypeVar("T")

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.EXPIRED: 410,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.ALREADY_REVIEWED: 409,
    ErrorKind.STORAGE_UNAVAILABLE: 503,
}


def raise_for_error(error: ServiceError) -> NoReturn:
    raise HTTPException(status_code=STATUS_BY_KIND[error.kind], detail=error.to_dict())


def unwrap(outcome: Outcome[T]) -> T:
    """Return the value or raise the mapped HTTPException."""
    if not outcome.ok:
        raise_for_error(outcome.error)
    return outcome.value
