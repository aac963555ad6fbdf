"""
Error taxonomy for job lifecycle operations.

Business-rule violations are expected outcomes: services return them inside an
``Outcome`` instead of raising, so API routes and the real-time gateway can map
the kind to a status code or an ``error`` event without string matching.
Infrastructure faults are the exception and travel as ``StorageUnavailableError``.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(StrEnum):
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    EXPIRED = "EXPIRED"
    CONFLICT = "CONFLICT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ALREADY_REVIEWED = "ALREADY_REVIEWED"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"


DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NOT_FOUND: "The requested record does not exist",
    ErrorKind.FORBIDDEN: "You are not allowed to perform this action",
    ErrorKind.INVALID_TRANSITION: "This change is not allowed in the current status",
    ErrorKind.EXPIRED: "This quote has expired",
    ErrorKind.CONFLICT: "The record was changed by someone else, reload and retry",
    ErrorKind.VALIDATION_ERROR: "The request is invalid",
    ErrorKind.ALREADY_REVIEWED: "You have already reviewed this job",
    ErrorKind.STORAGE_UNAVAILABLE: "The service is temporarily unavailable",
}


@dataclass(frozen=True, slots=True)
class ServiceError:
    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict[str, Any]:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True, slots=True)
class Outcome(Generic[T]):
    """Result of a service operation: a value or a typed error."""

    value: T | None = None
    error: ServiceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str | None = None, **details: Any) -> "Outcome[T]":
        return cls(error=ServiceError(kind, message or DEFAULT_MESSAGES[kind], details))

    def unwrap(self) -> T:
        if self.error is not None:
            raise ValueError(f"{self.error.code}: {self.error.message}")
        return self.value


class ConflictError(Exception):
    """A versioned write lost a compare-and-swap race."""

    def __init__(self, entity: str, entity_id: str, expected_version: int):
        super().__init__(f"{entity} {entity_id} changed (expected version {expected_version})")
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version


class DuplicateRecordError(Exception):
    """A uniqueness constraint rejected an insert."""


class StorageUnavailableError(Exception):
    """The entity store could not be reached or failed unexpectedly."""

    def __init__(self, message: str, operation: str = "unknown"):
        super().__init__(message)
        self.operation = operation
