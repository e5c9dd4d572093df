from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from fastapi import status

from shared.utils import AppException

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    INVALID_PURCHASE = "invalid_purchase"
    INSUFFICIENT_STOCK = "insufficient_stock"
    UPSTREAM = "upstream_error"
    CONFIGURATION = "configuration_error"

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self]


_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_STATE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_PURCHASE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INSUFFICIENT_STOCK: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UPSTREAM: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.CONFIGURATION: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@dataclass(frozen=True)
class Failure:
    """An expected, reportable failure: what went wrong and how to surface it."""

    kind: ErrorKind
    message: Any

    @property
    def status_code(self) -> int:
        return self.kind.status_code


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of a domain operation.

    Exactly one of ``value`` / ``error`` is meaningful. ``message`` carries an
    optional human readable note for successful outcomes.
    """

    value: Optional[T] = None
    error: Optional[Failure] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None, message: Optional[str] = None) -> "Result[T]":
        return cls(value=value, message=message)

    @classmethod
    def fail(cls, kind: ErrorKind, message: Any) -> "Result[T]":
        return cls(error=Failure(kind, message))


def unwrap(result: Result[T]) -> T:
    """Return the value of a successful result, or raise it as an HTTP error."""
    if result.error is not None:
        raise AppException(status_code=result.error.status_code, detail=result.error.message)
    return result.value
