"""
Error taxonomy shared by the services and the HTTP layer.

Expected failures (duplicate e-mail, unknown id, expired token...) are not
raised. Services return a ``(value, error)`` tuple where exactly one side is
set, and the routes turn the error into an HTTP response.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, TypeVar

from fastapi import HTTPException, status

T = TypeVar("T")


class ErrorKind(str, Enum):
    CONFLICT = "conflict"
    UNAUTHENTICATED = "unauthenticated"
    NOT_FOUND = "not_found"
    INVALID_TOKEN = "invalid_token"
    VALIDATION_ERROR = "validation_error"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


_STATUS_BY_KIND = {
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_TOKEN: status.HTTP_400_BAD_REQUEST,
    ErrorKind.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.UPSTREAM_UNAVAILABLE: status.HTTP_502_BAD_GATEWAY,
}


@dataclass(frozen=True)
class ServiceError:
    """A machine-readable kind plus a message safe to show to the caller."""

    kind: ErrorKind
    message: str

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self.kind]

    def to_http(self) -> HTTPException:
        headers = None
        if self.kind is ErrorKind.UNAUTHENTICATED:
            headers = {"WWW-Authenticate": "Bearer"}
        return HTTPException(
            status_code=self.status_code,
            detail={"kind": self.kind.value, "message": self.message},
            headers=headers,
        )


Result = Tuple[Optional[T], Optional[ServiceError]]


def ok(value: T) -> Result:
    return value, None


def fail(kind: ErrorKind, message: str) -> Result:
    return None, ServiceError(kind, message)


def unwrap(result: Result) -> T:
    """Return the value of a result or raise the matching ``HTTPException``."""
    value, error = result
    if error is not None:
        raise error.to_http()
    return value
