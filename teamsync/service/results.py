from __future__ import annotations

import functools
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from teamsync.logging import get_logger
from teamsync.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    ServiceError,
    UnavailableError,
)
from teamsync.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure categories returned by the auth core."""

    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID = "invalid"
    UNAVAILABLE = "unavailable"


_KIND_TO_ERROR: dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.UNAUTHORIZED: AuthenticationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.INVALID: BadRequestError,
    ErrorKind.UNAVAILABLE: UnavailableError,
}


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a core operation: either a value or an error kind."""

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, value: T = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result[T]":
        return cls(error=kind, message=message)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the ServiceError matching the error kind."""
        if self.error is None:
            return self.value  # type: ignore[return-value]
        raise error_for(self.error, self.message)


def error_for(kind: ErrorKind, message: str) -> ServiceError:
    return _KIND_TO_ERROR[kind](message)


STORE_UNAVAILABLE = "authentication backend unavailable"


def unavailable_as_failure(func: Callable[..., Awaitable[Result]]) -> Callable[..., Awaitable[Result]]:
    """Turn a StoreUnavailable raised by a store call into an UNAVAILABLE result."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Result:
        try:
            return await func(*args, **kwargs)
        except StoreUnavailable as exc:
            logger.error("store_unavailable", operation=func.__name__, backend=exc.backend)
            return Result.failure(ErrorKind.UNAVAILABLE, STORE_UNAVAILABLE)

    return wrapper


__all__ = ["ErrorKind", "Result", "error_for", "unavailable_as_failure", "STORE_UNAVAILABLE"]
