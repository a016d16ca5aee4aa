"""
auth/results.py -- Explicit outcome type for identity operations.

Expected failures (wrong password, expired link, duplicate email) are values,
not exceptions. Every public component operation returns a Result; the
boundary layer inspects result.failure.kind to choose a status code.
Exceptions are reserved for faults nobody expected: a database that is down,
an encryption key that is wrong.

IdentityError exists only so Result.unwrap() has something to raise. Callers
that prefer exception flow (the HTTP routes) use unwrap(); everything inside
auth/ returns Results.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class FailureKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    LOCKED = "locked"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    # Recorded in the audit trail, but presented to callers as UNAUTHORIZED.
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str

    @property
    def public_kind(self) -> FailureKind:
        """The kind a caller is allowed to see. Detection is never revealed."""
        if self.kind is FailureKind.SUSPICIOUS_ACTIVITY:
            return FailureKind.UNAUTHORIZED
        return self.kind


class IdentityError(Exception):
    """Raised by Result.unwrap() when the result is a failure."""

    def __init__(self, failure: Failure) -> None:
        self.failure = failure
        super().__init__(failure.message)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success carrying a value, or a Failure. Never both."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def kind(self) -> Optional[FailureKind]:
        return self.failure.kind if self.failure else None

    def unwrap(self) -> T:
        if self.failure is not None:
            raise IdentityError(self.failure)
        return self.value  # type: ignore[return-value]


def success(value: Optional[T] = None) -> Result[T]:
    return Result(value=value)


def failed(kind: FailureKind, message: str) -> Result:
    return Result(failure=Failure(kind, message))
