"""User-facing failure categories.

Route handlers only need to know *which kind* of failure happened to pick a
status code; ``classify_failure`` collapses the data-access taxonomy into
these categories.
"""

from __future__ import annotations

from enum import Enum

from infrastructure.errors import (
    CallTimeoutError,
    CircuitOpenError,
    ErrorKind,
    OperationError,
)


class FailureCategory(str, Enum):
    """Distinguishable failure categories with their HTTP status."""

    OPEN_CIRCUIT = "open_circuit"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_INPUT = "invalid_input"
    INTERNAL = "internal"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES: dict[FailureCategory, int] = {
    FailureCategory.OPEN_CIRCUIT: 503,
    FailureCategory.TIMEOUT: 504,
    FailureCategory.NOT_FOUND: 404,
    FailureCategory.CONFLICT: 409,
    FailureCategory.INVALID_CREDENTIALS: 400,
    FailureCategory.INVALID_INPUT: 422,
    FailureCategory.INTERNAL: 500,
}


class UserServiceError(Exception):
    """Base class for failures raised by the user service."""

    category = FailureCategory.INTERNAL


class UserNotFoundError(UserServiceError):
    category = FailureCategory.NOT_FOUND

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__("User not found")


class EmailInUseError(UserServiceError):
    category = FailureCategory.CONFLICT

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__("Email already in use")


class InvalidCredentialsError(UserServiceError):
    category = FailureCategory.INVALID_CREDENTIALS

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class InvalidInputError(UserServiceError):
    category = FailureCategory.INVALID_INPUT


def classify_failure(exc: BaseException) -> FailureCategory:
    """Map any exception raised while serving a request onto a category."""
    if isinstance(exc, UserServiceError):
        return exc.category
    if isinstance(exc, CircuitOpenError):
        return FailureCategory.OPEN_CIRCUIT
    if isinstance(exc, CallTimeoutError):
        return FailureCategory.TIMEOUT
    if isinstance(exc, OperationError):
        if exc.kind is ErrorKind.DUPLICATE_KEY:
            return FailureCategory.CONFLICT
        if exc.kind is ErrorKind.VALIDATION:
            return FailureCategory.INVALID_INPUT
    return FailureCategory.INTERNAL
