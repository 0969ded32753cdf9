"""Error taxonomy for the data-access layer.

The record store reports every failure as a ``StoreError`` carrying an
``ErrorKind`` drawn from a closed set. The retrying executor and the circuit
breaker decide what to do from the kind alone, never from the storage
engine's own exception names.

Hierarchy::

    StoreError
      ├── RetryableStoreError   connection-class kinds
      └── FatalStoreError       everything else
            └── DuplicateKeyError

    OperationError          executor gave up (exhausted or fatal)
    CircuitOpenError        breaker short-circuited the call
    CallTimeoutError        per-call deadline elapsed (is a TimeoutError)
    CacheUnavailableError   cache backend failed; never leaves the cache
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Closed set of failure kinds a record store may report."""

    CONNECTION_REFUSED = "connection_refused"
    HOST_UNREACHABLE = "host_unreachable"
    CONNECTION_TIMEOUT = "connection_timeout"
    CONNECTION = "connection"
    DUPLICATE_KEY = "duplicate_key"
    CONSTRAINT = "constraint"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.CONNECTION_REFUSED,
        ErrorKind.HOST_UNREACHABLE,
        ErrorKind.CONNECTION_TIMEOUT,
        ErrorKind.CONNECTION,
    }
)

# Fatal kinds caused by the request rather than by the backend's health.
CLIENT_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.DUPLICATE_KEY,
        ErrorKind.CONSTRAINT,
        ErrorKind.VALIDATION,
    }
)


class StoreError(Exception):
    """Failure reported by a record store.

    Args:
        kind: Classification of the failure.
        message: Human-readable description.
    """

    def __init__(self, kind: ErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """True if the failure is connection-class and worth retrying."""
        return self.kind in RETRYABLE_KINDS


class RetryableStoreError(StoreError):
    """Connection-class store failure."""


class FatalStoreError(StoreError):
    """Store failure that retrying cannot fix (constraint, validation, ...)."""


class DuplicateKeyError(FatalStoreError):
    """A uniqueness constraint was violated."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.DUPLICATE_KEY, message)


def store_error(kind: ErrorKind, message: str) -> StoreError:
    """Build the ``StoreError`` subclass matching ``kind``."""
    if kind is ErrorKind.DUPLICATE_KEY:
        return DuplicateKeyError(message)
    if kind in RETRYABLE_KINDS:
        return RetryableStoreError(kind, message)
    return FatalStoreError(kind, message)


def error_kind(exc: BaseException) -> ErrorKind:
    """Kind of ``exc``; anything that is not a ``StoreError`` is UNKNOWN."""
    if isinstance(exc, StoreError):
        return exc.kind
    return ErrorKind.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    """True if ``exc`` is a store error of a connection-class kind."""
    return isinstance(exc, StoreError) and exc.retryable


class OperationError(Exception):
    """Raised by the retrying executor when an operation cannot complete.

    Either a fatal error occurred (no further attempts were made) or every
    attempt failed with a retryable error. The last underlying error is
    available as ``__cause__`` and ``cause``.

    Args:
        operation: Operation name used for logging and metrics.
        cause: The last error raised by the action.
        attempts: Number of attempts made, including the first.
    """

    def __init__(self, operation: str, cause: BaseException, attempts: int) -> None:
        self.operation = operation
        self.cause = cause
        self.attempts = attempts
        self.kind = error_kind(cause)
        if self.retryable:
            message = f"{operation} failed after {attempts} attempts: {cause}"
        else:
            message = f"{operation} failed ({self.kind.value}): {cause}"
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """True if the retry budget was exhausted on connection-class errors."""
        return self.kind in RETRYABLE_KINDS


class CircuitOpenError(Exception):
    """Raised when a call is attempted while the circuit is OPEN.

    This is NOT a real service error. The breaker short-circuited the call
    to protect the backend, and the store was never touched.

    Args:
        name: Circuit breaker name for context.
        reset_in_seconds: Approximate seconds until the circuit will probe again.
    """

    def __init__(self, name: str, reset_in_seconds: float) -> None:
        self.name = name
        self.reset_in_seconds = reset_in_seconds
        super().__init__(
            f"Circuit '{name}' is OPEN: backend unavailable. "
            f"Will probe again in ~{reset_in_seconds:.0f}s."
        )


class CallTimeoutError(TimeoutError):
    """Raised when a protected call exceeds the breaker's per-call timeout.

    The underlying work may still be running; its outcome is discarded.
    """

    def __init__(self, name: str, operation: str, timeout_seconds: float) -> None:
        self.name = name
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Circuit '{name}': operation '{operation}' timed out after {timeout_seconds:.2f}s"
        )


class CacheUnavailableError(Exception):
    """Cache backend failure. Absorbed inside the cache, never surfaced."""
