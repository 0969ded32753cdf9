"""Guarded database operations: circuit breaker around the retrying executor.

``GuardedOperations`` is the single entry point the user service uses to
touch the record store::

    guard = GuardedOperations.from_settings(settings)
    user = guard.perform_guarded_operation("find_user_by_id", lambda: store.find_by_id(7))

Call path: ``CircuitBreaker.fire`` → ``RetryingExecutor.execute`` → action.
The breaker's per-call timeout covers the whole retry sequence.

Fatal errors caused by the request itself (duplicate email, validation) are
re-raised to the caller but do not count against the breaker: the database
answered, so it is healthy.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from core.settings import ServiceSettings
from infrastructure.circuit_breaker import CircuitBreaker
from infrastructure.errors import CLIENT_KINDS, OperationError
from infrastructure.retry import RetryingExecutor, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATABASE_BREAKER_NAME = "database"


def is_client_error(exc: BaseException) -> bool:
    """True for operation failures caused by the request, not the backend."""
    return isinstance(exc, OperationError) and exc.kind in CLIENT_KINDS


class GuardedOperations:
    """Runs named store operations through the database circuit breaker.

    Args:
        breaker: Breaker wrapping a ``RetryingExecutor``.
    """

    def __init__(self, breaker: CircuitBreaker) -> None:
        self.breaker = breaker

    @classmethod
    def from_settings(
        cls,
        settings: ServiceSettings,
        *,
        sleep: Callable[[float], None] | None = None,
    ) -> GuardedOperations:
        """Build the executor and breaker from configuration.

        Args:
            settings: Service settings.
            sleep: Optional replacement for ``time.sleep`` between retries.
        """
        policy = RetryPolicy(
            max_attempts=settings.retry_attempts,
            min_delay_seconds=settings.retry_min_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )
        executor = RetryingExecutor(policy) if sleep is None else RetryingExecutor(policy, sleep=sleep)
        breaker = CircuitBreaker(
            name=DATABASE_BREAKER_NAME,
            failure_threshold=settings.breaker_failure_threshold,
            error_threshold_percentage=settings.breaker_error_percentage,
            reset_timeout_seconds=settings.breaker_reset_timeout_seconds,
            call_timeout_seconds=settings.breaker_call_timeout_seconds,
            rolling_window_seconds=settings.breaker_rolling_window_seconds,
            executor=executor,
            ignore_error=is_client_error,
        )
        return cls(breaker)

    def perform_guarded_operation(self, operation_name: str, action: Callable[[], T]) -> T:
        """Run ``action`` through breaker and executor.

        Raises:
            CircuitOpenError: The breaker is rejecting calls.
            CallTimeoutError: The call (retries included) overran its deadline.
            OperationError: The store failed fatally or retries ran out.
        """
        return self.breaker.fire(action, operation_name)

    def status(self) -> dict[str, Any]:
        return self.breaker.status()

    def close(self) -> None:
        self.breaker.close()
