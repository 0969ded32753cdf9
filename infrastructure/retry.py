"""Exponential backoff retry for record store operations.

Every store call goes through ``RetryingExecutor.execute``. Connection-class
failures (see ``infrastructure.errors.RETRYABLE_KINDS``) are retried with
jittered exponential backoff. Anything else aborts on the spot so a duplicate
email never burns the retry budget.

Usage::

    from infrastructure.retry import RetryingExecutor, RetryPolicy

    executor = RetryingExecutor(RetryPolicy(max_attempts=5))
    user = executor.execute(lambda: store.find_by_id(42), "find_user_by_id")
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from infrastructure.errors import OperationError, is_retryable
from infrastructure.metrics import LatencyTimer, record_db_operation

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff policy.

    Attributes:
        max_attempts: Total attempts including the first try (default: 5).
        min_delay_seconds: Wait before the first retry (default: 1.0).
        max_delay_seconds: Cap on any single wait (default: 8.0).
        factor: Growth factor between consecutive waits (default: 2.0).
        jitter: Random spread applied to each wait, as a fraction (default: 0.25,
            i.e. ±25%). Keeps retrying clients from hitting a recovering
            backend in lockstep.
    """

    max_attempts: int = 5
    min_delay_seconds: float = 1.0
    max_delay_seconds: float = 8.0
    factor: float = 2.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        """Validate policy parameters."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.min_delay_seconds < 0:
            raise ValueError(f"min_delay_seconds must be >= 0, got {self.min_delay_seconds}")
        if self.max_delay_seconds < self.min_delay_seconds:
            raise ValueError(
                f"max_delay_seconds ({self.max_delay_seconds}) must be >= "
                f"min_delay_seconds ({self.min_delay_seconds})"
            )
        if self.factor < 1:
            raise ValueError(f"factor must be >= 1, got {self.factor}")
        if not 0 <= self.jitter < 1:
            raise ValueError(f"jitter must be in [0, 1), got {self.jitter}")

    def base_delay(self, retry_number: int) -> float:
        """Un-jittered wait before retry ``retry_number`` (1-based)."""
        return min(self.min_delay_seconds * self.factor ** (retry_number - 1), self.max_delay_seconds)

    def delay(self, retry_number: int, rng: random.Random) -> float:
        """Jittered wait before retry ``retry_number``, clamped to ``[0, max]``."""
        wait = self.base_delay(retry_number)
        if self.jitter:
            wait *= 1 + rng.uniform(-self.jitter, self.jitter)
        return max(0.0, min(wait, self.max_delay_seconds))


class RetryingExecutor:
    """Runs one fallible action with bounded retry on connection errors.

    Args:
        policy: Backoff policy (default: ``RetryPolicy()``).
        sleep: Function used to wait between attempts. Injectable for tests.
        rng: Random source for jitter. Injectable for tests.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()  # noqa: S311

    def execute(
        self,
        action: Callable[[], T],
        operation_name: str = "unknown",
        *,
        cancel: threading.Event | None = None,
    ) -> T:
        """Run ``action`` until it succeeds, fails fatally, or the budget runs out.

        Args:
            action: Zero-argument unit of work.
            operation_name: Label for logs and the duration histogram.
            cancel: Set by the caller once it stops waiting for the result.
                Checked before every backoff wait and every retry; when set
                no further attempt is made.

        Returns:
            Whatever ``action`` returned.

        Raises:
            OperationError: On a fatal error (after one attempt), after
                ``max_attempts`` retryable failures, or when ``cancel`` was
                set between attempts. The last error is chained.
        """
        success = False
        timer = LatencyTimer()
        try:
            with timer:
                result = self._run(action, operation_name, cancel)
            success = True
            return result
        finally:
            record_db_operation(operation=operation_name, success=success, seconds=timer.elapsed)

    def _run(
        self, action: Callable[[], T], operation_name: str, cancel: threading.Event | None
    ) -> T:
        max_attempts = self.policy.max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return action()
            except Exception as exc:
                if not is_retryable(exc):
                    raise OperationError(operation_name, exc, attempt) from exc
                if attempt == max_attempts:
                    logger.error(
                        "retry: %s gave up after %d attempts (%s)",
                        operation_name,
                        attempt,
                        exc,
                    )
                    raise OperationError(operation_name, exc, attempt) from exc
                if _cancelled(cancel, operation_name, attempt):
                    raise OperationError(operation_name, exc, attempt) from exc
                wait = self.policy.delay(attempt, self._rng)
                logger.warning(
                    "retry: %s attempt %d/%d failed (%s), retrying in %.2fs",
                    operation_name,
                    attempt,
                    max_attempts,
                    exc,
                    wait,
                )
                self._pause(wait, cancel)
                if _cancelled(cancel, operation_name, attempt):
                    raise OperationError(operation_name, exc, attempt) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    def _pause(self, seconds: float, cancel: threading.Event | None) -> None:
        # A real sleep wakes early when the caller cancels
        if cancel is not None and self._sleep is time.sleep:
            cancel.wait(seconds)
        else:
            self._sleep(seconds)


def _cancelled(cancel: threading.Event | None, operation_name: str, attempts: int) -> bool:
    if cancel is None or not cancel.is_set():
        return False
    logger.warning(
        "retry: %s abandoned after %d attempts, caller stopped waiting",
        operation_name,
        attempts,
    )
    return True
