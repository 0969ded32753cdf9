"""Circuit breaker guarding the record store.

Prevents cascading failures when the database is degraded. The breaker has
three states:

    CLOSED    — Normal operation. Calls pass through to the executor.
    OPEN      — Backend is down. Calls fail immediately with
                ``CircuitOpenError`` and never reach the store. After
                ``reset_timeout_seconds`` the breaker moves to HALF-OPEN.
    HALF-OPEN — Testing recovery. Exactly one trial call is let through.
                If it succeeds → CLOSED. If it fails → back to OPEN and the
                reset timeout starts over.

State machine::

    CLOSED ──(failures ≥ threshold AND error% > limit in window)──→ OPEN
      ↑                                                               │
      │                                                          (timeout)
      │                                                               ↓
      └──────────────────(trial succeeds)──────────────────────── HALF-OPEN
                                                 OPEN ←──(trial fails)──┘

Failure statistics are kept in a rolling window split into buckets, so old
failures age out instead of being reset by a single success.

Every protected call races a per-call deadline. A call that overruns is
counted as a failure and reported as ``CallTimeoutError`` even if the work
later completes; its late result is dropped. When the breaker wraps a
``RetryingExecutor`` the deadline covers the whole retry sequence, and an
overrun call makes no further attempts once the deadline has passed.

Usage::

    from infrastructure.circuit_breaker import CircuitBreaker
    from infrastructure.retry import RetryingExecutor

    breaker = CircuitBreaker(name="database", executor=RetryingExecutor())

    try:
        user = breaker.fire(lambda: store.find_by_id(42), "find_user_by_id")
    except CircuitOpenError:
        return service_unavailable()
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from infrastructure.errors import CallTimeoutError, CircuitOpenError
from infrastructure.metrics import (
    record_circuit_rejected,
    record_circuit_trip,
    set_breaker_state,
)
from infrastructure.retry import RetryingExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_HISTORY_LIMIT = 50


class CircuitState(Enum):
    """Circuit breaker state machine states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class _Bucket:
    start: float
    successes: int = 0
    failures: int = 0
    rejections: int = 0


@dataclass(frozen=True)
class WindowTotals:
    """Aggregated counts over the rolling window."""

    successes: int
    failures: int
    rejections: int

    @property
    def error_percentage(self) -> float:
        """Failures as a percentage of completed calls (0.0 when idle)."""
        completed = self.successes + self.failures
        if completed == 0:
            return 0.0
        return self.failures / completed * 100.0


class RollingWindow:
    """Bucketed sliding window of call outcomes.

    Not thread-safe on its own; the owning breaker holds its lock around
    every method.

    Args:
        window_seconds: Length of the window.
        buckets: Number of buckets the window is split into.
    """

    def __init__(self, window_seconds: float, buckets: int = 10) -> None:
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")
        if buckets < 1:
            raise ValueError(f"buckets must be >= 1, got {buckets}")
        self.window_seconds = window_seconds
        self._bucket_width = window_seconds / buckets
        self._buckets: deque[_Bucket] = deque()

    def _evict(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._buckets and self._buckets[0].start + self._bucket_width <= horizon:
            self._buckets.popleft()

    def _current(self, now: float) -> _Bucket:
        self._evict(now)
        if not self._buckets or now >= self._buckets[-1].start + self._bucket_width:
            self._buckets.append(_Bucket(start=now))
        return self._buckets[-1]

    def record_success(self, now: float) -> None:
        self._current(now).successes += 1

    def record_failure(self, now: float) -> None:
        self._current(now).failures += 1

    def record_rejection(self, now: float) -> None:
        self._current(now).rejections += 1

    def totals(self, now: float) -> WindowTotals:
        self._evict(now)
        return WindowTotals(
            successes=sum(b.successes for b in self._buckets),
            failures=sum(b.failures for b in self._buckets),
            rejections=sum(b.rejections for b in self._buckets),
        )

    def clear(self) -> None:
        self._buckets.clear()


@dataclass
class CircuitStats:
    """Lifetime statistics for a circuit breaker instance."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0  # calls rejected because circuit was OPEN
    timed_out_calls: int = 0
    # Most recent transitions only
    state_changes: deque[tuple[str, float]] = field(
        default_factory=lambda: deque(maxlen=STATE_HISTORY_LIMIT)
    )

    def record_state_change(self, new_state: CircuitState) -> None:
        """Record a state transition with timestamp."""
        self.state_changes.append((new_state.value, time.time()))


class CircuitBreaker:
    """Thread-safe circuit breaker with a rolling failure window.

    Args:
        name: Human-readable name for logging, metrics and error messages.
        failure_threshold: Minimum failures inside the window before the
            breaker may trip (default: 5).
        error_threshold_percentage: Failure percentage of completed calls in
            the window that must be exceeded to trip (default: 50).
        reset_timeout_seconds: How long to stay OPEN before letting a trial
            call through (default: 30s).
        call_timeout_seconds: Deadline for a single protected call, retries
            included (default: 10s). ``None`` runs calls inline without a
            deadline.
        rolling_window_seconds: Length of the statistics window (default: 60s).
        rolling_buckets: Number of buckets in the window (default: 10).
        executor: Retrying executor used by ``fire``. Without one, ``fire``
            runs the action directly.
        exceptions: Exception types that count as failures. Others propagate
            untouched by the accounting.
        ignore_error: Predicate for tracked errors that should be re-raised
            but counted as successes (e.g. a duplicate-key rejection shows the
            backend is healthy).
        clock: Monotonic time source. Injectable for tests.
        max_workers: Size of the worker pool that runs calls under a deadline.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        error_threshold_percentage: float = 50.0,
        reset_timeout_seconds: float = 30.0,
        call_timeout_seconds: float | None = 10.0,
        rolling_window_seconds: float = 60.0,
        rolling_buckets: int = 10,
        *,
        executor: RetryingExecutor | None = None,
        exceptions: tuple[type[Exception], ...] = (Exception,),
        ignore_error: Callable[[BaseException], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int = 16,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        if not 0 <= error_threshold_percentage < 100:
            raise ValueError(
                f"error_threshold_percentage must be in [0, 100), got {error_threshold_percentage}"
            )
        if call_timeout_seconds is not None and call_timeout_seconds <= 0:
            raise ValueError(f"call_timeout_seconds must be positive, got {call_timeout_seconds}")

        self.name = name
        self._failure_threshold = failure_threshold
        self._error_threshold = error_threshold_percentage
        self._reset_timeout = reset_timeout_seconds
        self._call_timeout = call_timeout_seconds
        self._executor = executor
        self._tracked_exceptions = exceptions
        self._ignore_error = ignore_error
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at: float = 0.0
        self._last_failure_time: float | None = None
        self._probe_in_flight = False
        self._window = RollingWindow(rolling_window_seconds, rolling_buckets)
        self._lock = threading.Lock()
        self.stats = CircuitStats()

        self._pool: ThreadPoolExecutor | None = None
        if call_timeout_seconds is not None:
            self._pool = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix=f"breaker-{name}"
            )

        set_breaker_state(name, CircuitState.CLOSED.value)
        logger.info(
            "CircuitBreaker '%s' initialized (threshold=%d, error%%=%.0f, reset=%.0fs, timeout=%s)",
            name,
            failure_threshold,
            error_threshold_percentage,
            reset_timeout_seconds,
            f"{call_timeout_seconds:.1f}s" if call_timeout_seconds is not None else "none",
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current circuit state (thread-safe read).

        Reading the state also performs the timed OPEN → HALF-OPEN move.
        """
        with self._lock:
            self._refresh_state(self._clock())
            return self._state

    @property
    def is_open(self) -> bool:
        """True if circuit is OPEN (rejecting calls)."""
        return self.state == CircuitState.OPEN

    def _refresh_state(self, now: float) -> None:
        """Move OPEN → HALF-OPEN once the reset timeout elapsed. Lock held."""
        if self._state == CircuitState.OPEN and now - self._opened_at >= self._reset_timeout:
            self._probe_in_flight = False
            self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state, log it and publish the gauge. Lock held."""
        old_state = self._state
        self._state = new_state
        self.stats.record_state_change(new_state)
        set_breaker_state(self.name, new_state.value)
        logger.warning(
            "CircuitBreaker '%s': %s → %s",
            self.name,
            old_state.value.upper(),
            new_state.value.upper(),
        )

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._transition_to(CircuitState.OPEN)

    # ------------------------------------------------------------------
    # Accounting (all called with lock held)
    # ------------------------------------------------------------------

    def _admit(self) -> bool:
        """Admit or reject a call. Returns True if the call is the HALF-OPEN trial."""
        with self._lock:
            now = self._clock()
            self.stats.total_calls += 1
            self._refresh_state(now)

            if self._state == CircuitState.CLOSED:
                return False
            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return True

            self.stats.rejected_calls += 1
            self._window.record_rejection(now)
            if self._state == CircuitState.OPEN:
                reset_in = max(0.0, self._reset_timeout - (now - self._opened_at))
            else:
                reset_in = 0.0

        record_circuit_rejected(self.name)
        raise CircuitOpenError(self.name, reset_in)

    def _on_success(self, is_probe: bool) -> None:
        now = self._clock()
        self.stats.successful_calls += 1
        self._window.record_success(now)

        if self._state == CircuitState.HALF_OPEN and is_probe:
            self._window.clear()
            self._transition_to(CircuitState.CLOSED)
            logger.info("CircuitBreaker '%s': backend recovered", self.name)

    def _on_failure(self, exc: BaseException, is_probe: bool) -> None:
        now = self._clock()
        self.stats.failed_calls += 1
        self._last_failure_time = now
        self._window.record_failure(now)

        if self._state == CircuitState.HALF_OPEN and is_probe:
            # Trial failed, back to OPEN with a fresh reset timeout
            self._open(now)
        elif self._state == CircuitState.CLOSED:
            totals = self._window.totals(now)
            if (
                totals.failures >= self._failure_threshold
                and totals.error_percentage > self._error_threshold
            ):
                self._open(now)
                record_circuit_trip(self.name)
                logger.error(
                    "CircuitBreaker '%s': TRIPPED after %d failures (%.0f%%) in window. Last: %s",
                    self.name,
                    totals.failures,
                    totals.error_percentage,
                    exc,
                )

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def fire(self, action: Callable[[], T], operation_name: str = "unknown") -> T:
        """Run a named operation through the breaker and the retrying executor.

        Args:
            action: Zero-argument unit of work against the store.
            operation_name: Label for logs and metrics.

        Returns:
            The action's result.

        Raises:
            CircuitOpenError: Circuit is OPEN, or a HALF-OPEN trial is in flight.
            CallTimeoutError: The per-call deadline elapsed.
            OperationError: The executor gave up (propagated unchanged).
        """
        if self._executor is None:
            return self._guarded(action, operation_name)
        cancel = threading.Event()
        run = functools.partial(self._executor.execute, action, operation_name, cancel=cancel)
        return self._guarded(run, operation_name, cancel)

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute a function through the circuit breaker, without retries.

        Args:
            func: The callable to protect.
            *args: Positional arguments forwarded to func.
            **kwargs: Keyword arguments forwarded to func.

        Returns:
            The return value of func.

        Raises:
            CircuitOpenError: If circuit is OPEN (call was rejected).
            CallTimeoutError: If the per-call deadline elapsed.
            Exception: Any exception raised by func (recorded as failure).
        """
        name = getattr(func, "__name__", "call")
        return self._guarded(functools.partial(func, *args, **kwargs), name)

    def _guarded(
        self,
        fn: Callable[[], T],
        operation_name: str,
        cancel: threading.Event | None = None,
    ) -> T:
        is_probe = self._admit()
        try:
            result = self._invoke(fn, operation_name, cancel)
        except CallTimeoutError as exc:
            with self._lock:
                self.stats.timed_out_calls += 1
                self._on_failure(exc, is_probe)
            raise
        except self._tracked_exceptions as exc:
            with self._lock:
                if self._ignore_error is not None and self._ignore_error(exc):
                    self._on_success(is_probe)
                else:
                    self._on_failure(exc, is_probe)
            raise
        else:
            with self._lock:
                self._on_success(is_probe)
            return result
        finally:
            if is_probe:
                with self._lock:
                    self._probe_in_flight = False

    def _invoke(
        self, fn: Callable[[], T], operation_name: str, cancel: threading.Event | None
    ) -> T:
        """Run ``fn`` against the per-call deadline.

        On timeout ``cancel`` is set so a retry loop still running in the
        worker stops before its next attempt.
        """
        if self._pool is None or self._call_timeout is None:
            return fn()
        future = self._pool.submit(fn)
        try:
            return future.result(timeout=self._call_timeout)
        except FuturesTimeoutError:
            if future.done():
                # Finished at the deadline or raised a TimeoutError itself
                return future.result()
            future.cancel()
            if cancel is not None:
                cancel.set()
            logger.warning(
                "CircuitBreaker '%s': %s exceeded %.2fs deadline",
                self.name,
                operation_name,
                self._call_timeout,
            )
            raise CallTimeoutError(self.name, operation_name, self._call_timeout) from None

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Manually force circuit to CLOSED state (e.g. after maintenance)."""
        with self._lock:
            self._window.clear()
            self._probe_in_flight = False
            self._transition_to(CircuitState.CLOSED)

    def close(self, wait: bool = False) -> None:
        """Release the worker pool.

        Args:
            wait: Block until calls still running in the pool have returned.
        """
        if self._pool is not None:
            self._pool.shutdown(wait=wait, cancel_futures=True)

    def status(self) -> dict[str, Any]:
        """Return a snapshot of the circuit breaker status.

        Returns:
            Dict with state, window counts, lifetime stats and config.
        """
        with self._lock:
            now = self._clock()
            self._refresh_state(now)
            totals = self._window.totals(now)
            return {
                "name": self.name,
                "state": self._state.value,
                "window": {
                    "successes": totals.successes,
                    "failures": totals.failures,
                    "rejections": totals.rejections,
                    "error_percentage": round(totals.error_percentage, 1),
                },
                "failure_threshold": self._failure_threshold,
                "error_threshold_percentage": self._error_threshold,
                "reset_timeout_seconds": self._reset_timeout,
                "call_timeout_seconds": self._call_timeout,
                "last_failure_ago_seconds": (
                    round(now - self._last_failure_time, 1)
                    if self._last_failure_time is not None
                    else None
                ),
                "stats": {
                    "total": self.stats.total_calls,
                    "success": self.stats.successful_calls,
                    "failed": self.stats.failed_calls,
                    "rejected": self.stats.rejected_calls,
                    "timed_out": self.stats.timed_out_calls,
                },
                "recent_transitions": [
                    {"state": state, "at": at} for state, at in list(self.stats.state_changes)[-5:]
                ],
            }
