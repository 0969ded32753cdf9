"""Prometheus metrics for the user service.

All metrics live in a private ``CollectorRegistry`` so tests and the
``/metrics`` endpoint never see the default process collectors twice.

Metrics:
    db_operation_duration_seconds   Histogram by operation and success, end-to-end
                                    including retries
    circuit_breaker_state           Gauge by breaker (1 = closed, 0.5 = half-open, 0 = open)
    circuit_breaker_trips_total     Times a breaker tripped to OPEN
    circuit_breaker_rejected_total  Calls rejected while a breaker was OPEN
    cache_requests_total            Cache lookups by result (hit/miss/error)
    http_requests_total             HTTP requests by method, route and status

Usage::

    from infrastructure.metrics import LatencyTimer, record_db_operation

    with LatencyTimer() as t:
        result = action()
    record_db_operation(operation="find_user_by_id", success=True, seconds=t.elapsed)
"""

from __future__ import annotations

import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


_REGISTRY = CollectorRegistry()

# Gauge values per breaker state name.
BREAKER_STATE_VALUES: dict[str, float] = {
    "closed": 1.0,
    "half_open": 0.5,
    "open": 0.0,
}

db_operation_duration_seconds = Histogram(
    "db_operation_duration_seconds",
    "Duration of database operations in seconds",
    ["operation", "success"],
    buckets=[0.1, 0.3, 0.5, 0.7, 1, 3, 5, 7, 10],
    registry=_REGISTRY,
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "State of the circuit breaker (1 = closed, 0.5 = half-open, 0 = open)",
    ["breaker"],
    registry=_REGISTRY,
)

circuit_breaker_trips_total = Counter(
    "circuit_breaker_trips_total",
    "Number of times a circuit breaker tripped to OPEN state",
    ["breaker"],
    registry=_REGISTRY,
)

circuit_breaker_rejected_total = Counter(
    "circuit_breaker_rejected_total",
    "Requests rejected because circuit was OPEN (short-circuited)",
    ["breaker"],
    registry=_REGISTRY,
)

cache_requests_total = Counter(
    "cache_requests_total",
    "Read-through cache lookups by result",
    ["result"],
    registry=_REGISTRY,
)

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by method, route and status code",
    ["method", "path", "status"],
    registry=_REGISTRY,
)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def record_db_operation(*, operation: str, success: bool, seconds: float) -> None:
    """Observe the duration of one guarded database operation.

    Args:
        operation: Operation name (e.g. ``"create_user"``).
        success: Whether the operation eventually succeeded.
        seconds: Wall-clock time including every retry.
    """
    db_operation_duration_seconds.labels(
        operation=operation, success="true" if success else "false"
    ).observe(seconds)


def set_breaker_state(breaker_name: str, state: str) -> None:
    """Publish the current state of a circuit breaker.

    Args:
        breaker_name: Name of the breaker.
        state: One of ``"closed"``, ``"half_open"``, ``"open"``.
    """
    circuit_breaker_state.labels(breaker=breaker_name).set(BREAKER_STATE_VALUES[state])


def record_circuit_trip(breaker_name: str) -> None:
    """Increment circuit breaker trip counter."""
    circuit_breaker_trips_total.labels(breaker=breaker_name).inc()


def record_circuit_rejected(breaker_name: str) -> None:
    """Increment circuit breaker rejected-call counter."""
    circuit_breaker_rejected_total.labels(breaker=breaker_name).inc()


def record_cache_hit() -> None:
    """Increment cache hit counter."""
    cache_requests_total.labels(result="hit").inc()


def record_cache_miss() -> None:
    """Increment cache miss counter."""
    cache_requests_total.labels(result="miss").inc()


def record_cache_error() -> None:
    """Increment cache backend error counter."""
    cache_requests_total.labels(result="error").inc()


def record_http_request(*, method: str, path: str, status: int) -> None:
    """Count one HTTP request."""
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()


def get_metrics_response() -> tuple[bytes, str]:
    """Generate Prometheus text exposition format.

    Returns:
        Tuple of (body_bytes, content_type_string).
    """
    return generate_latest(_REGISTRY), CONTENT_TYPE_LATEST


class LatencyTimer:
    """Context manager for measuring latency.

    ``elapsed`` is set on exit, including when the block raised.
    """

    def __init__(self) -> None:
        self._start: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> LatencyTimer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *_: object) -> None:
        self.elapsed = time.perf_counter() - self._start
