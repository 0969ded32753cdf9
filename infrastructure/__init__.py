"""Infrastructure layer: resilience and observability for the record store.

Modules:
    errors           Error taxonomy shared by the store, executor and breaker.
    retry            Exponential backoff retrying executor.
    circuit_breaker  Circuit breaker with a rolling failure window.
    guarded          Breaker + executor wiring used by the user service.
    cache            Redis-backed read-through cache with invalidation.
    metrics          Prometheus metrics registry.
"""
