"""
Shared fixtures for the test suite.

Centralizes reusable test doubles so individual test files don't need to
repeat wiring boilerplate:

- ``FakeRedis``: dict-backed stand-in for the handful of Redis commands the
  cache uses, with a switch to simulate an outage.
- ``RecordingStore``: wraps a real ``InMemoryUserStore``, counts calls per
  method and can inject failures.
"""

from __future__ import annotations

import fnmatch
import time
from collections import Counter, defaultdict
from collections.abc import Iterator, Mapping
from typing import Any

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from api.deps import ServiceContainer, build_container
from api.main import create_app
from core.settings import ServiceSettings
from core.users.types import NewUser, UserRecord
from db.user_store import InMemoryUserStore
from infrastructure.cache import RecordCache
from infrastructure.guarded import GuardedOperations

# ---------------------------------------------------------------------------
# Fake Redis
# ---------------------------------------------------------------------------


class FakeRedis:
    """Minimal in-process Redis double (strings with TTL only)."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, float]] = {}
        self.down = False
        self.ttls: dict[str, int] = {}

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    def ping(self) -> bool:
        self._check()
        return True

    def get(self, key: str) -> str | None:
        self._check()
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    def setex(self, key: str, ttl: int, value: str) -> bool:
        self._check()
        self._data[key] = (value, time.monotonic() + ttl)
        self.ttls[key] = ttl
        return True

    def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self._data.pop(key, None) is not None)

    def scan_iter(self, pattern: str) -> Iterator[str]:
        self._check()
        return iter([k for k in list(self._data) if fnmatch.fnmatch(k, pattern)])

    def close(self) -> None:
        pass

    def raw(self, key: str) -> str | None:
        """Read without TTL checks or outage simulation."""
        entry = self._data.get(key)
        return entry[0] if entry else None


# ---------------------------------------------------------------------------
# Recording store
# ---------------------------------------------------------------------------


class RecordingStore:
    """UserStore wrapper that counts calls and injects failures per method."""

    def __init__(self, inner: InMemoryUserStore | None = None) -> None:
        self.inner = inner or InMemoryUserStore()
        self.calls: Counter[str] = Counter()
        self._failures: dict[str, list[BaseException]] = defaultdict(list)

    def fail_next(self, method: str, *errors: BaseException) -> None:
        """Queue errors raised by the next calls to ``method`` (one per call)."""
        self._failures[method].extend(errors)

    def _call(self, method: str, *args: Any) -> Any:
        self.calls[method] += 1
        queue = self._failures.get(method)
        if queue:
            raise queue.pop(0)
        return getattr(self.inner, method)(*args)

    def find_by_id(self, user_id: int) -> UserRecord | None:
        return self._call("find_by_id", user_id)

    def find_by_field(self, field: str, value: Any) -> UserRecord | None:
        return self._call("find_by_field", field, value)

    def create(self, new_user: NewUser) -> UserRecord:
        return self._call("create", new_user)

    def update(self, user_id: int, patch: Mapping[str, Any]) -> int:
        return self._call("update", user_id, patch)

    def save(self, record: UserRecord) -> UserRecord:
        return self._call("save", record)

    def ping(self) -> None:
        return self._call("ping")

    def close(self) -> None:
        pass

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> ServiceSettings:
    """Settings suitable for tests: in-memory store, fast breaker."""
    values: dict[str, Any] = {
        "use_mock_db": True,
        "retry_attempts": 3,
        "retry_min_delay_ms": 0,
        "retry_max_delay_ms": 0,
        "breaker_failure_threshold": 3,
        "breaker_call_timeout_ms": 5_000,
        "jwt_secret": "test-jwt-secret",
    }
    values.update(overrides)
    return ServiceSettings(**values)


@pytest.fixture()
def settings() -> ServiceSettings:
    return make_settings()


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def cache(fake_redis: FakeRedis, settings: ServiceSettings) -> RecordCache:
    return RecordCache(
        prefix=settings.cache_key_prefix,
        default_ttl_seconds=settings.cache_default_ttl_seconds,
        client=fake_redis,
    )


@pytest.fixture()
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture()
def guard(settings: ServiceSettings) -> Iterator[GuardedOperations]:
    guarded = GuardedOperations.from_settings(settings, sleep=lambda _: None)
    yield guarded
    guarded.close()


@pytest.fixture()
def container(
    settings: ServiceSettings,
    store: RecordingStore,
    guard: GuardedOperations,
    cache: RecordCache,
) -> ServiceContainer:
    return build_container(settings, store=store, guard=guard, cache=cache)


@pytest.fixture()
def api_client(container: ServiceContainer) -> Iterator[TestClient]:
    """``TestClient`` over an app wired to the test container."""
    app = create_app(container)
    with TestClient(app) as client:
        yield client
