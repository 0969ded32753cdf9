"""Redis-backed read-through cache for user records.

Only read paths populate the cache. Write paths (signup, profile update,
password change) call ``invalidate`` after the store mutation succeeded, so
the next read repopulates the entry from the record store.

Key scheme: ``<prefix>:<resource_id>``, e.g. ``user-service:42``.
Values are stored as JSON with a TTL (``SETEX``).

The cache is best-effort. Any backend failure is turned into a
``CacheUnavailableError`` internally and absorbed: reads degrade to a miss,
writes and invalidations are logged and skipped. The service stays correct
(just slower) with Redis down.

A read racing a concurrent invalidate can still store the value it loaded, so
a stale entry may survive for at most one TTL.

Usage::

    from infrastructure.cache import RecordCache

    cache = RecordCache(redis_url="redis://localhost:6379/0")
    profile = cache.read_through(user_id, load_profile, ttl=300)
    ...
    store.update(user_id, patch)
    cache.invalidate(cache.key_for(user_id))
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

import redis
from redis.exceptions import RedisError

from infrastructure.errors import CacheUnavailableError
from infrastructure.metrics import record_cache_error, record_cache_hit, record_cache_miss

logger = logging.getLogger(__name__)

# Used when a call site does not pass a TTL.
_DEFAULT_TTL_SECONDS = 3_600
_DEFAULT_PREFIX = "user-service"


class RecordCache:
    """Read-through cache in front of record store reads.

    Args:
        redis_url: Redis connection URL (default: ``redis://localhost:6379/0``).
        prefix: Key namespace for this service.
        default_ttl_seconds: TTL applied when ``set`` gets no explicit TTL.
        client: Pre-built Redis client. Takes precedence over ``redis_url``;
            mainly for tests.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = _DEFAULT_PREFIX,
        default_ttl_seconds: int = _DEFAULT_TTL_SECONDS,
        client: Any = None,
    ) -> None:
        self.prefix = prefix
        self.default_ttl_seconds = default_ttl_seconds
        self._client: Any = client
        if self._client is None:
            try:
                self._client = redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_timeout=0.5,
                    socket_connect_timeout=0.5,
                )
            except (RedisError, ValueError) as exc:
                logger.warning("RecordCache: invalid Redis configuration (%s), caching disabled", exc)
                self._client = None
        if self.ping():
            logger.info("RecordCache: connected to Redis (prefix=%s)", prefix)
        else:
            logger.warning("RecordCache: Redis unreachable at startup, serving uncached")

    # ------------------------------------------------------------------
    # Backend access
    # ------------------------------------------------------------------

    def _command(self, name: str, *args: Any) -> Any:
        """Run one Redis command, translating backend failures."""
        if self._client is None:
            raise CacheUnavailableError("cache backend not configured")
        try:
            return getattr(self._client, name)(*args)
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(f"redis {name} failed: {exc}") from exc

    def key_for(self, resource_id: object) -> str:
        """Namespaced cache key for a resource identifier."""
        return f"{self.prefix}:{resource_id}"

    def ping(self) -> bool:
        """True if the Redis backend answers."""
        try:
            return bool(self._command("ping"))
        except CacheUnavailableError:
            return False

    @property
    def available(self) -> bool:
        """True if a Redis client is configured and reachable."""
        return self.ping()

    # ------------------------------------------------------------------
    # Cache operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> dict[str, Any] | None:
        """Return the cached payload, or None on miss or backend error."""
        try:
            raw = self._command("get", key)
            if raw is None:
                record_cache_miss()
                return None
            data: dict[str, Any] = json.loads(raw)
        except CacheUnavailableError as exc:
            record_cache_error()
            logger.warning("RecordCache.get degraded to miss: %s", exc)
            return None
        except ValueError as exc:
            record_cache_error()
            logger.warning("RecordCache.get: corrupt entry for %s (%s)", key, exc)
            return None
        record_cache_hit()
        logger.debug("RecordCache HIT: %s", key)
        return data

    def set(self, key: str, value: dict[str, Any], ttl: int | None = None) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds (default TTL if None)."""
        expiry = ttl if ttl is not None else self.default_ttl_seconds
        try:
            self._command("setex", key, expiry, json.dumps(value))
        except CacheUnavailableError as exc:
            logger.warning("RecordCache.set skipped: %s", exc)
            return
        logger.debug("RecordCache SET: %s (ttl=%ds)", key, expiry)

    def invalidate(self, key: str) -> None:
        """Remove ``key`` so the next read goes to the record store."""
        try:
            self._command("delete", key)
        except CacheUnavailableError as exc:
            logger.warning("RecordCache.invalidate skipped for %s: %s", key, exc)
            return
        logger.debug("RecordCache INVALIDATE: %s", key)

    def read_through(
        self,
        resource_id: object,
        loader: Callable[[], dict[str, Any] | None],
        ttl: int | None = None,
    ) -> dict[str, Any] | None:
        """Serve ``resource_id`` from cache, or load it and populate the cache.

        Args:
            resource_id: Identifier the key is derived from.
            loader: Called on a miss. Returns the payload, or None if the
                resource does not exist (not-found results are never cached).
            ttl: Entry lifetime in seconds (default TTL if None).

        Returns:
            The cached or freshly loaded payload, or None.
        """
        key = self.key_for(resource_id)
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def stats(self) -> dict[str, Any]:
        """Return basic cache statistics.

        Returns:
            Dict with keys: available, keys (entries under this prefix).
        """
        try:
            # scan_iter is lazy, so backend errors can surface while iterating
            keys = sum(1 for _ in self._command("scan_iter", f"{self.prefix}:*"))
        except (CacheUnavailableError, RedisError, OSError) as exc:
            logger.warning("RecordCache.stats error: %s", exc)
            return {"available": False, "keys": 0}
        return {"available": True, "keys": keys}

    def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is None:
            return
        try:
            self._client.close()
        except (RedisError, OSError) as exc:
            logger.warning("RecordCache.close error: %s", exc)
