"""
FastAPI dependency providers.

The record store, circuit breaker, cache and user service are built once at
startup by ``build_container`` and kept on ``app.state``. Handlers receive
them through ``Depends`` so tests can swap in their own container instead of
patching module globals.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, Request

from core.settings import ServiceSettings
from core.users.service import UserService
from core.users.store import UserStore
from db.user_store import create_user_store
from infrastructure.cache import RecordCache
from infrastructure.guarded import GuardedOperations

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Long-lived objects owned by one running service."""

    settings: ServiceSettings
    store: UserStore
    guard: GuardedOperations
    cache: RecordCache
    users: UserService
    started_at: float = field(default_factory=time.monotonic)

    def close(self) -> None:
        """Release store, breaker and cache resources."""
        self.guard.close()
        self.cache.close()
        self.store.close()
        logger.info("Service container closed")


def build_container(
    settings: ServiceSettings,
    *,
    store: UserStore | None = None,
    guard: GuardedOperations | None = None,
    cache: RecordCache | None = None,
) -> ServiceContainer:
    """Wire the service from settings. Any collaborator may be supplied pre-built."""
    store = store if store is not None else create_user_store(settings)
    guard = guard if guard is not None else GuardedOperations.from_settings(settings)
    if cache is None:
        cache = RecordCache(
            settings.redis_url,
            prefix=settings.cache_key_prefix,
            default_ttl_seconds=settings.cache_default_ttl_seconds,
        )
    users = UserService(
        store,
        guard,
        cache,
        jwt_secret=settings.jwt_secret,
        jwt_expires_minutes=settings.jwt_expires_minutes,
        profile_ttl_seconds=settings.cache_ttl_seconds,
    )
    return ServiceContainer(settings=settings, store=store, guard=guard, cache=cache, users=users)


def get_container(request: Request) -> ServiceContainer:
    """Return the container created by the app lifespan."""
    return request.app.state.container


def get_user_service(container: Annotated[ServiceContainer, Depends(get_container)]) -> UserService:
    """Return the user service."""
    return container.users
