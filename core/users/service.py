"""User service: signup, login, profile read/update, password change.

Every record store call is a named guarded operation (circuit breaker +
retrying executor). Profile reads are served read-through from the cache;
every write invalidates the user's cache key once the store confirmed the
mutation, so the next read repopulates it.

Operation names double as metric labels:

    create_user            signup
    find_user_by_email     login
    find_user_by_id        profile read / password change lookup
    update_user            profile update
    update_user_password   password change
    health_check           database ping
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from core import security
from core.users.errors import (
    EmailInUseError,
    InvalidCredentialsError,
    InvalidInputError,
    UserNotFoundError,
)
from core.users.store import UserStore
from core.users.types import NewUser
from infrastructure.cache import RecordCache
from infrastructure.errors import ErrorKind, OperationError
from infrastructure.guarded import GuardedOperations

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a successful login."""

    access_token: str
    user_id: int
    name: str


class UserService:
    """User account operations over a guarded, cached record store.

    Args:
        store: Record store.
        guard: Guarded operation runner for every store call.
        cache: Read-through cache for profiles.
        jwt_secret: Signing key for access tokens.
        jwt_expires_minutes: Access token lifetime.
        profile_ttl_seconds: Cache TTL of profile reads.
    """

    def __init__(
        self,
        store: UserStore,
        guard: GuardedOperations,
        cache: RecordCache,
        *,
        jwt_secret: str,
        jwt_expires_minutes: int = 180,
        profile_ttl_seconds: int = 300,
    ) -> None:
        self._store = store
        self._guard = guard
        self._cache = cache
        self._jwt_secret = jwt_secret
        self._jwt_expires_minutes = jwt_expires_minutes
        self._profile_ttl = profile_ttl_seconds

    def _invalidate(self, user_id: int) -> None:
        self._cache.invalidate(self._cache.key_for(user_id))

    @staticmethod
    def _clean_email(email: str) -> str:
        email = email.strip()
        if not email:
            raise InvalidInputError("Email must not be empty")
        return email

    def signup(self, *, email: str, password: str, name: str) -> int:
        """Create an account and return its id.

        Raises:
            InvalidInputError: Blank email.
            EmailInUseError: The email is already registered (not retried).
        """
        email = self._clean_email(email)
        new_user = NewUser(email=email, password_hash=security.hash_password(password), name=name)
        try:
            record = self._guard.perform_guarded_operation(
                "create_user", lambda: self._store.create(new_user)
            )
        except OperationError as exc:
            if exc.kind is ErrorKind.DUPLICATE_KEY:
                raise EmailInUseError(email) from exc
            raise
        self._invalidate(record.id)
        logger.info("User %d signed up", record.id)
        return record.id

    def login(self, *, email: str, password: str) -> LoginResult:
        """Check credentials and issue an access token.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password.
        """
        record = self._guard.perform_guarded_operation(
            "find_user_by_email", lambda: self._store.find_by_field("email", email)
        )
        if record is None or not security.verify_password(password, record.password_hash):
            raise InvalidCredentialsError()
        token = security.create_access_token(
            record.id, secret=self._jwt_secret, expires_minutes=self._jwt_expires_minutes
        )
        return LoginResult(access_token=token, user_id=record.id, name=record.name)

    def get_profile(self, user_id: int) -> dict[str, Any]:
        """Return ``{id, name, email}``, read-through cached.

        Raises:
            UserNotFoundError: No user with this id.
        """

        def load() -> dict[str, Any] | None:
            record = self._guard.perform_guarded_operation(
                "find_user_by_id", lambda: self._store.find_by_id(user_id)
            )
            return record.profile() if record is not None else None

        profile = self._cache.read_through(user_id, load, ttl=self._profile_ttl)
        if profile is None:
            raise UserNotFoundError(user_id)
        return profile

    def update_profile(
        self,
        user_id: int,
        *,
        name: str | None = None,
        email: str | None = None,
    ) -> None:
        """Change name and/or email.

        Raises:
            InvalidInputError: Neither field given, or a blank email.
            UserNotFoundError: No user with this id.
            EmailInUseError: The new email belongs to another user.
        """
        if email is not None:
            email = self._clean_email(email)
        patch = {key: value for key, value in (("name", name), ("email", email)) if value is not None}
        if not patch:
            raise InvalidInputError("Nothing to update")
        try:
            updated = self._guard.perform_guarded_operation(
                "update_user", lambda: self._store.update(user_id, patch)
            )
        except OperationError as exc:
            if exc.kind is ErrorKind.DUPLICATE_KEY:
                raise EmailInUseError(email or "") from exc
            raise
        if updated == 0:
            raise UserNotFoundError(user_id)
        self._invalidate(user_id)

    def change_password(self, user_id: int, *, old_password: str, new_password: str) -> None:
        """Replace the password after checking the current one.

        Raises:
            UserNotFoundError: No user with this id.
            InvalidCredentialsError: ``old_password`` does not match.
        """
        record = self._guard.perform_guarded_operation(
            "find_user_by_id", lambda: self._store.find_by_id(user_id)
        )
        if record is None:
            raise UserNotFoundError(user_id)
        if not security.verify_password(old_password, record.password_hash):
            raise InvalidCredentialsError()
        # Only the hash; name and email may have changed since the lookup
        patch = {"password_hash": security.hash_password(new_password)}
        updated = self._guard.perform_guarded_operation(
            "update_user_password", lambda: self._store.update(user_id, patch)
        )
        if updated == 0:
            raise UserNotFoundError(user_id)
        self._invalidate(user_id)
        logger.info("User %d changed password", user_id)

    def check_database(self) -> None:
        """Ping the record store through the breaker; raises on failure."""
        self._guard.perform_guarded_operation("health_check", self._store.ping)
