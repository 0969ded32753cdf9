"""
Record store protocol for user records.

Defines the contract every user store implementation must satisfy.
This module is pure — no I/O. Implementations (SQL, in-memory) live in db/.

Every failure an implementation raises is an
``infrastructure.errors.StoreError`` whose ``kind`` tells the retrying
executor whether the call may be retried.
"""

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from core.users.types import NewUser, UserRecord


@runtime_checkable
class UserStore(Protocol):
    """
    Protocol for user record stores.

    Callers never invoke these methods directly; they go through the
    guarded operation runner (circuit breaker + retrying executor).
    """

    def find_by_id(self, user_id: int) -> UserRecord | None:
        """Return the user with ``user_id``, or None."""
        ...

    def find_by_field(self, field: str, value: Any) -> UserRecord | None:
        """
        Return the first user whose ``field`` equals ``value``, or None.

        Raises:
            StoreError: kind VALIDATION if ``field`` is not a lookup field.
        """
        ...

    def create(self, new_user: NewUser) -> UserRecord:
        """
        Insert a user and return it with its assigned id.

        Raises:
            DuplicateKeyError: If the email is already taken.
        """
        ...

    def update(self, user_id: int, patch: Mapping[str, Any]) -> int:
        """
        Apply ``patch`` to the user and return the number of rows affected.

        Returns 0 when the user does not exist.

        Raises:
            DuplicateKeyError: If the new email is already taken.
            StoreError: kind VALIDATION for unknown or immutable fields.
        """
        ...

    def save(self, record: UserRecord) -> UserRecord:
        """
        Persist every mutable field of an existing record.

        Raises:
            StoreError: kind VALIDATION if the record does not exist.
        """
        ...

    def ping(self) -> None:
        """Check the backend is reachable; raise StoreError otherwise."""
        ...

    def close(self) -> None:
        """Release backend resources."""
        ...
