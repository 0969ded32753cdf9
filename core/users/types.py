"""User record types — pure value objects.

These are the data contracts between the user service and the record store.
No I/O, no imports from db/ or api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# Fields a caller may look a user up by.
LOOKUP_FIELDS: frozenset[str] = frozenset({"id", "email"})

# Fields an update patch may touch. ``id`` is immutable.
MUTABLE_FIELDS: frozenset[str] = frozenset({"email", "name", "password_hash"})


@dataclass(frozen=True)
class NewUser:
    """A user to be created. The store assigns the id.

    Attributes:
        email: Unique login email.
        password_hash: Opaque hash produced by ``core.security``.
        name: Display name.
    """

    email: str
    password_hash: str
    name: str

    def __post_init__(self) -> None:
        if not self.email.strip():
            raise ValueError("email must not be empty")
        if not self.password_hash:
            raise ValueError("password_hash must not be empty")


@dataclass(frozen=True)
class UserRecord:
    """A persisted user.

    Attributes:
        id: Store-assigned identifier, never changes.
        email: Unique login email.
        password_hash: Opaque password hash, never empty.
        name: Display name.
    """

    id: int
    email: str
    password_hash: str
    name: str

    def __post_init__(self) -> None:
        if not self.password_hash:
            raise ValueError("password_hash must not be empty")

    def profile(self) -> dict[str, Any]:
        """Public view of the record (what reads return and the cache stores)."""
        return {"id": self.id, "name": self.name, "email": self.email}
