"""
User record stores: SQLAlchemy-backed and in-memory.

Both satisfy ``core.users.store.UserStore`` and report every failure as a
``StoreError`` with an ``ErrorKind``. ``SqlUserStore`` is the only place that
knows how SQLAlchemy/DBAPI exceptions map onto those kinds.

``create_user_store`` picks the implementation from settings
(``USE_MOCK_DB``), so nothing else in the service branches on it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, select, text
from sqlalchemy import update as sql_update
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from core.settings import ServiceSettings
from core.users.store import UserStore
from core.users.types import LOOKUP_FIELDS, MUTABLE_FIELDS, NewUser, UserRecord
from db.models import Base, User
from db.session import create_db_engine, create_session_factory
from infrastructure.errors import DuplicateKeyError, ErrorKind, store_error

logger = logging.getLogger(__name__)

_REFUSED_HINTS = ("connection refused", "econnrefused")
_UNREACHABLE_HINTS = (
    "could not translate host name",
    "name or service not known",
    "nodename nor servname",
    "no route to host",
    "host is unreachable",
    "network is unreachable",
    "temporary failure in name resolution",
)
_TIMEOUT_HINTS = ("timeout expired", "timed out", "timeout")


def _validate_lookup(field: str) -> None:
    if field not in LOOKUP_FIELDS:
        raise store_error(
            ErrorKind.VALIDATION,
            f"cannot look users up by {field!r}, valid fields: {sorted(LOOKUP_FIELDS)}",
        )


def _validate_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    if not patch:
        raise store_error(ErrorKind.VALIDATION, "update patch must not be empty")
    unknown = set(patch) - MUTABLE_FIELDS
    if unknown:
        raise store_error(
            ErrorKind.VALIDATION,
            f"cannot update fields {sorted(unknown)}, mutable fields: {sorted(MUTABLE_FIELDS)}",
        )
    if "password_hash" in patch and not patch["password_hash"]:
        raise store_error(ErrorKind.VALIDATION, "password_hash must not be empty")
    return dict(patch)


def classify_db_error(exc: SQLAlchemyError) -> ErrorKind:
    """Map a SQLAlchemy exception onto the store's closed set of error kinds.

    Args:
        exc: Exception raised by SQLAlchemy or wrapped from the DBAPI driver.

    Returns:
        The matching ``ErrorKind``; UNKNOWN when nothing applies.
    """
    orig = exc.orig if isinstance(exc, DBAPIError) else None
    message = str(orig if orig is not None else exc).lower()

    if isinstance(exc, IntegrityError):
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate == "23505" or "unique" in message or "duplicate" in message:
            return ErrorKind.DUPLICATE_KEY
        return ErrorKind.CONSTRAINT
    if isinstance(exc, DataError):
        return ErrorKind.VALIDATION
    if isinstance(exc, PoolTimeoutError):
        return ErrorKind.CONNECTION_TIMEOUT

    connection_class = isinstance(exc, (OperationalError, InterfaceError, DisconnectionError)) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    )
    if not connection_class:
        return ErrorKind.UNKNOWN
    if any(hint in message for hint in _REFUSED_HINTS):
        return ErrorKind.CONNECTION_REFUSED
    if any(hint in message for hint in _UNREACHABLE_HINTS):
        return ErrorKind.HOST_UNREACHABLE
    if any(hint in message for hint in _TIMEOUT_HINTS):
        return ErrorKind.CONNECTION_TIMEOUT
    return ErrorKind.CONNECTION


def _to_record(row: User) -> UserRecord:
    return UserRecord(id=row.id, email=row.email, password_hash=row.password_hash, name=row.name)


class SqlUserStore:
    """User store backed by a relational database through SQLAlchemy.

    The schema is created lazily on the first operation, so the service can
    start while the database is still unreachable.

    Args:
        engine: SQLAlchemy engine.
        session_factory: Session factory bound to ``engine`` (created if omitted).
    """

    def __init__(
        self,
        engine: Engine,
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory or create_session_factory(engine)
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    @classmethod
    def from_url(cls, database_url: str, *, pool_size: int = 10, max_overflow: int = 10) -> SqlUserStore:
        """Build a store with its own engine."""
        engine = create_db_engine(database_url, pool_size=pool_size, max_overflow=max_overflow)
        return cls(engine)

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        """Open a session, translating SQLAlchemy failures into StoreError."""
        try:
            self._ensure_schema()
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            kind = classify_db_error(exc)
            logger.debug("SqlUserStore.%s failed (%s): %s", operation, kind.value, exc)
            raise store_error(kind, f"{operation}: {exc}") from exc

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if not self._schema_ready:
                Base.metadata.create_all(self._engine)
                self._schema_ready = True
                logger.info("SqlUserStore: schema ready (%s)", self._engine.dialect.name)

    def find_by_id(self, user_id: int) -> UserRecord | None:
        with self._session("find_by_id") as session:
            row = session.get(User, user_id)
            return _to_record(row) if row is not None else None

    def find_by_field(self, field: str, value: Any) -> UserRecord | None:
        _validate_lookup(field)
        with self._session("find_by_field") as session:
            stmt = select(User).where(getattr(User, field) == value).limit(1)
            row = session.scalars(stmt).first()
            return _to_record(row) if row is not None else None

    def create(self, new_user: NewUser) -> UserRecord:
        with self._session("create") as session:
            row = User(email=new_user.email, password_hash=new_user.password_hash, name=new_user.name)
            session.add(row)
            try:
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
            return _to_record(row)

    def update(self, user_id: int, patch: Mapping[str, Any]) -> int:
        values = _validate_patch(patch)
        with self._session("update") as session:
            stmt = sql_update(User).where(User.id == user_id).values(**values)
            try:
                result = session.execute(stmt)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
            return int(result.rowcount or 0)

    def save(self, record: UserRecord) -> UserRecord:
        with self._session("save") as session:
            row = session.get(User, record.id)
            if row is None:
                raise store_error(ErrorKind.VALIDATION, f"user {record.id} does not exist")
            row.email = record.email
            row.name = record.name
            row.password_hash = record.password_hash
            try:
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
            return _to_record(row)

    def ping(self) -> None:
        with self._session("ping") as session:
            session.execute(text("SELECT 1"))

    def close(self) -> None:
        self._engine.dispose()


class InMemoryUserStore:
    """Thread-safe in-memory user store with the same semantics as the SQL one.

    Used for local runs (``USE_MOCK_DB=true``) and tests. Ids start at 1.
    """

    def __init__(self) -> None:
        self._records: dict[int, UserRecord] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def _email_owner(self, email: str) -> int | None:
        for record in self._records.values():
            if record.email == email:
                return record.id
        return None

    def find_by_id(self, user_id: int) -> UserRecord | None:
        with self._lock:
            return self._records.get(user_id)

    def find_by_field(self, field: str, value: Any) -> UserRecord | None:
        _validate_lookup(field)
        with self._lock:
            for record in self._records.values():
                if getattr(record, field) == value:
                    return record
        return None

    def create(self, new_user: NewUser) -> UserRecord:
        with self._lock:
            if self._email_owner(new_user.email) is not None:
                raise DuplicateKeyError(f"email {new_user.email!r} already exists")
            record = UserRecord(
                id=self._next_id,
                email=new_user.email,
                password_hash=new_user.password_hash,
                name=new_user.name,
            )
            self._records[record.id] = record
            self._next_id += 1
            return record

    def update(self, user_id: int, patch: Mapping[str, Any]) -> int:
        values = _validate_patch(patch)
        with self._lock:
            current = self._records.get(user_id)
            if current is None:
                return 0
            if "email" in values:
                owner = self._email_owner(values["email"])
                if owner is not None and owner != user_id:
                    raise DuplicateKeyError(f"email {values['email']!r} already exists")
            self._records[user_id] = UserRecord(
                id=current.id,
                email=values.get("email", current.email),
                password_hash=values.get("password_hash", current.password_hash),
                name=values.get("name", current.name),
            )
            return 1

    def save(self, record: UserRecord) -> UserRecord:
        with self._lock:
            if record.id not in self._records:
                raise store_error(ErrorKind.VALIDATION, f"user {record.id} does not exist")
            owner = self._email_owner(record.email)
            if owner is not None and owner != record.id:
                raise DuplicateKeyError(f"email {record.email!r} already exists")
            self._records[record.id] = record
            return record

    def ping(self) -> None:
        return None

    def close(self) -> None:
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def create_user_store(settings: ServiceSettings) -> UserStore:
    """Build the record store selected by configuration."""
    if settings.use_mock_db:
        logger.info("Running with in-memory user store")
        return InMemoryUserStore()
    return SqlUserStore.from_url(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
