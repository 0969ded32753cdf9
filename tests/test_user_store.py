"""Tests for db/user_store.py.

Both store implementations run the same contract tests (the SQL store against
an in-memory SQLite database). SQLAlchemy error classification is tested with
hand-built exceptions, since a real unreachable Postgres is not available.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from sqlalchemy.exc import (
    DataError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from core.settings import ServiceSettings
from core.users.store import UserStore
from core.users.types import NewUser, UserRecord
from db.user_store import (
    InMemoryUserStore,
    SqlUserStore,
    classify_db_error,
    create_user_store,
)
from infrastructure.errors import (
    DuplicateKeyError,
    ErrorKind,
    FatalStoreError,
    RetryableStoreError,
    StoreError,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sqlite"])
def user_store(request) -> Iterator[UserStore]:
    if request.param == "memory":
        s: UserStore = InMemoryUserStore()
    else:
        s = SqlUserStore.from_url("sqlite://")
    yield s
    s.close()


def _new(email: str = "ada@example.com", name: str = "Ada") -> NewUser:
    return NewUser(email=email, password_hash="hash-1", name=name)


class _DriverError(Exception):
    """Stands in for a DBAPI driver exception."""

    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


class TestStoreContract:
    def test_satisfies_protocol(self, user_store: UserStore) -> None:
        assert isinstance(user_store, UserStore)

    def test_create_assigns_id(self, user_store: UserStore) -> None:
        first = user_store.create(_new())
        second = user_store.create(_new(email="bob@example.com", name="Bob"))
        assert first.id >= 1
        assert second.id != first.id
        assert first.email == "ada@example.com"
        assert first.password_hash == "hash-1"

    def test_find_by_id(self, user_store: UserStore) -> None:
        created = user_store.create(_new())
        assert user_store.find_by_id(created.id) == created

    def test_find_by_id_missing(self, user_store: UserStore) -> None:
        assert user_store.find_by_id(999) is None

    def test_find_by_email(self, user_store: UserStore) -> None:
        created = user_store.create(_new())
        assert user_store.find_by_field("email", "ada@example.com") == created
        assert user_store.find_by_field("email", "nobody@example.com") is None

    def test_find_by_unknown_field_is_validation_error(self, user_store: UserStore) -> None:
        with pytest.raises(FatalStoreError) as exc_info:
            user_store.find_by_field("password_hash", "x")
        assert exc_info.value.kind is ErrorKind.VALIDATION

    def test_duplicate_email_on_create(self, user_store: UserStore) -> None:
        user_store.create(_new())
        with pytest.raises(DuplicateKeyError) as exc_info:
            user_store.create(_new(name="Other"))
        assert exc_info.value.kind is ErrorKind.DUPLICATE_KEY
        assert exc_info.value.retryable is False

    def test_update_returns_rows_affected(self, user_store: UserStore) -> None:
        created = user_store.create(_new())
        assert user_store.update(created.id, {"name": "Ada L."}) == 1
        found = user_store.find_by_id(created.id)
        assert found is not None
        assert found.name == "Ada L."
        assert found.email == "ada@example.com"

    def test_update_missing_user_returns_zero(self, user_store: UserStore) -> None:
        assert user_store.update(999, {"name": "Ghost"}) == 0

    def test_update_to_taken_email(self, user_store: UserStore) -> None:
        user_store.create(_new())
        bob = user_store.create(_new(email="bob@example.com", name="Bob"))
        with pytest.raises(DuplicateKeyError):
            user_store.update(bob.id, {"email": "ada@example.com"})

    def test_update_own_email_to_same_value(self, user_store: UserStore) -> None:
        ada = user_store.create(_new())
        assert user_store.update(ada.id, {"email": "ada@example.com"}) == 1

    @pytest.mark.parametrize(
        "patch", [{}, {"id": 5}, {"unknown": "x"}, {"password_hash": ""}]
    )
    def test_invalid_patch_is_validation_error(self, user_store: UserStore, patch: dict) -> None:
        created = user_store.create(_new())
        with pytest.raises(StoreError) as exc_info:
            user_store.update(created.id, patch)
        assert exc_info.value.kind is ErrorKind.VALIDATION

    def test_save_persists_all_fields(self, user_store: UserStore) -> None:
        created = user_store.create(_new())
        changed = UserRecord(
            id=created.id, email="ada@new.example.com", password_hash="hash-2", name="Ada"
        )
        user_store.save(changed)
        assert user_store.find_by_id(created.id) == changed

    def test_save_missing_user(self, user_store: UserStore) -> None:
        ghost = UserRecord(id=999, email="x@example.com", password_hash="h", name="X")
        with pytest.raises(StoreError) as exc_info:
            user_store.save(ghost)
        assert exc_info.value.kind is ErrorKind.VALIDATION

    def test_ping(self, user_store: UserStore) -> None:
        user_store.ping()


# ---------------------------------------------------------------------------
# SqlUserStore specifics
# ---------------------------------------------------------------------------


class TestSqlUserStore:
    def test_unreachable_database_is_retryable(self, tmp_path) -> None:
        missing_dir = tmp_path / "missing" / "users.db"
        store = SqlUserStore.from_url(f"sqlite:///{missing_dir}")
        with pytest.raises(RetryableStoreError) as exc_info:
            store.find_by_id(1)
        assert exc_info.value.kind is ErrorKind.CONNECTION
        assert isinstance(exc_info.value.__cause__, OperationalError)
        store.close()

    def test_file_database_persists_across_stores(self, tmp_path) -> None:
        url = f"sqlite:///{tmp_path / 'users.db'}"
        first = SqlUserStore.from_url(url)
        created = first.create(_new())
        first.close()
        second = SqlUserStore.from_url(url)
        assert second.find_by_id(created.id) == created
        second.close()

    def test_create_user_store_picks_sql_backend(self) -> None:
        store = create_user_store(ServiceSettings(database_url="sqlite://"))
        assert isinstance(store, SqlUserStore)
        store.close()

    def test_create_user_store_picks_memory_backend(self) -> None:
        store = create_user_store(ServiceSettings(use_mock_db=True))
        assert isinstance(store, InMemoryUserStore)


# ---------------------------------------------------------------------------
# InMemoryUserStore specifics
# ---------------------------------------------------------------------------


class TestInMemoryUserStore:
    def test_ids_start_at_one(self) -> None:
        assert InMemoryUserStore().create(_new()).id == 1

    def test_len(self) -> None:
        s = InMemoryUserStore()
        s.create(_new())
        s.create(_new(email="bob@example.com"))
        assert len(s) == 2

    def test_save_to_taken_email(self) -> None:
        s = InMemoryUserStore()
        s.create(_new())
        bob = s.create(_new(email="bob@example.com"))
        with pytest.raises(DuplicateKeyError):
            s.save(UserRecord(id=bob.id, email="ada@example.com", password_hash="h", name="Bob"))


# ---------------------------------------------------------------------------
# classify_db_error
# ---------------------------------------------------------------------------


class TestClassifyDbError:
    def test_unique_violation_by_sqlstate(self) -> None:
        exc = IntegrityError("INSERT", {}, _DriverError("violates constraint", sqlstate="23505"))
        assert classify_db_error(exc) is ErrorKind.DUPLICATE_KEY

    def test_unique_violation_by_message(self) -> None:
        exc = IntegrityError("INSERT", {}, _DriverError("UNIQUE constraint failed: users.email"))
        assert classify_db_error(exc) is ErrorKind.DUPLICATE_KEY

    def test_other_integrity_error_is_constraint(self) -> None:
        exc = IntegrityError("INSERT", {}, _DriverError("NOT NULL constraint failed: users.name"))
        assert classify_db_error(exc) is ErrorKind.CONSTRAINT

    def test_data_error_is_validation(self) -> None:
        exc = DataError("INSERT", {}, _DriverError("value too long for type character varying"))
        assert classify_db_error(exc) is ErrorKind.VALIDATION

    def test_pool_timeout(self) -> None:
        assert classify_db_error(PoolTimeoutError("QueuePool limit reached")) is (
            ErrorKind.CONNECTION_TIMEOUT
        )

    @pytest.mark.parametrize(
        ("message", "kind"),
        [
            ("connection to server failed: Connection refused", ErrorKind.CONNECTION_REFUSED),
            ('could not translate host name "db" to address', ErrorKind.HOST_UNREACHABLE),
            ("No route to host", ErrorKind.HOST_UNREACHABLE),
            ("connection timeout expired", ErrorKind.CONNECTION_TIMEOUT),
            ("server closed the connection unexpectedly", ErrorKind.CONNECTION),
        ],
    )
    def test_operational_errors_by_message(self, message: str, kind: ErrorKind) -> None:
        exc = OperationalError("SELECT 1", {}, _DriverError(message))
        assert classify_db_error(exc) is kind

    def test_interface_error_is_connection_class(self) -> None:
        exc = InterfaceError("SELECT 1", {}, _DriverError("connection already closed"))
        assert classify_db_error(exc) is ErrorKind.CONNECTION

    def test_programming_error_is_unknown(self) -> None:
        exc = ProgrammingError("SELECT", {}, _DriverError('relation "users" does not exist'))
        assert classify_db_error(exc) is ErrorKind.UNKNOWN
