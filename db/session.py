"""
SQLAlchemy engine and session factory.

Nothing is created at import time: ``create_session_factory`` is called once
by the service container at startup and the engine is disposed on shutdown.

SQLite URLs (used by tests and local runs) get a single shared connection for
``:memory:`` databases, since every new connection would otherwise see an
empty database.
"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


def create_db_engine(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
) -> Engine:
    """Create an engine for ``database_url``.

    Args:
        database_url: SQLAlchemy connection URL.
        pool_size: Persistent connections in the pool (server databases only).
        max_overflow: Extra connections allowed under burst load.

    Returns:
        A configured ``Engine``.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            return create_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a sessionmaker bound to ``engine``."""
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
