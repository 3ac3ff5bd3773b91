"""SQLAlchemy engine and session plumbing.

The engine and session factory are created once from ``Settings`` and handed
to the services; nothing here is a module-level global. SQLite is supported
for tests and local runs (every transaction starts with ``BEGIN IMMEDIATE``
so threads serialize on the busy timeout), PostgreSQL via psycopg in
production.
"""

import time
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    pass


def make_engine(database_url: str) -> Engine:
    """Create an engine for ``database_url`` with sane pool settings."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly.
            dbapi_conn.isolation_level = None
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            # Take the write lock up front: concurrent writers queue on the
            # busy timeout instead of failing a lock upgrade.
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine
    return create_engine(database_url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables known to the metadata."""
    from . import models  # noqa: F401  registers the mappers

    Base.metadata.create_all(engine)


def wait_for_db(engine: Engine, timeout: float = 30.0) -> None:
    """Block until the database accepts connections or ``timeout`` elapses."""
    deadline = time.time() + timeout
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            return
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


@contextmanager
def transaction(sessions: sessionmaker[Session], session: Session | None = None) -> Iterator[Session]:
    """Yield a session inside a transaction.

    When ``session`` is given the caller already owns a transaction and it is
    reused as-is (commit/rollback stay with the caller). Otherwise a new
    session is opened and committed on success, rolled back on error.

    Yields:
        Session: Active SQLAlchemy session.
    """
    if session is not None:
        yield session
        return
    with sessions.begin() as s:
        yield s
