"""Engine, sessions and the retried transaction runner.

Every state-changing operation of the broker runs through
``run_in_transaction``: one session, one transaction, committed or rolled
back as a unit. Transient storage failures (serialization conflicts,
deadlocks, lock timeouts, SQLite "database is locked") are retried with
exponential backoff; after the retry budget is spent they surface as
``StorageUnavailable``. Any other exception propagates unchanged on the
first attempt.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from . import config
from .errors import StorageUnavailable, TransientStorageError
from .models import Base

logger = logging.getLogger("portbroker.db")

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}

_engine: Optional[Engine] = None

# Execution options for read-only transactions. SQLite opens them with a
# plain BEGIN, PostgreSQL as READ ONLY DEFERRABLE so a serializable read
# waits for a safe snapshot instead of failing.
READ_ONLY_OPTIONS = {
    "portbroker_read_only": True,
    "postgresql_readonly": True,
    "postgresql_deferrable": True,
}


def build_engine(url: str | None = None, **kwargs) -> Engine:
    """Create an engine for ``url`` (defaults to ``config.DATABASE_URL``).

    PostgreSQL engines run at ``config.DB_ISOLATION_LEVEL``. SQLite engines
    open write transactions with ``BEGIN IMMEDIATE`` so writers are
    serialized by the database lock, use WAL so readers never wait on
    them, and enforce foreign keys.

    Args:
        url: SQLAlchemy database URL.
        **kwargs: Extra keyword arguments for ``create_engine``.

    Returns:
        Engine: The configured engine.
    """
    url = url or config.DATABASE_URL
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 15)
        engine = create_engine(url, connect_args=connect_args, **kwargs)
        _install_sqlite_hooks(engine)
        return engine

    kwargs.setdefault("isolation_level", config.DB_ISOLATION_LEVEL)
    return create_engine(url, pool_pre_ping=True, **kwargs)


def _install_sqlite_hooks(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):
        # let SQLAlchemy emit BEGIN itself
        dbapi_conn.isolation_level = None
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.execute("PRAGMA journal_mode=WAL")
        cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get("portbroker_read_only"):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


def init_db(engine: Engine) -> None:
    """Create all tables and indexes that do not exist yet."""
    Base.metadata.create_all(engine)


def wait_for_db(engine: Engine, timeout: float | None = None) -> None:
    """Block until the database accepts connections or ``timeout`` elapses.

    Raises:
        sqlalchemy.exc.OperationalError: If the database is still
            unreachable when the deadline passes.
    """
    deadline = time.time() + (config.DB_STARTUP_TIMEOUT if timeout is None else timeout)
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            return
        except DBAPIError:
            if time.time() > deadline:
                raise
            time.sleep(1)


def is_transient(exc: DBAPIError) -> bool:
    """Tell whether a DBAPI error is worth retrying.

    Retries are attempted for invalidated connections, the PostgreSQL
    serialization/deadlock/lock-timeout SQLSTATEs and SQLite lock errors.
    """
    if exc.connection_invalidated:
        return True
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "database table is locked" in message


def _retry_policy() -> tuple[int, float, float]:
    """Return (max_retries, backoff_base_seconds, max_sleep_seconds)."""
    return (config.TX_RETRY_MAX, config.TX_RETRY_BACKOFF_BASE, config.TX_RETRY_MAX_SLEEP)


def run_in_transaction(
    session_factory: sessionmaker,
    work: Callable[[Session], T],
    *,
    max_retries: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
    read_only: bool = False,
) -> T:
    """Run ``work(session)`` inside one transaction, retrying transient failures.

    The read-validate-write cycle is re-run from scratch on each attempt, so
    ``work`` must not keep state between calls. Domain errors raised by
    ``work`` roll the transaction back and propagate immediately.

    Args:
        session_factory: Factory producing new sessions.
        work: Callable receiving the session; its return value is returned.
        max_retries: Override for ``config.TX_RETRY_MAX``.
        sleep: Sleep function, replaceable in tests.
        read_only: Open a snapshot transaction that takes no write lock;
            ``work`` must only read.

    Returns:
        Whatever ``work`` returns.

    Raises:
        StorageUnavailable: When every attempt failed transiently.
    """
    retries, backoff, cap = _retry_policy()
    if max_retries is not None:
        retries = max_retries
    tries = 0

    while True:
        try:
            with session_factory() as session:
                with session.begin():
                    if read_only:
                        session.connection(execution_options=READ_ONLY_OPTIONS)
                    return work(session)
        except TransientStorageError as e:
            err: Exception = e
        except DBAPIError as e:
            if not is_transient(e):
                raise
            err = e

        tries += 1
        if tries > retries:
            logger.error(
                "transaction failed after retries",
                extra={"attempts": tries, "error": str(err)},
            )
            raise StorageUnavailable(f"storage unavailable after {tries} attempts") from err

        sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
        logger.warning(
            "transient storage failure, retrying",
            extra={"attempt": tries, "error": str(err)},
        )
        sleep(min(sleep_s, cap))
