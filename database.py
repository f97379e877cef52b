import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONFLICT_SQLSTATES = {"40001", "40P01"}
_UNIQUE_SQLSTATE = "23505"


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        configure_sqlite(eng)
    return eng


def configure_sqlite(eng: Engine) -> Engine:
    """
    Let SQLAlchemy emit BEGIN itself instead of pysqlite.

    Serializable transactions start with BEGIN IMMEDIATE, which takes the
    write lock up front, so two writers cannot both read the same balance.
    """
    event.listen(eng, "connect", _enable_sqlite_pragmas)
    event.listen(eng, "begin", _begin_sqlite_transaction)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _begin_sqlite_transaction(conn):
    mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
    conn.exec_driver_sql(f"BEGIN {mode}")


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def _sqlstate(exc) -> Optional[str]:
    orig = exc.orig
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def _is_conflict(exc: OperationalError) -> bool:
    if _sqlstate(exc) in _CONFLICT_SQLSTATES:
        return True
    return "database is locked" in str(exc.orig).lower()


def _is_unique_violation(exc: IntegrityError) -> bool:
    if _sqlstate(exc) == _UNIQUE_SQLSTATE:
        return True
    return "unique constraint failed" in str(exc.orig).lower()


def _begin_serializable(session: Session) -> None:
    if session.get_bind().dialect.name == "sqlite":
        options = {"sqlite_begin": "IMMEDIATE"}
    else:
        options = {"isolation_level": "SERIALIZABLE"}
    session.connection(execution_options=options)


@contextmanager
def atomic(session: Session, *, serializable: bool = False) -> Iterator[Session]:
    """
    Run one engine operation as a single transaction.

    Commits on success and rolls back on any error, so a failed operation
    never leaves a partial write behind. Serialization failures, lock
    timeouts and unique-key races surface as ConflictError.
    """
    try:
        if serializable and not session.in_transaction():
            _begin_serializable(session)
        yield session
        session.commit()
    except OperationalError as exc:
        session.rollback()
        if _is_conflict(exc):
            raise ConflictError("Concurrent modification detected; retry") from exc
        raise
    except IntegrityError as exc:
        session.rollback()
        if _is_unique_violation(exc):
            raise ConflictError("Concurrent modification detected; retry") from exc
        raise
    except Exception:
        session.rollback()
        raise


def retry_on_conflict(fn: Callable[[], T], attempts: Optional[int] = None) -> T:
    attempts = attempts or get_settings().conflict_retries
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConflictError:
            if attempt == attempts:
                raise
            logger.warning(f"conflict_retry: attempt={attempt} of={attempts}")
    raise ConflictError("Concurrent modification detected; retry")
