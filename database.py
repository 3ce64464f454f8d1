from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        configure_sqlite_engine(eng)
    return eng


def configure_sqlite_engine(eng: Engine) -> None:
    """Enable WAL and foreign keys, and let SQLAlchemy own BEGIN.

    pysqlite defers BEGIN until the first DML statement, which breaks
    SAVEPOINT-based isolation used by the sync and recurring batches.
    """
    event.listen(eng, "connect", _enable_sqlite_pragmas)
    event.listen(eng, "begin", _emit_sqlite_begin)


def _enable_sqlite_pragmas(dbapi_conn, _record):
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _emit_sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
