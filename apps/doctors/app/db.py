from __future__ import annotations

from datetime import timezone
from functools import lru_cache
from typing import Iterator

from sqlalchemy import DateTime, Engine, create_engine, event, text
from sqlalchemy.orm import DeclarativeBase, Session
from sqlalchemy.types import TypeDecorator

from .config import get_settings


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """
    Timestamps are stored as naive UTC and always handed back tz-aware.

    SQLite has no timezone support and would otherwise return naive values
    that cannot be compared with ``datetime.now(timezone.utc)``.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _serialize_sqlite_writers(engine: Engine) -> None:
    """
    Start every SQLite transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, so two transactions can read
    the same snapshot and both decide a slot is free. Taking the reserved
    lock up front makes the conditional updates in locks.py serializable;
    concurrent writers wait on the busy timeout instead.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _serialize_sqlite_writers(engine)
        return engine
    return create_engine(url, pool_pre_ping=True)


def is_sqlite(s: Session) -> bool:
    return s.get_bind().dialect.name == "sqlite"


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return make_engine(get_settings().db_url)


def get_session() -> Iterator[Session]:
    with Session(get_engine(), expire_on_commit=False) as s:
        yield s


def ping(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
